"""Issue link reconciliation and the pending-link sweep"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from syncbridge.services.jira_client import JiraClient
from syncbridge.services.mappings import LINK_SYNCED, MappingStore
from syncbridge.services.pending_links import INWARD, OUTWARD, PendingLink, PendingLinkQueue
from syncbridge.services.sync_result import SyncResult

logger = logging.getLogger(__name__)


def link_endpoints(source_key: str, target_key: str, direction: str) -> Tuple[str, str]:
    """(inward, outward) keys for a link seen from ``source_key``."""
    if direction == OUTWARD:
        return source_key, target_key
    return target_key, source_key


def _linked_key(link: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    if link.get("outwardIssue"):
        return link["outwardIssue"].get("key"), OUTWARD
    if link.get("inwardIssue"):
        return link["inwardIssue"].get("key"), INWARD
    return None, None


def _link_type_name(link: Dict[str, Any]) -> str:
    return (link.get("type") or {}).get("name") or ""


class LinkReconciler:
    """Mirror issue links whose both ends are synced; defer the rest."""

    def __init__(
        self,
        mappings: MappingStore,
        pending_links: PendingLinkQueue,
        *,
        max_pending_attempts: int = 10,
        delay_seconds: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.mappings = mappings
        self.pending_links = pending_links
        self.max_pending_attempts = max_pending_attempts
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    def create_remote_link(
        self, remote_client: JiraClient, source_remote: str, target_remote: str, link_type_name: str, direction: str
    ) -> None:
        inward, outward = link_endpoints(source_remote, target_remote, direction)
        logger.info(f"Creating link: {inward} -> {outward} ({link_type_name})")
        remote_client.create_link(link_type_name, inward, outward)

    def sync_links(
        self,
        local_key: str,
        remote_key: str,
        issue: Dict[str, Any],
        remote_client: JiraClient,
        org_id: Optional[str],
        result: Optional[SyncResult] = None,
        force_check: bool = False,
    ) -> Dict[str, int]:
        """Reconcile the links of one issue.

        ``force_check`` re-verifies links already marked as synced against the
        remote issue and recreates the ones that disappeared.
        """
        result = result or SyncResult("links", local_key, org_id)
        counts = {"synced": 0, "skipped": 0, "failed": 0, "pending": 0}
        links = (issue.get("fields") or {}).get("issuelinks") or []
        if not links:
            return counts

        logger.info(f"Found {len(links)} issue link(s) on {local_key}")

        remote_links: List[Dict[str, Any]] = []
        if force_check:
            try:
                remote_links = remote_client.get_issue_links(remote_key)
            except Exception as e:
                logger.warning(f"Could not fetch remote links for {remote_key}: {e}")

        for link in links:
            linked_key, direction = _linked_key(link)
            try:
                marker = self.mappings.get_link(str(link.get("id")), org_id)
                if marker and not force_check:
                    result.add_link_skipped(linked_key or "unknown", "already synced")
                    counts["skipped"] += 1
                    continue

                if not linked_key:
                    result.add_link_skipped("unknown", "no linked issue found")
                    counts["skipped"] += 1
                    continue

                link_type_name = _link_type_name(link)
                remote_linked_key = self.mappings.get_remote(linked_key, org_id)
                if not remote_linked_key:
                    self.pending_links.add(
                        local_key,
                        PendingLink(
                            linkId=str(link.get("id")),
                            linkedIssueKey=linked_key,
                            direction=direction,
                            linkTypeName=link_type_name,
                            orgId=org_id,
                        ),
                    )
                    result.add_link_pending(linked_key)
                    counts["pending"] += 1
                    continue

                if force_check and marker:
                    exists = any(
                        _link_type_name(rl) == link_type_name and _linked_key(rl)[0] == remote_linked_key
                        for rl in remote_links
                    )
                    if exists:
                        result.add_link_skipped(linked_key, "verified on remote")
                        counts["skipped"] += 1
                        continue
                    logger.warning(f"Link {link.get('id')} marked synced but missing on {remote_key}, recreating")

                self.create_remote_link(remote_client, remote_key, remote_linked_key, link_type_name, direction)
                self.mappings.store_link(str(link.get("id")), LINK_SYNCED, org_id)
                self.pending_links.remove(local_key, str(link.get("id")), org_id)
                result.add_link_success(linked_key)
                counts["synced"] += 1
            except Exception as e:
                result.add_link_failure(linked_key or "unknown", str(e))
                counts["failed"] += 1

        return counts

    def resolve_pending_links_for(self, target_key: str, org_id: Optional[str], remote_client: JiraClient) -> int:
        """Create the links that were waiting for ``target_key`` to get a remote counterpart."""
        target_remote = self.mappings.get_remote(target_key, org_id)
        if not target_remote:
            return 0

        created = 0
        for source_key, link in self.pending_links.find_to(target_key, org_id):
            source_remote = self.mappings.get_remote(source_key, org_id)
            if not source_remote:
                continue
            try:
                self.create_remote_link(remote_client, source_remote, target_remote, link.linkTypeName, link.direction)
            except Exception as e:
                logger.warning(f"Pending link {source_key} -> {target_key} still failing: {e}")
                continue
            self.mappings.store_link(link.linkId, LINK_SYNCED, org_id)
            self.pending_links.remove(source_key, link.linkId, org_id)
            created += 1

        if created:
            logger.info(f"Resolved {created} pending link(s) waiting on {target_key}")
        return created

    def retry_all_pending_links(
        self,
        clients: Dict[Optional[str], JiraClient],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> Dict[str, Any]:
        """Sweep every pending link once.

        ``clients`` maps org namespace to its remote client. Links of orgs
        without a client are left untouched. When ``should_stop`` turns true
        the sweep stops before the next link and the rest stay queued.
        """
        totals = {"retried": 0, "success": 0, "failed": 0, "stillPending": 0, "dropped": 0, "stoppedEarly": False}
        sources = self.pending_links.sources()
        if not sources:
            logger.info("No pending links to retry")
            return totals

        logger.info(f"Found {len(sources)} issue(s) with pending links")
        for source_key in sources:
            for link in self.pending_links.get(source_key):
                remote_client = clients.get(link.orgId)
                if remote_client is None:
                    continue
                if should_stop is not None and should_stop():
                    totals["stoppedEarly"] = True
                    logger.warning(f"Pending link retry stopped early after {totals['retried']} link(s)")
                    return totals
                totals["retried"] += 1
                try:
                    outcome = self._retry_one(source_key, link, remote_client)
                except Exception as e:
                    logger.error(f"Error retrying pending link {source_key} -> {link.linkedIssueKey}: {e}")
                    outcome = self._bump(source_key, link)
                totals[outcome] += 1
                if self.delay_seconds:
                    self._sleep(self.delay_seconds)

        logger.info(
            f"Pending link retry complete: {totals['success']} success, {totals['failed']} failed, "
            f"{totals['stillPending']} still pending, {totals['dropped']} dropped"
        )
        return totals

    def _retry_one(self, source_key: str, link: PendingLink, remote_client: JiraClient) -> str:
        source_remote = self.mappings.get_remote(source_key, link.orgId)
        target_remote = self.mappings.get_remote(link.linkedIssueKey, link.orgId)
        if not source_remote or not target_remote:
            return self._bump(source_key, link)

        try:
            self.create_remote_link(remote_client, source_remote, target_remote, link.linkTypeName, link.direction)
        except Exception as e:
            logger.warning(f"Failed to create pending link {source_key} -> {link.linkedIssueKey}: {e}")
            outcome = self._bump(source_key, link)
            return "dropped" if outcome == "dropped" else "failed"

        self.mappings.store_link(link.linkId, LINK_SYNCED, link.orgId)
        self.pending_links.remove(source_key, link.linkId, link.orgId)
        logger.info(f"Synced pending link: {source_key} -> {link.linkedIssueKey}")
        return "success"

    def _bump(self, source_key: str, link: PendingLink) -> str:
        attempts = self.pending_links.record_attempt(source_key, link.linkId, link.orgId)
        if attempts > self.max_pending_attempts:
            logger.warning(
                f"Dropping pending link {source_key} -> {link.linkedIssueKey}: "
                f"max attempts ({self.max_pending_attempts}) reached"
            )
            self.pending_links.remove(source_key, link.linkId, link.orgId)
            return "dropped"
        return "stillPending"

    def delete_remote_link(
        self,
        link_id: str,
        source_key: str,
        target_key: str,
        link_type_name: Optional[str],
        org_id: Optional[str],
        remote_client: JiraClient,
    ) -> bool:
        """Remove the remote counterpart of a deleted local link."""
        remote_source = self.mappings.get_remote(source_key, org_id)
        remote_target = self.mappings.get_remote(target_key, org_id)
        if not remote_source or not remote_target:
            logger.info(f"{source_key} or {target_key} not synced to org {org_id or 'legacy'}, skipping link deletion")
            return False

        remote_links = remote_client.get_issue_links(remote_source)
        match = next(
            (
                rl
                for rl in remote_links
                if _linked_key(rl)[0] == remote_target and (not link_type_name or _link_type_name(rl) == link_type_name)
            ),
            None,
        )
        if match is None:
            logger.info(f"Link {remote_source} -> {remote_target} not found on remote, may be already deleted")
            self.mappings.remove_link(str(link_id), org_id)
            return False

        remote_client.delete_link(str(match.get("id")))
        self.mappings.remove_link(str(link_id), org_id)
        logger.info(f"Deleted remote link {match.get('id')} ({remote_source} -> {remote_target})")
        return True
