"""Comment reconciliation with provenance tagging and echo prevention"""

import logging
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import urlparse

from syncbridge.services.adf import extract_text, parse_provenance, provenance_header, text_to_doc_with_author
from syncbridge.services.flags import CachedValue
from syncbridge.services.jira_client import JiraClient
from syncbridge.services.kvs import KeyValueStore
from syncbridge.services.mappings import MappingStore
from syncbridge.services.organizations import Organization, OrganizationRepository
from syncbridge.services.stats import StatsRecorder
from syncbridge.services.sync_result import SyncResult

logger = logging.getLogger(__name__)


def _author_name(comment: Dict[str, Any]) -> str:
    author = comment.get("author") or {}
    return author.get("displayName") or author.get("emailAddress") or "Unknown User"


def _comment_text(comment: Dict[str, Any]) -> str:
    body = comment.get("body")
    if isinstance(body, dict):
        return extract_text(body)
    return (body or "").strip()


def site_name_from_url(base_url: Optional[str]) -> Optional[str]:
    """``acme`` for ``https://acme.atlassian.net``."""
    host = urlparse(base_url or "").hostname
    if not host:
        return None
    return host.split(".")[0] or None


class CommentReconciler:
    """Mirror human-authored comments between instances.

    The engine's own comments and comments that already carry the target
    organization's provenance header are never mirrored, which is what stops
    a comment from bouncing back and forth.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        local_client: JiraClient,
        mappings: MappingStore,
        organizations: OrganizationRepository,
        client_factory: Callable[[Organization], JiraClient],
        stats: Optional[StatsRecorder] = None,
        *,
        site_name: Optional[str] = None,
        cache_ttl_seconds: float = 3600,
    ):
        self.kv = kv
        self.local_client = local_client
        self.mappings = mappings
        self.organizations = organizations
        self.client_factory = client_factory
        self.stats = stats
        self._configured_site_name = site_name
        self._service_identity: CachedValue[str] = CachedValue(cache_ttl_seconds)
        self._site_name: CachedValue[str] = CachedValue(cache_ttl_seconds)

    # --- cached lookups -------------------------------------------------

    def service_account_id(self) -> Optional[str]:
        """Account id the engine writes as on the local instance."""

        def load() -> Optional[str]:
            try:
                return (self.local_client.get_myself() or {}).get("accountId")
            except Exception as e:
                logger.warning(f"Could not resolve service identity: {e}")
                return None

        return self._service_identity.get_or_load(load)

    def local_site_name(self) -> str:
        def load() -> Optional[str]:
            if self._configured_site_name:
                return self._configured_site_name
            derived = site_name_from_url(self.local_client.base_url)
            if derived:
                return derived
            try:
                return (self.local_client.get_server_info() or {}).get("serverTitle")
            except Exception as e:
                logger.warning(f"Could not fetch server info for site name: {e}")
                return None

        return self._site_name.get_or_load(load) or "Jira"

    # --- filters --------------------------------------------------------

    def should_skip(self, comment: Dict[str, Any], target_org_name: str) -> Optional[str]:
        """Reason to not mirror ``comment`` into ``target_org_name``, or None."""
        author_id = (comment.get("author") or {}).get("accountId")
        service_id = self.service_account_id()
        if service_id and author_id == service_id:
            return "authored by the sync service"
        provenance = parse_provenance(_comment_text(comment))
        if provenance and provenance[0] == target_org_name:
            return f"originated from {target_org_name}"
        return None

    def build_mirrored_body(self, comment: Dict[str, Any], origin_name: str) -> Dict[str, Any]:
        return text_to_doc_with_author(_comment_text(comment), origin_name, _author_name(comment))

    @staticmethod
    def signature(comment: Dict[str, Any], origin_name: str) -> str:
        return (provenance_header(origin_name, _author_name(comment)) + _comment_text(comment)).strip()

    @staticmethod
    def _existing_texts(client: JiraClient, issue_key: str) -> Set[str]:
        return {_comment_text(c) for c in client.get_comments(issue_key)}

    # --- outbound -------------------------------------------------------

    def sync_comments(
        self,
        local_key: str,
        remote_key: str,
        remote_client: JiraClient,
        org: Organization,
        result: Optional[SyncResult] = None,
    ) -> Dict[str, int]:
        """Mirror every missing local comment onto ``remote_key``."""
        result = result or SyncResult("comments", local_key, org.namespace)
        counts = {"synced": 0, "skipped": 0, "failed": 0}
        try:
            local_comments = self.local_client.get_comments(local_key)
        except Exception as e:
            result.add_warning(f"Could not list comments on {local_key}: {e}")
            return counts
        if not local_comments:
            return counts

        try:
            existing = self._existing_texts(remote_client, remote_key)
        except Exception as e:
            result.add_warning(f"Could not list comments on {remote_key}, skipping comment sync: {e}")
            return counts

        site_name = self.local_site_name()
        for comment in local_comments:
            comment_id = str(comment.get("id"))
            reason = self.should_skip(comment, org.name)
            if reason:
                result.add_comment_skipped(comment_id, reason)
                counts["skipped"] += 1
                continue

            signature = self.signature(comment, site_name)
            if signature in existing:
                result.add_comment_skipped(comment_id, "already on remote")
                counts["skipped"] += 1
                continue

            try:
                remote_client.add_comment(remote_key, self.build_mirrored_body(comment, site_name))
                existing.add(signature)
                result.add_comment_success()
                counts["synced"] += 1
            except Exception as e:
                result.add_comment_failure(comment_id, str(e))
                counts["failed"] += 1
        return counts

    def sync_comment(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Mirror a single new local comment into every organization that has the issue."""
        issue_key = (event.get("issue") or {}).get("key")
        comment_id = (event.get("comment") or {}).get("id")
        results: List[Dict[str, Any]] = []

        organizations = self.organizations.list_organizations()
        if not organizations:
            logger.info("Comment sync skipped: no organizations configured")
            self._track(False, "No organizations configured", None, issue_key, {"commentId": comment_id})
            return results

        try:
            issue = self.local_client.get_issue(issue_key, fields=["project"])
            comment = self.local_client.get_comment(issue_key, comment_id)
        except Exception as e:
            logger.error(f"Could not fetch comment {comment_id} on {issue_key}: {e}")
            self._track(False, str(e), None, issue_key, {"commentId": comment_id})
            return results

        project_key = ((issue.get("fields") or {}).get("project") or {}).get("key")
        site_name = self.local_site_name()

        for org in organizations:
            result = SyncResult("comment", issue_key, org.namespace)
            config = self.organizations.load_config(org)
            if not config.options.sync_comments:
                results.append(result.skip("comment sync disabled").to_dict())
                continue
            if not org.allows_project(project_key):
                results.append(result.skip(f"project {project_key} not in allowed list").to_dict())
                continue
            if not org.has_credentials:
                results.append(result.skip("organization has no credentials").to_dict())
                continue

            remote_key = self.mappings.get_remote(issue_key, org.namespace)
            if not remote_key:
                results.append(result.skip("issue not synced to this organization").to_dict())
                continue
            result.remote_key = remote_key

            reason = self.should_skip(comment, org.name)
            if reason:
                result.add_comment_skipped(str(comment_id), reason)
                results.append(result.skip(reason).to_dict())
                continue

            remote_client = self.client_factory(org)
            try:
                if self.signature(comment, site_name) in self._existing_texts(remote_client, remote_key):
                    result.add_comment_skipped(str(comment_id), "already on remote")
                else:
                    remote_client.add_comment(remote_key, self.build_mirrored_body(comment, site_name))
                    result.add_comment_success()
                    logger.info(f"Comment synced to {org.name} ({remote_key})")
                self._track(True, None, org.id, issue_key, {"remoteKey": remote_key, "commentId": comment_id})
            except Exception as e:
                result.add_comment_failure(str(comment_id), str(e))
                self._track(False, str(e), org.id, issue_key, {"remoteKey": remote_key, "commentId": comment_id})

            result.log_summary()
            results.append(result.to_dict())
        return results

    # --- inbound --------------------------------------------------------

    def sync_remote_comment(self, remote_issue_key: str, comment: Dict[str, Any], org: Organization) -> bool:
        """Mirror a comment made on the remote instance back onto the local issue."""
        comment_id = str(comment.get("id"))
        marker = f"processed-comment:{org.id}:{comment_id}"
        if self.kv.get(marker):
            logger.info(f"Remote comment {comment_id} already processed")
            return False

        provenance = parse_provenance(_comment_text(comment))
        if provenance and provenance[0] == self.local_site_name():
            logger.info(f"Skipping remote comment {comment_id}: originated here")
            self.kv.set(marker, True)
            return False

        local_key = self.mappings.get_local(remote_issue_key, org.namespace)
        if not local_key:
            logger.info(f"No local issue mapped to {remote_issue_key} for {org.name}")
            return False

        self.local_client.add_comment(local_key, self.build_mirrored_body(comment, org.name))
        self.kv.set(marker, True)
        self._track(True, None, org.id, local_key, {"remoteKey": remote_issue_key, "commentId": comment_id})
        logger.info(f"Synced remote comment {comment_id} from {org.name} to {local_key}")
        return True

    def _track(
        self,
        success: bool,
        error: Optional[str],
        org_id: Optional[str],
        issue_key: Optional[str],
        details: Dict[str, Any],
    ) -> None:
        if self.stats:
            self.stats.track_webhook_sync("comment", success, error, org_id, issue_key, details)
