"""Scheduled and bulk reconciliation sweeps"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from syncbridge.services.issue_sync import IssueReconciler
from syncbridge.services.jira_client import JiraClient
from syncbridge.services.kvs import KeyValueStore
from syncbridge.services.link_sync import LinkReconciler
from syncbridge.services.mappings import MappingStore
from syncbridge.services.organizations import (
    Organization,
    OrganizationRepository,
    OrgSyncConfig,
    ScheduledSyncConfig,
)
from syncbridge.services.stats import StatsRecorder

logger = logging.getLogger(__name__)

BULK_STATUS_KEY = "bulkSyncStatus"
RUNNING = "running"
COMPLETED = "completed"
CANCELLED = "cancelled"
FAILED = "failed"

DUPLICATE_SUMMARY_PREFIX = 50
MAX_ERROR_DETAILS = 50


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _escape_jql(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


class SweepStopped(Exception):
    """Raised inside a sweep when the deadline passed or the sweep was cancelled."""


class Deadline:
    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.budget_seconds = budget_seconds
        self._clock = clock
        self.started = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self.started

    def expired(self) -> bool:
        return self.elapsed >= self.budget_seconds


def _empty_totals() -> Dict[str, Any]:
    return {
        "scanned": 0,
        "created": 0,
        "updated": 0,
        "recreated": 0,
        "alreadySynced": 0,
        "mappingsRestored": 0,
        "verified": 0,
        "skipped": 0,
        "errors": 0,
        "errorDetails": [],
        "stoppedEarly": False,
    }


class SweepController:
    """Deadline-aware, cancellable mass reconciliation.

    Sweeps check the clock (and, for bulk runs, the cancellation flag) at
    every organization, project, page and record boundary and keep whatever
    progress they made when they stop.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        local_client: JiraClient,
        mappings: MappingStore,
        organizations: OrganizationRepository,
        issues: IssueReconciler,
        links: LinkReconciler,
        stats: StatsRecorder,
        client_factory: Callable[[Organization], JiraClient],
        *,
        scheduled_budget_seconds: float = 240.0,
        bulk_budget_seconds: float = 840.0,
        record_delay_seconds: float = 0.5,
        page_size: int = 50,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.kv = kv
        self.local_client = local_client
        self.mappings = mappings
        self.organizations = organizations
        self.issues = issues
        self.links = links
        self.stats = stats
        self.client_factory = client_factory
        self.scheduled_budget_seconds = scheduled_budget_seconds
        self.bulk_budget_seconds = bulk_budget_seconds
        self.record_delay_seconds = record_delay_seconds
        self.page_size = page_size
        self._sleep = sleep
        self._clock = clock

    # --- scheduled ------------------------------------------------------

    def active_organizations(self, org_id: Optional[str] = None) -> List[Organization]:
        orgs = [o for o in self.organizations.list_organizations() if o.has_credentials]
        if org_id:
            orgs = [o for o in orgs if o.id == org_id]
        return orgs

    def run_scheduled_sync(self, force: bool = False) -> Dict[str, Any]:
        """One scheduled pass over every active organization, then the pending-link sweep."""
        config = self.organizations.get_scheduled_config()
        if not config.enabled and not force:
            logger.info("Scheduled sync disabled")
            return {"status": "disabled"}

        logger.info("Scheduled sync starting...")
        deadline = Deadline(self.scheduled_budget_seconds, self._clock)
        totals = _empty_totals()
        totals["lastRun"] = _now_iso()

        def should_stop() -> bool:
            return deadline.expired()

        orgs = self.active_organizations()
        try:
            for org in orgs:
                self._check(should_stop)
                try:
                    self._scheduled_org_pass(org, config, totals, should_stop)
                except SweepStopped:
                    raise
                except Exception as e:
                    # One organization's failure never ends the pass for the others.
                    self._add_error(totals, f"General error for {org.name}: {e}")
        except SweepStopped:
            totals["stoppedEarly"] = True
            logger.warning(f"Scheduled sync stopped early after {deadline.elapsed:.0f}s")

        try:
            totals["pendingLinks"] = self.links.retry_all_pending_links(
                self._clients_by_namespace(orgs), should_stop=should_stop
            )
        except Exception as e:
            self._add_error(totals, f"Pending links: {e}")

        totals["elapsedSeconds"] = round(deadline.elapsed)
        self.stats.save_scheduled_stats(totals)
        logger.info(
            f"Scheduled sync complete: {totals['scanned']} checked, {totals['created']} created, "
            f"{totals['recreated']} recreated, {totals['errors']} errors"
        )
        return totals

    def _scheduled_org_pass(
        self,
        org: Organization,
        config: ScheduledSyncConfig,
        totals: Dict[str, Any],
        should_stop: Callable[[], bool],
    ) -> None:
        org_config = self.organizations.load_config(org)
        remote_client = self.client_factory(org)
        if config.detect_deleted:
            self.sweep_deleted_remote(org, org_config, remote_client, totals, should_stop)
        if config.detect_never_synced or config.sync_missing_data:
            self.sweep_local_issues(
                org,
                org_config,
                remote_client,
                totals,
                should_stop,
                recent_only=config.sync_scope == "recent",
                create_missing=config.detect_never_synced,
                verify_subresources=config.sync_missing_data,
            )

    def _clients_by_namespace(self, orgs: List[Organization]) -> Dict[Optional[str], JiraClient]:
        clients = {}
        for org in orgs:
            try:
                clients[org.namespace] = self.client_factory(org)
            except Exception as e:
                logger.error(f"No client for {org.name}, its pending links wait for the next sweep: {e}")
        return clients

    # --- bulk -----------------------------------------------------------

    def get_bulk_status(self) -> Optional[Dict[str, Any]]:
        return self.kv.get(BULK_STATUS_KEY)

    def start_bulk_sync(
        self, org_id: Optional[str] = None, sync_missing_data: bool = False, update_existing: bool = False
    ) -> Dict[str, Any]:
        """Mark a bulk run as queued; ``run_bulk_sync`` does the work."""
        current = self.get_bulk_status()
        if current and current.get("status") == RUNNING:
            raise ValueError("A bulk sync is already running")
        status = {
            "status": RUNNING,
            "orgId": org_id,
            "syncMissingData": sync_missing_data,
            "updateExisting": update_existing,
            "startedAt": _now_iso(),
            "timestamp": _now_iso(),
            "progress": {"scanned": 0},
            "results": None,
        }
        self.kv.set(BULK_STATUS_KEY, status)
        return status

    def cancel_bulk_sync(self) -> bool:
        current = self.get_bulk_status()
        if not current or current.get("status") != RUNNING:
            return False
        current["status"] = CANCELLED
        current["timestamp"] = _now_iso()
        self.kv.set(BULK_STATUS_KEY, current)
        logger.info("Bulk sync cancellation requested")
        return True

    def _is_cancelled(self) -> bool:
        current = self.get_bulk_status()
        return bool(current) and current.get("status") == CANCELLED

    def run_bulk_sync(
        self, org_id: Optional[str] = None, sync_missing_data: bool = False, update_existing: bool = False
    ) -> Dict[str, Any]:
        logger.info(
            f"Bulk sync started (org: {org_id or 'all'}, syncMissingData: {sync_missing_data}, "
            f"updateExisting: {update_existing})"
        )
        current = self.get_bulk_status()
        if not current or current.get("status") != RUNNING:
            self.start_bulk_sync(org_id, sync_missing_data, update_existing)

        deadline = Deadline(self.bulk_budget_seconds, self._clock)
        totals = _empty_totals()
        cancelled = False

        def should_stop() -> bool:
            nonlocal cancelled
            if self._is_cancelled():
                cancelled = True
                return True
            return deadline.expired()

        orgs = self.active_organizations(org_id)
        if not orgs:
            return self._finish_bulk(FAILED, totals, deadline, error="No matching organizations configured")

        try:
            for org in orgs:
                self._check(should_stop)
                logger.info(f"Processing organization: {org.name}")
                try:
                    self.sweep_local_issues(
                        org,
                        self.organizations.load_config(org),
                        self.client_factory(org),
                        totals,
                        should_stop,
                        recent_only=False,
                        create_missing=True,
                        verify_deleted=sync_missing_data,
                        verify_subresources=sync_missing_data,
                        update_existing=update_existing,
                        progress=True,
                    )
                except SweepStopped:
                    raise
                except Exception as e:
                    self._add_error(totals, f"General error for {org.name}: {e}")
                    self._report_progress(totals)
        except SweepStopped:
            totals["stoppedEarly"] = True
        except Exception as e:
            logger.error(f"Bulk sync failed: {e}")
            self._add_error(totals, str(e))
            return self._finish_bulk(FAILED, totals, deadline, error=str(e))

        if cancelled:
            logger.info("Bulk sync was cancelled - stopping")
            return self._finish_bulk(CANCELLED, totals, deadline)
        return self._finish_bulk(COMPLETED, totals, deadline)

    def _finish_bulk(
        self, status: str, totals: Dict[str, Any], deadline: Deadline, error: Optional[str] = None
    ) -> Dict[str, Any]:
        totals["elapsedSeconds"] = round(deadline.elapsed)
        record = self.get_bulk_status() or {}
        record.update({"status": status, "timestamp": _now_iso(), "results": totals})
        if error:
            record["error"] = error
        self.kv.set(BULK_STATUS_KEY, record)
        logger.info(f"Bulk sync {status}: {totals}")
        return record

    def _report_progress(self, totals: Dict[str, Any]) -> None:
        record = self.get_bulk_status()
        # Never overwrite a cancellation with a progress update.
        if not record or record.get("status") != RUNNING:
            return
        record["progress"] = {k: totals[k] for k in ("scanned", "created", "recreated", "updated", "errors")}
        record["timestamp"] = _now_iso()
        self.kv.set(BULK_STATUS_KEY, record)

    # --- sweep kinds ----------------------------------------------------

    def sweep_deleted_remote(
        self,
        org: Organization,
        config: OrgSyncConfig,
        remote_client: JiraClient,
        totals: Dict[str, Any],
        should_stop: Callable[[], bool],
    ) -> None:
        """Verify every indexed mapping; recreate the ones whose remote issue is gone."""
        for entry in list(self.mappings.all_mappings(config.org_id)):
            self._check(should_stop)
            local_key = entry.get("localKey")
            remote_key = self.mappings.get_remote(local_key, config.org_id)
            if not remote_key:
                continue
            try:
                if remote_client.issue_exists(remote_key, config.existence_policy):
                    continue
                logger.info(f"Remote {remote_key} was deleted - recreating {local_key}")
                self._tally(
                    totals, "recreated", self.issues.sync_issue(local_key, organizations=[org], known_missing=True)
                )
            except Exception as e:
                self._add_error(totals, f"{local_key}: {e}")
            self._pause()

    def sweep_local_issues(
        self,
        org: Organization,
        config: OrgSyncConfig,
        remote_client: JiraClient,
        totals: Dict[str, Any],
        should_stop: Callable[[], bool],
        *,
        recent_only: bool = False,
        create_missing: bool = True,
        verify_deleted: bool = False,
        verify_subresources: bool = False,
        update_existing: bool = False,
        progress: bool = False,
    ) -> None:
        """Walk in-scope local issues project by project, page by page."""
        projects = org.allowed_projects or [None]
        for project_key in projects:
            self._check(should_stop)
            jql = self.build_scope_jql(project_key, org.jql_filter, recent_only)
            logger.info(f"Scanning {project_key or 'all projects'} for {org.name}: {jql}")
            for page in self.local_client.iter_search_pages(jql, fields=["summary"], page_size=self.page_size):
                self._check(should_stop)
                for issue in page:
                    self._check(should_stop)
                    totals["scanned"] += 1
                    try:
                        self._process_record(
                            issue,
                            org,
                            config,
                            remote_client,
                            totals,
                            create_missing=create_missing,
                            verify_deleted=verify_deleted,
                            verify_subresources=verify_subresources,
                            update_existing=update_existing,
                        )
                    except Exception as e:
                        self._add_error(totals, f"{issue.get('key')}: {e}")
                    self._pause()
                if progress:
                    self._report_progress(totals)

    @staticmethod
    def build_scope_jql(project_key: Optional[str], jql_filter: Optional[str], recent_only: bool) -> str:
        clauses = []
        if project_key:
            clauses.append(f"project = {project_key}")
        if jql_filter:
            clauses.append(f"({jql_filter})")
        if recent_only:
            clauses.append("updated >= -24h")
        if not clauses:
            clauses.append("created is not EMPTY")
        return " AND ".join(clauses) + " ORDER BY key ASC"

    def _process_record(
        self,
        issue: Dict[str, Any],
        org: Organization,
        config: OrgSyncConfig,
        remote_client: JiraClient,
        totals: Dict[str, Any],
        *,
        create_missing: bool,
        verify_deleted: bool,
        verify_subresources: bool,
        update_existing: bool,
    ) -> None:
        local_key = issue["key"]
        remote_key = self.mappings.get_remote(local_key, config.org_id)

        if not remote_key:
            if not create_missing or self.kv.get(f"created-from-remote:{local_key}") == org.id:
                totals["skipped"] += 1
                return
            summary = (issue.get("fields") or {}).get("summary") or ""
            duplicate = self.find_remote_duplicate(remote_client, org, summary)
            if duplicate and self.mappings.store(local_key, duplicate, config.org_id):
                logger.info(f"{local_key} already exists on remote as {duplicate} - storing mapping")
                totals["mappingsRestored"] += 1
                return
            self._tally(totals, "created", self.issues.sync_issue(local_key, organizations=[org]))
            return

        totals["alreadySynced"] += 1
        if verify_deleted and not remote_client.issue_exists(remote_key, config.existence_policy):
            logger.info(f"Remote {remote_key} was deleted - recreating {local_key}")
            self._tally(totals, "recreated", self.issues.sync_issue(local_key, organizations=[org], known_missing=True))
        elif update_existing:
            self._tally(totals, "updated", self.issues.sync_issue(local_key, organizations=[org]))
        elif verify_subresources:
            result = self.issues.verify_subresources(local_key, org)
            if result.errors:
                self._add_error(totals, f"{local_key}: {'; '.join(result.errors)}")
            elif not result.skipped_reason:
                totals["verified"] += 1

    def find_remote_duplicate(self, remote_client: JiraClient, org: Organization, summary: str) -> Optional[str]:
        """Key of a remote issue with exactly this summary, if one exists."""
        if not summary.strip():
            return None
        prefix = _escape_jql(summary[:DUPLICATE_SUMMARY_PREFIX])
        jql = f'project = {org.remote_project_key} AND summary ~ "{prefix}"'
        try:
            page = remote_client.search(jql, fields=["summary"], max_results=5)
        except Exception as e:
            logger.warning(f"Duplicate check failed for '{summary[:30]}': {e}")
            return None
        for remote_issue in page.get("issues") or []:
            if (remote_issue.get("fields") or {}).get("summary") == summary:
                return remote_issue.get("key")
        return None

    # --- helpers --------------------------------------------------------

    @staticmethod
    def _check(should_stop: Callable[[], bool]) -> None:
        if should_stop():
            raise SweepStopped()

    def _pause(self) -> None:
        if self.record_delay_seconds:
            self._sleep(self.record_delay_seconds)

    def _tally(self, totals: Dict[str, Any], counter: str, results: List[Dict[str, Any]]) -> None:
        for result in results:
            if result.get("status") == "failure":
                self._add_error(totals, f"{result.get('localKey')}: {'; '.join(result.get('errors') or [])}")
            elif result.get("status") == "skipped":
                totals["skipped"] += 1
            else:
                totals[counter] += 1

    @staticmethod
    def _add_error(totals: Dict[str, Any], message: str) -> None:
        totals["errors"] += 1
        totals["errorDetails"] = (totals["errorDetails"] + [message])[-MAX_ERROR_DETAILS:]
        logger.error(message)
