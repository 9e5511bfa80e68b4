"""Issue synchronization service"""

import hashlib
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from syncbridge.config import Settings, settings as default_settings
from syncbridge.services.attachment_sync import AttachmentReconciler
from syncbridge.services.comment_sync import CommentReconciler
from syncbridge.services.events import EventDispatcher
from syncbridge.services.flags import RecentCreations, SyncFlags
from syncbridge.services.incoming_sync import IncomingSyncProcessor
from syncbridge.services.issue_sync import IssueReconciler
from syncbridge.services.jira_client import ExistencePolicy, JiraClient
from syncbridge.services.kvs import KeyValueStore
from syncbridge.services.link_sync import LinkReconciler
from syncbridge.services.mappings import MappingStore
from syncbridge.services.organizations import Organization, OrganizationRepository
from syncbridge.services.pending_links import PendingChildQueue, PendingLinkQueue
from syncbridge.services.retry import RetryPolicy
from syncbridge.services.stats import StatsRecorder
from syncbridge.services.sweeps import SweepController

logger = logging.getLogger(__name__)

REQUIRED_PERMISSIONS = ["CREATE_ISSUES", "EDIT_ISSUES", "DELETE_ISSUES"]


class SyncService:
    """Wires the stores, clients and reconcilers into one engine.

    Every entry point (events, inbound webhooks, manual operations, sweeps)
    goes through an instance of this class. Remote clients are cached per
    organization and rebuilt when the organization's credentials change.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        config: Settings = default_settings,
        local_client: Optional[JiraClient] = None,
        client_factory: Optional[Callable[[Organization], JiraClient]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.kv = kv
        self.config = config
        self._sleep = sleep
        self.clients: Dict[str, Tuple[str, JiraClient]] = {}
        self._clients_lock = threading.Lock()
        self._client_factory = client_factory

        self.stats = StatsRecorder(
            kv, max_audit_entries=config.max_audit_log_entries, max_error_entries=config.max_error_entries
        )
        self.retry_policy = RetryPolicy.from_settings(config)
        self.local_client = local_client or JiraClient(
            config.local_base_url,
            config.local_email,
            config.local_api_token,
            stats=self.stats,
            retry_policy=self.retry_policy,
            timeout=config.http_timeout_seconds,
            sleep=sleep,
        )

        self.mappings = MappingStore(kv)
        self.flags = SyncFlags(kv, config.sync_flag_ttl_seconds)
        self.recent = RecentCreations(kv, config.recent_creation_window_seconds)
        self.pending_links = PendingLinkQueue(kv)
        self.pending_children = PendingChildQueue(kv)
        self.organizations = OrganizationRepository(kv, ExistencePolicy(config.existence_check_policy))

        self.attachments = AttachmentReconciler(
            kv,
            self.mappings,
            self.local_client,
            max_size_bytes=config.max_attachment_size_bytes,
            lease_ttl_seconds=config.attachment_lease_ttl_seconds,
            lease_poll_attempts=config.attachment_lease_poll_attempts,
            lease_poll_interval_seconds=config.attachment_lease_poll_interval_seconds,
            sleep=sleep,
        )
        self.links = LinkReconciler(
            self.mappings,
            self.pending_links,
            max_pending_attempts=config.max_pending_link_attempts,
            delay_seconds=config.pending_link_delay_seconds,
            sleep=sleep,
        )
        self.comments = CommentReconciler(
            kv,
            self.local_client,
            self.mappings,
            self.organizations,
            self.get_client,
            self.stats,
            site_name=config.local_site_name,
            cache_ttl_seconds=config.identity_cache_ttl_seconds,
        )
        self.issues = IssueReconciler(
            kv,
            self.local_client,
            self.mappings,
            self.flags,
            self.recent,
            self.pending_children,
            self.organizations,
            self.get_client,
            self.attachments,
            self.links,
            self.comments,
            self.stats,
            max_parent_depth=config.max_parent_depth,
        )
        self.sweeps = SweepController(
            kv,
            self.local_client,
            self.mappings,
            self.organizations,
            self.issues,
            self.links,
            self.stats,
            self.get_client,
            scheduled_budget_seconds=config.scheduled_sync_time_budget_seconds,
            bulk_budget_seconds=config.bulk_sync_time_budget_seconds,
            record_delay_seconds=config.scheduled_sync_delay_seconds,
            page_size=config.search_page_size,
            sleep=sleep,
        )
        self.dispatcher = EventDispatcher(
            kv,
            self.local_client,
            self.mappings,
            self.pending_links,
            self.recent,
            self.organizations,
            self.get_client,
            self.issues,
            self.comments,
            self.links,
            self.sweeps,
        )
        self.incoming = IncomingSyncProcessor(
            kv,
            self.local_client,
            self.mappings,
            self.flags,
            self.pending_links,
            self.organizations,
            self.comments,
            self.stats,
        )

    # --- clients --------------------------------------------------------

    @staticmethod
    def _credentials_fingerprint(org: Organization) -> str:
        raw = f"{org.remote_url}|{org.remote_email}|{org.remote_api_token or ''}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def get_client(self, org: Organization) -> JiraClient:
        """Get or create the client for an organization"""
        fingerprint = self._credentials_fingerprint(org)
        with self._clients_lock:
            cached = self.clients.get(org.id)
            if cached and cached[0] == fingerprint:
                return cached[1]

            if self._client_factory is not None:
                client = self._client_factory(org)
            else:
                client = JiraClient(
                    org.remote_url,
                    org.remote_email,
                    org.remote_api_token or "",
                    org_id=org.id,
                    stats=self.stats,
                    retry_policy=self.retry_policy,
                    timeout=self.config.http_timeout_seconds,
                    sleep=self._sleep,
                )
            self.clients[org.id] = (fingerprint, client)
            return client

    def _require_org(self, org_id: str) -> Organization:
        org = self.organizations.get(org_id)
        if org is None:
            raise ValueError(f"Organization {org_id} not found")
        return org

    # --- entry points ---------------------------------------------------

    def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return self.dispatcher.handle(event)

    def process_incoming_webhook(self, payload: Dict[str, Any], secret: Optional[str]) -> Tuple[int, Dict[str, Any]]:
        return self.incoming.process_incoming_webhook(payload, secret)

    def force_sync(self, issue_key: str) -> Dict[str, Any]:
        """Re-sync one issue to every organization, verifying remote existence."""
        logger.info(f"Force sync requested for {issue_key}")
        results = self.issues.sync_issue(issue_key, force_check=True, event_type="force")
        succeeded = [r for r in results if r.get("status") in ("success", "partial")]
        failed = [r for r in results if r.get("status") == "failure"]
        return {
            "success": not failed,
            "issueKey": issue_key,
            "message": f"Synced {issue_key} to {len(succeeded)} organization(s)"
            + (f", {len(failed)} failed" if failed else ""),
            "results": results,
        }

    def retry_pending_links(self) -> Dict[str, Any]:
        clients = {}
        for org in self.sweeps.active_organizations():
            clients[org.namespace] = self.get_client(org)
        return self.links.retry_all_pending_links(clients)

    def run_scheduled_sync(self, force: bool = False) -> Dict[str, Any]:
        return self.sweeps.run_scheduled_sync(force=force)

    def start_bulk_sync(
        self, org_id: Optional[str] = None, sync_missing_data: bool = False, update_existing: bool = False
    ) -> Dict[str, Any]:
        if org_id:
            self._require_org(org_id)
        return self.sweeps.start_bulk_sync(org_id, sync_missing_data, update_existing)

    def run_bulk_sync(
        self, org_id: Optional[str] = None, sync_missing_data: bool = False, update_existing: bool = False
    ) -> Dict[str, Any]:
        return self.sweeps.run_bulk_sync(org_id, sync_missing_data, update_existing)

    def get_bulk_status(self) -> Optional[Dict[str, Any]]:
        return self.sweeps.get_bulk_status()

    def cancel_bulk_sync(self) -> bool:
        return self.sweeps.cancel_bulk_sync()

    # --- lookups --------------------------------------------------------

    def get_mappings(self, issue_key: str) -> Dict[str, Any]:
        orgs = self.organizations.list_organizations(include_archived=True)
        return {
            "issueKey": issue_key,
            "mappings": self.mappings.get_all_remote_keys(issue_key, orgs),
            "pendingLinks": [link.to_dict() for link in self.pending_links.get(issue_key)],
            "syncing": self.flags.is_syncing(issue_key),
        }

    def run_health_check(self, org_id: str) -> Dict[str, Any]:
        """Read-only checks of an organization's credentials and project access."""
        org = self._require_org(org_id)
        results: Dict[str, Any] = {"orgId": org.id, "steps": [], "success": True}

        def step(name: str, status: str, message: str) -> None:
            results["steps"].append({"name": name, "status": status, "message": message})
            if status == "error":
                results["success"] = False

        step("Load Configuration", "success", f"Loaded config for {org.name}")
        if not org.has_credentials:
            step("Remote Credentials", "error", "Organization is missing URL, email or API token")
            return results

        client = self.get_client(org)
        try:
            user = client.get_myself()
            step("Remote Authentication", "success", f"Authenticated as {user.get('displayName')}")
        except Exception as e:
            step("Remote Authentication", "error", f"Authentication failed: {e}")
            return results

        try:
            client.get_project(org.remote_project_key)
            step("Remote Project Access", "success", f"Found project {org.remote_project_key}")
        except Exception as e:
            step("Remote Project Access", "error", f"Project {org.remote_project_key} not accessible: {e}")
            return results

        try:
            permissions = client.get_permissions(org.remote_project_key, REQUIRED_PERMISSIONS).get("permissions") or {}
            if (permissions.get("CREATE_ISSUES") or {}).get("havePermission"):
                step("Create Permission", "success", "Can create issues")
            else:
                step("Create Permission", "error", "Missing CREATE_ISSUES permission")
            if (permissions.get("EDIT_ISSUES") or {}).get("havePermission"):
                step("Edit Permission", "success", "Can edit issues")
            else:
                step("Edit Permission", "warning", "Missing EDIT_ISSUES permission (sync updates will fail)")
        except Exception as e:
            step("Remote Permissions", "warning", f"Could not check permissions: {e}")

        try:
            self.local_client.get_myself()
            step("Local Authentication", "success", "Local credentials accepted")
        except Exception as e:
            step("Local Authentication", "error", f"Local authentication failed: {e}")

        return results


_service: Optional[SyncService] = None
_service_lock = threading.Lock()


def get_sync_service() -> SyncService:
    """Process-wide engine backed by the SQL key-value store."""
    global _service
    with _service_lock:
        if _service is None:
            from syncbridge.models.base import SessionLocal
            from syncbridge.services.kvs import SqlKeyValueStore

            _service = SyncService(SqlKeyValueStore(SessionLocal))
        return _service


def reset_sync_service(service: Optional[SyncService] = None) -> None:
    global _service
    with _service_lock:
        _service = service
