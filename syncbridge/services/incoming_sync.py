"""Inbound webhooks from bidirectional organizations"""

import logging
from typing import Any, Dict, Optional, Tuple

from syncbridge.services.adf import description_to_text_doc, text_to_doc
from syncbridge.services.cleanup import cleanup_issue_data
from syncbridge.services.comment_sync import CommentReconciler
from syncbridge.services.field_mapping import MappingTable
from syncbridge.services.flags import SyncFlags
from syncbridge.services.jira_client import JiraClient
from syncbridge.services.kvs import KeyValueStore
from syncbridge.services.mappings import MappingStore
from syncbridge.services.organizations import Organization, OrganizationRepository
from syncbridge.services.pending_links import PendingLinkQueue
from syncbridge.services.stats import StatsRecorder

logger = logging.getLogger(__name__)

ISSUE_CREATED = "jira:issue_created"
ISSUE_UPDATED = "jira:issue_updated"
ISSUE_DELETED = "jira:issue_deleted"
COMMENT_CREATED = "comment_created"


def _local_issue_type(remote_issue_type: Optional[Dict[str, Any]], table: MappingTable) -> Dict[str, Any]:
    remote_issue_type = remote_issue_type or {}
    mapped = table.get(str(remote_issue_type.get("id") or ""))
    if mapped:
        return {"id": mapped.local_id}
    return {"name": remote_issue_type.get("name") or "Task"}


class IncomingSyncProcessor:
    """Apply remote issue events to the local instance."""

    def __init__(
        self,
        kv: KeyValueStore,
        local_client: JiraClient,
        mappings: MappingStore,
        flags: SyncFlags,
        pending_links: PendingLinkQueue,
        organizations: OrganizationRepository,
        comments: CommentReconciler,
        stats: Optional[StatsRecorder] = None,
    ):
        self.kv = kv
        self.local_client = local_client
        self.mappings = mappings
        self.flags = flags
        self.pending_links = pending_links
        self.organizations = organizations
        self.comments = comments
        self.stats = stats

    def process_incoming_webhook(self, payload: Dict[str, Any], secret: Optional[str]) -> Tuple[int, Dict[str, Any]]:
        """Returns (HTTP status, response body)."""
        org = self.organizations.find_by_incoming_secret(secret)
        if org is None:
            logger.warning("Incoming webhook with invalid secret")
            return 401, {"error": "Invalid secret"}

        if not org.is_bidirectional:
            logger.warning(f"Incoming webhook for non-bidirectional org: {org.name}")
            return 403, {"error": "Bidirectional sync not enabled"}

        payload = payload or {}
        webhook_event = payload.get("webhookEvent")
        issue = payload.get("issue")
        if not issue:
            return 400, {"error": "No issue in payload"}

        try:
            if webhook_event == ISSUE_CREATED:
                self.handle_remote_issue_created(issue, org)
            elif webhook_event == ISSUE_UPDATED:
                self.handle_remote_issue_updated(issue, org)
            elif webhook_event == ISSUE_DELETED:
                self.handle_remote_issue_deleted(issue, org)
            elif webhook_event == COMMENT_CREATED and payload.get("comment"):
                self.comments.sync_remote_comment(issue.get("key"), payload["comment"], org)
            else:
                logger.info(f"Ignoring event: {webhook_event}")
            return 200, {"message": "Processed"}
        except Exception as e:
            logger.error(f"Error processing incoming webhook from {org.name}: {e}")
            if self.stats:
                self.stats.track_webhook_sync("incoming", False, str(e), org.id, issue.get("key"))
            return 500, {"error": str(e)}

    def handle_remote_issue_created(self, remote_issue: Dict[str, Any], org: Organization) -> Optional[str]:
        remote_key = remote_issue.get("key")
        logger.info(f"Received remote issue create: {remote_key}")

        existing = self.mappings.get_local(remote_key, org.namespace)
        if existing:
            logger.info(f"Issue {remote_key} already mapped to {existing}. Treating as update.")
            self.handle_remote_issue_updated(remote_issue, org)
            return existing

        if not org.allowed_projects:
            raise ValueError(f"No allowed local project configured for org {org.name}")
        target_project = org.allowed_projects[0]

        config = self.organizations.load_config(org)
        fields = remote_issue.get("fields") or {}
        created = self.local_client.create_issue(
            {
                "project": {"key": target_project},
                "summary": fields.get("summary") or "",
                "description": description_to_text_doc(fields.get("description")),
                "issuetype": _local_issue_type(fields.get("issuetype"), config.issue_type_mappings),
            }
        )
        local_key = created["key"]
        with self.flags.syncing(local_key):
            self.kv.set(f"created-from-remote:{local_key}", org.id)
            self.mappings.store(local_key, remote_key, org.namespace)
            logger.info(f"Created local issue {local_key} from remote {remote_key}")
            self.local_client.add_comment(
                local_key, text_to_doc(f"Synced from remote issue: {org.remote_url}/browse/{remote_key}")
            )
        if self.stats:
            self.stats.track_webhook_sync("create", True, None, org.id, local_key, {"remoteKey": remote_key})
        return local_key

    def handle_remote_issue_updated(self, remote_issue: Dict[str, Any], org: Organization) -> bool:
        remote_key = remote_issue.get("key")
        local_key = self.mappings.get_local(remote_key, org.namespace)
        if not local_key:
            logger.info(f"Remote issue {remote_key} not mapped. Ignoring update.")
            return False

        if self.flags.is_syncing(local_key):
            logger.info(f"Loop detected: {local_key} is already syncing. Skipping.")
            return False

        fields = remote_issue.get("fields") or {}
        with self.flags.syncing(local_key):
            self.local_client.update_issue(
                local_key,
                {
                    "summary": fields.get("summary") or "",
                    "description": description_to_text_doc(fields.get("description")),
                },
            )
        logger.info(f"Updated local issue {local_key} from {remote_key}")
        if self.stats:
            self.stats.track_webhook_sync("update", True, None, org.id, local_key, {"remoteKey": remote_key})
        return True

    def handle_remote_issue_deleted(self, remote_issue: Dict[str, Any], org: Organization) -> bool:
        remote_key = remote_issue.get("key")
        local_key = self.mappings.get_local(remote_key, org.namespace)
        if not local_key:
            return False

        logger.info(f"Remote issue {remote_key} deleted. Deleting local {local_key}")
        with self.flags.syncing(local_key):
            self.local_client.delete_issue(local_key)
        cleanup_issue_data(self.kv, self.mappings, self.pending_links, local_key, remote_key, org.namespace)
        return True
