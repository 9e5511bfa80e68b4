"""Route local tracker events to the reconcilers"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from syncbridge.services.cleanup import cleanup_issue_data
from syncbridge.services.comment_sync import CommentReconciler
from syncbridge.services.flags import RecentCreations
from syncbridge.services.issue_sync import IssueReconciler
from syncbridge.services.jira_client import JiraClient
from syncbridge.services.kvs import KeyValueStore
from syncbridge.services.link_sync import LinkReconciler
from syncbridge.services.mappings import MappingStore
from syncbridge.services.organizations import Organization, OrganizationRepository
from syncbridge.services.pending_links import PendingLinkQueue
from syncbridge.services.sweeps import SweepController

logger = logging.getLogger(__name__)

ISSUE_CREATED = "issue_created"
ISSUE_UPDATED = "issue_updated"
ISSUE_DELETED = "issue_deleted"
COMMENT_CREATED = "comment_created"
ATTACHMENT_CREATED = "attachment_created"
LINK_CREATED = "link_created"
LINK_DELETED = "link_deleted"
TICK = "tick"

# Platform event names accepted as aliases.
EVENT_ALIASES = {
    "avi:jira:created:issue": ISSUE_CREATED,
    "avi:jira:updated:issue": ISSUE_UPDATED,
    "avi:jira:deleted:issue": ISSUE_DELETED,
    "avi:jira:commented:issue": COMMENT_CREATED,
    "avi:jira:created:attachment": ATTACHMENT_CREATED,
    "avi:jira:created:issuelink": LINK_CREATED,
    "avi:jira:deleted:issuelink": LINK_DELETED,
}


def normalize_event_type(event_type: Optional[str]) -> Optional[str]:
    return EVENT_ALIASES.get(event_type, event_type)


class EventDispatcher:
    """Single entry point for issue, comment, attachment, link and timer events."""

    def __init__(
        self,
        kv: KeyValueStore,
        local_client: JiraClient,
        mappings: MappingStore,
        pending_links: PendingLinkQueue,
        recent: RecentCreations,
        organizations: OrganizationRepository,
        client_factory: Callable[[Organization], JiraClient],
        issues: IssueReconciler,
        comments: CommentReconciler,
        links: LinkReconciler,
        sweeps: SweepController,
    ):
        self.kv = kv
        self.local_client = local_client
        self.mappings = mappings
        self.pending_links = pending_links
        self.recent = recent
        self.organizations = organizations
        self.client_factory = client_factory
        self.issues = issues
        self.comments = comments
        self.links = links
        self.sweeps = sweeps
        self._handlers = {
            ISSUE_CREATED: self.on_issue_created,
            ISSUE_UPDATED: self.on_issue_updated,
            ISSUE_DELETED: self.on_issue_deleted,
            COMMENT_CREATED: self.on_comment_created,
            ATTACHMENT_CREATED: self.on_attachment_created,
            LINK_CREATED: self.on_link_created,
            LINK_DELETED: self.on_link_deleted,
            TICK: self.on_tick,
        }

    def handle(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event_type = normalize_event_type(event.get("eventType"))
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Ignoring event: {event.get('eventType')}")
            return {"status": "ignored", "eventType": event.get("eventType")}

        logger.info(f"Event {event_type} for {(event.get('issue') or {}).get('key') or '-'}")
        try:
            return {"status": "success", "eventType": event_type, "result": handler(event)}
        except Exception as e:
            logger.error(f"Error handling {event_type}: {e}")
            return {"status": "error", "eventType": event_type, "error": str(e)}

    # --- issues ---------------------------------------------------------

    @staticmethod
    def _issue_key(event: Dict[str, Any]) -> str:
        key = (event.get("issue") or {}).get("key")
        if not key:
            raise ValueError("Event has no issue key")
        return key

    def on_issue_created(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        issue_key = self._issue_key(event)
        self.recent.mark_created(issue_key)
        return self.issues.sync_issue(issue_key, event_type=ISSUE_CREATED)

    def on_issue_updated(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        issue_key = self._issue_key(event)
        if self.recent.was_recently_created(issue_key):
            # Only skip while the create is still in flight.
            if not self.mappings.get_all_remote_keys(issue_key, self.organizations.list_organizations()):
                logger.info(f"Skipping update event - {issue_key} was just created")
                return []
        return self.issues.sync_issue(issue_key, event_type=ISSUE_UPDATED)

    def on_issue_deleted(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        issue_key = self._issue_key(event)
        outcomes = []
        for org in self.organizations.list_organizations():
            remote_key = self.mappings.get_remote(issue_key, org.namespace)
            if not remote_key:
                continue
            if not org.has_credentials:
                logger.warning(f"Can't delete {remote_key} in {org.name}: organization has no credentials")
                continue
            try:
                self.client_factory(org).delete_issue(remote_key)
            except Exception as e:
                logger.error(f"Error deleting remote issue {remote_key} in {org.name}: {e}")
                outcomes.append({"orgId": org.id, "remoteKey": remote_key, "deleted": False, "error": str(e)})
                continue
            logger.info(f"Deleted remote issue {remote_key} in {org.name}")
            cleanup_issue_data(self.kv, self.mappings, self.pending_links, issue_key, remote_key, org.namespace)
            outcomes.append({"orgId": org.id, "remoteKey": remote_key, "deleted": True})
        return outcomes

    # --- sub-resources --------------------------------------------------

    def on_comment_created(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self.comments.sync_comment(event)

    def on_attachment_created(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        issue_key = (event.get("issue") or {}).get("key") or (event.get("attachment") or {}).get("issueKey")
        if not issue_key:
            raise ValueError("Attachment event has no issue key")
        return self.issues.sync_issue(issue_key, event_type=ATTACHMENT_CREATED)

    def _link_keys(self, event: Dict[str, Any]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        link = event.get("issueLink") or {}
        link_type_name = (link.get("issueLinkType") or {}).get("name")
        keys = []
        for id_field, key_field in (("sourceIssueId", "sourceIssueKey"), ("destinationIssueId", "destinationIssueKey")):
            key = link.get(key_field)
            if not key and link.get(id_field):
                try:
                    key = self.local_client.get_issue(str(link[id_field]), fields=["summary"]).get("key")
                except Exception as e:
                    logger.warning(f"Could not resolve issue {link[id_field]}: {e}")
            keys.append(key)
        return keys[0], keys[1], link_type_name

    def on_link_created(self, event: Dict[str, Any]) -> Dict[str, Any]:
        source_key, target_key, _ = self._link_keys(event)
        if not source_key and not target_key:
            logger.warning("Could not determine issue keys from link event")
            return {}
        results: Dict[str, Any] = {}
        # Target first so the source pass finds it mapped.
        if target_key:
            results["target"] = self.issues.sync_issue(target_key, event_type=LINK_CREATED)
        if source_key:
            results["source"] = self.issues.sync_issue(source_key, event_type=LINK_CREATED)
        return results

    def on_link_deleted(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        link_id = (event.get("issueLink") or {}).get("id")
        if not link_id:
            raise ValueError("Link delete event has no link id")
        source_key, target_key, link_type_name = self._link_keys(event)
        if not source_key or not target_key:
            logger.warning("Could not determine both issue keys for link deletion")
            return []

        outcomes = []
        for org in self.organizations.list_organizations():
            if not org.has_credentials:
                continue
            try:
                deleted = self.links.delete_remote_link(
                    str(link_id), source_key, target_key, link_type_name, org.namespace, self.client_factory(org)
                )
                outcomes.append({"orgId": org.id, "deleted": deleted})
            except Exception as e:
                logger.error(f"Error deleting link from {org.name}: {e}")
                outcomes.append({"orgId": org.id, "deleted": False, "error": str(e)})
        return outcomes

    # --- timer ----------------------------------------------------------

    def on_tick(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return self.sweeps.run_scheduled_sync()
