"""Issue reconciliation: the per-record create/update state machine"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from syncbridge.services.adf import (
    description_to_text_doc,
    prepend_cross_reference,
    replace_media_ids,
)
from syncbridge.services.attachment_sync import AttachmentReconciler
from syncbridge.services.comment_sync import CommentReconciler
from syncbridge.services.field_mapping import map_custom_fields, map_user_to_remote, resolve_issue_type
from syncbridge.services.flags import RecentCreations, SyncFlags
from syncbridge.services.jira_client import JiraClient
from syncbridge.services.kvs import KeyValueStore
from syncbridge.services.link_sync import LinkReconciler
from syncbridge.services.mappings import MappingStore
from syncbridge.services.organizations import Organization, OrganizationRepository, OrgSyncConfig
from syncbridge.services.pending_links import PendingChildQueue
from syncbridge.services.stats import StatsRecorder
from syncbridge.services.sync_result import IssueSyncState, SyncResult
from syncbridge.services.transition_sync import DEFAULT_STATUS, transition_remote_issue

logger = logging.getLogger(__name__)


def _names(items: Optional[List[Dict[str, Any]]]) -> List[Dict[str, str]]:
    return [{"name": item["name"]} for item in items or [] if item.get("name")]


def _timetracking(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    if not value:
        return None
    tracking = {k: value[k] for k in ("originalEstimate", "remainingEstimate") if value.get(k)}
    return tracking or None


class IssueReconciler:
    """Push local issues to every configured organization.

    Each (issue, organization) pair goes through the same decision:

    - no mapping: create the remote issue
    - mapping whose remote issue is gone: drop the mapping and recreate
    - otherwise: update

    One organization failing never affects the others.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        local_client: JiraClient,
        mappings: MappingStore,
        flags: SyncFlags,
        recent: RecentCreations,
        pending_children: PendingChildQueue,
        organizations: OrganizationRepository,
        client_factory: Callable[[Organization], JiraClient],
        attachments: AttachmentReconciler,
        links: LinkReconciler,
        comments: CommentReconciler,
        stats: StatsRecorder,
        *,
        max_parent_depth: int = 5,
    ):
        self.kv = kv
        self.local_client = local_client
        self.mappings = mappings
        self.flags = flags
        self.recent = recent
        self.pending_children = pending_children
        self.organizations = organizations
        self.client_factory = client_factory
        self.attachments = attachments
        self.links = links
        self.comments = comments
        self.stats = stats
        self.max_parent_depth = max_parent_depth

    # --- entry points ---------------------------------------------------

    def sync_issue(
        self,
        issue_key: str,
        *,
        organizations: Optional[Iterable[Organization]] = None,
        force_check: bool = False,
        known_missing: bool = False,
        event_type: str = "update",
    ) -> List[Dict[str, Any]]:
        """Reconcile ``issue_key`` into each organization; returns one result per org.

        ``known_missing`` is set by sweeps that already proved the mapped remote
        issue is gone, so the existence check isn't repeated.
        """
        if self.flags.is_syncing(issue_key):
            logger.info(f"Skipping {issue_key} - currently syncing")
            self.stats.track_webhook_sync(
                "skip", False, "Already syncing", None, issue_key, {"eventType": event_type}
            )
            return [SyncResult("sync", issue_key).skip("currently syncing").to_dict()]

        orgs = list(organizations) if organizations is not None else self.organizations.list_organizations(
            include_archived=True
        )
        if not orgs:
            logger.info("Sync skipped: no organizations configured")
            self.stats.track_webhook_sync("skip", False, "No organizations configured", None, issue_key)
            return []

        try:
            issue = self.local_client.get_issue(issue_key)
        except Exception as e:
            logger.error(f"Could not fetch issue data for {issue_key}: {e}")
            self.stats.track_webhook_sync(
                "skip", False, "Could not fetch issue data", None, issue_key, {"eventType": event_type}
            )
            return [SyncResult("sync", issue_key).skip(f"could not fetch issue: {e}").to_dict()]

        logger.info(f"Processing {issue_key} for {len(orgs)} organization(s)")
        results = []
        with self.flags.syncing(issue_key):
            for org in orgs:
                result = self.sync_issue_to_org(issue, org, force_check=force_check, known_missing=known_missing)
                results.append(result.to_dict())
        return results

    def sync_issue_to_org(
        self,
        issue: Dict[str, Any],
        org: Organization,
        *,
        force_check: bool = False,
        known_missing: bool = False,
    ) -> SyncResult:
        """Decide and run create/recreate/update for one organization. Never raises."""
        local_key = issue["key"]
        result = SyncResult("sync", local_key, org.namespace)

        if org.archived:
            return result.skip("organization archived")
        if not org.has_credentials:
            return result.skip("organization has no credentials")
        if self.kv.get(f"created-from-remote:{local_key}") == org.id:
            return result.skip(f"created from {org.name}, not echoing back")

        project_key = ((issue.get("fields") or {}).get("project") or {}).get("key")
        if not org.allows_project(project_key):
            return result.skip(f"project {project_key} not in allowed list")
        if org.jql_filter and not self.matches_filter(local_key, org.jql_filter):
            return result.skip("does not match organization filter")

        config = self.organizations.load_config(org)
        remote_client = self.client_factory(org)
        remote_key = self.mappings.get_remote(local_key, config.org_id)
        previous_remote_key = None

        try:
            if remote_key is None:
                result.operation = "create"
                result.enter(IssueSyncState.UNMAPPED)
                self._create(issue, config, remote_client, result)
            else:
                result.enter(IssueSyncState.MAPPED)
                if known_missing or (
                    config.options.recreate_deleted_issues
                    and not remote_client.issue_exists(remote_key, config.existence_policy)
                ):
                    result.enter(IssueSyncState.STALE_REMOTE_DETECTED)
                    logger.warning(f"Remote issue {remote_key} for {local_key} is gone, recreating")
                    previous_remote_key = remote_key
                    self.mappings.remove(local_key=local_key, remote_key=remote_key, org_id=config.org_id)
                    result.enter(IssueSyncState.UNMAPPED)
                    result.operation = "recreate"
                    self._create(issue, config, remote_client, result)
                else:
                    result.operation = "update"
                    result.remote_key = remote_key
                    self._update(issue, remote_key, config, remote_client, result, force_check=force_check)
        except Exception as e:
            result.add_error(f"Error syncing {local_key} to {org.name}: {e}")

        self._record(result, issue, org, previous_remote_key)
        result.log_summary()
        return result

    def matches_filter(self, issue_key: str, jql_filter: str) -> bool:
        try:
            page = self.local_client.search(f"key = {issue_key} AND ({jql_filter})", max_results=1)
        except Exception as e:
            logger.warning(f"Filter check failed for {issue_key}, skipping: {e}")
            return False
        return bool(page.get("issues"))

    def verify_subresources(self, issue_key: str, org: Organization) -> SyncResult:
        """Force-verify attachments, links and comments of an already mapped issue."""
        config = self.organizations.load_config(org)
        result = SyncResult("verify", issue_key, config.org_id)
        remote_key = self.mappings.get_remote(issue_key, config.org_id)
        if not remote_key:
            return result.skip("not mapped")
        if self.flags.is_syncing(issue_key):
            return result.skip("currently syncing")
        result.remote_key = remote_key

        try:
            with self.flags.syncing(issue_key):
                issue = self.local_client.get_issue(issue_key)
                self._sync_subresources(
                    issue, remote_key, config, self.client_factory(org), result, force_check=True
                )
        except Exception as e:
            result.add_error(f"Error verifying {issue_key} in {org.name}: {e}")
        result.log_summary()
        return result

    # --- create ---------------------------------------------------------

    def build_create_payload(self, issue: Dict[str, Any], config: OrgSyncConfig) -> Dict[str, Any]:
        fields = issue.get("fields") or {}
        payload: Dict[str, Any] = {
            "project": {"key": config.org.remote_project_key},
            "summary": fields.get("summary") or "",
            "description": description_to_text_doc(fields.get("description")),
            "issuetype": resolve_issue_type(fields.get("issuetype"), config.issue_type_mappings),
        }
        if fields.get("priority"):
            payload["priority"] = {"name": fields["priority"].get("name")}
        if fields.get("labels"):
            payload["labels"] = list(fields["labels"])
        if fields.get("duedate"):
            payload["duedate"] = fields["duedate"]
        for name in ("components", "fixVersions", "versions"):
            if fields.get(name):
                payload[name] = _names(fields[name])
        tracking = _timetracking(fields.get("timetracking"))
        if tracking:
            payload["timetracking"] = tracking
        for role in ("assignee", "reporter"):
            mapped = map_user_to_remote((fields.get(role) or {}).get("accountId"), config.user_mappings)
            if mapped:
                payload[role] = {"accountId": mapped}
        payload.update(map_custom_fields(fields, config.field_mappings, sync_sprints=config.options.sync_sprints))
        return payload

    def _create(
        self,
        issue: Dict[str, Any],
        config: OrgSyncConfig,
        remote_client: JiraClient,
        result: SyncResult,
        depth: int = 0,
    ) -> Optional[str]:
        local_key = issue["key"]
        org_id = config.org_id
        result.enter(IssueSyncState.CREATING)

        # Another pass may have finished the create since the decision was made.
        existing = self.mappings.get_remote(local_key, org_id)
        if existing:
            logger.info(f"{local_key} already mapped to {existing}, not creating again")
            result.remote_key = existing
            result.enter(IssueSyncState.MAPPED)
            return existing

        payload = self.build_create_payload(issue, config)
        parent_remote = self._resolve_parent(issue, config, remote_client, result, depth)
        if parent_remote:
            payload["parent"] = {"key": parent_remote}

        try:
            created = remote_client.create_issue(payload)
        except Exception as e:
            result.add_error(f"Create failed for {local_key}: {e}")
            return None

        remote_key = created.get("key")
        if not remote_key:
            result.add_error(f"Create for {local_key} returned no key")
            return None
        if not self.mappings.store(local_key, remote_key, org_id):
            result.add_warning(f"{local_key} was mapped concurrently; {remote_key} may be a duplicate")
        result.remote_key = remote_key
        result.fields_updated = sorted(payload)
        result.enter(IssueSyncState.MAPPED)
        self.recent.mark_created(local_key)
        logger.info(f"Created {local_key} -> {remote_key} in {config.org.name}")

        self.links.resolve_pending_links_for(local_key, org_id, remote_client)

        status = (issue.get("fields") or {}).get("status")
        if status and status.get("name") != DEFAULT_STATUS:
            transition_remote_issue(remote_client, remote_key, status, config.status_mappings, result)

        attachment_mapping = self._sync_subresources(issue, remote_key, config, remote_client, result)
        self._finalize_description(issue, remote_key, config, remote_client, attachment_mapping, result)

        for child_key in self.pending_children.consume(local_key, org_id):
            logger.info(f"Re-syncing pending child {child_key} of {local_key}")
            self.sync_issue(child_key, organizations=[config.org])

        return remote_key

    def _resolve_parent(
        self,
        issue: Dict[str, Any],
        config: OrgSyncConfig,
        remote_client: JiraClient,
        result: SyncResult,
        depth: int,
    ) -> Optional[str]:
        """Remote key of the parent, syncing the parent first when needed."""
        local_key = issue["key"]
        parent_key = ((issue.get("fields") or {}).get("parent") or {}).get("key")
        if not parent_key:
            return None
        org_id = config.org_id

        remote_parent = self.mappings.get_remote(parent_key, org_id)
        if remote_parent:
            return remote_parent

        if depth + 1 > self.max_parent_depth:
            logger.warning(
                f"Not syncing parent {parent_key} of {local_key}: max parent depth ({self.max_parent_depth}) reached"
            )
            self.pending_children.enqueue(parent_key, local_key, org_id)
            return None

        if self.flags.is_syncing(parent_key):
            logger.info(f"Parent {parent_key} is syncing, queueing {local_key} as pending child")
            self.pending_children.enqueue(parent_key, local_key, org_id)
            return None

        logger.info(f"Parent {parent_key} not synced yet, syncing parent first")
        try:
            parent_issue = self.local_client.get_issue(parent_key)
            parent_result = SyncResult("create", parent_key, org_id)
            with self.flags.syncing(parent_key):
                remote_parent = self._create(parent_issue, config, remote_client, parent_result, depth + 1)
            parent_result.log_summary()
        except Exception as e:
            result.add_warning(f"Could not sync parent {parent_key}: {e}")
            remote_parent = None

        if not remote_parent:
            logger.warning(f"Creating {local_key} without parent link; queued until {parent_key} syncs")
            self.pending_children.enqueue(parent_key, local_key, org_id)
        return remote_parent

    def _finalize_description(
        self,
        issue: Dict[str, Any],
        remote_key: str,
        config: OrgSyncConfig,
        remote_client: JiraClient,
        attachment_mapping: Dict[str, str],
        result: SyncResult,
    ) -> None:
        """Second pass after create: media references and cross-reference banners."""
        local_key = issue["key"]
        description = (issue.get("fields") or {}).get("description")
        cross_reference = config.options.cross_reference

        if isinstance(description, dict) and attachment_mapping:
            remote_doc = replace_media_ids(description, attachment_mapping)
        else:
            remote_doc = description_to_text_doc(description)

        if attachment_mapping or cross_reference:
            if cross_reference:
                remote_doc = prepend_cross_reference(remote_doc, local_key, remote_key)
            try:
                remote_client.update_issue(remote_key, {"description": remote_doc})
            except Exception as e:
                result.add_warning(f"Could not update description of {remote_key}, keeping text-only: {e}")

        if cross_reference:
            local_doc = prepend_cross_reference(description, local_key, remote_key)
            if local_doc != description:
                try:
                    self.local_client.update_issue(local_key, {"description": local_doc})
                except Exception as e:
                    result.add_warning(f"Could not add cross-reference to {local_key}: {e}")

    # --- update ---------------------------------------------------------

    def build_update_payload(
        self,
        issue: Dict[str, Any],
        remote_key: str,
        config: OrgSyncConfig,
        attachment_mapping: Dict[str, str],
    ) -> Dict[str, Any]:
        fields = issue.get("fields") or {}
        description = fields.get("description")
        if isinstance(description, dict):
            remote_doc = replace_media_ids(description, attachment_mapping)
        else:
            remote_doc = description_to_text_doc(description)
        if config.options.cross_reference:
            remote_doc = prepend_cross_reference(remote_doc, issue["key"], remote_key)

        payload: Dict[str, Any] = {
            "summary": fields.get("summary") or "",
            "description": remote_doc,
            "labels": list(fields.get("labels") or []),
        }
        if fields.get("priority"):
            payload["priority"] = {"name": fields["priority"].get("name")}
        if fields.get("duedate"):
            payload["duedate"] = fields["duedate"]
        # Empty lists and None are explicit clears.
        for name in ("components", "fixVersions", "versions"):
            payload[name] = _names(fields.get(name))
        tracking = _timetracking(fields.get("timetracking"))
        if tracking:
            payload["timetracking"] = tracking

        parent_key = (fields.get("parent") or {}).get("key")
        if parent_key:
            remote_parent = self.mappings.get_remote(parent_key, config.org_id)
            if remote_parent:
                payload["parent"] = {"key": remote_parent}
        else:
            payload["parent"] = None

        assignee_id = (fields.get("assignee") or {}).get("accountId")
        if assignee_id:
            mapped = map_user_to_remote(assignee_id, config.user_mappings)
            if mapped:
                payload["assignee"] = {"accountId": mapped}
        else:
            payload["assignee"] = None

        payload.update(map_custom_fields(fields, config.field_mappings, sync_sprints=config.options.sync_sprints))
        return payload

    def _update(
        self,
        issue: Dict[str, Any],
        remote_key: str,
        config: OrgSyncConfig,
        remote_client: JiraClient,
        result: SyncResult,
        *,
        force_check: bool = False,
    ) -> None:
        local_key = issue["key"]
        result.enter(IssueSyncState.UPDATING)

        attachment_mapping = self._sync_subresources(
            issue, remote_key, config, remote_client, result, force_check=force_check
        )
        payload = self.build_update_payload(issue, remote_key, config, attachment_mapping)
        try:
            remote_client.update_issue(remote_key, payload)
        except Exception as e:
            result.add_error(f"Update failed for {remote_key}: {e}")
            return
        result.fields_updated = sorted(payload)
        result.enter(IssueSyncState.MAPPED)
        logger.info(f"Updated {local_key} -> {remote_key} fields")

        status = (issue.get("fields") or {}).get("status")
        if status and not self._remote_has_status(remote_client, remote_key, status):
            transition_remote_issue(remote_client, remote_key, status, config.status_mappings, result)

    @staticmethod
    def _remote_has_status(remote_client: JiraClient, remote_key: str, status: Dict[str, Any]) -> bool:
        try:
            remote = remote_client.get_issue(remote_key, fields=["status"])
        except Exception as e:
            logger.warning(f"Could not read status of {remote_key}: {e}")
            return False
        remote_status = ((remote.get("fields") or {}).get("status") or {}).get("name") or ""
        return remote_status.casefold() == (status.get("name") or "").casefold()

    # --- shared ---------------------------------------------------------

    def _sync_subresources(
        self,
        issue: Dict[str, Any],
        remote_key: str,
        config: OrgSyncConfig,
        remote_client: JiraClient,
        result: SyncResult,
        *,
        force_check: bool = False,
    ) -> Dict[str, str]:
        local_key = issue["key"]
        options = config.options
        attachment_mapping: Dict[str, str] = {}

        if options.sync_attachments:
            attachment_mapping = self.attachments.sync_attachments(
                local_key, remote_key, issue, remote_client, config.org_id, result
            )
        else:
            logger.info("Skipping attachments sync (disabled in sync options)")

        if options.sync_links:
            self.links.sync_links(local_key, remote_key, issue, remote_client, config.org_id, result, force_check)
        else:
            logger.info("Skipping links sync (disabled in sync options)")

        if options.sync_comments:
            self.comments.sync_comments(local_key, remote_key, remote_client, config.org, result)
        else:
            logger.info("Skipping comments sync (disabled in sync options)")

        return attachment_mapping

    def _record(
        self, result: SyncResult, issue: Dict[str, Any], org: Organization, previous_remote_key: Optional[str]
    ) -> None:
        if result.skipped_reason:
            return
        fields = issue.get("fields") or {}
        details = {
            "remoteKey": result.remote_key or "none",
            "projectKey": (fields.get("project") or {}).get("key"),
            "issueType": (fields.get("issuetype") or {}).get("name", "unknown"),
            "fieldsUpdated": result.fields_updated,
            "warnings": result.warnings,
        }
        success = result.success and bool(result.remote_key)
        self.stats.track_webhook_sync(
            result.operation, success, "; ".join(result.errors) or None, org.id, result.local_key, details
        )
        entry = {
            "action": result.operation,
            "type": result.operation,
            "sourceIssue": result.local_key,
            "targetIssue": result.remote_key,
            "orgId": org.id,
            "orgName": org.name,
            "success": success,
            "errors": list(result.errors),
        }
        if previous_remote_key:
            entry["previousRemoteKey"] = previous_remote_key
        self.stats.log_audit(entry)
