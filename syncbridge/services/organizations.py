"""Organization configuration stored in the key-value store"""

import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from syncbridge.services.field_mapping import MappingTable, parse_mapping_table, table_to_raw
from syncbridge.services.jira_client import ExistencePolicy
from syncbridge.services.kvs import KeyValueStore

logger = logging.getLogger(__name__)

LEGACY_ORG_ID = "legacy"
PUSH = "push"
BIDIRECTIONAL = "bidirectional"


class Organization(BaseModel):
    id: str
    name: str
    remote_url: str = Field("", alias="remoteUrl")
    remote_email: str = Field("", alias="remoteEmail")
    remote_project_key: str = Field("", alias="remoteProjectKey")
    allowed_projects: List[str] = Field(default_factory=list, alias="allowedProjects")
    jql_filter: Optional[str] = Field(None, alias="jqlFilter")
    sync_direction: str = Field(PUSH, alias="syncDirection")
    archived: bool = False
    # Loaded from secret storage, never persisted with the organization.
    remote_api_token: Optional[str] = Field(None, alias="remoteApiToken", exclude=True)

    model_config = ConfigDict(populate_by_name=True)

    @property
    def namespace(self) -> Optional[str]:
        """Mapping namespace: None for the legacy single-org setup."""
        return None if self.id == LEGACY_ORG_ID else self.id

    @property
    def is_bidirectional(self) -> bool:
        return self.sync_direction == BIDIRECTIONAL

    @property
    def has_credentials(self) -> bool:
        return bool(self.remote_url and self.remote_email and self.remote_api_token)

    def allows_project(self, project_key: Optional[str]) -> bool:
        # An empty allow-list means every project syncs.
        if not self.allowed_projects:
            return True
        return project_key in self.allowed_projects


class SyncOptions(BaseModel):
    sync_comments: bool = Field(True, alias="syncComments")
    sync_attachments: bool = Field(True, alias="syncAttachments")
    sync_links: bool = Field(True, alias="syncLinks")
    sync_sprints: bool = Field(False, alias="syncSprints")
    recreate_deleted_issues: bool = Field(True, alias="recreateDeletedIssues")
    cross_reference: bool = Field(True, alias="crossReference")
    existence_check_policy: Optional[ExistencePolicy] = Field(None, alias="existenceCheckPolicy")

    model_config = ConfigDict(populate_by_name=True)


class ScheduledSyncConfig(BaseModel):
    enabled: bool = True
    sync_scope: str = Field("recent", alias="syncScope")  # "recent" | "all"
    detect_deleted: bool = Field(True, alias="detectDeleted")
    detect_never_synced: bool = Field(True, alias="detectNeverSynced")
    sync_missing_data: bool = Field(False, alias="syncMissingData")

    model_config = ConfigDict(populate_by_name=True)


@dataclass
class OrgSyncConfig:
    """Everything needed to sync into one organization."""

    org: Organization
    user_mappings: MappingTable = field(default_factory=dict)
    field_mappings: MappingTable = field(default_factory=dict)
    status_mappings: MappingTable = field(default_factory=dict)
    issue_type_mappings: MappingTable = field(default_factory=dict)
    options: SyncOptions = field(default_factory=SyncOptions)
    default_existence_policy: ExistencePolicy = ExistencePolicy.FAIL_OPEN

    @property
    def org_id(self) -> Optional[str]:
        return self.org.namespace

    @property
    def existence_policy(self) -> ExistencePolicy:
        return self.options.existence_check_policy or self.default_existence_policy


def _table_key(name: str, org_id: str) -> str:
    return name if org_id == LEGACY_ORG_ID else f"{name}:{org_id}"


class OrganizationRepository:
    """Read/write organizations and their per-org tables."""

    def __init__(self, kv: KeyValueStore, default_existence_policy: ExistencePolicy = ExistencePolicy.FAIL_OPEN):
        self.kv = kv
        self.default_existence_policy = default_existence_policy

    def list_organizations(self, include_archived: bool = False) -> List[Organization]:
        orgs: List[Organization] = []
        for raw in self.kv.get("organizations") or []:
            try:
                org = Organization.model_validate(raw)
            except Exception as e:
                logger.warning(f"Ignoring malformed organization entry {raw!r}: {e}")
                continue
            if org.archived and not include_archived:
                continue
            org.remote_api_token = self.kv.get_secret(f"secret:{org.id}:token") or raw.get("remoteApiToken")
            orgs.append(org)

        if not orgs:
            legacy = self.kv.get("syncConfig")
            if legacy and legacy.get("remoteUrl"):
                logger.warning("Using legacy single-org config - consider migrating to organizations")
                org = Organization.model_validate({"id": LEGACY_ORG_ID, "name": "Legacy Organization", **legacy})
                org.remote_api_token = self.kv.get_secret(f"secret:{LEGACY_ORG_ID}:token") or legacy.get(
                    "remoteApiToken"
                )
                orgs.append(org)
        return orgs

    def get(self, org_id: str) -> Optional[Organization]:
        return next((o for o in self.list_organizations(include_archived=True) if o.id == org_id), None)

    def save(self, org: Organization, api_token: Optional[str] = None) -> None:
        raw_orgs = [o for o in self.kv.get("organizations") or [] if o.get("id") != org.id]
        raw_orgs.append(org.model_dump(by_alias=True))
        self.kv.set("organizations", raw_orgs)
        if api_token:
            self.kv.set_secret(f"secret:{org.id}:token", api_token)

    def archive(self, org_id: str) -> bool:
        """Soft-delete: excluded from sync, mappings retained."""
        raw_orgs = self.kv.get("organizations") or []
        found = False
        for raw in raw_orgs:
            if raw.get("id") == org_id:
                raw["archived"] = True
                found = True
        if found:
            self.kv.set("organizations", raw_orgs)
        return found

    def set_incoming_secret(self, org_id: str, secret: str) -> None:
        self.kv.set_secret(f"secret:{org_id}:incomingSecret", secret)

    def find_by_incoming_secret(self, secret: Optional[str]) -> Optional[Organization]:
        """Organization whose full incoming secret equals ``secret``."""
        if not secret:
            return None
        for org in self.list_organizations():
            stored = self.kv.get_secret(f"secret:{org.id}:incomingSecret")
            if stored and secrets.compare_digest(stored.encode("utf-8"), secret.encode("utf-8")):
                return org
        return None

    def load_config(self, org: Organization) -> OrgSyncConfig:
        raw_options = self.kv.get(_table_key("syncOptions", org.id)) or {}
        try:
            options = SyncOptions.model_validate(raw_options)
        except Exception as e:
            logger.warning(f"Invalid sync options for {org.name}, using defaults: {e}")
            options = SyncOptions()
        return OrgSyncConfig(
            org=org,
            user_mappings=parse_mapping_table(self.kv.get(_table_key("userMappings", org.id)), "user mapping"),
            field_mappings=parse_mapping_table(self.kv.get(_table_key("fieldMappings", org.id)), "field mapping"),
            status_mappings=parse_mapping_table(self.kv.get(_table_key("statusMappings", org.id)), "status mapping"),
            issue_type_mappings=parse_mapping_table(
                self.kv.get(_table_key("issueTypeMappings", org.id)), "issue type mapping"
            ),
            options=options,
            default_existence_policy=self.default_existence_policy,
        )

    def save_table(self, org_id: str, name: str, table: MappingTable) -> None:
        self.kv.set(_table_key(name, org_id), table_to_raw(table))

    def save_options(self, org_id: str, options: SyncOptions) -> None:
        self.kv.set(_table_key("syncOptions", org_id), options.model_dump(by_alias=True, mode="json"))

    def get_scheduled_config(self) -> ScheduledSyncConfig:
        raw: Dict[str, Any] = self.kv.get("scheduledSyncConfig") or {}
        return ScheduledSyncConfig.model_validate(raw)

    def save_scheduled_config(self, config: ScheduledSyncConfig) -> None:
        self.kv.set("scheduledSyncConfig", config.model_dump(by_alias=True))
