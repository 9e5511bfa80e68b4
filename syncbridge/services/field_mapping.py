"""User, field, status and issue type mapping tables"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from syncbridge.services.adf import extract_sprint_ids

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LegacyMapping:
    """Table value stored as a bare local id."""

    local_id: str

    @property
    def local_name(self) -> Optional[str]:
        return None

    def to_raw(self) -> Any:
        return self.local_id


@dataclass(frozen=True)
class StructuredMapping:
    """Table value stored as ``{localId, localName}``."""

    local_id: str
    local_name: Optional[str] = None

    def to_raw(self) -> Any:
        raw = {"localId": self.local_id}
        if self.local_name is not None:
            raw["localName"] = self.local_name
        return raw


MappingValue = Union[LegacyMapping, StructuredMapping]
MappingTable = Dict[str, MappingValue]


def parse_mapping_value(raw: Any) -> Optional[MappingValue]:
    if isinstance(raw, (str, int)) and not isinstance(raw, bool):
        value = str(raw).strip()
        return LegacyMapping(value) if value else None
    if isinstance(raw, dict):
        local_id = raw.get("localId")
        if local_id in (None, ""):
            return None
        local_name = raw.get("localName")
        return StructuredMapping(str(local_id), str(local_name) if local_name is not None else None)
    return None


def parse_mapping_table(raw: Any, table_name: str = "mapping") -> MappingTable:
    """Resolve a stored ``{remoteId: value}`` table into tagged values.

    Entries that are neither a bare id nor a structured record are dropped.
    """
    table: MappingTable = {}
    if not isinstance(raw, dict):
        return table
    for remote_id, value in raw.items():
        parsed = parse_mapping_value(value)
        if parsed is None:
            logger.warning(f"Ignoring malformed {table_name} entry for {remote_id}: {value!r}")
            continue
        table[str(remote_id)] = parsed
    return table


def table_to_raw(table: MappingTable) -> Dict[str, Any]:
    return {remote_id: value.to_raw() for remote_id, value in table.items()}


def map_user_to_remote(local_account_id: Optional[str], table: MappingTable) -> Optional[str]:
    if not local_account_id:
        return None
    for remote_id, value in table.items():
        if value.local_id == local_account_id:
            return remote_id
    return None


def map_user_to_local(remote_account_id: Optional[str], table: MappingTable) -> Optional[str]:
    if not remote_account_id:
        return None
    value = table.get(remote_account_id)
    return value.local_id if value else None


def reverse_mapping(table: MappingTable) -> Dict[str, str]:
    """``{local_id: remote_id}``"""
    return {value.local_id: remote_id for remote_id, value in table.items()}


def remote_ids_for_local_name(table: MappingTable, name: Optional[str]) -> List[str]:
    """Remote ids whose structured local name matches ``name`` (case-insensitive)."""
    if not name:
        return []
    wanted = name.casefold()
    return [
        remote_id
        for remote_id, value in table.items()
        if value.local_name and value.local_name.casefold() == wanted
    ]


# Fields that carry instance-private state and must never be copied across.
EXCLUDED_FIELDS = frozenset(
    {
        # ranking / ordering
        "rank",
        "lexorank",
        # workflow metadata
        "status",
        "statuscategorychangedate",
        "resolution",
        "resolutiondate",
        "workflow",
        # audit
        "created",
        "updated",
        "creator",
        "lastViewed",
        "watches",
        "votes",
        "worklog",
        "workratio",
        "progress",
        "aggregateprogress",
        "timespent",
        "aggregatetimespent",
        "aggregatetimeestimate",
        "aggregatetimeoriginalestimate",
        # sub-resources synced by their own reconcilers
        "attachment",
        "issuelinks",
        "comment",
        "subtasks",
    }
)

_RANK_VALUE_RE = re.compile(r"^\d\|[0-9a-z]+:[0-9a-z]*$", re.IGNORECASE)


def is_private_field(field_id: str, value: Any = None) -> bool:
    if field_id in EXCLUDED_FIELDS or field_id.lower() in EXCLUDED_FIELDS:
        return True
    # Rank custom fields have instance-specific ids; recognize them by value shape.
    return isinstance(value, str) and bool(_RANK_VALUE_RE.match(value))


def map_custom_fields(fields: Dict[str, Any], field_table: MappingTable, *, sync_sprints: bool) -> Dict[str, Any]:
    """Remote field payload for every mapped local field that has a value."""
    payload: Dict[str, Any] = {}
    for local_field, remote_field in reverse_mapping(field_table).items():
        value = fields.get(local_field)
        if value is None:
            continue
        if is_private_field(local_field, value) or is_private_field(remote_field):
            logger.info(f"Skipping instance-private field {local_field} -> {remote_field}")
            continue

        sprint_ids = extract_sprint_ids(value)
        if sprint_ids is not None:
            if not sync_sprints:
                logger.info(f"Skipping sprint field {local_field} - sprint sync disabled")
                continue
            value = sprint_ids
        elif isinstance(value, list) and value and isinstance(value[0], dict):
            logger.warning(f"Skipping {local_field} - object list without ids can't be mapped")
            continue

        if isinstance(value, list) and not value:
            continue
        payload[remote_field] = value
    return payload


def resolve_issue_type(issue_type: Optional[Dict[str, Any]], table: MappingTable) -> Dict[str, Any]:
    """Remote issue type reference: mapped id when configured, else the same name."""
    issue_type = issue_type or {}
    local_id = str(issue_type.get("id") or "")
    name = issue_type.get("name") or "Task"
    if local_id:
        remote_id = reverse_mapping(table).get(local_id)
        if remote_id:
            return {"id": remote_id}
    by_name = remote_ids_for_local_name(table, name)
    if by_name:
        return {"id": by_name[0]}
    return {"name": name}
