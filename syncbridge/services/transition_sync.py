"""Replay a local workflow status on the remote issue"""

import logging
from typing import Any, Dict, List, Optional

from syncbridge.services.field_mapping import MappingTable, remote_ids_for_local_name, reverse_mapping
from syncbridge.services.jira_client import JiraClient
from syncbridge.services.sync_result import SyncResult

logger = logging.getLogger(__name__)

DEFAULT_STATUS = "To Do"


def find_transition(
    transitions: List[Dict[str, Any]], status: Dict[str, Any], status_table: MappingTable
) -> Optional[Dict[str, Any]]:
    """Pick the transition that lands on ``status``.

    Tried in order: destination name (case-insensitive), the status mapping's
    explicit remote id, then a reverse match on the mapping's local name.
    """
    status_name = (status.get("name") or "").casefold()
    for transition in transitions:
        to_name = ((transition.get("to") or {}).get("name") or "").casefold()
        if status_name and to_name == status_name:
            return transition

    reversed_map = reverse_mapping(status_table)
    mapped_id = reversed_map.get(str(status.get("id") or "")) or reversed_map.get(status.get("name") or "")
    if mapped_id:
        for transition in transitions:
            if str((transition.get("to") or {}).get("id")) == str(mapped_id):
                return transition

    for remote_id in remote_ids_for_local_name(status_table, status.get("name")):
        for transition in transitions:
            if str((transition.get("to") or {}).get("id")) == remote_id:
                return transition
    return None


def transition_remote_issue(
    remote_client: JiraClient,
    remote_key: str,
    status: Dict[str, Any],
    status_table: MappingTable,
    result: Optional[SyncResult] = None,
) -> bool:
    """Move ``remote_key`` to ``status``; failures are recorded, never raised."""
    status_name = status.get("name") or str(status.get("id"))
    logger.info(f"Attempting to transition {remote_key} to status: {status_name}")
    try:
        transitions = remote_client.get_transitions(remote_key)
        transition = find_transition(transitions, status, status_table)
        if transition is None:
            available = ", ".join((t.get("to") or {}).get("name", "?") for t in transitions)
            message = f"No transition found to status: {status_name}. Available: {available}"
            if result:
                result.add_transition_failure(status_name, message)
            else:
                logger.warning(message)
            return False

        remote_client.transition_issue(remote_key, transition["id"])
        logger.info(f"Transitioned {remote_key} to {(transition.get('to') or {}).get('name')}")
        if result:
            result.add_transition_success(status_name)
        return True
    except Exception as e:
        if result:
            result.add_transition_failure(status_name, str(e))
        else:
            logger.error(f"Error transitioning {remote_key}: {e}")
        return False
