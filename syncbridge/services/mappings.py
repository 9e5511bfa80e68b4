"""Bidirectional local <-> remote key mappings, namespaced per organization"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from syncbridge.services.kvs import KeyValueStore

logger = logging.getLogger(__name__)

LINK_SYNCED = "synced"


def _ns(org_id: Optional[str], name: str) -> str:
    # org_id None is the legacy (pre multi-org) namespace
    return f"{org_id}:{name}" if org_id else name


class MappingStore:
    """Issue, attachment and link mappings.

    Issue mappings are written as two inverse entries plus a per-org index used
    by sweeps. A mapping is never silently overwritten: ``store`` refuses to
    rebind a key that is already mapped to something else.
    """

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    # --- issue mappings -------------------------------------------------

    @staticmethod
    def _local_to_remote_key(local_key: str, org_id: Optional[str]) -> str:
        return _ns(org_id, f"local-to-remote:{local_key}")

    @staticmethod
    def _remote_to_local_key(remote_key: str, org_id: Optional[str]) -> str:
        return _ns(org_id, f"remote-to-local:{remote_key}")

    @staticmethod
    def _index_key(org_id: Optional[str]) -> str:
        return f"mappings-index:{org_id}" if org_id else "mappings-index"

    def get_remote(self, local_key: str, org_id: Optional[str] = None) -> Optional[str]:
        return self.kv.get(self._local_to_remote_key(local_key, org_id))

    def get_local(self, remote_key: str, org_id: Optional[str] = None) -> Optional[str]:
        return self.kv.get(self._remote_to_local_key(remote_key, org_id))

    def store(self, local_key: str, remote_key: str, org_id: Optional[str] = None) -> bool:
        """Persist local_key <-> remote_key. Returns False if either side is bound elsewhere."""
        current_remote = self.get_remote(local_key, org_id)
        current_local = self.get_local(remote_key, org_id)
        if current_remote not in (None, remote_key) or current_local not in (None, local_key):
            logger.warning(
                f"Refusing to overwrite mapping for org {org_id or 'legacy'}: "
                f"{local_key} -> {current_remote}, {remote_key} <- {current_local}"
            )
            return False

        self.kv.set(self._local_to_remote_key(local_key, org_id), remote_key)
        self.kv.set(self._remote_to_local_key(remote_key, org_id), local_key)
        self._add_to_index(local_key, remote_key, org_id)
        return True

    def remove(
        self,
        local_key: Optional[str] = None,
        remote_key: Optional[str] = None,
        org_id: Optional[str] = None,
    ) -> None:
        """Remove a mapping; either key alone is enough."""
        if local_key and not remote_key:
            remote_key = self.get_remote(local_key, org_id)
        elif remote_key and not local_key:
            local_key = self.get_local(remote_key, org_id)

        if local_key:
            self.kv.delete(self._local_to_remote_key(local_key, org_id))
            index_key = self._index_key(org_id)
            index = self.kv.get(index_key) or []
            updated = [m for m in index if m.get("localKey") != local_key]
            if len(updated) != len(index):
                self.kv.set(index_key, updated)
        if remote_key:
            self.kv.delete(self._remote_to_local_key(remote_key, org_id))

    def _add_to_index(self, local_key: str, remote_key: str, org_id: Optional[str]) -> bool:
        index_key = self._index_key(org_id)
        index = self.kv.get(index_key) or []
        if any(m.get("localKey") == local_key for m in index):
            return False
        index.append(
            {
                "localKey": local_key,
                "remoteKey": remote_key,
                "createdAt": datetime.now(timezone.utc).isoformat(),
            }
        )
        self.kv.set(index_key, index)
        return True

    def all_mappings(self, org_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.kv.get(self._index_key(org_id)) or []

    def get_all_remote_keys(self, local_key: str, organizations: List[Any]) -> List[Dict[str, str]]:
        """Remote keys for ``local_key`` across all given organizations."""
        remote_keys = []
        for org in organizations:
            remote_key = self.get_remote(local_key, org.namespace)
            if remote_key:
                remote_keys.append({"orgId": org.id, "orgName": org.name, "remoteKey": remote_key})
        return remote_keys

    # --- attachment mappings --------------------------------------------

    def get_attachment(self, local_attachment_id: str, org_id: Optional[str] = None) -> Any:
        return self.kv.get(_ns(org_id, f"attachment-mapping:{local_attachment_id}"))

    def store_attachment(
        self, local_attachment_id: str, remote_attachment_id: str, org_id: Optional[str] = None
    ) -> None:
        self.kv.set(
            _ns(org_id, f"attachment-mapping:{local_attachment_id}"), str(remote_attachment_id)
        )

    def remove_attachment(self, local_attachment_id: str, org_id: Optional[str] = None) -> None:
        self.kv.delete(_ns(org_id, f"attachment-mapping:{local_attachment_id}"))

    # --- link mappings --------------------------------------------------

    def get_link(self, local_link_id: str, org_id: Optional[str] = None) -> Any:
        return self.kv.get(_ns(org_id, f"link-mapping:{local_link_id}"))

    def store_link(
        self, local_link_id: str, value: str = LINK_SYNCED, org_id: Optional[str] = None
    ) -> None:
        self.kv.set(_ns(org_id, f"link-mapping:{local_link_id}"), value)

    def remove_link(self, local_link_id: str, org_id: Optional[str] = None) -> None:
        self.kv.delete(_ns(org_id, f"link-mapping:{local_link_id}"))
