"""Attachment reconciliation (dedup + lease-guarded upload)"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from syncbridge.services.flags import Lease
from syncbridge.services.jira_client import JiraClient
from syncbridge.services.kvs import KeyValueStore
from syncbridge.services.mappings import MappingStore
from syncbridge.services.sync_result import SyncResult

logger = logging.getLogger(__name__)


def _valid_remote_id(value: Any) -> Optional[str]:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    value = str(value).strip()
    return value or None


class AttachmentReconciler:
    """Copy local attachments onto the mapped remote issue exactly once."""

    def __init__(
        self,
        kv: KeyValueStore,
        mappings: MappingStore,
        local_client: JiraClient,
        *,
        max_size_bytes: int,
        lease_ttl_seconds: float,
        lease_poll_attempts: int,
        lease_poll_interval_seconds: float,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.kv = kv
        self.mappings = mappings
        self.local_client = local_client
        self.max_size_bytes = max_size_bytes
        self.lease_ttl_seconds = lease_ttl_seconds
        self.lease_poll_attempts = lease_poll_attempts
        self.lease_poll_interval_seconds = lease_poll_interval_seconds
        self._sleep = sleep

    def sync_attachments(
        self,
        local_key: str,
        remote_key: str,
        issue: Dict[str, Any],
        remote_client: JiraClient,
        org_id: Optional[str],
        result: Optional[SyncResult] = None,
    ) -> Dict[str, str]:
        """Reconcile every attachment; returns {local attachment id: remote id}."""
        result = result or SyncResult("attachments", local_key, org_id)
        attachments = (issue.get("fields") or {}).get("attachment") or []
        attachment_mapping: Dict[str, str] = {}
        if not attachments:
            return attachment_mapping

        logger.info(f"Found {len(attachments)} attachment(s) on {local_key}")
        try:
            remote_attachments = remote_client.get_attachments(remote_key)
        except Exception as e:
            # Without the remote listing neither dedup nor verification is possible.
            result.add_warning(f"Could not list attachments on {remote_key}, skipping upload: {e}")
            for attachment in attachments:
                known = _valid_remote_id(self.mappings.get_attachment(str(attachment.get("id")), org_id))
                if known:
                    attachment_mapping[str(attachment.get("id"))] = known
            return attachment_mapping

        for attachment in attachments:
            filename = attachment.get("filename") or str(attachment.get("id"))
            try:
                remote_id = self._sync_one(
                    attachment, remote_key, remote_attachments, remote_client, org_id, result
                )
                if remote_id:
                    attachment_mapping[str(attachment.get("id"))] = remote_id
            except Exception as e:
                result.add_attachment_failure(filename, str(e))

        return attachment_mapping

    def _verified_mapping(
        self, local_id: str, org_id: Optional[str], remote_attachments: List[Dict[str, Any]]
    ) -> Optional[str]:
        """Existing mapping if it still points at a remote attachment; bad entries are dropped."""
        existing = self.mappings.get_attachment(local_id, org_id)
        if existing is None:
            return None
        remote_id = _valid_remote_id(existing)
        if remote_id is None:
            logger.warning(f"Discarding malformed attachment mapping {local_id}: {existing!r}")
            self.mappings.remove_attachment(local_id, org_id)
            return None
        if remote_id not in {str(a.get("id")) for a in remote_attachments}:
            logger.warning(f"Attachment mapping {local_id} -> {remote_id} is stale, re-uploading")
            self.mappings.remove_attachment(local_id, org_id)
            return None
        return remote_id

    @staticmethod
    def _find_duplicate(
        attachment: Dict[str, Any], remote_attachments: List[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        # Ids differ across instances, so filename + size is the identity.
        for remote in remote_attachments:
            if remote.get("filename") == attachment.get("filename") and remote.get("size") == attachment.get("size"):
                return remote
        return None

    def _sync_one(
        self,
        attachment: Dict[str, Any],
        remote_key: str,
        remote_attachments: List[Dict[str, Any]],
        remote_client: JiraClient,
        org_id: Optional[str],
        result: SyncResult,
    ) -> Optional[str]:
        local_id = str(attachment.get("id"))
        filename = attachment.get("filename") or local_id
        size = int(attachment.get("size") or 0)

        verified = self._verified_mapping(local_id, org_id, remote_attachments)
        if verified:
            result.add_attachment_skipped(filename, "already synced")
            return verified

        duplicate = self._find_duplicate(attachment, remote_attachments)
        if duplicate is not None:
            self.mappings.store_attachment(local_id, str(duplicate.get("id")), org_id)
            result.add_attachment_skipped(filename, "already exists on remote")
            return str(duplicate.get("id"))

        if size > self.max_size_bytes:
            result.add_attachment_skipped(
                filename, f"too large ({size / 1024 / 1024:.2f}MB > {self.max_size_bytes / 1024 / 1024:.0f}MB)"
            )
            return None

        lease = Lease(self.kv, f"attachment-lock:{org_id or 'legacy'}:{local_id}", self.lease_ttl_seconds)
        if not lease.acquire():
            adopted = self._wait_for_holder(local_id, org_id, lease)
            if adopted:
                result.add_attachment_skipped(filename, "uploaded by a concurrent pass")
                return adopted
            result.add_attachment_skipped(filename, "upload in progress elsewhere")
            return None

        try:
            # Double-check now that we hold the lease.
            existing = _valid_remote_id(self.mappings.get_attachment(local_id, org_id))
            if existing:
                result.add_attachment_skipped(filename, "already synced")
                return existing

            duplicate = self._find_duplicate(attachment, remote_client.get_attachments(remote_key))
            if duplicate is not None:
                self.mappings.store_attachment(local_id, str(duplicate.get("id")), org_id)
                result.add_attachment_skipped(filename, "already exists on remote")
                return str(duplicate.get("id"))

            logger.info(f"Downloading {filename} ({size / 1024:.2f}KB)")
            content = self.local_client.download_attachment(attachment)
            logger.info(f"Uploading {filename} to {remote_key}")
            created = remote_client.upload_attachment(remote_key, filename, content)
            remote_id = _valid_remote_id((created or {}).get("id"))
            if not remote_id:
                result.add_attachment_failure(filename, "upload returned no attachment id")
                return None

            self.mappings.store_attachment(local_id, remote_id, org_id)
            result.add_attachment_success(filename)
            logger.info(f"Synced attachment {filename} (remote id {remote_id})")
            return remote_id
        finally:
            lease.release()

    def _wait_for_holder(self, local_id: str, org_id: Optional[str], lease: Lease) -> Optional[str]:
        """Poll until the lease holder publishes its mapping or gives up the lease."""
        for _ in range(self.lease_poll_attempts):
            self._sleep(self.lease_poll_interval_seconds)
            held = lease.is_held_elsewhere()
            existing = _valid_remote_id(self.mappings.get_attachment(local_id, org_id))
            if existing:
                return existing
            if not held:
                return None
        return None
