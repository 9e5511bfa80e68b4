"""Per-operation sync report"""

import enum
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class IssueSyncState(str, enum.Enum):
    """Per (local key, organization) reconciliation state"""

    UNMAPPED = "unmapped"
    CREATING = "creating"
    MAPPED = "mapped"
    UPDATING = "updating"
    STALE_REMOTE_DETECTED = "stale_remote_detected"


class SyncResult:
    """Collects what happened during one (record, organization) pass.

    Sub-resource failures land here as warnings; a failed create/update is an
    error and flips ``success``.
    """

    def __init__(self, operation: str, local_key: Optional[str] = None, org_id: Optional[str] = None):
        self.operation = operation
        self.local_key = local_key
        self.org_id = org_id
        self.remote_key: Optional[str] = None
        self.success = True
        self.skipped_reason: Optional[str] = None
        self.warnings: List[str] = []
        self.errors: List[str] = []
        self.states: List[str] = []
        self.fields_updated: List[str] = []
        self.details: Dict[str, Dict[str, Any]] = {
            "attachments": {"success": 0, "failed": 0, "skipped": 0, "errors": []},
            "links": {"success": 0, "failed": 0, "skipped": 0, "pending": 0, "errors": []},
            "transitions": {"success": 0, "failed": 0, "errors": []},
            "comments": {"success": 0, "failed": 0, "skipped": 0, "errors": []},
        }

    def enter(self, state: IssueSyncState) -> None:
        self.states.append(state.value)

    def skip(self, reason: str) -> "SyncResult":
        self.skipped_reason = reason
        logger.info(f"Skipping {self.local_key} for org {self.org_id or 'legacy'}: {reason}")
        return self

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning(message)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.success = False
        logger.error(message)

    def _sub_success(self, category: str) -> None:
        self.details[category]["success"] += 1

    def _sub_failure(self, category: str, label: str, item: str, error: str) -> None:
        self.details[category]["failed"] += 1
        self.details[category]["errors"].append(f"{item}: {error}")
        self.add_warning(f"{label} failed: {item} - {error}")

    def _sub_skipped(self, category: str, item: str, reason: str) -> None:
        self.details[category]["skipped"] += 1
        logger.info(f"Skipped {category[:-1]} {item}: {reason}")

    def add_attachment_success(self, filename: str) -> None:
        self._sub_success("attachments")

    def add_attachment_failure(self, filename: str, error: str) -> None:
        self._sub_failure("attachments", "Attachment", filename, error)

    def add_attachment_skipped(self, filename: str, reason: str) -> None:
        self._sub_skipped("attachments", filename, reason)

    def add_link_success(self, linked_key: str) -> None:
        self._sub_success("links")

    def add_link_failure(self, linked_key: str, error: str) -> None:
        self._sub_failure("links", "Link", linked_key, error)

    def add_link_skipped(self, linked_key: str, reason: str) -> None:
        self._sub_skipped("links", linked_key, reason)

    def add_link_pending(self, linked_key: str) -> None:
        self.details["links"]["pending"] += 1

    def add_transition_success(self, status: str) -> None:
        self._sub_success("transitions")

    def add_transition_failure(self, status: str, error: str) -> None:
        self._sub_failure("transitions", "Transition", status, error)

    def add_comment_success(self) -> None:
        self._sub_success("comments")

    def add_comment_failure(self, comment_id: str, error: str) -> None:
        self._sub_failure("comments", "Comment", comment_id, error)

    def add_comment_skipped(self, comment_id: str, reason: str) -> None:
        self._sub_skipped("comments", comment_id, reason)

    @property
    def status(self) -> str:
        if self.skipped_reason:
            return "skipped"
        if self.errors:
            return "failure"
        if self.warnings:
            return "partial"
        return "success"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "localKey": self.local_key,
            "remoteKey": self.remote_key,
            "orgId": self.org_id,
            "status": self.status,
            "success": self.success,
            "skippedReason": self.skipped_reason,
            "states": list(self.states),
            "fieldsUpdated": list(self.fields_updated),
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "details": self.details,
        }

    def log_summary(self) -> str:
        status = self.status
        target = f" -> {self.remote_key}" if self.remote_key else ""
        parts = [f"Sync summary {self.operation} {self.local_key}{target} [{status.upper()}]"]
        for category, counts in self.details.items():
            total = sum(v for k, v in counts.items() if k != "errors")
            if total:
                parts.append(
                    f"{category}: {counts['success']}/{total} synced, {counts['failed']} failed"
                )
        if self.warnings:
            parts.append(f"warnings: {len(self.warnings)}")
        if self.errors:
            parts.append(f"errors: {'; '.join(self.errors)}")
        logger.info(" | ".join(parts))
        return status
