"""API usage, webhook sync statistics and the audit log"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from syncbridge.services.kvs import KeyValueStore

logger = logging.getLogger(__name__)

ESTIMATED_HOURLY_LIMIT = 10000
HISTORY_HOURS = 24


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _empty_api_usage() -> Dict[str, Any]:
    return {
        "totalCalls": 0,
        "successfulCalls": 0,
        "failedCalls": 0,
        "rateLimitHits": 0,
        "lastRateLimitHit": None,
        "callsThisHour": 0,
        "rateLimitHitsThisHour": 0,
        "hourStarted": None,
        "byEndpoint": {},
        "byOrg": {},
        "history": [],
    }


def _empty_webhook_stats() -> Dict[str, Any]:
    return {
        "totalSyncs": 0,
        "issuesCreated": 0,
        "issuesUpdated": 0,
        "commentsSynced": 0,
        "issuesSkipped": 0,
        "errors": [],
        "lastSync": None,
        "byOrg": {},
    }


def categorize_endpoint(endpoint: Optional[str]) -> str:
    """Bucket a REST path into a coarse category for usage stats."""
    if not endpoint:
        return "other"
    if "/issue/" in endpoint and "/comment" in endpoint:
        return "comments"
    if "/attachment" in endpoint:
        return "attachments"
    if "/issueLink" in endpoint:
        return "links"
    if "/transitions" in endpoint:
        return "transitions"
    if "/issue" in endpoint:
        return "issues"
    if "/search" in endpoint:
        return "search"
    if "/project" in endpoint:
        return "projects"
    if "/myself" in endpoint or "/user" in endpoint or "/mypermissions" in endpoint:
        return "users"
    if "/field" in endpoint:
        return "fields"
    if "/status" in endpoint:
        return "statuses"
    return "other"


class StatsRecorder:
    """Rolling statistics kept in the KV store.

    Recording is best-effort: a failure to persist stats is logged and never
    propagates into the sync that triggered it.
    """

    def __init__(self, kv: KeyValueStore, *, max_audit_entries: int = 50, max_error_entries: int = 50):
        self.kv = kv
        self.max_audit_entries = max_audit_entries
        self.max_error_entries = max_error_entries
        self._lock = threading.Lock()

    # --- API usage ------------------------------------------------------

    def track_api_call(
        self,
        endpoint: Optional[str],
        success: bool,
        rate_limited: bool = False,
        org_id: Optional[str] = None,
    ) -> None:
        try:
            with self._lock:
                stats = self.kv.get("apiUsageStats") or _empty_api_usage()
                now = _now()
                current_hour = now.strftime("%Y-%m-%dT%H")

                if stats.get("hourStarted") != current_hour:
                    if stats.get("hourStarted") and stats.get("callsThisHour", 0) > 0:
                        stats["history"].insert(
                            0,
                            {
                                "hour": stats["hourStarted"],
                                "calls": stats["callsThisHour"],
                                "rateLimits": stats.get("rateLimitHitsThisHour", 0),
                            },
                        )
                        stats["history"] = stats["history"][:HISTORY_HOURS]
                    stats["hourStarted"] = current_hour
                    stats["callsThisHour"] = 0
                    stats["rateLimitHitsThisHour"] = 0

                stats["totalCalls"] += 1
                stats["callsThisHour"] += 1
                if success:
                    stats["successfulCalls"] += 1
                else:
                    stats["failedCalls"] += 1

                if rate_limited:
                    stats["rateLimitHits"] += 1
                    stats["rateLimitHitsThisHour"] = stats.get("rateLimitHitsThisHour", 0) + 1
                    stats["lastRateLimitHit"] = now.isoformat()

                category = categorize_endpoint(endpoint)
                bucket = stats["byEndpoint"].setdefault(category, {"calls": 0, "rateLimits": 0})
                bucket["calls"] += 1
                if rate_limited:
                    bucket["rateLimits"] += 1

                if org_id:
                    org_bucket = stats["byOrg"].setdefault(org_id, {"calls": 0, "rateLimits": 0})
                    org_bucket["calls"] += 1
                    if rate_limited:
                        org_bucket["rateLimits"] += 1

                stats["lastUpdated"] = now.isoformat()
                self.kv.set("apiUsageStats", stats)
        except Exception as e:
            logger.error(f"Error tracking API usage: {e}")

    def get_api_usage_stats(self) -> Dict[str, Any]:
        stats = self.kv.get("apiUsageStats") or _empty_api_usage()
        total = stats.get("totalCalls", 0)
        stats["successRate"] = round(stats.get("successfulCalls", 0) / total * 100) if total else 100
        calls_this_hour = stats.get("callsThisHour", 0)
        stats["estimatedHourlyLimit"] = ESTIMATED_HOURLY_LIMIT
        stats["estimatedRemainingQuota"] = max(0, ESTIMATED_HOURLY_LIMIT - calls_this_hour)
        stats["quotaUsagePercent"] = round(calls_this_hour / ESTIMATED_HOURLY_LIMIT * 100)
        return stats

    def reset_api_usage_stats(self) -> None:
        with self._lock:
            self.kv.set("apiUsageStats", _empty_api_usage())

    # --- webhook sync stats ---------------------------------------------

    def track_webhook_sync(
        self,
        sync_type: str,
        success: bool,
        error: Optional[str] = None,
        org_id: Optional[str] = None,
        issue_key: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            with self._lock:
                stats = self.kv.get("webhookSyncStats") or _empty_webhook_stats()
                now_iso = _now().isoformat()
                stats["totalSyncs"] += 1
                stats["lastSync"] = now_iso

                counter = {
                    "create": "issuesCreated",
                    "update": "issuesUpdated",
                    "recreate": "issuesCreated",
                    "comment": "commentsSynced",
                }.get(sync_type)

                if org_id:
                    org_stats = stats["byOrg"].setdefault(
                        org_id,
                        {
                            "totalSyncs": 0,
                            "issuesCreated": 0,
                            "issuesUpdated": 0,
                            "commentsSynced": 0,
                            "issuesSkipped": 0,
                            "lastSync": None,
                        },
                    )
                    org_stats["totalSyncs"] += 1
                    org_stats["lastSync"] = now_iso
                    if success and counter:
                        org_stats[counter] += 1
                    elif not success:
                        org_stats["issuesSkipped"] += 1

                if success:
                    if counter:
                        stats[counter] += 1
                else:
                    stats["issuesSkipped"] += 1
                    if error:
                        entry = {
                            "timestamp": now_iso,
                            "error": str(error),
                            "orgId": org_id or "unknown",
                            "issueKey": issue_key or "unknown",
                            "operation": sync_type or "unknown",
                        }
                        if details:
                            entry["details"] = details
                        stats["errors"].insert(0, entry)
                        stats["errors"] = stats["errors"][: self.max_error_entries]

                self.kv.set("webhookSyncStats", stats)
        except Exception as e:
            logger.error(f"Error tracking webhook stats: {e}")

    def get_webhook_sync_stats(self) -> Dict[str, Any]:
        return self.kv.get("webhookSyncStats") or _empty_webhook_stats()

    def clear_webhook_errors(self) -> None:
        with self._lock:
            stats = self.kv.get("webhookSyncStats") or _empty_webhook_stats()
            stats["errors"] = []
            self.kv.set("webhookSyncStats", stats)

    # --- audit log ------------------------------------------------------

    def log_audit(self, entry: Dict[str, Any]) -> None:
        try:
            with self._lock:
                audit_log = self.kv.get("auditLog") or []
                audit_log.insert(0, {**entry, "timestamp": _now().isoformat()})
                self.kv.set("auditLog", audit_log[: self.max_audit_entries])
        except Exception as e:
            logger.error(f"Error logging audit entry: {e}")

    def get_audit_log(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        audit_log = self.kv.get("auditLog") or []
        return audit_log[:limit] if limit else audit_log

    def clear_audit_log(self) -> None:
        with self._lock:
            self.kv.set("auditLog", [])

    # --- sweep stats ----------------------------------------------------

    def save_scheduled_stats(self, stats: Dict[str, Any]) -> None:
        try:
            self.kv.set("scheduledSyncStats", stats)
        except Exception as e:
            logger.error(f"Error saving scheduled sync stats: {e}")

    def get_scheduled_stats(self) -> Optional[Dict[str, Any]]:
        return self.kv.get("scheduledSyncStats")
