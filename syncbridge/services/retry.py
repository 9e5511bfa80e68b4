"""Retry with exponential backoff and rate-limit awareness"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests

from syncbridge.services.stats import StatsRecorder

logger = logging.getLogger(__name__)

TRANSIENT = "transient"
RATE_LIMITED = "rate_limited"
CLIENT_REJECTED = "client_rejected"
UNKNOWN = "unknown"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 1.0
    multiplier: float = 2.0
    max_delay_s: float = 30.0
    rate_limit_delay_s: float = 60.0
    # 429s don't spend max_attempts, so they get their own ceiling.
    max_rate_limit_retries: int = 5

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_s=settings.retry_base_delay_seconds,
            multiplier=settings.retry_backoff_multiplier,
            max_delay_s=settings.retry_max_delay_seconds,
            rate_limit_delay_s=settings.rate_limit_retry_delay_seconds,
            max_rate_limit_retries=settings.max_rate_limit_retries,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after the given zero-based failed attempt."""
        return min(self.base_delay_s * (self.multiplier ** attempt), self.max_delay_s)


def classify_error(exc: Exception) -> str:
    """Map an exception onto the retry taxonomy."""
    status = getattr(exc, "status_code", None)
    if status == 429:
        return RATE_LIMITED
    if status is not None:
        if status >= 500:
            return TRANSIENT
        if 400 <= status < 500:
            return CLIENT_REJECTED
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return TRANSIENT
    # If we can't classify, don't retry to avoid hiding real issues.
    return UNKNOWN


def with_retries(
    fn: Callable[[], Any],
    *,
    operation: str,
    policy: RetryPolicy,
    endpoint: Optional[str] = None,
    org_id: Optional[str] = None,
    stats: Optional[StatsRecorder] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Run ``fn`` retrying transient failures; every outcome is tracked.

    5xx and network errors back off exponentially within ``max_attempts``.
    429 waits a fixed cooldown without consuming an attempt. Other 4xx raise
    immediately.
    """
    attempt = 0
    rate_limit_waits = 0
    tracked_endpoint = endpoint or operation

    while True:
        try:
            result = fn()
        except Exception as e:
            kind = classify_error(e)
            if stats is not None:
                stats.track_api_call(tracked_endpoint, False, kind == RATE_LIMITED, org_id)

            if kind == RATE_LIMITED:
                if rate_limit_waits >= policy.max_rate_limit_retries:
                    logger.error(f"{operation} still rate limited after {rate_limit_waits} cooldowns")
                    raise
                rate_limit_waits += 1
                logger.warning(
                    f"Rate limit hit during {operation}, waiting {policy.rate_limit_delay_s}s "
                    f"({rate_limit_waits}/{policy.max_rate_limit_retries})"
                )
                sleep(policy.rate_limit_delay_s)
                continue

            if kind != TRANSIENT:
                logger.error(f"Non-retryable error during {operation}: {e}")
                raise

            if attempt + 1 >= policy.max_attempts:
                logger.error(f"{operation} failed after {policy.max_attempts} attempts: {e}")
                raise

            delay = policy.backoff_delay(attempt)
            logger.warning(
                f"{operation} failed (attempt {attempt + 1}/{policy.max_attempts}), "
                f"retrying in {delay}s: {e}"
            )
            sleep(delay)
            attempt += 1
            continue

        if stats is not None:
            stats.track_api_call(tracked_endpoint, True, False, org_id)
        return result
