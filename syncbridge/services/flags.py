"""Loop guard flags, leases and small expiring values"""

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterator, Optional, TypeVar

from syncbridge.services.kvs import KeyValueStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncFlags:
    """Short-lived ``syncing:{key}`` markers.

    While a key is flagged no reconciliation path may process it. The marker
    carries a TTL so a crashed run can't block a record forever.
    """

    def __init__(self, kv: KeyValueStore, ttl_seconds: float):
        self.kv = kv
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(issue_key: str) -> str:
        return f"syncing:{issue_key}"

    def mark_syncing(self, issue_key: str) -> None:
        self.kv.set(self._key(issue_key), "true", ttl_seconds=self.ttl_seconds)

    def is_syncing(self, issue_key: str) -> bool:
        return self.kv.get(self._key(issue_key)) == "true"

    def clear(self, issue_key: str) -> None:
        self.kv.delete(self._key(issue_key))

    @contextmanager
    def syncing(self, issue_key: str) -> Iterator[None]:
        """Flag ``issue_key`` for the duration of the block; always cleared on exit."""
        self.mark_syncing(issue_key)
        try:
            yield
        finally:
            self.clear(issue_key)


class RecentCreations:
    """``created-timestamp:{key}`` markers.

    The tracker emits an update event right after a create; updates that land
    inside the window are treated as part of the create.
    """

    def __init__(self, kv: KeyValueStore, window_seconds: float, clock: Callable[[], float] = time.time):
        self.kv = kv
        self.window_seconds = window_seconds
        self._clock = clock

    @staticmethod
    def _key(issue_key: str) -> str:
        return f"created-timestamp:{issue_key}"

    def mark_created(self, issue_key: str) -> None:
        self.kv.set(self._key(issue_key), self._clock(), ttl_seconds=max(self.window_seconds * 10, 60))

    def was_recently_created(self, issue_key: str) -> bool:
        created_at = self.kv.get(self._key(issue_key))
        if created_at is None:
            return False
        return (self._clock() - float(created_at)) < self.window_seconds

    def clear(self, issue_key: str) -> None:
        self.kv.delete(self._key(issue_key))


class Lease:
    """Exclusive, expiring claim on a resource id.

    ``acquire`` is an atomic insert-if-absent, so of several concurrent callers
    exactly one wins. An expired lease can be taken over, which is what makes a
    crashed holder self-heal. Callers must still re-check their preconditions
    after acquiring.
    """

    def __init__(self, kv: KeyValueStore, key: str, ttl_seconds: float):
        self.kv = kv
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.token = uuid.uuid4().hex
        self.held = False

    def acquire(self) -> bool:
        self.held = self.kv.add(self.key, {"holder": self.token}, ttl_seconds=self.ttl_seconds)
        return self.held

    def is_held_elsewhere(self) -> bool:
        current = self.kv.get(self.key)
        return current is not None and current.get("holder") != self.token

    def release(self) -> None:
        if not self.held:
            return
        current = self.kv.get(self.key)
        # Don't delete a lease that expired and was taken over by someone else.
        if current is not None and current.get("holder") == self.token:
            self.kv.delete(self.key)
        self.held = False

    def __enter__(self) -> "Lease":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@dataclass
class CachedValue(Generic[T]):
    """A value plus the monotonic time it stops being valid."""

    ttl_seconds: float
    value: Optional[T] = None
    expires_at: float = 0.0
    clock: Callable[[], float] = time.monotonic

    def get(self) -> Optional[T]:
        if self.value is None or self.clock() >= self.expires_at:
            return None
        return self.value

    def set(self, value: T) -> T:
        self.value = value
        self.expires_at = self.clock() + self.ttl_seconds
        return value

    def get_or_load(self, loader: Callable[[], Any]) -> Optional[T]:
        cached = self.get()
        if cached is not None:
            return cached
        value = loader()
        if value is not None:
            self.set(value)
        return value

    def invalidate(self) -> None:
        self.value = None
        self.expires_at = 0.0
