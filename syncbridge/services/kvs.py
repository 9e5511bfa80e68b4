"""Durable key-value store used for all sync coordination state"""

import copy
import json
import logging
import threading
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from syncbridge.models import KVEntry
from syncbridge.models.kv_entry import utcnow

logger = logging.getLogger(__name__)


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


class KeyValueStore:
    """Interface shared by the SQL-backed and in-memory stores.

    Values are JSON documents. ``ttl_seconds`` makes an entry expire; expired
    entries read as missing. Secrets live in their own scope: ``get`` never
    returns a secret and ``query_prefix`` never lists one.
    """

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        raise NotImplementedError

    def add(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> bool:
        """Create ``key`` only if it is absent (or expired). Returns True if created."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def query_prefix(self, prefix: str, limit: Optional[int] = None) -> List[Tuple[str, Any]]:
        raise NotImplementedError

    def get_secret(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_secret(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete_secret(self, key: str) -> None:
        raise NotImplementedError


class SqlKeyValueStore(KeyValueStore):
    """KV store backed by the ``kv_entries`` table.

    Every operation uses its own short-lived session so one store instance can
    be shared by request handlers and scheduler threads.
    """

    def __init__(self, session_factory: Callable):
        self._session_factory = session_factory

    @staticmethod
    def _expiry(ttl_seconds: Optional[float]):
        if not ttl_seconds:
            return None
        return utcnow() + timedelta(seconds=ttl_seconds)

    def _read(self, key: str, *, secret: bool) -> Tuple[bool, Any]:
        db = self._session_factory()
        try:
            row = db.get(KVEntry, key)
            if row is None or bool(row.is_secret) != secret:
                return False, None
            if row.is_expired():
                db.delete(row)
                db.commit()
                return False, None
            return True, json.loads(row.value)
        finally:
            db.close()

    def _write(self, key: str, value: Any, *, secret: bool, ttl_seconds: Optional[float]) -> None:
        db = self._session_factory()
        try:
            row = db.get(KVEntry, key)
            if row is None:
                db.add(
                    KVEntry(
                        key=key,
                        value=_dumps(value),
                        is_secret=secret,
                        expires_at=self._expiry(ttl_seconds),
                    )
                )
            else:
                row.value = _dumps(value)
                row.is_secret = secret
                row.expires_at = self._expiry(ttl_seconds)
            try:
                db.commit()
            except IntegrityError:
                # Another writer inserted the same key between our read and commit.
                db.rollback()
                db.merge(
                    KVEntry(
                        key=key,
                        value=_dumps(value),
                        is_secret=secret,
                        expires_at=self._expiry(ttl_seconds),
                    )
                )
                db.commit()
        finally:
            db.close()

    def _remove(self, key: str, *, secret: bool) -> None:
        db = self._session_factory()
        try:
            row = db.get(KVEntry, key)
            if row is not None and bool(row.is_secret) == secret:
                db.delete(row)
                db.commit()
        finally:
            db.close()

    def get(self, key: str, default: Any = None) -> Any:
        found, value = self._read(key, secret=False)
        return value if found else default

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        self._write(key, value, secret=False, ttl_seconds=ttl_seconds)

    def add(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> bool:
        db = self._session_factory()
        try:
            row = db.get(KVEntry, key)
            if row is not None:
                if not row.is_expired():
                    return False
                db.delete(row)
                db.flush()
            db.add(
                KVEntry(
                    key=key,
                    value=_dumps(value),
                    is_secret=False,
                    expires_at=self._expiry(ttl_seconds),
                )
            )
            db.commit()
            return True
        except IntegrityError:
            # Lost the insert race: someone else holds the key now.
            db.rollback()
            return False
        finally:
            db.close()

    def delete(self, key: str) -> None:
        self._remove(key, secret=False)

    def query_prefix(self, prefix: str, limit: Optional[int] = None) -> List[Tuple[str, Any]]:
        db = self._session_factory()
        try:
            now = utcnow()
            query = (
                db.query(KVEntry)
                .filter(KVEntry.key.startswith(prefix, autoescape=True))
                .filter(KVEntry.is_secret == False)  # noqa: E712
                .filter((KVEntry.expires_at == None) | (KVEntry.expires_at > now))  # noqa: E711
                .order_by(KVEntry.key)
            )
            if limit:
                query = query.limit(limit)
            return [(row.key, json.loads(row.value)) for row in query.all()]
        finally:
            db.close()

    def get_secret(self, key: str) -> Optional[str]:
        found, value = self._read(key, secret=True)
        return value if found else None

    def set_secret(self, key: str, value: str) -> None:
        self._write(key, value, secret=True, ttl_seconds=None)

    def delete_secret(self, key: str) -> None:
        self._remove(key, secret=True)

    def purge_expired(self) -> int:
        """Delete expired rows. Returns the number removed."""
        db = self._session_factory()
        try:
            removed = (
                db.query(KVEntry)
                .filter(KVEntry.expires_at != None)  # noqa: E711
                .filter(KVEntry.expires_at <= utcnow())
                .delete(synchronize_session=False)
            )
            db.commit()
            if removed:
                logger.info(f"Purged {removed} expired key-value entries")
            return removed
        finally:
            db.close()


class MemoryKeyValueStore(KeyValueStore):
    """Thread-safe in-process store with the same semantics as the SQL store.

    Values are deep-copied on the way in and out, so callers can't mutate
    stored state by accident.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (value, expires_at or None)
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._secrets: Dict[str, str] = {}

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    def _expiry(self, ttl_seconds: Optional[float]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds else None

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            value, expires_at = entry
            if self._expired(expires_at):
                del self._data[key]
                return default
            return copy.deepcopy(value)

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (copy.deepcopy(value), self._expiry(ttl_seconds))

    def add(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> bool:
        with self._lock:
            entry = self._data.get(key)
            if entry is not None and not self._expired(entry[1]):
                return False
            self._data[key] = (copy.deepcopy(value), self._expiry(ttl_seconds))
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def query_prefix(self, prefix: str, limit: Optional[int] = None) -> List[Tuple[str, Any]]:
        with self._lock:
            results = [
                (key, copy.deepcopy(value))
                for key, (value, expires_at) in sorted(self._data.items())
                if key.startswith(prefix) and not self._expired(expires_at)
            ]
        return results[:limit] if limit else results

    def get_secret(self, key: str) -> Optional[str]:
        with self._lock:
            return self._secrets.get(key)

    def set_secret(self, key: str, value: str) -> None:
        with self._lock:
            self._secrets[key] = value

    def delete_secret(self, key: str) -> None:
        with self._lock:
            self._secrets.pop(key, None)
