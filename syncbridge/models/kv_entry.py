"""Key-value entry model"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, String, Text

from syncbridge.models.base import Base


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime (consistent with stored expiries)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class KVEntry(Base):
    """A single JSON value in the durable key-value store.

    Mappings, sync flags, leases, pending links, statistics and organization
    configuration all live in this table, addressed by key. Secrets share the
    table but are flagged so they never show up in prefix queries.
    """

    __tablename__ = "kv_entries"

    key = Column(String(512), primary_key=True)
    value = Column(Text, nullable=False)  # JSON-encoded
    is_secret = Column(Boolean, default=False, nullable=False)

    # Null means the entry never expires
    expires_at = Column(DateTime, nullable=True, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def __repr__(self):
        return f"<KVEntry(key={self.key}, secret={self.is_secret})>"
