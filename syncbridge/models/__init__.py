"""Database models"""

from syncbridge.models.base import Base
from syncbridge.models.kv_entry import KVEntry

__all__ = [
    "Base",
    "KVEntry",
]
