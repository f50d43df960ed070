"""Persistent store: canonical records, message mappings, change feed outbox."""

from chatbridge.store.base import CHANGE_DELIVERED, CHANGE_FAILED, CHANGE_PENDING, Store
from chatbridge.store.memory import MemoryStore
from chatbridge.store.sql import SqlStore

__all__ = [
    "CHANGE_DELIVERED",
    "CHANGE_FAILED",
    "CHANGE_PENDING",
    "MemoryStore",
    "SqlStore",
    "Store",
    "create_store",
]


def create_store(url: str) -> Store:
    """Store for a database URL; "memory" selects the in-process store."""
    if url.strip().lower() in ("memory", "memory://"):
        return MemoryStore()
    return SqlStore(url)
