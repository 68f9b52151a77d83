"""Destination secret stores."""

from secretsync.store.base import SecretStoreAdapter, StoreObjectHandle
from secretsync.store.memory import MemoryStore

__all__ = ["MemoryStore", "SecretStoreAdapter", "StoreObjectHandle"]
