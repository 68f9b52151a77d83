"""Backends module - pluggable external secret sources."""

from secretsync.backends.base import RemoteDocument, SecretBackend
from secretsync.backends.factory import BackendHandle, BackendPool, create_backend

__all__ = [
    "RemoteDocument",
    "SecretBackend",
    "BackendHandle",
    "BackendPool",
    "create_backend",
]
