"""
In-process secret store.

Used by `secretsync sync --once` dry runs and by tests. Keeps a write
counter so callers can assert how many mutations a pass performed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from secretsync.engine.errors import ConcurrencyConflictError, StoreObjectNotFoundError
from secretsync.engine.models import RenderedPayload
from secretsync.store.base import SecretStoreAdapter, StoreObjectHandle


@dataclass
class _Record:
    data: dict[str, bytes]
    secret_type: str
    owner: str | None
    version: int


class MemoryStore(SecretStoreAdapter):
    def __init__(self) -> None:
        self._objects: dict[tuple[str, str], _Record] = {}
        self._lock = asyncio.Lock()
        self.writes = 0

    @staticmethod
    def _handle(namespace: str, name: str, rec: _Record) -> StoreObjectHandle:
        return StoreObjectHandle(
            namespace=namespace,
            name=name,
            data=dict(rec.data),
            secret_type=rec.secret_type,
            owner=rec.owner,
            resource_version=str(rec.version),
        )

    def put_raw(
        self,
        namespace: str,
        name: str,
        data: dict[str, bytes],
        *,
        owner: str | None = None,
        secret_type: str = "Opaque",
    ) -> StoreObjectHandle:
        """Seed an object directly, bypassing the write counter."""
        rec = _Record(data=dict(data), secret_type=secret_type, owner=owner, version=1)
        self._objects[(namespace, name)] = rec
        return self._handle(namespace, name, rec)

    async def get(self, namespace: str, name: str) -> StoreObjectHandle | None:
        async with self._lock:
            rec = self._objects.get((namespace, name))
            return self._handle(namespace, name, rec) if rec else None

    async def create(
        self, namespace: str, name: str, payload: RenderedPayload
    ) -> StoreObjectHandle:
        async with self._lock:
            if (namespace, name) in self._objects:
                raise ConcurrencyConflictError(f"Secret {namespace}/{name} already exists")
            rec = _Record(
                data={k: bytes(v) for k, v in payload.data.items()},
                secret_type=payload.secret_type,
                owner=payload.owner,
                version=1,
            )
            self._objects[(namespace, name)] = rec
            self.writes += 1
            return self._handle(namespace, name, rec)

    async def update(
        self,
        namespace: str,
        name: str,
        payload: RenderedPayload,
        resource_version: str,
    ) -> StoreObjectHandle:
        async with self._lock:
            rec = self._objects.get((namespace, name))
            if rec is None:
                raise StoreObjectNotFoundError(f"Secret {namespace}/{name} no longer exists")
            if str(rec.version) != resource_version:
                raise ConcurrencyConflictError(
                    f"Secret {namespace}/{name} changed (version {rec.version}, "
                    f"expected {resource_version})"
                )
            rec.data = {k: bytes(v) for k, v in payload.data.items()}
            rec.secret_type = payload.secret_type
            rec.owner = payload.owner
            rec.version += 1
            self.writes += 1
            return self._handle(namespace, name, rec)

    async def delete(self, namespace: str, name: str) -> bool:
        async with self._lock:
            if self._objects.pop((namespace, name), None) is None:
                return False
            self.writes += 1
            return True

    def keys(self) -> list[str]:
        return sorted(f"{ns}/{name}" for ns, name in self._objects)
