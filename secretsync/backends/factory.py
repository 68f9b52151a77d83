"""
Backend factory and pool.

Kind dispatch happens once, when a SecretStore is registered. Descriptors
then reach their client through the pool by store key, together with the
per-backend concurrency limiter every descriptor on that store shares.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from secretsync.backends.base import SecretBackend
from secretsync.engine.errors import DescriptorValidationError
from secretsync.engine.models import BackendHealth, BackendKind, BackendRef
from secretsync.engine.telemetry import SyncMetrics

logger = logging.getLogger(__name__)

BackendFactory = Callable[[BackendRef], SecretBackend]


def create_backend(ref: BackendRef, *, call_timeout: float = 10.0) -> SecretBackend:
    """Build the client implementation for a BackendRef's kind."""
    if ref.kind == BackendKind.VAULT:
        from secretsync.backends.vault import VaultBackend

        return VaultBackend(ref, timeout=call_timeout)
    if ref.kind == BackendKind.AWS:
        from secretsync.backends.aws import AWSSecretsManagerBackend

        return AWSSecretsManagerBackend(ref)
    raise DescriptorValidationError(f"Unknown backend kind: {ref.kind}")


@dataclass
class BackendHandle:
    ref: BackendRef
    client: SecretBackend
    limiter: asyncio.Semaphore
    limit: int


class BackendPool:
    """One client + limiter per registered SecretStore."""

    def __init__(
        self,
        *,
        default_concurrency: int = 4,
        call_timeout: float = 10.0,
        factory: BackendFactory | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self.default_concurrency = default_concurrency
        self.metrics = metrics
        self._factory: BackendFactory = factory or (
            lambda ref: create_backend(ref, call_timeout=call_timeout)
        )
        self._handles: dict[str, BackendHandle] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def get(self, key: str) -> BackendHandle | None:
        return self._handles.get(key)

    def refs(self) -> list[BackendRef]:
        return [h.ref for h in self._handles.values()]

    async def register(self, ref: BackendRef) -> BackendHandle:
        """Add or replace a backend. An unchanged connection keeps its client."""
        existing = self._handles.get(ref.key)
        if existing and existing.ref.connection_fingerprint() == ref.connection_fingerprint():
            ref.health = existing.ref.health
            existing.ref = ref
            return existing

        client = self._factory(ref)
        limit = ref.concurrency_limit or self.default_concurrency
        handle = BackendHandle(
            ref=ref, client=client, limiter=asyncio.Semaphore(limit), limit=limit
        )
        self._handles[ref.key] = handle
        if self.metrics:
            self.metrics.set_backend_health(ref.key, ref.health)
        if existing:
            logger.info("Backend %s reconfigured, replacing client", ref.key)
            await self._close(existing)
        else:
            logger.info("Registered backend %s (%s, limit=%d)", ref.key, ref.kind.value, limit)
        return handle

    async def remove(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        await self._close(handle)
        if self.metrics:
            self.metrics.forget_backend(key)
        logger.info("Removed backend %s", key)
        return True

    async def check_health(self) -> dict[str, BackendHealth]:
        """Probe every backend; record and log health transitions."""
        results: dict[str, BackendHealth] = {}
        for key, handle in list(self._handles.items()):
            try:
                health = await handle.client.health_check()
            except Exception as e:
                logger.warning("Health check for %s raised: %s", key, e)
                health = BackendHealth.UNREACHABLE
            previous = handle.ref.health
            if health != previous:
                log = logger.warning if health == BackendHealth.UNREACHABLE else logger.info
                log(
                    "Backend %s health %s -> %s",
                    key,
                    previous.value,
                    health.value,
                    extra={"event": "backend_health_changed", "backend": key},
                )
            handle.ref.health = health
            if self.metrics:
                self.metrics.set_backend_health(key, health)
            results[key] = health
        return results

    async def close(self) -> None:
        for key in list(self._handles):
            await self.remove(key)

    @staticmethod
    async def _close(handle: BackendHandle) -> None:
        try:
            await handle.client.close()
        except Exception as e:
            logger.debug("Error closing backend %s: %s", handle.ref.key, e)
