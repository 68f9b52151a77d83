"""
Controller: wires store, backend pool, registry, engine and scheduler, and
applies manifest sets to them.

A manifest set is applied as a diff against what is registered: new
descriptors are scheduled with an immediate pass, changed ones have their
timer reset, vanished ones are unscheduled and removed. A descriptor whose
manifest fails to load or validate has not vanished: it keeps running on its
last valid spec with the error recorded on its status.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from secretsync.backends.factory import BackendPool
from secretsync.engine.config import EngineConfig, ManifestSet, load_all, manifest_files
from secretsync.engine.models import PassResult, SecretDescriptor
from secretsync.engine.reconciler import Backoff, ReconciliationEngine
from secretsync.engine.registry import DescriptorRegistry, RegistryChange
from secretsync.engine.scheduler import SyncScheduler
from secretsync.engine.telemetry import SyncMetrics
from secretsync.store.base import SecretStoreAdapter

logger = logging.getLogger(__name__)


def build_store(config: EngineConfig) -> SecretStoreAdapter:
    if config.store_backend == "memory":
        from secretsync.store.memory import MemoryStore

        return MemoryStore()
    if config.store_backend == "postgres":
        from secretsync.store.postgres import PostgresStore

        return PostgresStore()
    raise ValueError(f"Unknown store backend: {config.store_backend!r} (memory or postgres)")


@dataclass
class ApplySummary:
    added: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0
    held: int = 0
    rejected: int = 0


class SyncController:
    def __init__(
        self,
        config: EngineConfig,
        *,
        store: SecretStoreAdapter | None = None,
        backends: BackendPool | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self.config = config
        self.metrics = metrics or SyncMetrics()
        self.store = store or build_store(config)
        self.backends = backends or BackendPool(
            default_concurrency=config.default_backend_concurrency,
            call_timeout=config.call_timeout,
            metrics=self.metrics,
        )
        self.registry = DescriptorRegistry(self.store, metrics=self.metrics)
        self.engine = ReconciliationEngine(
            self.store,
            self.backends,
            call_timeout=config.call_timeout,
            pass_timeout=config.pass_timeout,
            backoff=Backoff(config.backoff_base, config.backoff_cap),
            metrics=self.metrics,
        )
        self.scheduler = SyncScheduler(
            self.engine,
            self.registry,
            max_concurrent_passes=config.max_concurrent_passes,
            metrics=self.metrics,
        )
        self.last_errors: list[str] = []
        self._manifest_stamp: tuple[tuple[str, float], ...] | None = None
        # identity -> manifest file it was last loaded from
        self._origins: dict[str, str] = {}

    # ── Manifests ───────────────────────────────────────────────────

    def load(self) -> ManifestSet:
        return load_all(
            self.config.manifest_dir, min_refresh_interval=self.config.min_refresh_interval
        )

    async def apply_manifests(
        self, manifests: ManifestSet, *, schedule: bool = True
    ) -> ApplySummary:
        summary = ApplySummary(rejected=len(manifests.errors))
        self.last_errors = list(manifests.errors)

        for ref in manifests.backends:
            await self.backends.register(ref)

        desired = {d.identity: d for d in manifests.descriptors}
        held = self._held(manifests, desired.keys())
        for identity in sorted(self.registry.identities() - desired.keys() - held.keys()):
            self.scheduler.unschedule(identity)
            await self.registry.remove(identity)
            self._origins.pop(identity, None)
            summary.removed += 1

        for identity, message in sorted(held.items()):
            live = self.registry.get(identity)
            if live is None:
                continue
            live.status.manifest_error = message
            summary.held += 1
            logger.warning(
                "Manifest for %s is invalid, keeping its last valid spec: %s",
                identity,
                message,
                extra={"event": "manifest_held", "identity": identity},
            )

        for identity, descriptor in desired.items():
            change = await self.registry.upsert(descriptor)
            live = self.registry.get(identity)
            if live is not None:
                live.status.manifest_error = ""
            if change == RegistryChange.UNCHANGED or live is None:
                summary.unchanged += 1
                continue
            if change == RegistryChange.ADDED:
                summary.added += 1
            else:
                summary.updated += 1
            if schedule:
                self.scheduler.schedule(live, immediate=change != RegistryChange.RESCHEDULED)
        self._origins.update(manifests.origins)

        # Stores used by held descriptors stay connected even if their own
        # manifest is broken too
        wanted_backends = {ref.key for ref in manifests.backends}
        for identity in held:
            live = self.registry.get(identity)
            if live is not None:
                wanted_backends.add(live.backend.key)
        for ref in self.backends.refs():
            if ref.key not in wanted_backends:
                await self.backends.remove(ref.key)

        logger.info(
            "Manifests applied: %d added, %d updated, %d removed, %d unchanged, "
            "%d held, %d rejected",
            summary.added,
            summary.updated,
            summary.removed,
            summary.unchanged,
            summary.held,
            summary.rejected,
        )
        return summary

    def _held(self, manifests: ManifestSet, desired: Iterable[str]) -> dict[str, str]:
        """Registered descriptors missing from ``manifests`` only because their
        manifest failed to load or validate, with the reason."""
        held: dict[str, str] = {}
        for identity in self.registry.identities() - set(desired):
            origin = self._origins.get(identity)
            if identity in manifests.rejected:
                held[identity] = manifests.rejected[identity]
            elif origin is not None and origin in manifests.failed_files:
                held[identity] = manifests.failed_files[origin]
        return held

    def _stamp(self) -> tuple[tuple[str, float], ...]:
        directory = self.config.manifest_dir
        files = manifest_files(directory)
        stamp = [(str(directory), directory.stat().st_mtime if directory.exists() else 0.0)]
        stamp.extend((str(f), f.stat().st_mtime) for f in files)
        return tuple(stamp)

    async def reload(self, *, force: bool = False) -> ApplySummary | None:
        """Re-read the manifest directory if anything in it changed."""
        stamp = self._stamp()
        if not force and stamp == self._manifest_stamp:
            return None
        self._manifest_stamp = stamp
        return await self.apply_manifests(self.load())

    async def reload_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.reload_interval)
            try:
                await self.reload()
            except Exception as e:
                logger.error("Manifest reload failed: %s", e, exc_info=True)

    # ── Operations ──────────────────────────────────────────────────

    def trigger(self, namespace: str, name: str) -> bool | None:
        """Manual out-of-cycle pass. None if the descriptor is unknown."""
        identity = f"{namespace}/{name}"
        if identity not in self.registry:
            return None
        return self.scheduler.trigger(identity)

    async def sync_once(self) -> list[PassResult]:
        """One pass for every registered descriptor, bounded by the worker count."""
        limiter = asyncio.Semaphore(self.config.max_concurrent_passes)

        async def _one(descriptor: SecretDescriptor) -> PassResult:
            async with limiter:
                return await self.engine.reconcile(descriptor)

        return list(await asyncio.gather(*(_one(d) for d in self.registry.list())))

    async def start(self) -> ApplySummary:
        """Load manifests, start the scheduler and schedule everything."""
        self.scheduler.startup()
        self._manifest_stamp = self._stamp()
        summary = await self.apply_manifests(self.load())
        await self.backends.check_health()
        return summary

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.backends.close()
        await self.store.close()
