"""
Sync Scheduler: APScheduler wrapper for periodic reconciliation passes.

One IntervalTrigger job per descriptor. A firing job only enqueues the
descriptor; a fixed pool of workers drains the queue, so backend load is
bounded by ``max_concurrent_passes`` however many descriptors are due.
A trigger for a descriptor that is already queued or running is coalesced.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from secretsync.engine import dedup
from secretsync.engine.errors import PassCancelledError
from secretsync.engine.models import PassResult, SecretDescriptor

if TYPE_CHECKING:
    from secretsync.engine.reconciler import ReconciliationEngine
    from secretsync.engine.registry import DescriptorRegistry
    from secretsync.engine.telemetry import SyncMetrics

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Per-descriptor timers feeding a bounded worker pool."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        registry: DescriptorRegistry,
        *,
        max_concurrent_passes: int = 4,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self.engine = engine
        self.registry = registry
        self.metrics = metrics or engine.metrics
        self.max_concurrent_passes = max_concurrent_passes
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._cancel: dict[str, asyncio.Event] = {}
        self._rerun: set[str] = set()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    # ── Lifecycle ───────────────────────────────────────────────────

    def startup(self) -> None:
        """Start the timer scheduler and the worker pool. Needs a running loop."""
        if self._workers:
            return
        self.scheduler.start()
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"sync-worker-{n}")
            for n in range(self.max_concurrent_passes)
        ]
        logger.info("Sync scheduler started with %d workers", self.max_concurrent_passes)

    async def start(self) -> None:
        """Start and keep running."""
        self.startup()
        while True:
            await asyncio.sleep(60)

    async def stop(self) -> None:
        for event in self._cancel.values():
            event.set()
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Sync scheduler stopped")

    # ── Timers ──────────────────────────────────────────────────────

    def schedule(self, descriptor: SecretDescriptor, *, immediate: bool = True) -> None:
        """Add or reset a descriptor's timer; by default also force a pass now."""
        identity = descriptor.identity
        self.scheduler.add_job(
            self._on_timer,
            trigger=IntervalTrigger(seconds=descriptor.refresh_interval, timezone=UTC),
            args=[identity],
            id=identity,
            name=f"sync:{identity}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )
        logger.info("Scheduled %s every %.0fs", identity, descriptor.refresh_interval)
        if immediate:
            self.trigger(identity, force=True)

    def unschedule(self, identity: str) -> None:
        """Drop the timer and cancel an in-flight pass at its next checkpoint."""
        with contextlib.suppress(JobLookupError):
            self.scheduler.remove_job(identity)
        self._rerun.discard(identity)
        event = self._cancel.get(identity)
        if event is not None:
            event.set()
            logger.info("Cancelling in-flight pass for %s", identity)

    def is_scheduled(self, identity: str) -> bool:
        return self.scheduler.get_job(identity) is not None

    def next_run(self, identity: str) -> datetime | None:
        job = self.scheduler.get_job(identity)
        return job.next_run_time if job else None

    async def _on_timer(self, identity: str) -> None:
        self.trigger(identity)

    def trigger(self, identity: str, *, force: bool = False) -> bool:
        """Queue an out-of-cycle pass. Returns False when coalesced.

        ``force`` (used after a configuration change) makes a coalesced
        trigger run once more as soon as the current pass ends, so the new
        spec is never skipped.
        """
        if not dedup.try_acquire(identity):
            if force:
                self._rerun.add(identity)
                return False
            self.metrics.record_coalesced()
            logger.info(
                "Trigger for %s coalesced, pass already queued or running",
                identity,
                extra={"event": "pass_coalesced", "identity": identity},
            )
            return False
        self._queue.put_nowait(identity)
        return True

    # ── Workers ─────────────────────────────────────────────────────

    async def _worker(self, n: int) -> None:
        while True:
            identity = await self._queue.get()
            try:
                await self._run_pass(identity)
            except Exception as e:
                logger.error("Worker %d failed running %s: %s", n, identity, e, exc_info=True)
            finally:
                self._queue.task_done()

    async def _run_pass(self, identity: str) -> None:
        result: PassResult | None = None
        cancel = asyncio.Event()
        self._cancel[identity] = cancel
        try:
            descriptor = self.registry.get(identity)
            if descriptor is None or not self.is_scheduled(identity):
                logger.debug("Skipping %s, no longer scheduled", identity)
                return
            result = await self.engine.reconcile(descriptor, cancel)
        except PassCancelledError:
            logger.info("Pass for %s stopped at a cancellation checkpoint", identity)
        finally:
            self._cancel.pop(identity, None)
            dedup.release(identity)

        if result is not None:
            self._reschedule(identity, result)
        if identity in self._rerun:
            self._rerun.discard(identity)
            if self.is_scheduled(identity):
                self.trigger(identity)

    def _reschedule(self, identity: str, result: PassResult) -> None:
        """Next run: refresh interval after success, backoff delay after failure."""
        descriptor = self.registry.get(identity)
        job = self.scheduler.get_job(identity)
        if descriptor is None or job is None:
            return
        if result.ok or result.retry_in_seconds is None:
            delay = descriptor.refresh_interval
        else:
            delay = result.retry_in_seconds
        job.modify(next_run_time=datetime.now(UTC) + timedelta(seconds=delay))

    async def drain(self) -> None:
        """Wait until every queued pass has finished."""
        await self._queue.join()
