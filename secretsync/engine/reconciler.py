"""
Reconciliation engine: one fetch → render → diff → apply pass per descriptor.

A pass moves the descriptor through Pending → Fetching → Rendering →
Diffing → Applying → Synced, or to Error from any phase. A failure at any
point before Applying leaves the destination untouched. Resolved values and
the rendered payload are owned by the pass and wiped before it returns.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

from secretsync.config import get_config
from secretsync.engine.errors import (
    ConcurrencyConflictError,
    CreationForbiddenError,
    DescriptorValidationError,
    OwnershipConflictError,
    PassCancelledError,
    PassTimeoutError,
    SecretSyncError,
    StoreObjectNotFoundError,
)
from secretsync.engine.models import (
    CreationPolicy,
    ErrorReason,
    PassPhase,
    PassResult,
    RenderedPayload,
    ResolvedSecretValue,
    SecretDescriptor,
    SyncStatus,
    WriteAction,
)
from secretsync.engine.telemetry import SyncMetrics, TraceContext
from secretsync.engine.template import render_payload

if TYPE_CHECKING:
    from secretsync.backends.base import RemoteDocument
    from secretsync.backends.factory import BackendHandle, BackendPool
    from secretsync.store.base import SecretStoreAdapter, StoreObjectHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Backoff:
    """Exponential retry delay: ``base * 2**(failures-1)``, capped."""

    def __init__(self, base: float = 5.0, cap: float = 300.0) -> None:
        self.base = base
        self.cap = cap

    def delay(self, failures: int) -> float:
        if failures <= 1:
            return min(self.base, self.cap)
        return min(self.cap, self.base * 2 ** (failures - 1))


class ReconciliationEngine:
    def __init__(
        self,
        store: SecretStoreAdapter,
        backends: BackendPool,
        *,
        call_timeout: float = 10.0,
        pass_timeout: float = 60.0,
        backoff: Backoff | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self.store = store
        self.backends = backends
        self.call_timeout = call_timeout
        self.pass_timeout = pass_timeout
        self.backoff = backoff or Backoff()
        self.metrics = metrics or SyncMetrics()

    # ── Entry point ─────────────────────────────────────────────────

    async def reconcile(
        self, descriptor: SecretDescriptor, cancel: asyncio.Event | None = None
    ) -> PassResult:
        """Run one pass and record the outcome on ``descriptor.status``.

        The pass works from a snapshot of the descriptor taken here, so a registry
        update while it runs cannot mix two specs. Its outcome lands on the
        status object the descriptor had at the start; an update that reset
        the status leaves the new one untouched. Every failure is caught and
        recorded. Cancellation raises PassCancelledError and leaves the
        status as it was.
        """
        spec = descriptor.snapshot()
        identity = spec.identity
        status = spec.status
        prior_phase = status.phase
        started = time.monotonic()
        trace = TraceContext(identity=identity)
        status.last_attempt_at = datetime.now(UTC)

        try:
            action, payload_hash = await asyncio.wait_for(
                self._run_pass(spec, cancel, trace), timeout=self.pass_timeout
            )
        except (PassCancelledError, asyncio.CancelledError):
            status.phase = prior_phase
            logger.info("Pass for %s cancelled", identity)
            raise
        except TimeoutError:
            error: Exception = PassTimeoutError(f"Pass exceeded {self.pass_timeout:g}s")
            failed_phase = status.phase
        except SecretSyncError as e:
            error = e
            failed_phase = status.phase
        except Exception as e:
            logger.exception("Unexpected error reconciling %s", identity)
            error = e
            failed_phase = status.phase
        else:
            duration_ms = int((time.monotonic() - started) * 1000)
            return self._succeeded(spec, action, payload_hash, duration_ms, trace)

        duration_ms = int((time.monotonic() - started) * 1000)
        return self._failed(spec, error, failed_phase, duration_ms, trace)

    # ── Outcomes ────────────────────────────────────────────────────

    def _succeeded(
        self,
        descriptor: SecretDescriptor,
        action: WriteAction,
        payload_hash: str,
        duration_ms: int,
        trace: TraceContext,
    ) -> PassResult:
        status = descriptor.status
        status.sync_status = SyncStatus.SYNCED
        status.phase = PassPhase.SYNCED
        status.last_sync_at = datetime.now(UTC)
        status.last_error = ""
        status.error_reason = None
        status.content_hash = payload_hash
        status.consecutive_errors = 0
        status.next_retry_seconds = None

        wrote = action in (WriteAction.CREATED, WriteAction.UPDATED)
        self.metrics.record_pass(
            descriptor.identity, success=True, duration_ms=duration_ms, wrote=wrote
        )
        logger.info(
            "Synced %s (%s, %dms)",
            descriptor.identity,
            action.value,
            duration_ms,
            extra={"event": "sync_succeeded", "identity": descriptor.identity},
        )
        result = PassResult(
            identity=descriptor.identity,
            status=SyncStatus.SYNCED,
            action=action,
            content_hash=payload_hash,
            duration_ms=duration_ms,
        )
        self._publish(trace, result)
        return result

    def _failed(
        self,
        descriptor: SecretDescriptor,
        error: Exception,
        failed_phase: PassPhase,
        duration_ms: int,
        trace: TraceContext,
    ) -> PassResult:
        reason = error.reason if isinstance(error, SecretSyncError) else ErrorReason.INTERNAL
        message = str(error) or type(error).__name__

        status = descriptor.status
        status.sync_status = SyncStatus.ERROR
        status.phase = PassPhase.ERROR
        status.last_error = message
        status.error_reason = reason
        status.consecutive_errors += 1
        retry_in = self.backoff.delay(status.consecutive_errors)
        status.next_retry_seconds = retry_in

        self.metrics.record_pass(
            descriptor.identity, success=False, duration_ms=duration_ms, reason=reason.value
        )
        if reason == ErrorReason.OWNERSHIP_CONFLICT:
            event = "ownership_conflict"
        elif failed_phase == PassPhase.FETCHING:
            event = "fetch_failed"
        elif failed_phase == PassPhase.RENDERING:
            event = "render_failed"
        else:
            event = "sync_failed"
        logger.warning(
            "Sync of %s failed [%s] in %s: %s (retry in %.0fs)",
            descriptor.identity,
            reason.value,
            failed_phase.value,
            message,
            retry_in,
            extra={"event": event, "identity": descriptor.identity, "reason": reason.value},
        )
        result = PassResult(
            identity=descriptor.identity,
            status=SyncStatus.ERROR,
            reason=reason,
            error=message,
            duration_ms=duration_ms,
            retry_in_seconds=retry_in,
        )
        self._publish(trace, result)
        return result

    def _publish(self, trace: TraceContext, result: PassResult) -> None:
        if not get_config().redis.enabled:
            return
        payload = {
            "duration_ms": result.duration_ms,
            "status": result.status.value,
            "reason": result.reason.value if result.reason else "",
            "action": result.action.value,
        }
        try:
            loop = asyncio.get_running_loop()
            loop.run_in_executor(None, trace.publish, payload)
        except RuntimeError:
            trace.publish(payload)

    # ── The pass ────────────────────────────────────────────────────

    @staticmethod
    def _checkpoint(cancel: asyncio.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            raise PassCancelledError()

    async def _run_pass(
        self,
        descriptor: SecretDescriptor,
        cancel: asyncio.Event | None,
        trace: TraceContext,
    ) -> tuple[WriteAction, str]:
        status = descriptor.status
        documents: dict[tuple[str, str | None], RemoteDocument] = {}
        resolved: dict[str, ResolvedSecretValue] = {}
        payload: RenderedPayload | None = None
        try:
            self._checkpoint(cancel)
            handle = self.backends.get(descriptor.backend.key)
            if handle is None:
                raise DescriptorValidationError(
                    f"Secret store {descriptor.backend.key} is not registered"
                )

            status.phase = PassPhase.FETCHING
            with trace.span("fetch", backend=handle.ref.key):
                await self._resolve(descriptor, handle, documents, resolved)
            self._checkpoint(cancel)

            status.phase = PassPhase.RENDERING
            with trace.span("render", fields=len(resolved)):
                payload = self._render(descriptor, resolved)
            self._checkpoint(cancel)

            with trace.span("apply", target=descriptor.target_name):
                action = await self._apply(descriptor, payload, cancel)
            return action, payload.content_hash
        finally:
            for doc in documents.values():
                doc.release()
            documents.clear()
            for value in resolved.values():
                value.wipe()
            resolved.clear()
            if payload is not None:
                payload.wipe()

    # ── Fetching ────────────────────────────────────────────────────

    async def _call(self, handle: BackendHandle, coro: Awaitable[T], what: str) -> T:
        async with handle.limiter:
            try:
                return await asyncio.wait_for(coro, timeout=self.call_timeout)
            except TimeoutError:
                raise PassTimeoutError(
                    f"{what} on {handle.ref.key} timed out after {self.call_timeout:g}s"
                ) from None

    async def _resolve(
        self,
        descriptor: SecretDescriptor,
        handle: BackendHandle,
        documents: dict[tuple[str, str | None], RemoteDocument],
        resolved: dict[str, ResolvedSecretValue],
    ) -> None:
        """Fetch every source into ``documents`` and fill ``resolved`` in
        declaration order.

        dataFrom entries come first so explicit data mappings override them.
        Each (remote key, version) is fetched once per pass. The first
        failure aborts the rest.
        """
        client = handle.client

        find_paths = [s.find_path for s in descriptor.data_from if s.find_path]
        listings = await self._gather(
            [self._call(handle, client.list_keys(p), f"list {p}") for p in find_paths]
        )
        found: dict[str, list[str]] = dict(zip(find_paths, listings, strict=True))

        wanted: list[tuple[str, str | None]] = []
        for source in descriptor.data_from:
            if source.extract:
                wanted.append((source.extract, source.version))
            else:
                wanted.extend((k, None) for k in found[source.find_path])
        wanted.extend((m.remote_key, m.version) for m in descriptor.mappings)
        unique = list(dict.fromkeys(wanted))

        fetched = await self._gather(
            [self._call(handle, client.fetch_document(k, v), f"fetch {k}") for k, v in unique]
        )
        documents.update(zip(unique, fetched, strict=True))

        for source in descriptor.data_from:
            if source.extract:
                doc = documents[(source.extract, source.version)]
                for prop, value in doc.extract_all().items():
                    _put(resolved, prop, value)
            else:
                for key in found[source.find_path]:
                    doc = documents[(key, None)]
                    _put(resolved, _local_name(source.find_path, key), doc.resolve())
        for m in descriptor.mappings:
            _put(
                resolved,
                m.secret_key,
                documents[(m.remote_key, m.version)].resolve(m.remote_property),
            )

    @staticmethod
    async def _gather(coros: list[Awaitable[Any]]) -> list[Any]:
        """Run concurrently; on the first failure cancel the rest and raise it."""
        if not coros:
            return []
        tasks = [asyncio.ensure_future(c) for c in coros]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            pending = [t for t in tasks if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        for t in tasks:
            if not t.cancelled() and t.exception() is not None:
                raise t.exception()  # type: ignore[misc]
        return [t.result() for t in tasks]

    # ── Rendering ───────────────────────────────────────────────────

    @staticmethod
    def _render(
        descriptor: SecretDescriptor, resolved: dict[str, ResolvedSecretValue]
    ) -> RenderedPayload:
        values = {key: v.value for key, v in resolved.items()}
        if descriptor.template and descriptor.template.data:
            data = render_payload(descriptor.template, values)
        else:
            data = {key: bytearray(v) for key, v in values.items()}
        return RenderedPayload(
            data=data, owner=descriptor.identity, secret_type=descriptor.secret_type
        )

    # ── Diff + apply ────────────────────────────────────────────────

    async def _store_call(self, coro: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=self.call_timeout)
        except TimeoutError:
            raise PassTimeoutError(
                f"Store {what} timed out after {self.call_timeout:g}s"
            ) from None

    @staticmethod
    def _desired(
        descriptor: SecretDescriptor,
        payload: RenderedPayload,
        current: StoreObjectHandle | None,
    ) -> RenderedPayload:
        """What the destination object should hold, given what it holds now."""
        target = f"{descriptor.namespace}/{descriptor.target_name}"
        if current is None:
            if descriptor.creation_policy == CreationPolicy.NONE:
                raise CreationForbiddenError(
                    f"Secret {target} does not exist and creationPolicy is None"
                )
            return payload

        if descriptor.creation_policy == CreationPolicy.MERGE:
            merged = {k: bytearray(v) for k, v in current.data.items()}
            for k, v in payload.data.items():
                merged[k] = bytearray(v)
            return RenderedPayload(
                data=merged, owner=current.owner, secret_type=current.secret_type
            )

        if current.owner != descriptor.identity:
            raise OwnershipConflictError(target, current.owner, descriptor.identity)
        return payload

    async def _apply(
        self,
        descriptor: SecretDescriptor,
        payload: RenderedPayload,
        cancel: asyncio.Event | None,
    ) -> WriteAction:
        status = descriptor.status
        ns, name = descriptor.namespace, descriptor.target_name

        for attempt in (1, 2):
            status.phase = PassPhase.DIFFING
            current = await self._store_call(self.store.get(ns, name), "get")
            desired = self._desired(descriptor, payload, current)
            try:
                if current is not None and (
                    desired.content_hash == current.content_hash
                    and desired.secret_type == current.secret_type
                    and desired.owner == current.owner
                ):
                    return WriteAction.UNCHANGED

                self._checkpoint(cancel)
                status.phase = PassPhase.APPLYING
                if current is None:
                    await self._store_call(self.store.create(ns, name, desired), "create")
                    return WriteAction.CREATED
                await self._store_call(
                    self.store.update(ns, name, desired, current.resource_version), "update"
                )
                return WriteAction.UPDATED
            except (ConcurrencyConflictError, StoreObjectNotFoundError) as e:
                if attempt == 2:
                    raise
                logger.info("Write conflict on %s/%s, re-reading: %s", ns, name, e)
            finally:
                if desired is not payload:
                    desired.wipe()
        raise AssertionError("unreachable")


def _local_name(prefix: str, key: str) -> str:
    """``apps/team-a/db/password`` found under ``apps/team-a/`` → ``db_password``."""
    prefix = prefix.strip("/")
    if prefix and key.startswith(prefix + "/"):
        key = key[len(prefix) + 1 :]
    return key.strip("/").replace("/", "_")


def _put(
    resolved: dict[str, ResolvedSecretValue], key: str, value: ResolvedSecretValue
) -> None:
    previous = resolved.pop(key, None)
    if previous is not None:
        previous.wipe()
    resolved[key] = value
