"""
Telemetry: per-descriptor sync counters, backend health gauges, and
OpenTelemetry-compatible trace/span IDs for each reconciliation pass.

Counters are pulled through the /metrics endpoint. Serialized pass traces
are published best-effort to a Redis stream for dashboards.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from secretsync.engine.models import BackendHealth

logger = logging.getLogger(__name__)

TELEMETRY_STREAM = "secretsync:events:sync"

HEALTH_GAUGE = {
    BackendHealth.HEALTHY: 1,
    BackendHealth.UNREACHABLE: 0,
    BackendHealth.UNKNOWN: -1,
}


def _trace_id() -> str:
    """Generate a 32-char hex trace ID (OTel compatible)."""
    return uuid.uuid4().hex


def _span_id() -> str:
    """Generate a 16-char hex span ID (OTel compatible)."""
    return uuid.uuid4().hex[:16]


@dataclass
class Span:
    """A single span in a trace."""

    name: str
    span_id: str = field(default_factory=_span_id)
    parent_span_id: str | None = None
    start_time: float = 0.0
    end_time: float = 0.0
    attributes: dict[str, Any] = field(default_factory=dict)
    status: str = "ok"  # ok, error

    @property
    def duration_ms(self) -> int:
        if self.end_time and self.start_time:
            return int((self.end_time - self.start_time) * 1000)
        return 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "duration_ms": self.duration_ms,
            "attributes": self.attributes,
            "status": self.status,
        }


@dataclass
class TraceContext:
    """Manages a single trace for one reconciliation pass."""

    trace_id: str = field(default_factory=_trace_id)
    identity: str = ""
    spans: list[Span] = field(default_factory=list)
    _span_stack: list[Span] = field(default_factory=list)

    @contextmanager
    def span(self, name: str, **attributes: Any) -> Generator[Span, None, None]:
        """Context manager for a timed span."""
        parent_id = self._span_stack[-1].span_id if self._span_stack else None
        s = Span(
            name=name,
            parent_span_id=parent_id,
            start_time=time.monotonic(),
            attributes=attributes,
        )
        self._span_stack.append(s)
        try:
            yield s
        except BaseException:
            s.status = "error"
            raise
        finally:
            s.end_time = time.monotonic()
            self._span_stack.pop()
            self.spans.append(s)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "identity": self.identity,
            "span_count": len(self.spans),
            "spans": [s.to_dict() for s in self.spans],
        }

    def publish(self, result: dict[str, Any]) -> None:
        """Publish the pass outcome to the Redis stream. Best-effort."""
        from secretsync.config import get_config

        cfg = get_config().redis
        if not cfg.enabled:
            return
        try:
            import redis

            r = redis.Redis(
                host=cfg.host,
                port=cfg.port,
                db=cfg.db,
                password=cfg.password or None,
                decode_responses=True,
            )
            r.xadd(
                TELEMETRY_STREAM,
                {
                    "type": "secret.sync.completed",
                    "identity": self.identity,
                    "trace_id": self.trace_id,
                    "span_count": str(len(self.spans)),
                    "duration_ms": str(result.get("duration_ms", 0)),
                    "status": str(result.get("status", "")),
                    "reason": str(result.get("reason") or ""),
                    "action": str(result.get("action", "")),
                },
                maxlen=5000,
            )
        except Exception as e:
            logger.debug("Failed to publish telemetry: %s", e)


@dataclass
class DescriptorCounters:
    success_count: int = 0
    failure_count: int = 0
    write_count: int = 0
    last_duration_ms: int = 0
    last_reason: str = ""


class SyncMetrics:
    """In-process metric registry read by the /metrics endpoint."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._descriptors: dict[str, DescriptorCounters] = {}
        self._backends: dict[str, BackendHealth] = {}
        self.coalesced_triggers = 0

    def record_pass(
        self,
        identity: str,
        *,
        success: bool,
        duration_ms: int,
        wrote: bool = False,
        reason: str = "",
    ) -> None:
        with self._lock:
            c = self._descriptors.setdefault(identity, DescriptorCounters())
            if success:
                c.success_count += 1
            else:
                c.failure_count += 1
            if wrote:
                c.write_count += 1
            c.last_duration_ms = duration_ms
            c.last_reason = reason

    def record_coalesced(self) -> None:
        with self._lock:
            self.coalesced_triggers += 1

    def set_backend_health(self, key: str, health: BackendHealth) -> None:
        with self._lock:
            self._backends[key] = health

    def forget_descriptor(self, identity: str) -> None:
        with self._lock:
            self._descriptors.pop(identity, None)

    def forget_backend(self, key: str) -> None:
        with self._lock:
            self._backends.pop(key, None)

    def counters(self, identity: str) -> DescriptorCounters:
        with self._lock:
            c = self._descriptors.get(identity, DescriptorCounters())
            return DescriptorCounters(**vars(c))

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "descriptors": {
                    identity: {
                        "sync_success_total": c.success_count,
                        "sync_failure_total": c.failure_count,
                        "sync_write_total": c.write_count,
                        "last_sync_duration_ms": c.last_duration_ms,
                        "last_failure_reason": c.last_reason,
                    }
                    for identity, c in sorted(self._descriptors.items())
                },
                "backends": {
                    key: {"health": health.value, "health_gauge": HEALTH_GAUGE[health]}
                    for key, health in sorted(self._backends.items())
                },
                "coalesced_triggers_total": self.coalesced_triggers,
            }
