"""Tests for sync telemetry: traces and the metric registry."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from secretsync.config import reset_config
from secretsync.engine.models import BackendHealth
from secretsync.engine.telemetry import TELEMETRY_STREAM, Span, SyncMetrics, TraceContext


class TestTraceContext:
    def test_span_creates_and_records(self):
        ctx = TraceContext(identity="default/db-creds")
        with ctx.span("fetch", backend="vault-main") as s:
            assert s.name == "fetch"
            assert s.attributes == {"backend": "vault-main"}
        assert len(ctx.spans) == 1
        assert ctx.spans[0].duration_ms >= 0

    def test_nested_spans(self):
        ctx = TraceContext()
        with ctx.span("pass") as parent:
            with ctx.span("fetch") as child:
                assert child.parent_span_id == parent.span_id
        # Inner span exits first
        assert [s.name for s in ctx.spans] == ["fetch", "pass"]

    def test_span_error_status(self):
        ctx = TraceContext()
        with pytest.raises(ValueError):
            with ctx.span("failing"):
                raise ValueError("boom")
        assert ctx.spans[0].status == "error"

    def test_to_dict(self):
        ctx = TraceContext(identity="default/db-creds")
        with ctx.span("apply"):
            pass
        data = ctx.to_dict()
        assert len(data["trace_id"]) == 32
        assert data["identity"] == "default/db-creds"
        assert data["span_count"] == 1

    def test_publish_skipped_when_disabled(self, monkeypatch):
        monkeypatch.delenv("SECRETSYNC_REDIS_ENABLED", raising=False)
        reset_config()
        with patch("redis.Redis") as redis_cls:
            TraceContext(identity="default/db-creds").publish({"status": "Synced"})
        redis_cls.assert_not_called()
        reset_config()

    def test_publish_writes_stream(self, monkeypatch):
        monkeypatch.setenv("SECRETSYNC_REDIS_ENABLED", "true")
        reset_config()
        client = MagicMock()
        with patch("redis.Redis", return_value=client):
            ctx = TraceContext(identity="default/db-creds")
            ctx.publish({"status": "Synced", "duration_ms": 12, "action": "created"})
        reset_config()

        stream, fields = client.xadd.call_args.args
        assert stream == TELEMETRY_STREAM
        assert fields["identity"] == "default/db-creds"
        assert fields["duration_ms"] == "12"
        assert fields["reason"] == ""

    def test_publish_best_effort(self, monkeypatch):
        monkeypatch.setenv("SECRETSYNC_REDIS_ENABLED", "1")
        reset_config()
        with patch("redis.Redis", side_effect=Exception("no redis")):
            TraceContext().publish({"status": "Error"})
        reset_config()


class TestSpan:
    def test_duration_ms(self):
        assert Span(name="x", start_time=100.0, end_time=100.5).duration_ms == 500

    def test_duration_ms_zero(self):
        assert Span(name="x").duration_ms == 0


class TestSyncMetrics:
    def test_record_pass(self):
        m = SyncMetrics()
        m.record_pass("default/a", success=True, duration_ms=5, wrote=True)
        m.record_pass("default/a", success=True, duration_ms=3)
        m.record_pass("default/a", success=False, duration_ms=7, reason="NotFound")

        snap = m.snapshot()["descriptors"]["default/a"]
        assert snap["sync_success_total"] == 2
        assert snap["sync_failure_total"] == 1
        assert snap["sync_write_total"] == 1
        assert snap["last_sync_duration_ms"] == 7
        assert snap["last_failure_reason"] == "NotFound"

    def test_counters_is_copy(self):
        m = SyncMetrics()
        m.record_pass("default/a", success=True, duration_ms=1)
        c = m.counters("default/a")
        c.success_count = 99
        assert m.counters("default/a").success_count == 1

    def test_unknown_counters_are_zero(self):
        assert SyncMetrics().counters("default/nope").success_count == 0

    def test_backend_gauge(self):
        m = SyncMetrics()
        m.set_backend_health("default/vault", BackendHealth.HEALTHY)
        m.set_backend_health("/aws", BackendHealth.UNREACHABLE)
        backends = m.snapshot()["backends"]
        assert backends["default/vault"]["health_gauge"] == 1
        assert backends["/aws"] == {"health": "unreachable", "health_gauge": 0}

    def test_forget(self):
        m = SyncMetrics()
        m.record_pass("default/a", success=True, duration_ms=1)
        m.set_backend_health("default/vault", BackendHealth.UNKNOWN)
        m.forget_descriptor("default/a")
        m.forget_backend("default/vault")
        snap = m.snapshot()
        assert snap["descriptors"] == {}
        assert snap["backends"] == {}

    def test_coalesced(self):
        m = SyncMetrics()
        m.record_coalesced()
        assert m.snapshot()["coalesced_triggers_total"] == 1
