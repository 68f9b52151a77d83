"""Tests for backend creation and the backend pool."""

from __future__ import annotations

from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from secretsync.backends.aws import AWSSecretsManagerBackend
from secretsync.backends.factory import BackendPool, create_backend
from secretsync.backends.vault import VaultBackend
from secretsync.engine.models import BackendHealth, BackendKind, BackendRef
from secretsync.engine.telemetry import SyncMetrics


def _ref(**overrides) -> BackendRef:
    values = {
        "name": "vault-main",
        "kind": BackendKind.VAULT,
        "namespace": "default",
        "server": "http://vault.test:8200",
        "auth": {"token": "root"},
    }
    values.update(overrides)
    return BackendRef(**values)


def _fake_client(health=BackendHealth.HEALTHY) -> MagicMock:
    client = MagicMock()
    client.health_check = AsyncMock(return_value=health)
    client.close = AsyncMock()
    return client


class TestCreateBackend:
    @pytest.mark.asyncio
    async def test_vault(self):
        backend = create_backend(_ref())
        assert isinstance(backend, VaultBackend)
        await backend.close()

    def test_aws(self, monkeypatch):
        monkeypatch.setattr("secretsync.backends.aws.boto3.client", MagicMock())
        backend = create_backend(_ref(kind=BackendKind.AWS, server="eu-west-1"))
        assert isinstance(backend, AWSSecretsManagerBackend)


class TestBackendPool:
    @pytest.mark.asyncio
    async def test_register_uses_limit(self):
        pool = BackendPool(default_concurrency=3, factory=lambda ref: _fake_client())
        handle = await pool.register(_ref())
        assert "default/vault-main" in pool
        assert handle.limit == 3

        limited = await pool.register(_ref(name="other", concurrency_limit=1))
        assert limited.limit == 1

    @pytest.mark.asyncio
    async def test_reregister_same_connection_keeps_client(self):
        factory = MagicMock(side_effect=lambda ref: _fake_client())
        pool = BackendPool(factory=factory)
        first = await pool.register(_ref())
        first.ref.health = BackendHealth.HEALTHY

        new_ref = _ref()
        second = await pool.register(new_ref)

        assert second is first
        assert second.ref is new_ref
        assert new_ref.health == BackendHealth.HEALTHY
        assert factory.call_count == 1

    @pytest.mark.asyncio
    async def test_reconfigure_replaces_client(self):
        pool = BackendPool(factory=lambda ref: _fake_client())
        first = await pool.register(_ref())
        second = await pool.register(_ref(server="http://vault2.test:8200"))

        assert second.client is not first.client
        first.client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_remove_closes(self):
        metrics = SyncMetrics()
        pool = BackendPool(factory=lambda ref: _fake_client(), metrics=metrics)
        handle = await pool.register(_ref())

        assert await pool.remove("default/vault-main") is True
        assert await pool.remove("default/vault-main") is False
        handle.client.close.assert_awaited_once()
        assert metrics.snapshot()["backends"] == {}

    @pytest.mark.asyncio
    async def test_check_health_transitions(self, caplog):
        metrics = SyncMetrics()
        client = _fake_client()
        pool = BackendPool(factory=lambda ref: client, metrics=metrics)
        ref = _ref()
        await pool.register(ref)

        assert await pool.check_health() == {"default/vault-main": BackendHealth.HEALTHY}
        assert ref.health == BackendHealth.HEALTHY

        client.health_check.side_effect = RuntimeError("boom")
        with caplog.at_level("WARNING"):
            results = await pool.check_health()

        assert results["default/vault-main"] == BackendHealth.UNREACHABLE
        assert metrics.snapshot()["backends"]["default/vault-main"]["health_gauge"] == 0
        events = [getattr(r, "event", None) for r in caplog.records]
        assert "backend_health_changed" in events

    @pytest.mark.asyncio
    async def test_close_all(self):
        pool = BackendPool(factory=lambda ref: _fake_client())
        await pool.register(_ref())
        await pool.register(replace(_ref(), name="b"))
        await pool.close()
        assert len(pool) == 0
