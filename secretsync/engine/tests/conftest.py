"""
Test fixtures for the sync engine.

- In-memory fake backend with call counting and failure injection
- MemoryStore destination
- A registered BackendPool wired to the fake
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from secretsync.backends.base import RemoteDocument, SecretBackend
from secretsync.backends.factory import BackendPool
from secretsync.engine import dedup
from secretsync.engine.config import EngineConfig
from secretsync.engine.errors import SecretNotFoundError
from secretsync.engine.models import (
    BackendHealth,
    BackendKind,
    BackendRef,
    CreationPolicy,
    FieldMapping,
    SecretDescriptor,
)
from secretsync.engine.reconciler import Backoff, ReconciliationEngine
from secretsync.engine.telemetry import SyncMetrics
from secretsync.store.memory import MemoryStore

# test_prefix is inherited from the root conftest.py


class FakeBackend(SecretBackend):
    """Serves documents from a dict. ``failures`` maps keys to exceptions."""

    def __init__(self, ref: BackendRef, documents: dict[str, Any] | None = None) -> None:
        super().__init__(ref)
        self.documents: dict[str, Any] = dict(documents or {})
        self.failures: dict[str, Exception] = {}
        self.fetch_calls: list[tuple[str, str | None]] = []
        self.served: list[RemoteDocument] = []
        self.gate: asyncio.Event | None = None
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self.health = BackendHealth.HEALTHY
        self.closed = False

    async def fetch_document(self, remote_key: str, version: str | None = None) -> RemoteDocument:
        self.fetch_calls.append((remote_key, version))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if remote_key in self.failures:
                raise self.failures[remote_key]
            if remote_key not in self.documents:
                raise SecretNotFoundError(f"Secret '{remote_key}' not found")
            value = self.documents[remote_key]
            if isinstance(value, dict):
                doc = RemoteDocument(key=remote_key, raw=b"", fields=dict(value), revision="1")
            else:
                doc = RemoteDocument(key=remote_key, raw=bytes(value), revision="1")
            self.served.append(doc)
            return doc
        finally:
            self.active -= 1

    async def list_keys(self, prefix: str) -> list[str]:
        prefix = prefix.strip("/")
        return sorted(k for k in self.documents if k.startswith(prefix + "/"))

    async def health_check(self) -> BackendHealth:
        return self.health

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _clear_dedup():
    dedup.clear()
    yield
    dedup.clear()


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    """Engine config pointing to a temp manifest directory."""
    manifest_dir = tmp_path / "manifests"
    manifest_dir.mkdir(parents=True)
    return EngineConfig(
        port=18999,
        manifest_dir=manifest_dir,
        max_concurrent_passes=2,
        min_refresh_interval=1.0,
        backoff_base=5.0,
        backoff_cap=300.0,
        call_timeout=2.0,
        pass_timeout=5.0,
        health_check_interval=1.0,
        reload_interval=1.0,
    )


@pytest.fixture
def backend_ref() -> BackendRef:
    return BackendRef(
        name="vault-main",
        kind=BackendKind.VAULT,
        namespace="default",
        server="http://vault.test:8200",
        path="secret",
        auth={"token": "root"},
    )


@pytest.fixture
def fake_backend(backend_ref: BackendRef) -> FakeBackend:
    return FakeBackend(
        backend_ref,
        {
            "database/postgres": {"username": "admin", "password": "s3cr3t"},
            "database/replica": {"host": "db2", "port": 5432},
        },
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def metrics() -> SyncMetrics:
    return SyncMetrics()


@pytest_asyncio.fixture
async def pool(backend_ref: BackendRef, fake_backend: FakeBackend, metrics: SyncMetrics):
    p = BackendPool(default_concurrency=4, factory=lambda ref: fake_backend, metrics=metrics)
    await p.register(backend_ref)
    return p


@pytest_asyncio.fixture
async def engine(store: MemoryStore, pool: BackendPool, metrics: SyncMetrics):
    return ReconciliationEngine(
        store,
        pool,
        call_timeout=2.0,
        pass_timeout=5.0,
        backoff=Backoff(base=5.0, cap=300.0),
        metrics=metrics,
    )


@pytest.fixture
def postgres_descriptor(backend_ref: BackendRef) -> SecretDescriptor:
    """username/password from database/postgres, Owner policy, 15s refresh."""
    return SecretDescriptor(
        namespace="default",
        name="db-creds",
        backend=backend_ref,
        mappings=[
            FieldMapping("username", "database/postgres", "username"),
            FieldMapping("password", "database/postgres", "password"),
        ],
        refresh_interval=15.0,
        creation_policy=CreationPolicy.OWNER,
    )


VAULT_STORE_MANIFEST = """kind: SecretStore
metadata:
  name: vault-main
  namespace: default
spec:
  provider: vault
  server: http://vault.test:8200
  path: secret
  version: v2
  auth:
    method: token
    tokenEnv: VAULT_TOKEN
"""

DB_CREDS_MANIFEST = """kind: ExternalSecret
metadata:
  name: db-creds
  namespace: default
spec:
  secretStoreRef:
    name: vault-main
    kind: SecretStore
  refreshInterval: 15s
  target:
    name: db-creds
    creationPolicy: Owner
  data:
    - secretKey: username
      remoteRef:
        key: database/postgres
        property: username
    - secretKey: password
      remoteRef:
        key: database/postgres
        property: password
"""


@pytest.fixture
def sample_manifest(engine_config: EngineConfig) -> Path:
    """Write a store + descriptor manifest and return the directory."""
    (engine_config.manifest_dir / "vault.yaml").write_text(VAULT_STORE_MANIFEST)
    (engine_config.manifest_dir / "db-creds.yaml").write_text(DB_CREDS_MANIFEST)
    return engine_config.manifest_dir
