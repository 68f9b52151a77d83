"""
Root-level shared test fixtures.

Inherited by the engine, backend and store suites and by tests/.
"""

from __future__ import annotations

import uuid

import pytest


@pytest.fixture
def test_prefix():
    """Unique prefix for test isolation."""
    return f"test_{uuid.uuid4().hex[:8]}"


@pytest.fixture
def clean_env(monkeypatch):
    """Remove common env vars that leak between tests."""
    for key in [
        "SECRETSYNC_WORKSPACE",
        "SECRETSYNC_MANIFEST_DIR",
        "SECRETSYNC_STORE",
        "SECRETSYNC_PORT",
        "SECRETSYNC_DB_HOST",
        "SECRETSYNC_DB_PORT",
        "SECRETSYNC_DB_NAME",
        "SECRETSYNC_DB_USER",
        "SECRETSYNC_DB_PASSWORD",
        "SECRETSYNC_REDIS_ENABLED",
    ]:
        monkeypatch.delenv(key, raising=False)
