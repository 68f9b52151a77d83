"""Tests for store payload encryption."""

import secrets
import stat
from pathlib import Path

import pytest
from cryptography.exceptions import InvalidTag

from secretsync.store.crypto import (
    decrypt,
    encrypt,
    get_master_key,
    init_master_key,
    reset_key_cache,
)


@pytest.fixture(autouse=True)
def _clear_cache():
    """Clear the cached master key before each test."""
    reset_key_cache()
    yield
    reset_key_cache()


class TestEncryptDecrypt:
    def test_roundtrip(self):
        key = secrets.token_bytes(32)
        assert decrypt(encrypt(b"s3cr3t", key), key) == b"s3cr3t"

    def test_different_nonces(self):
        key = secrets.token_bytes(32)
        assert encrypt(b"same", key) != encrypt(b"same", key)

    def test_wrong_key_fails(self):
        encrypted = encrypt(b"secret", secrets.token_bytes(32))
        with pytest.raises(InvalidTag):
            decrypt(encrypted, secrets.token_bytes(32))

    def test_associated_data_bound(self):
        key = secrets.token_bytes(32)
        encrypted = encrypt(b"secret", key, b"default/db-creds")
        assert decrypt(encrypted, key, b"default/db-creds") == b"secret"
        with pytest.raises(InvalidTag):
            decrypt(encrypted, key, b"default/other")

    def test_truncated_data_fails(self):
        with pytest.raises(ValueError, match="too short"):
            decrypt(b"short", secrets.token_bytes(32))


class TestMasterKey:
    def test_init_creates_key(self, tmp_path: Path):
        key_path = init_master_key(tmp_path / "ws" / ".store-key")
        assert len(key_path.read_bytes()) == 32
        mode = key_path.stat().st_mode
        assert mode & stat.S_IRGRP == 0
        assert mode & stat.S_IROTH == 0

    def test_init_idempotent(self, tmp_path: Path):
        key_path = tmp_path / ".store-key"
        init_master_key(key_path)
        first = key_path.read_bytes()
        init_master_key(key_path)
        assert key_path.read_bytes() == first

    def test_get_master_key_missing(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError, match="secretsync migrate"):
            get_master_key(tmp_path / ".store-key")

    def test_get_master_key_wrong_length(self, tmp_path: Path):
        (tmp_path / ".store-key").write_bytes(b"tooshort")
        with pytest.raises(ValueError, match="32 bytes"):
            get_master_key(tmp_path / ".store-key")

    def test_caching(self, tmp_path: Path):
        key_path = init_master_key(tmp_path / ".store-key")
        assert get_master_key(key_path) is get_master_key(key_path)

    def test_default_path_from_workspace(self, tmp_path: Path, monkeypatch):
        from secretsync.config import reset_config

        monkeypatch.setenv("SECRETSYNC_WORKSPACE", str(tmp_path))
        reset_config()
        init_master_key(tmp_path / ".store-key")
        assert len(get_master_key()) == 32
        reset_config()
