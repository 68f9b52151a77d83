"""
AES-256-GCM encryption for stored secret payloads.

Master key is a 32-byte random key stored at $SECRETSYNC_WORKSPACE/.store-key
(chmod 600). Each payload gets a unique 12-byte nonce prepended to the
ciphertext. The object identity is bound as associated data so a ciphertext
cannot be replayed under another name.
"""

from __future__ import annotations

import secrets
import stat
from pathlib import Path

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_cached_key: bytes | None = None

NONCE_BYTES = 12
TAG_BYTES = 16


def init_master_key(key_path: Path | str) -> Path:
    """Generate a new master key file. Returns the path. Idempotent, skips if exists."""
    key_path = Path(key_path)
    if key_path.exists():
        return key_path
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_bytes(secrets.token_bytes(32))
    key_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 600
    return key_path


def get_master_key(key_path: Path | str | None = None) -> bytes:
    """Load the master key from disk (cached after first read)."""
    global _cached_key
    if _cached_key is not None:
        return _cached_key

    if key_path is None:
        from secretsync.config import get_config

        key_path = get_config().master_key_path
    key_path = Path(key_path)
    if not key_path.exists():
        raise FileNotFoundError(
            f"Store master key not found at {key_path}. Run 'secretsync migrate' to generate one."
        )
    key = key_path.read_bytes()
    if len(key) != 32:
        raise ValueError(f"Store master key must be 32 bytes, got {len(key)}")
    _cached_key = key
    return _cached_key


def reset_key_cache() -> None:
    """Clear the cached master key (for testing)."""
    global _cached_key
    _cached_key = None


def encrypt(plaintext: bytes, master_key: bytes, associated_data: bytes | None = None) -> bytes:
    """Encrypt with AES-256-GCM. Returns nonce (12 bytes) + ciphertext + tag (16 bytes)."""
    nonce = secrets.token_bytes(NONCE_BYTES)
    return nonce + AESGCM(master_key).encrypt(nonce, plaintext, associated_data)


def decrypt(data: bytes, master_key: bytes, associated_data: bytes | None = None) -> bytes:
    """Decrypt nonce + ciphertext + tag back to plaintext."""
    if len(data) < NONCE_BYTES + TAG_BYTES:
        raise ValueError("Encrypted data too short")
    return AESGCM(master_key).decrypt(data[:NONCE_BYTES], data[NONCE_BYTES:], associated_data)
