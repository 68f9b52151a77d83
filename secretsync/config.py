"""
Centralized configuration for secretsync.

All configuration is loaded from environment variables with sensible defaults.

Usage:
    from secretsync.config import get_config
    cfg = get_config()
    print(cfg.db.name)       # "secretsync"
    print(cfg.workspace)     # "/home/user/.secretsync" or $SECRETSYNC_WORKSPACE
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL connection parameters (destination store)."""

    host: str = ""  # empty = Unix socket (peer auth); set to 127.0.0.1 for TCP
    port: int = 5432
    name: str = "secretsync"
    user: str = "secretsync"
    password: str = ""

    @property
    def dsn(self) -> str:
        """Return a psycopg2-compatible DSN string."""
        parts = [f"dbname={self.name}"]
        if self.host:
            parts.append(f"host={self.host}")
        parts.append(f"port={self.port}")
        if self.user:
            parts.append(f"user={self.user}")
        if self.password:
            parts.append(f"password={self.password}")
        return " ".join(parts)

    @property
    def dict(self) -> dict[str, str | int]:
        """Return a psycopg2.connect() kwargs dict."""
        d: dict[str, str | int] = {
            "dbname": self.name,
            "port": self.port,
        }
        if self.host:
            d["host"] = self.host
        if self.user:
            d["user"] = self.user
        if self.password:
            d["password"] = self.password
        return d


@dataclass(frozen=True)
class RedisConfig:
    """Redis connection parameters (telemetry stream)."""

    host: str = "127.0.0.1"
    port: int = 6379
    db: int = 0
    password: str = ""
    enabled: bool = False

    @property
    def url(self) -> str:
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"


@dataclass(frozen=True)
class Config:
    """Top-level secretsync configuration."""

    workspace: Path = field(default_factory=lambda: Path.home() / ".secretsync")
    log_level: str = "INFO"

    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)

    @property
    def master_key_path(self) -> Path:
        return self.workspace / ".store-key"


# Singleton
_config: Config | None = None


def get_config() -> Config:
    """Get or create the singleton config from environment variables."""
    global _config
    if _config is not None:
        return _config
    _config = _load_from_env()
    return _config


def _load_from_env() -> Config:
    """Load configuration from environment variables."""
    workspace = Path(os.environ.get("SECRETSYNC_WORKSPACE", Path.home() / ".secretsync"))

    db = DatabaseConfig(
        host=os.environ.get("SECRETSYNC_DB_HOST", ""),
        port=int(os.environ.get("SECRETSYNC_DB_PORT", "5432")),
        name=os.environ.get("SECRETSYNC_DB_NAME", "secretsync"),
        user=os.environ.get("SECRETSYNC_DB_USER", os.environ.get("USER", "secretsync")),
        password=os.environ.get("SECRETSYNC_DB_PASSWORD", ""),
    )

    redis_cfg = RedisConfig(
        host=os.environ.get("SECRETSYNC_REDIS_HOST", "127.0.0.1"),
        port=int(os.environ.get("SECRETSYNC_REDIS_PORT", "6379")),
        db=int(os.environ.get("SECRETSYNC_REDIS_DB", "0")),
        password=os.environ.get("SECRETSYNC_REDIS_PASSWORD", ""),
        enabled=os.environ.get("SECRETSYNC_REDIS_ENABLED", "").lower() in ("1", "true", "yes"),
    )

    return Config(
        workspace=workspace,
        log_level=os.environ.get("SECRETSYNC_LOG_LEVEL", "INFO").upper(),
        db=db,
        redis=redis_cfg,
    )


def reset_config() -> None:
    """Reset the singleton config (for testing)."""
    global _config
    _config = None
