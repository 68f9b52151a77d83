"""
Pooled PostgreSQL connections for the synced_secrets store.

PostgresStore runs every operation in an executor thread and takes one
connection per operation through ``get_connection``. Each block is one
transaction: committed on a clean exit, rolled back otherwise.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

import psycopg2
import psycopg2.extensions
import psycopg2.pool

from secretsync.config import get_config

logger = logging.getLogger(__name__)

# Store operations never nest, so this bounds concurrent store calls
POOL_MIN = 1
POOL_MAX = 8

_pool: psycopg2.pool.ThreadedConnectionPool | None = None
_lock = threading.Lock()


def _open_pool() -> psycopg2.pool.ThreadedConnectionPool:
    cfg = get_config().db
    where = f"{cfg.host or 'local socket'}:{cfg.port}/{cfg.name}"
    try:
        pool = psycopg2.pool.ThreadedConnectionPool(POOL_MIN, POOL_MAX, **cfg.dict)
    except psycopg2.OperationalError as e:
        raise ConnectionError(
            f"Secret store database {where} unreachable as role {cfg.user or '(peer)'}: {e}\n"
            f"Check SECRETSYNC_DB_* and that `secretsync migrate` has created synced_secrets."
        ) from e
    logger.info("Secret store pool open on %s (max %d connections)", where, POOL_MAX)
    return pool


def get_pool() -> psycopg2.pool.ThreadedConnectionPool:
    global _pool
    with _lock:
        if _pool is None or _pool.closed:
            _pool = _open_pool()
        return _pool


@contextmanager
def get_connection() -> Iterator[psycopg2.extensions.connection]:
    """One transaction on a pooled connection."""
    pool = get_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def close_pool() -> None:
    global _pool
    with _lock:
        if _pool is not None:
            _pool.closeall()
            _pool = None
