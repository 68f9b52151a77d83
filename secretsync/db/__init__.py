"""Database connection management for secretsync."""

from secretsync.db.connection import close_pool, get_connection, get_pool

__all__ = ["close_pool", "get_connection", "get_pool"]
