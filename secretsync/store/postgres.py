"""
PostgreSQL secret store: CRUD on the synced_secrets table.

Uses psycopg2 directly through the pooled connection factory. Payloads are
stored AES-256-GCM encrypted; the ``resource_version`` column is the
optimistic-concurrency token.
"""

from __future__ import annotations

import asyncio
import base64
import functools
import json
import logging
from collections.abc import Callable
from contextlib import AbstractContextManager
from typing import Any

from secretsync.engine.errors import ConcurrencyConflictError, StoreObjectNotFoundError
from secretsync.engine.models import RenderedPayload
from secretsync.store.base import SecretStoreAdapter, StoreObjectHandle
from secretsync.store.crypto import decrypt, encrypt, get_master_key

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS synced_secrets (
    namespace         TEXT NOT NULL,
    name              TEXT NOT NULL,
    secret_type       TEXT NOT NULL DEFAULT 'Opaque',
    owner             TEXT,
    encrypted_data    BYTEA NOT NULL,
    content_hash      TEXT NOT NULL,
    resource_version  BIGINT NOT NULL DEFAULT 1,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (namespace, name)
)
"""

ConnectionFactory = Callable[[], AbstractContextManager[Any]]


def _default_connection() -> AbstractContextManager[Any]:
    from secretsync.db.connection import get_connection

    return get_connection()


class PostgresStore(SecretStoreAdapter):
    def __init__(
        self,
        *,
        connection_factory: ConnectionFactory | None = None,
        master_key: bytes | None = None,
    ) -> None:
        self._connect = connection_factory or _default_connection
        self._master_key = master_key

    @property
    def master_key(self) -> bytes:
        if self._master_key is None:
            self._master_key = get_master_key()
        return self._master_key

    # ── Encoding ────────────────────────────────────────────────────

    def _seal(self, namespace: str, name: str, data: dict[str, bytearray]) -> bytes:
        doc = json.dumps(
            {k: base64.b64encode(bytes(v)).decode("ascii") for k, v in sorted(data.items())}
        ).encode("utf-8")
        return encrypt(doc, self.master_key, f"{namespace}/{name}".encode())

    def _open(self, namespace: str, name: str, blob: bytes) -> dict[str, bytes]:
        doc = json.loads(decrypt(blob, self.master_key, f"{namespace}/{name}".encode()))
        return {k: base64.b64decode(v) for k, v in doc.items()}

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    # ── Sync implementations (executor threads) ─────────────────────

    def ensure_schema(self) -> None:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        logger.info("synced_secrets table ready")

    def _get(self, namespace: str, name: str) -> StoreObjectHandle | None:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """SELECT secret_type, owner, encrypted_data, resource_version
                   FROM synced_secrets WHERE namespace = %s AND name = %s""",
                (namespace, name),
            )
            row = cur.fetchone()
        if not row:
            return None
        return StoreObjectHandle(
            namespace=namespace,
            name=name,
            data=self._open(namespace, name, bytes(row[2])),
            secret_type=row[0],
            owner=row[1],
            resource_version=str(row[3]),
        )

    def _create(self, namespace: str, name: str, payload: RenderedPayload) -> StoreObjectHandle:
        sealed = self._seal(namespace, name, payload.data)
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """INSERT INTO synced_secrets
                       (namespace, name, secret_type, owner, encrypted_data, content_hash)
                   VALUES (%s, %s, %s, %s, %s, %s)
                   ON CONFLICT (namespace, name) DO NOTHING
                   RETURNING resource_version""",
                (namespace, name, payload.secret_type, payload.owner, sealed, payload.content_hash),
            )
            row = cur.fetchone()
        if not row:
            raise ConcurrencyConflictError(f"Secret {namespace}/{name} already exists")
        return StoreObjectHandle(
            namespace=namespace,
            name=name,
            data={k: bytes(v) for k, v in payload.data.items()},
            secret_type=payload.secret_type,
            owner=payload.owner,
            resource_version=str(row[0]),
        )

    def _update(
        self, namespace: str, name: str, payload: RenderedPayload, resource_version: str
    ) -> StoreObjectHandle:
        sealed = self._seal(namespace, name, payload.data)
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """UPDATE synced_secrets
                   SET secret_type = %s, owner = %s, encrypted_data = %s, content_hash = %s,
                       resource_version = resource_version + 1, updated_at = NOW()
                   WHERE namespace = %s AND name = %s AND resource_version = %s
                   RETURNING resource_version""",
                (
                    payload.secret_type,
                    payload.owner,
                    sealed,
                    payload.content_hash,
                    namespace,
                    name,
                    int(resource_version),
                ),
            )
            row = cur.fetchone()
            if not row:
                cur.execute(
                    "SELECT 1 FROM synced_secrets WHERE namespace = %s AND name = %s",
                    (namespace, name),
                )
                exists = cur.fetchone() is not None
        if not row:
            if exists:
                raise ConcurrencyConflictError(
                    f"Secret {namespace}/{name} changed since version {resource_version}"
                )
            raise StoreObjectNotFoundError(f"Secret {namespace}/{name} no longer exists")
        return StoreObjectHandle(
            namespace=namespace,
            name=name,
            data={k: bytes(v) for k, v in payload.data.items()},
            secret_type=payload.secret_type,
            owner=payload.owner,
            resource_version=str(row[0]),
        )

    def _delete(self, namespace: str, name: str) -> bool:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                "DELETE FROM synced_secrets WHERE namespace = %s AND name = %s",
                (namespace, name),
            )
            return bool(cur.rowcount > 0)

    # ── SecretStoreAdapter ──────────────────────────────────────────

    async def get(self, namespace: str, name: str) -> StoreObjectHandle | None:
        result: StoreObjectHandle | None = await self._run(self._get, namespace, name)
        return result

    async def create(
        self, namespace: str, name: str, payload: RenderedPayload
    ) -> StoreObjectHandle:
        result: StoreObjectHandle = await self._run(self._create, namespace, name, payload)
        return result

    async def update(
        self,
        namespace: str,
        name: str,
        payload: RenderedPayload,
        resource_version: str,
    ) -> StoreObjectHandle:
        result: StoreObjectHandle = await self._run(
            self._update, namespace, name, payload, resource_version
        )
        return result

    async def delete(self, namespace: str, name: str) -> bool:
        result: bool = await self._run(self._delete, namespace, name)
        return result

    async def close(self) -> None:
        from secretsync.db.connection import close_pool

        close_pool()
