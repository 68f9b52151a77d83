"""Abstract base class for secret backends."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from secretsync.engine.errors import SecretNotFoundError
from secretsync.engine.models import BackendHealth, BackendRef, ResolvedSecretValue


def to_bytes(value: Any) -> bytes:
    """Remote scalar/structure → bytes. Strings are UTF-8, structures compact JSON."""
    if isinstance(value, bytes | bytearray):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")


@dataclass
class RemoteDocument:
    """One remote secret as returned by a backend.

    ``fields`` is set when the secret is a JSON object (Vault KV data always
    is; a cloud secret string only when it parses as one).
    """

    key: str
    raw: bytes
    fields: dict[str, Any] | None = None
    revision: str | None = None

    def release(self) -> None:
        """Drop the secret material once the pass has copied what it needs."""
        if self.fields is not None:
            self.fields.clear()
        self.raw = b""

    def _lookup(self, remote_property: str) -> Any:
        if self.fields is None:
            raise SecretNotFoundError(
                f"Secret '{self.key}' is not a key/value document, cannot read property "
                f"'{remote_property}'"
            )
        if remote_property in self.fields:
            return self.fields[remote_property]
        node: Any = self.fields
        for part in remote_property.split("."):
            if not isinstance(node, dict) or part not in node:
                raise SecretNotFoundError(
                    f"Property '{remote_property}' not found in secret '{self.key}'"
                )
            node = node[part]
        return node

    def resolve(self, remote_property: str | None = None) -> ResolvedSecretValue:
        if remote_property:
            value = to_bytes(self._lookup(remote_property))
        else:
            value = self.raw
        return ResolvedSecretValue(
            remote_key=self.key,
            remote_property=remote_property,
            value=bytearray(value),
            revision=self.revision,
        )

    def extract_all(self) -> dict[str, ResolvedSecretValue]:
        """Every top-level property as its own resolved value."""
        if self.fields is None:
            raise SecretNotFoundError(
                f"Secret '{self.key}' is not a key/value document, cannot extract properties"
            )
        return {prop: self.resolve(prop) for prop in self.fields}


class SecretBackend(ABC):
    """
    Abstract base class that all secret backends must implement.

    Ensures a consistent interface across:
    - Vault-like KV engines
    - Cloud secrets managers

    Implementations raise SecretNotFoundError, BackendAuthError or
    BackendUnreachableError; never anything backend-specific.
    """

    def __init__(self, ref: BackendRef) -> None:
        self.ref = ref

    @abstractmethod
    async def fetch_document(self, remote_key: str, version: str | None = None) -> RemoteDocument:
        """
        Retrieve one remote secret.

        Args:
            remote_key: Backend-relative key/path
            version: Backend-specific version selector, None for latest

        Raises:
            SecretNotFoundError: If the key doesn't exist
        """

    @abstractmethod
    async def list_keys(self, prefix: str) -> list[str]:
        """List remote keys under a prefix (recursive)."""

    @abstractmethod
    async def health_check(self) -> BackendHealth:
        """Probe the backend. Never raises."""

    async def fetch(
        self,
        remote_key: str,
        remote_property: str | None = None,
        version: str | None = None,
    ) -> ResolvedSecretValue:
        doc = await self.fetch_document(remote_key, version)
        return doc.resolve(remote_property)

    async def close(self) -> None:  # noqa: B027
        """Release connections. Default: nothing to release."""
