"""Abstract base class for destination secret stores."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from secretsync.engine.models import RenderedPayload, content_hash


@dataclass
class StoreObjectHandle:
    """Destination-side view of one stored secret."""

    namespace: str
    name: str
    data: dict[str, bytes] = field(default_factory=dict)
    secret_type: str = "Opaque"
    owner: str | None = None
    resource_version: str = ""
    content_hash: str = ""

    def __post_init__(self) -> None:
        if not self.content_hash:
            self.content_hash = content_hash(self.data)

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}"


class SecretStoreAdapter(ABC):
    """
    Key-value secret store keyed by (namespace, name).

    Each object carries an owner marker and an opaque resource version used
    as the optimistic-concurrency token for updates.
    """

    @abstractmethod
    async def get(self, namespace: str, name: str) -> StoreObjectHandle | None:
        """Return the stored object, or None if it doesn't exist."""

    @abstractmethod
    async def create(
        self, namespace: str, name: str, payload: RenderedPayload
    ) -> StoreObjectHandle:
        """
        Create a new object owned by ``payload.owner``.

        Raises:
            ConcurrencyConflictError: If the object already exists
        """

    @abstractmethod
    async def update(
        self,
        namespace: str,
        name: str,
        payload: RenderedPayload,
        resource_version: str,
    ) -> StoreObjectHandle:
        """
        Replace the object's data if ``resource_version`` is still current.

        The stored owner marker is set to ``payload.owner``.

        Raises:
            ConcurrencyConflictError: If the resource version is stale
            StoreObjectNotFoundError: If the object is gone
        """

    @abstractmethod
    async def delete(self, namespace: str, name: str) -> bool:
        """Delete an object. Returns True if it existed."""

    async def close(self) -> None:  # noqa: B027
        """Release resources. Default: nothing to release."""
