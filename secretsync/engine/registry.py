"""
Secret descriptor registry: the in-memory set of desired secrets.

All mutations go through one asyncio.Lock (single writer). Entries are
updated in place; a pass in flight works from its own snapshot of the descriptor.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import fields
from enum import StrEnum
from typing import TYPE_CHECKING

from secretsync.engine.errors import DescriptorValidationError
from secretsync.engine.models import CreationPolicy, DescriptorStatus, SecretDescriptor

if TYPE_CHECKING:
    from secretsync.engine.telemetry import SyncMetrics
    from secretsync.store.base import SecretStoreAdapter

logger = logging.getLogger(__name__)


class RegistryChange(StrEnum):
    ADDED = "added"
    UPDATED = "updated"  # sync-relevant spec changed, status reset
    RESCHEDULED = "rescheduled"  # only scheduling/cleanup settings changed
    UNCHANGED = "unchanged"


class DescriptorRegistry:
    def __init__(
        self,
        store: SecretStoreAdapter | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self.store = store
        self.metrics = metrics
        self._descriptors: dict[str, SecretDescriptor] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, identity: str) -> bool:
        return identity in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    def get(self, identity: str) -> SecretDescriptor | None:
        return self._descriptors.get(identity)

    def list(self) -> list[SecretDescriptor]:
        """Snapshot of the registered descriptors, sorted by identity."""
        return [self._descriptors[k] for k in sorted(self._descriptors)]

    def identities(self) -> set[str]:
        return set(self._descriptors)

    async def add(self, descriptor: SecretDescriptor) -> None:
        async with self._lock:
            if descriptor.identity in self._descriptors:
                raise DescriptorValidationError(f"{descriptor.identity} is already registered")
            self._descriptors[descriptor.identity] = descriptor
        logger.info("Registered %s", descriptor.identity)

    async def update(self, descriptor: SecretDescriptor) -> RegistryChange:
        """Replace an existing descriptor's spec in place.

        Status is reset to Pending only when the sync-relevant spec changed.
        A renamed target takes the old destination object with it, under the
        same rules as removal.
        """
        async with self._lock:
            return await self._update_locked(descriptor)

    async def upsert(self, descriptor: SecretDescriptor) -> RegistryChange:
        async with self._lock:
            if descriptor.identity not in self._descriptors:
                self._descriptors[descriptor.identity] = descriptor
                logger.info("Registered %s", descriptor.identity)
                return RegistryChange.ADDED
            return await self._update_locked(descriptor)

    async def _update_locked(self, descriptor: SecretDescriptor) -> RegistryChange:
        existing = self._descriptors.get(descriptor.identity)
        if existing is None:
            raise KeyError(descriptor.identity)

        previous = existing.snapshot()
        spec_changed = previous.spec_fingerprint() != descriptor.spec_fingerprint()
        schedule_changed = (
            previous.refresh_interval != descriptor.refresh_interval
            or previous.delete_on_removal != descriptor.delete_on_removal
        )
        for f in fields(SecretDescriptor):
            if f.name != "status":
                setattr(existing, f.name, getattr(descriptor, f.name))

        if previous.target_name != existing.target_name and previous.delete_on_removal:
            await self._cleanup(previous)

        if spec_changed:
            existing.status = DescriptorStatus()
            logger.info("Updated %s, status reset to Pending", descriptor.identity)
            return RegistryChange.UPDATED
        if schedule_changed:
            logger.info("Updated %s schedule", descriptor.identity)
            return RegistryChange.RESCHEDULED
        return RegistryChange.UNCHANGED

    async def remove(self, identity: str, cleanup: bool = True) -> SecretDescriptor | None:
        """Drop a descriptor.

        With ``cleanup``, a destination object created under the Owner policy
        and still marked as owned by this descriptor is deleted. Anything
        else is left in place.
        """
        async with self._lock:
            descriptor = self._descriptors.pop(identity, None)
            if descriptor is None:
                return None
            if self.metrics:
                self.metrics.forget_descriptor(identity)
            if cleanup and descriptor.delete_on_removal:
                await self._cleanup(descriptor)
        logger.info("Unregistered %s", identity)
        return descriptor

    async def _cleanup(self, descriptor: SecretDescriptor) -> None:
        if self.store is None or descriptor.creation_policy != CreationPolicy.OWNER:
            return
        try:
            handle = await self.store.get(descriptor.namespace, descriptor.target_name)
            if handle is None or handle.owner != descriptor.identity:
                return
            await self.store.delete(descriptor.namespace, descriptor.target_name)
            logger.info(
                "Deleted %s/%s owned by %s",
                descriptor.namespace,
                descriptor.target_name,
                descriptor.identity,
            )
        except Exception as e:
            logger.warning("Cleanup of %s failed, object left in place: %s", descriptor.identity, e)
