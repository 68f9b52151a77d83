"""Tests for the descriptor registry."""

from __future__ import annotations

from dataclasses import replace

import pytest

from secretsync.engine.errors import DescriptorValidationError
from secretsync.engine.models import CreationPolicy, DescriptorStatus, FieldMapping, SyncStatus
from secretsync.engine.registry import DescriptorRegistry, RegistryChange


@pytest.fixture
def registry(store, metrics):
    return DescriptorRegistry(store, metrics=metrics)


def _copy(descriptor, **changes):
    # Fresh status object, like a descriptor parsed from a reloaded manifest
    return replace(descriptor, status=DescriptorStatus(), **changes)


class TestRegistry:
    @pytest.mark.asyncio
    async def test_add_and_get(self, registry, postgres_descriptor):
        await registry.add(postgres_descriptor)
        assert "default/db-creds" in registry
        assert len(registry) == 1
        assert registry.get("default/db-creds") is postgres_descriptor

    @pytest.mark.asyncio
    async def test_add_duplicate_rejected(self, registry, postgres_descriptor):
        await registry.add(postgres_descriptor)
        with pytest.raises(DescriptorValidationError):
            await registry.add(_copy(postgres_descriptor))

    @pytest.mark.asyncio
    async def test_list_is_sorted_snapshot(self, registry, postgres_descriptor):
        await registry.add(_copy(postgres_descriptor, name="b"))
        await registry.add(_copy(postgres_descriptor, name="a"))
        listed = registry.list()
        assert [d.identity for d in listed] == ["default/a", "default/b"]
        listed.clear()
        assert len(registry) == 2

    @pytest.mark.asyncio
    async def test_upsert_unchanged_keeps_status(self, registry, postgres_descriptor):
        await registry.add(postgres_descriptor)
        postgres_descriptor.status.sync_status = SyncStatus.SYNCED
        postgres_descriptor.status.content_hash = "abc"

        change = await registry.upsert(_copy(postgres_descriptor))

        assert change == RegistryChange.UNCHANGED
        live = registry.get("default/db-creds")
        assert live.status.sync_status == SyncStatus.SYNCED
        assert live.status.content_hash == "abc"

    @pytest.mark.asyncio
    async def test_spec_change_resets_status(self, registry, postgres_descriptor):
        await registry.add(postgres_descriptor)
        postgres_descriptor.status.sync_status = SyncStatus.SYNCED

        changed = _copy(
            postgres_descriptor,
            mappings=[FieldMapping("username", "database/postgres", "username")],
        )
        change = await registry.update(changed)

        assert change == RegistryChange.UPDATED
        live = registry.get("default/db-creds")
        assert live is postgres_descriptor  # updated in place
        assert live.status.sync_status == SyncStatus.PENDING
        assert len(live.mappings) == 1

    @pytest.mark.asyncio
    async def test_policy_change_resets_status(self, registry, postgres_descriptor):
        await registry.add(postgres_descriptor)
        postgres_descriptor.status.sync_status = SyncStatus.SYNCED
        change = await registry.update(
            _copy(postgres_descriptor, creation_policy=CreationPolicy.MERGE)
        )
        assert change == RegistryChange.UPDATED

    @pytest.mark.asyncio
    async def test_interval_change_keeps_status(self, registry, postgres_descriptor):
        await registry.add(postgres_descriptor)
        postgres_descriptor.status.sync_status = SyncStatus.SYNCED
        change = await registry.upsert(_copy(postgres_descriptor, refresh_interval=60.0))
        assert change == RegistryChange.RESCHEDULED
        live = registry.get("default/db-creds")
        assert live.refresh_interval == 60.0
        assert live.status.sync_status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_update_unknown_raises(self, registry, postgres_descriptor):
        with pytest.raises(KeyError):
            await registry.update(postgres_descriptor)


class TestRemoval:
    @pytest.mark.asyncio
    async def test_remove_deletes_owned_object(self, registry, store, postgres_descriptor):
        await registry.add(postgres_descriptor)
        store.put_raw("default", "db-creds", {"u": b"x"}, owner="default/db-creds")

        removed = await registry.remove("default/db-creds")

        assert removed is postgres_descriptor
        assert "default/db-creds" not in registry
        assert await store.get("default", "db-creds") is None

    @pytest.mark.asyncio
    async def test_remove_leaves_foreign_object(self, registry, store, postgres_descriptor):
        await registry.add(postgres_descriptor)
        store.put_raw("default", "db-creds", {"u": b"x"}, owner="default/other")
        await registry.remove("default/db-creds")
        assert await store.get("default", "db-creds") is not None

    @pytest.mark.asyncio
    async def test_remove_merge_policy_leaves_object(self, registry, store, postgres_descriptor):
        postgres_descriptor.creation_policy = CreationPolicy.MERGE
        await registry.add(postgres_descriptor)
        store.put_raw("default", "db-creds", {"u": b"x"}, owner="default/db-creds")
        await registry.remove("default/db-creds")
        assert await store.get("default", "db-creds") is not None

    @pytest.mark.asyncio
    async def test_remove_without_cleanup(self, registry, store, postgres_descriptor):
        await registry.add(postgres_descriptor)
        store.put_raw("default", "db-creds", {"u": b"x"}, owner="default/db-creds")
        await registry.remove("default/db-creds", cleanup=False)
        assert await store.get("default", "db-creds") is not None

    @pytest.mark.asyncio
    async def test_retain_deletion_policy(self, registry, store, postgres_descriptor):
        postgres_descriptor.delete_on_removal = False
        await registry.add(postgres_descriptor)
        store.put_raw("default", "db-creds", {"u": b"x"}, owner="default/db-creds")
        await registry.remove("default/db-creds")
        assert await store.get("default", "db-creds") is not None

    @pytest.mark.asyncio
    async def test_remove_unknown(self, registry):
        assert await registry.remove("default/nope") is None

    @pytest.mark.asyncio
    async def test_remove_forgets_metrics(self, registry, metrics, postgres_descriptor):
        await registry.add(postgres_descriptor)
        metrics.record_pass("default/db-creds", success=True, duration_ms=3)
        await registry.remove("default/db-creds")
        assert "default/db-creds" not in metrics.snapshot()["descriptors"]


class TestRetarget:
    @pytest.mark.asyncio
    async def test_rename_deletes_old_object(self, registry, store, postgres_descriptor):
        await registry.add(postgres_descriptor)
        store.put_raw("default", "db-creds", {"u": b"x"}, owner="default/db-creds")

        change = await registry.update(_copy(postgres_descriptor, target_name="db-creds-v2"))

        assert change == RegistryChange.UPDATED
        assert await store.get("default", "db-creds") is None
        assert registry.get("default/db-creds").target_name == "db-creds-v2"

    @pytest.mark.asyncio
    async def test_rename_leaves_foreign_object(self, registry, store, postgres_descriptor):
        await registry.add(postgres_descriptor)
        store.put_raw("default", "db-creds", {"u": b"x"}, owner="default/other")
        await registry.update(_copy(postgres_descriptor, target_name="db-creds-v2"))
        assert await store.get("default", "db-creds") is not None

    @pytest.mark.asyncio
    async def test_rename_under_merge_leaves_object(self, registry, store, postgres_descriptor):
        postgres_descriptor.creation_policy = CreationPolicy.MERGE
        await registry.add(postgres_descriptor)
        store.put_raw("default", "db-creds", {"u": b"x"}, owner="default/db-creds")
        await registry.update(
            _copy(
                postgres_descriptor,
                target_name="db-creds-v2",
                creation_policy=CreationPolicy.MERGE,
            )
        )
        assert await store.get("default", "db-creds") is not None

    @pytest.mark.asyncio
    async def test_rename_with_retain_leaves_object(self, registry, store, postgres_descriptor):
        postgres_descriptor.delete_on_removal = False
        await registry.add(postgres_descriptor)
        store.put_raw("default", "db-creds", {"u": b"x"}, owner="default/db-creds")
        await registry.update(
            _copy(postgres_descriptor, target_name="db-creds-v2", delete_on_removal=False)
        )
        assert await store.get("default", "db-creds") is not None

    @pytest.mark.asyncio
    async def test_policy_in_effect_before_rename_decides(
        self, registry, store, postgres_descriptor
    ):
        # Owner before, Merge after: the old object was created as owned
        await registry.add(postgres_descriptor)
        store.put_raw("default", "db-creds", {"u": b"x"}, owner="default/db-creds")
        await registry.update(
            _copy(
                postgres_descriptor,
                target_name="db-creds-v2",
                creation_policy=CreationPolicy.MERGE,
            )
        )
        assert await store.get("default", "db-creds") is None
