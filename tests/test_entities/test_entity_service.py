"""Tests for EntityService optimistic concurrency."""

import asyncio
from datetime import datetime, timezone

import pytest

from timeweave.exceptions import InvalidInputError, NotFoundError, OptimisticLockError

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
T1 = datetime(2024, 3, 1, tzinfo=timezone.utc)
T2 = datetime(2024, 6, 1, tzinfo=timezone.utc)


class TestEntityService:
    """Tests for entity create, update and delete."""

    @pytest.fixture
    def entities(self, engine):
        return engine.entities

    @pytest.mark.asyncio
    async def test_create_snapshots_first_version(self, entities, engine, root):
        """Test creation writes the record and version 1."""
        record = await entities.create(
            "settlement", root.scope_id, {"name": "Sandpoint"}, root.id, "u1",
            entity_id="s1", world_time=T0,
        )

        assert record.version == 1
        version = await engine.versions.resolve_version("settlement", "s1", root.id, T0)
        assert version.comment == "Created"
        assert engine.versions.decompress_version(version) == {"name": "Sandpoint"}

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, entities, root):
        """Test entity ids are unique per type."""
        await entities.create("settlement", root.scope_id, {}, root.id, "u1", entity_id="s1", world_time=T0)
        with pytest.raises(InvalidInputError, match="already exists"):
            await entities.create("settlement", root.scope_id, {}, root.id, "u1", entity_id="s1", world_time=T0)

    @pytest.mark.asyncio
    async def test_branch_must_share_scope(self, engine, entities, root):
        """Test the version branch belongs to the entity's scope."""
        other = await engine.branches.create("campaign-2", "Main", "u1")
        with pytest.raises(InvalidInputError, match="does not belong"):
            await entities.create("settlement", root.scope_id, {}, other.id, "u1")

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, entities, engine, root, audit, cache):
        """Test a matching expected version applies the change."""
        await entities.create("settlement", root.scope_id, {"name": "A", "level": 1}, root.id, "u1", entity_id="s1", world_time=T0)

        updated = await entities.update("settlement", "s1", {"level": 2}, 1, root.id, "u1", world_time=T1)

        assert updated.version == 2
        assert updated.fields == {"name": "A", "level": 2}
        version = await engine.versions.resolve_version("settlement", "s1", root.id, T1)
        assert version.comment == "Updated level"
        assert [e.action for e in audit.for_entity("settlement", "s1")] == ["CREATE", "UPDATE"]
        assert ("settlement", "s1", root.id) in cache.calls

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, entities, engine, root):
        """Test a stale expected version writes nothing."""
        await entities.create("settlement", root.scope_id, {"level": 1}, root.id, "u1", entity_id="s1", world_time=T0)
        await entities.update("settlement", "s1", {"level": 2}, 1, root.id, "u1", world_time=T1)
        before = len(engine.store.find_versions())

        with pytest.raises(OptimisticLockError) as exc_info:
            await entities.update("settlement", "s1", {"level": 3}, 1, root.id, "u2", world_time=T2)

        assert exc_info.value.retryable
        assert exc_info.value.actual_version == 2
        assert len(engine.store.find_versions()) == before
        assert (await entities.get("settlement", "s1")).fields == {"level": 2}

    @pytest.mark.asyncio
    async def test_concurrent_updates_one_wins(self, entities, root):
        """Test two writers with the same expected version."""
        await entities.create("settlement", root.scope_id, {"level": 1}, root.id, "u1", entity_id="s1", world_time=T0)

        results = await asyncio.gather(
            entities.update("settlement", "s1", {"level": 2}, 1, root.id, "u1", world_time=T1),
            entities.update("settlement", "s1", {"level": 3}, 1, root.id, "u2", world_time=T1),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, OptimisticLockError)]
        assert len(failures) == 1
        assert (await entities.get("settlement", "s1")).version == 2

    @pytest.mark.asyncio
    async def test_delete(self, entities, engine, root):
        """Test soft deletion ends the branch version."""
        await entities.create("settlement", root.scope_id, {"level": 1}, root.id, "u1", entity_id="s1", world_time=T0)

        deleted = await entities.delete("settlement", "s1", 1, root.id, "u1", world_time=T1)

        assert deleted.deleted_at is not None
        with pytest.raises(NotFoundError):
            await entities.get("settlement", "s1")
        assert await engine.versions.resolve_version("settlement", "s1", root.id, T2) is None
        assert await entities.list(root.scope_id) == []

    @pytest.mark.asyncio
    async def test_delete_with_stale_version(self, entities, root):
        """Test deletion is version-checked too."""
        await entities.create("settlement", root.scope_id, {}, root.id, "u1", entity_id="s1", world_time=T0)
        with pytest.raises(OptimisticLockError):
            await entities.delete("settlement", "s1", 7, root.id, "u1", world_time=T1)
