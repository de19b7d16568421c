"""Tests for cherry-picking versions across branches."""

from datetime import datetime, timezone

import pytest

from timeweave.exceptions import IncompleteResolutionError, InvalidInputError, NotFoundError
from timeweave.merge.models import ConflictResolution

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
T1 = datetime(2024, 3, 1, tzinfo=timezone.utc)
T2 = datetime(2024, 6, 1, tzinfo=timezone.utc)


class TestCherryPick:
    """Tests for MergeService.cherry_pick."""

    @pytest.fixture
    def merges(self, engine):
        return engine.merges

    @pytest.fixture
    def versions(self, engine):
        return engine.versions

    @pytest.mark.asyncio
    async def test_clean_pick(self, engine, merges, versions, root, audit, cache):
        """Test a version with nothing in the way is applied as-is."""
        other = await engine.branches.create(root.scope_id, "Other", "u1", parent_id=root.id)
        picked = await versions.create_version("settlement", "s1", other.id, T1, {"name": "Kaer Maga"}, "u1")

        result = await merges.cherry_pick(picked.id, root.id, "u2")

        assert result.success
        assert not result.has_conflict
        assert result.version.branch_id == root.id
        assert result.version.valid_from == T1
        assert result.version.comment == f"Cherry-picked from version {picked.id}"
        assert versions.decompress_version(result.version) == {"name": "Kaer Maga"}

        entries = audit.for_entity("version", "settlement:s1")
        assert [e.action for e in entries] == ["CHERRY_PICK"]
        assert ("settlement", "s1", root.id) in cache.calls

    @pytest.mark.asyncio
    async def test_conflicts_returned_without_resolutions(self, engine, merges, versions, root):
        """Test differences against the target are reported, not applied."""
        await versions.create_version("settlement", "s1", root.id, T0, {"name": "A", "level": 1}, "u1")
        fork = await engine.forks.fork(root.id, "Alt", T0, "u1")
        picked = await versions.create_version("settlement", "s1", fork.branch.id, T1, {"name": "A", "level": 4}, "u1")
        before = len(engine.store.find_versions())

        result = await merges.cherry_pick(picked.id, root.id, "u1")

        assert not result.success
        assert result.has_conflict
        assert [c.path for c in result.conflicts] == ["level"]
        assert result.conflicts[0].source_value == 4
        assert result.conflicts[0].target_value == 1
        assert result.version is None
        assert len(engine.store.find_versions()) == before

    @pytest.mark.asyncio
    async def test_partial_resolutions_rejected(self, engine, merges, versions, root):
        """Test every conflicting path must be resolved."""
        await versions.create_version("settlement", "s1", root.id, T0, {"name": "A", "level": 1}, "u1")
        fork = await engine.forks.fork(root.id, "Alt", T0, "u1")
        picked = await versions.create_version("settlement", "s1", fork.branch.id, T1, {"name": "B", "level": 4}, "u1")

        with pytest.raises(IncompleteResolutionError, match="Cannot cherry-pick: not all conflicts have been resolved"):
            await merges.cherry_pick(
                picked.id, root.id, "u1",
                resolutions=[ConflictResolution(path="level", resolved_value="4")],
            )

    @pytest.mark.asyncio
    async def test_resolutions_applied(self, engine, merges, versions, root):
        """Test resolved values override the source payload."""
        await versions.create_version("settlement", "s1", root.id, T0, {"name": "A", "level": 1}, "u1")
        fork = await engine.forks.fork(root.id, "Alt", T0, "u1")
        picked = await versions.create_version(
            "settlement", "s1", fork.branch.id, T1, {"name": "B", "level": 4, "note": "x"}, "u1",
        )

        result = await merges.cherry_pick(
            picked.id, root.id, "u1",
            resolutions=[
                ConflictResolution(path="name", resolved_value='"A"'),
                ConflictResolution(path="level", resolved_value="4"),
                ConflictResolution(path="note", resolved_value="null"),
            ],
        )

        assert result.success
        assert versions.decompress_version(result.version) == {"name": "A", "level": 4, "note": None}

        history = await versions.find_version_history("settlement", "s1", root.id, "u1")
        assert history[0].valid_to == T1
        assert history[-1].id == result.version.id

    @pytest.mark.asyncio
    async def test_missing_version(self, merges, root):
        """Test an unknown source version."""
        with pytest.raises(NotFoundError, match="Version missing not found"):
            await merges.cherry_pick("missing", root.id, "u1")

    @pytest.mark.asyncio
    async def test_missing_target(self, merges, versions, root):
        """Test an unknown target branch."""
        picked = await versions.create_version("settlement", "s1", root.id, T0, {}, "u1")
        with pytest.raises(NotFoundError, match="Target branch nope not found"):
            await merges.cherry_pick(picked.id, "nope", "u1")

    @pytest.mark.asyncio
    async def test_cross_scope_rejected(self, engine, merges, versions, root):
        """Test versions cannot move between scopes."""
        other = await engine.branches.create("campaign-2", "Main", "u1")
        picked = await versions.create_version("settlement", "s1", root.id, T0, {}, "u1")

        with pytest.raises(InvalidInputError, match="different scopes"):
            await merges.cherry_pick(picked.id, other.id, "u1")
