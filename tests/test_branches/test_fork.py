"""Tests for ForkOrchestrator."""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from timeweave.exceptions import InvalidInputError, NotFoundError

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
T1 = datetime(2024, 3, 1, tzinfo=timezone.utc)
T2 = datetime(2024, 6, 1, tzinfo=timezone.utc)
T3 = datetime(2024, 9, 1, tzinfo=timezone.utc)


class TestFork:
    """Tests for forking a branch."""

    @pytest.fixture
    def versions(self, engine):
        return engine.versions

    @pytest.fixture
    def forks(self, engine):
        return engine.forks

    @pytest.mark.asyncio
    async def test_copies_visible_entities(self, forks, versions, root):
        """Test every entity visible at the divergence is seeded."""
        s1 = await versions.create_version("settlement", "s1", root.id, T0, {"name": "Sandpoint"}, "u1")
        await versions.create_version("structure", "x1", root.id, T0, {"type": "temple"}, "u1")
        await versions.create_version("settlement", "s2", root.id, T2, {"name": "Late"}, "u1")

        result = await forks.fork(root.id, "Alt", T1, "u2")

        assert result.versions_copied == 2
        assert result.copied_by_type == {"settlement": 1, "structure": 1}
        assert result.branch.parent_id == root.id
        assert result.branch.diverged_at == T1

        copied = await versions.find_version_in_branch("settlement", "s1", result.branch.id, T1)
        assert copied.payload == s1.payload
        assert copied.version == 1
        assert copied.valid_from == T1
        assert copied.valid_to is None
        assert copied.created_by == "u2"
        assert copied.comment == f"Forked from branch {root.id} at {T1.isoformat()}"

    @pytest.mark.asyncio
    async def test_copies_resolved_snapshot(self, forks, versions, root):
        """Test the copy is the version valid at the divergence, not the latest."""
        await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        await versions.create_version("settlement", "s1", root.id, T2, {"level": 2}, "u1")

        result = await forks.fork(root.id, "Alt", T1, "u1")
        copied = await versions.resolve_version("settlement", "s1", result.branch.id, T3)
        assert versions.decompress_version(copied) == {"level": 1}

    @pytest.mark.asyncio
    async def test_fork_isolated_from_parent_edits(self, forks, versions, root):
        """Test later parent changes do not leak into copied entities."""
        await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        result = await forks.fork(root.id, "Alt", T1, "u1")

        await versions.create_version("settlement", "s1", root.id, T2, {"level": 7}, "u1")

        seen = await versions.resolve_version("settlement", "s1", result.branch.id, T3)
        assert seen.branch_id == result.branch.id
        assert versions.decompress_version(seen) == {"level": 1}

    @pytest.mark.asyncio
    async def test_copies_inherited_entities(self, forks, versions, root):
        """Test entities visible only through ancestry are copied too."""
        await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        middle = await forks.fork(root.id, "Middle", T1, "u1")
        await versions.create_version("settlement", "s2", root.id, T0, {"level": 3}, "u1")

        result = await forks.fork(middle.branch.id, "Leaf", T2, "u1")

        assert result.copied_by_type == {"settlement": 2}
        leaf_s2 = await versions.find_version_in_branch("settlement", "s2", result.branch.id, T2)
        assert versions.decompress_version(leaf_s2) == {"level": 3}

    @pytest.mark.asyncio
    async def test_untracked_types_not_copied(self, forks, versions, root):
        """Test only configured entity types are seeded."""
        await versions.create_version("note", "n1", root.id, T0, {"text": "hi"}, "u1")
        result = await forks.fork(root.id, "Alt", T1, "u1")

        assert result.versions_copied == 0
        assert await versions.find_version_in_branch("note", "n1", result.branch.id, T1) is None

    @pytest.mark.asyncio
    async def test_fork_audited(self, forks, root, audit):
        """Test a FORK entry on the new branch."""
        result = await forks.fork(root.id, "Alt", T1, "u1")

        entries = audit.for_entity("branch", result.branch.id)
        assert [e.action for e in entries] == ["FORK"]
        assert entries[0].detail["source_branch_id"] == root.id

    @pytest.mark.asyncio
    async def test_missing_source(self, forks):
        """Test forking an unknown branch."""
        with pytest.raises(NotFoundError):
            await forks.fork("missing", "Alt", T1, "u1")

    @pytest.mark.asyncio
    async def test_invalid_divergence(self, forks, root):
        """Test a non-datetime divergence time."""
        with pytest.raises(InvalidInputError, match="divergedAt must be a valid date"):
            await forks.fork(root.id, "Alt", "soon", "u1")

    @pytest.mark.asyncio
    async def test_duplicate_name_leaves_nothing(self, forks, versions, store, root):
        """Test a rejected fork writes no versions."""
        await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        before = len(store.find_versions())

        with pytest.raises(InvalidInputError):
            await forks.fork(root.id, "Main", T1, "u1")

        assert len(store.find_versions()) == before

    @pytest.mark.asyncio
    async def test_failed_copy_rolls_back_branch(self, forks, versions, store, root):
        """Test a write failure part way through leaves no branch and no versions."""
        await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        await versions.create_version("settlement", "s2", root.id, T0, {"level": 2}, "u1")
        before = len(store.find_versions())

        original = versions.stage_version
        calls = []

        def failing_stage(*args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                raise RuntimeError("disk full")
            return original(*args, **kwargs)

        with patch.object(versions, "stage_version", side_effect=failing_stage):
            with pytest.raises(RuntimeError):
                await forks.fork(root.id, "Alt", T1, "u1")

        assert store.find_branch_by_name(root.scope_id, "Alt") is None
        assert len(store.find_versions()) == before
