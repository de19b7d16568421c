"""Tests for VersionService."""

from datetime import datetime, timezone

import pytest

from timeweave.collaborators import MembershipAccessControl, MemberRole
from timeweave.exceptions import (
    CycleDetectedError,
    ForbiddenError,
    InvalidInputError,
    NotFoundError,
)
from timeweave.storage.models import Branch
from timeweave.versioning.service import VersionService

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
T1 = datetime(2024, 3, 1, tzinfo=timezone.utc)
T2 = datetime(2024, 6, 1, tzinfo=timezone.utc)
T3 = datetime(2024, 9, 1, tzinfo=timezone.utc)


class TestCreateVersion:
    """Tests for creating versions."""

    @pytest.fixture
    def versions(self, engine):
        return engine.versions

    @pytest.mark.asyncio
    async def test_numbers_increase_per_branch(self, versions, root):
        """Test version numbers start at 1 and increase by one."""
        first = await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        second = await versions.create_version("settlement", "s1", root.id, T1, {"level": 2}, "u1")

        assert (first.version, second.version) == (1, 2)

    @pytest.mark.asyncio
    async def test_new_version_closes_previous(self, versions, root):
        """Test the covering version ends where the new one starts."""
        first = await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        second = await versions.create_version("settlement", "s1", root.id, T1, {"level": 2}, "u1")

        history = await versions.find_version_history("settlement", "s1", root.id, "u1")
        by_id = {v.id: v for v in history}
        assert by_id[first.id].valid_to == T1
        assert by_id[second.id].valid_to is None

    @pytest.mark.asyncio
    async def test_backdated_version_bounded_by_later_version(self, versions, root):
        """Test an open-ended insert before an existing version ends at it."""
        later = await versions.create_version("settlement", "s1", root.id, T2, {"level": 2}, "u1")
        earlier = await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")

        assert earlier.valid_to == T2
        assert (await versions.get_version(later.id)).valid_to is None

    @pytest.mark.asyncio
    async def test_explicit_overlap_rejected(self, versions, root):
        """Test a closed interval may not run past a later version."""
        await versions.create_version("settlement", "s1", root.id, T2, {"level": 2}, "u1")
        with pytest.raises(InvalidInputError, match="overlaps"):
            await versions.create_version(
                "settlement", "s1", root.id, T0, {"level": 1}, "u1", valid_to=T3,
            )

    @pytest.mark.asyncio
    async def test_intervals_never_overlap(self, versions, root):
        """Test the non-overlap invariant after out-of-order inserts."""
        for when in (T2, T0, T3, T1):
            await versions.create_version("settlement", "s1", root.id, when, {"at": when.isoformat()}, "u1")

        history = await versions.find_version_history("settlement", "s1", root.id, "u1")
        for current, following in zip(history, history[1:]):
            assert current.valid_to is not None
            assert current.valid_to <= following.valid_from

    @pytest.mark.asyncio
    async def test_validation_messages(self, versions, root):
        """Test input validation."""
        with pytest.raises(InvalidInputError, match="entityType is required"):
            await versions.create_version("", "s1", root.id, T0, {}, "u1")
        with pytest.raises(InvalidInputError, match="entityId is required"):
            await versions.create_version("settlement", "  ", root.id, T0, {}, "u1")
        with pytest.raises(InvalidInputError, match="validFrom must be a valid date"):
            await versions.create_version("settlement", "s1", root.id, "yesterday", {}, "u1")
        with pytest.raises(InvalidInputError, match="payload must be a non-null object"):
            await versions.create_version("settlement", "s1", root.id, T0, None, "u1")
        with pytest.raises(InvalidInputError, match="validTo must be after validFrom"):
            await versions.create_version("settlement", "s1", root.id, T1, {}, "u1", valid_to=T0)

    @pytest.mark.asyncio
    async def test_unknown_branch(self, versions):
        """Test creating in a missing branch."""
        with pytest.raises(NotFoundError):
            await versions.create_version("settlement", "s1", "nope", T0, {}, "u1")

    @pytest.mark.asyncio
    async def test_audit_and_cache_signals(self, versions, root, audit, cache):
        """Test create records an audit entry and invalidates caches."""
        version = await versions.create_version("settlement", "s1", root.id, T0, {"a": 1}, "u1")

        entries = audit.for_entity("version", version.id)
        assert [e.action for e in entries] == ["CREATE"]
        assert ("settlement", "s1", root.id) in cache.calls

    @pytest.mark.asyncio
    async def test_forbidden_without_edit_role(self, store, settings, root):
        """Test the access collaborator is consulted."""
        access = MembershipAccessControl()
        access.add_member(root.scope_id, "viewer", MemberRole.VIEWER)
        versions = VersionService(store, access=access, settings=settings)

        with pytest.raises(ForbiddenError):
            await versions.create_version("settlement", "s1", root.id, T0, {}, "viewer")


class TestResolveVersion:
    """Tests for ancestry-aware resolution."""

    @pytest.fixture
    def versions(self, engine):
        return engine.versions

    @pytest.fixture
    def child(self, engine, root):
        with engine.store.transaction() as tx:
            return engine.branches.stage_branch(tx, root.scope_id, "Child", parent_id=root.id, diverged_at=T1)

    @pytest.mark.asyncio
    async def test_child_inherits_parent_history(self, versions, root, child):
        """Test a branch with no own versions sees its parent's."""
        parent_version = await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")

        resolved = await versions.resolve_version("settlement", "s1", child.id, T2)
        assert resolved.id == parent_version.id

    @pytest.mark.asyncio
    async def test_own_version_shadows_parent(self, versions, root, child):
        """Test the nearest branch with a valid version wins."""
        await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        own = await versions.create_version("settlement", "s1", child.id, T1, {"level": 5}, "u1")

        assert (await versions.resolve_version("settlement", "s1", child.id, T2)).id == own.id
        assert (await versions.resolve_version("settlement", "s1", child.id, T0)).branch_id == root.id

    @pytest.mark.asyncio
    async def test_parent_changes_remain_visible(self, versions, root, child):
        """Test parent versions after the divergence are inherited."""
        await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        later = await versions.create_version("settlement", "s1", root.id, T2, {"level": 2}, "u1")

        assert (await versions.resolve_version("settlement", "s1", child.id, T3)).id == later.id

    @pytest.mark.asyncio
    async def test_nothing_visible(self, versions, root):
        """Test None before any version exists."""
        await versions.create_version("settlement", "s1", root.id, T1, {"level": 1}, "u1")
        assert await versions.resolve_version("settlement", "s1", root.id, T0) is None

    @pytest.mark.asyncio
    async def test_naive_datetimes_treated_as_utc(self, versions, root):
        """Test naive as_of values."""
        created = await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        resolved = await versions.resolve_version("settlement", "s1", root.id, datetime(2024, 2, 1))
        assert resolved.id == created.id

    @pytest.mark.asyncio
    async def test_cycle_detected(self, engine, versions):
        """Test a parent cycle stops at the depth limit."""
        with engine.store.transaction() as tx:
            tx.put_branch(Branch(scope_id="loop", name="A", id="a", parent_id="b"))
            tx.put_branch(Branch(scope_id="loop", name="B", id="b", parent_id="a"))

        with pytest.raises(CycleDetectedError):
            await versions.resolve_version("settlement", "s1", "a", T0)

    @pytest.mark.asyncio
    async def test_find_version_in_branch_ignores_ancestors(self, versions, root, child):
        """Test the single-branch lookup does not walk ancestry."""
        await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        assert await versions.find_version_in_branch("settlement", "s1", child.id, T2) is None

    @pytest.mark.asyncio
    async def test_resolution_matches_ancestry_walk(self, engine, versions, root, child):
        """Test resolution equals the nearest hit walking ancestry leaf to root."""
        with engine.store.transaction() as tx:
            grandchild = engine.branches.stage_branch(
                tx, root.scope_id, "Grandchild", parent_id=child.id, diverged_at=T2,
            )
        await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        await versions.create_version("settlement", "s1", child.id, T1, {"level": 2}, "u1")
        await versions.create_version("settlement", "s1", grandchild.id, T3, {"level": 3}, "u1")
        await versions.create_version("settlement", "s2", root.id, T1, {"level": 4}, "u1")
        await versions.create_version("settlement", "s2", grandchild.id, T2, {"level": 5}, "u1")

        ancestry = await engine.branches.get_ancestry(grandchild.id)
        assert [b.id for b in ancestry] == [root.id, child.id, grandchild.id]

        checked = 0
        for entity_id in ("s1", "s2", "s3"):
            for as_of in (datetime(2023, 1, 1, tzinfo=timezone.utc), T0, T1, T2, T3):
                expected = None
                for branch in reversed(ancestry):
                    expected = await versions.find_version_in_branch("settlement", entity_id, branch.id, as_of)
                    if expected is not None:
                        break
                resolved = await versions.resolve_version("settlement", entity_id, grandchild.id, as_of)
                assert (resolved.id if resolved else None) == (expected.id if expected else None)
                checked += resolved is not None
        assert checked > 0


class TestRestoreCloseDiff:
    """Tests for restore, close and diff."""

    @pytest.fixture
    def versions(self, engine):
        return engine.versions

    @pytest.mark.asyncio
    async def test_restore_creates_new_version(self, versions, root, audit):
        """Test restore appends history and reuses the payload."""
        original = await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        await versions.create_version("settlement", "s1", root.id, T1, {"level": 9}, "u1")

        restored = await versions.restore_version(original.id, root.id, "u2", valid_from=T2)

        assert restored.version == 3
        assert restored.payload == original.payload
        assert restored.comment == f"Restored from {original.id}"
        assert versions.decompress_version(restored) == {"level": 1}
        assert [e.action for e in audit.for_entity("version", restored.id)] == ["RESTORE"]

    @pytest.mark.asyncio
    async def test_restore_missing_version(self, versions, root):
        """Test restoring an unknown version."""
        with pytest.raises(NotFoundError):
            await versions.restore_version("missing", root.id, "u1", valid_from=T0)

    @pytest.mark.asyncio
    async def test_close_version(self, versions, root):
        """Test ending a version's validity."""
        version = await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        closed = await versions.close_version(version.id, T1, "u1")

        assert closed.valid_to == T1
        assert await versions.resolve_version("settlement", "s1", root.id, T2) is None

    @pytest.mark.asyncio
    async def test_close_before_start_rejected(self, versions, root):
        """Test valid_to must follow valid_from."""
        version = await versions.create_version("settlement", "s1", root.id, T1, {"level": 1}, "u1")
        with pytest.raises(InvalidInputError):
            await versions.close_version(version.id, T0, "u1")

    @pytest.mark.asyncio
    async def test_close_past_later_version_rejected(self, engine, versions, root):
        """Test closing cannot extend a version over the next one."""
        first = await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        await versions.create_version("settlement", "s1", root.id, T1, {"level": 2}, "u1")

        with pytest.raises(InvalidInputError):
            await versions.close_version(first.id, T3, "u1")

        assert engine.store.get_version(first.id).valid_to == T1
        assert len(engine.store.find_versions("settlement", "s1", [root.id], as_of=T2)) == 1

    @pytest.mark.asyncio
    async def test_close_up_to_later_version_allowed(self, versions, root):
        """Test a version may end exactly where the next begins."""
        first = await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        await versions.create_version("settlement", "s1", root.id, T2, {"level": 2}, "u1")
        await versions.close_version(first.id, T1, "u1")

        closed = await versions.close_version(first.id, T2, "u1")

        assert closed.valid_to == T2

    @pytest.mark.asyncio
    async def test_diff(self, versions, root):
        """Test field diff between two versions."""
        first = await versions.create_version("settlement", "s1", root.id, T0, {"level": 1, "name": "A"}, "u1")
        second = await versions.create_version("settlement", "s1", root.id, T1, {"level": 2, "name": "A"}, "u1")

        diff = await versions.get_version_diff(first.id, second.id, "u1")
        assert diff.modified == {"level": {"old": 1, "new": 2}}

    @pytest.mark.asyncio
    async def test_diff_across_branches_rejected(self, engine, versions, root):
        """Test versions must share a branch."""
        with engine.store.transaction() as tx:
            other = engine.branches.stage_branch(tx, root.scope_id, "Other", parent_id=root.id)
        first = await versions.create_version("settlement", "s1", root.id, T0, {"level": 1}, "u1")
        second = await versions.create_version("settlement", "s1", other.id, T1, {"level": 2}, "u1")

        with pytest.raises(InvalidInputError, match="different branches"):
            await versions.get_version_diff(first.id, second.id, "u1")

    @pytest.mark.asyncio
    async def test_versions_for_branch_and_type(self, versions, root):
        """Test listing one type in one branch."""
        await versions.create_version("settlement", "s1", root.id, T0, {}, "u1")
        await versions.create_version("settlement", "s2", root.id, T0, {}, "u1")
        await versions.create_version("structure", "x1", root.id, T0, {}, "u1")

        found = await versions.get_versions_for_branch_and_type(root.id, "settlement")
        assert sorted(v.entity_id for v in found) == ["s1", "s2"]
