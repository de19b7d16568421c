"""Tests for conflict descriptions."""

from timeweave.merge.details import describe_conflict, describe_conflicts, field_label
from timeweave.merge.models import ConflictType, MergeConflict


class TestConflictDetails:
    """Tests for human-readable conflict text."""

    def test_field_labels(self):
        """Test known fields, variables and fallbacks."""
        assert field_label("settlement", "kingdomId") == "owning kingdom"
        assert field_label("structure", "variables.morale") == "variable 'morale'"
        assert field_label("party", "gold") == "gold"

    def test_both_modified_mentions_all_values(self):
        """Test BOTH_MODIFIED text includes base, source and target."""
        detail = describe_conflict("settlement", MergeConflict(
            path="level", type=ConflictType.BOTH_MODIFIED,
            base_value=1, source_value=2, target_value=3,
        ))

        assert "settlement level" in detail.description
        assert "source has 2, target has 3" in detail.description
        assert "(was 1)" in detail.description
        assert detail.suggestion

    def test_deleted_modified(self):
        """Test deletion wording."""
        detail = describe_conflict("structure", MergeConflict(
            path="name", type=ConflictType.DELETED_MODIFIED, base_value="Mill", target_value="Forge",
        ))
        assert "removed in the source branch" in detail.description
        assert detail.to_dict()["type"] == "DELETED_MODIFIED"

    def test_describe_many(self):
        """Test bulk description keeps order."""
        conflicts = [
            MergeConflict(path="a", type=ConflictType.BOTH_MODIFIED, source_value=1, target_value=2),
            MergeConflict(path="b", type=ConflictType.MODIFIED_DELETED, source_value=1),
        ]
        assert [d.path for d in describe_conflicts("settlement", conflicts)] == ["a", "b"]
