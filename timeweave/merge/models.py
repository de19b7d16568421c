"""
Data models for branch merging.

Conflicts are plain values produced by the detector; nothing here is
persisted except through MergeHistoryRecord.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from timeweave.exceptions import InvalidInputError
from timeweave.storage.models import Version
from timeweave.versioning.diff import MISSING


def _plain(value: Any) -> Any:
    """MISSING renders as None outside the engine."""
    return None if value is MISSING else value


class ConflictType(str, Enum):
    """How two sides disagree on a field."""

    BOTH_MODIFIED = "BOTH_MODIFIED"  # Changed to different values
    BOTH_DELETED = "BOTH_DELETED"  # Removed on both sides, kept for completeness
    MODIFIED_DELETED = "MODIFIED_DELETED"  # Source modified, target deleted
    DELETED_MODIFIED = "DELETED_MODIFIED"  # Source deleted, target modified


@dataclass
class MergeConflict:
    """A field the two sides changed incompatibly."""

    path: str
    type: ConflictType
    base_value: Any = MISSING
    source_value: Any = MISSING
    target_value: Any = MISSING

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "path": self.path,
            "type": self.type.value,
            "base_value": _plain(self.base_value),
            "source_value": _plain(self.source_value),
            "target_value": _plain(self.target_value),
        }


@dataclass
class AutoResolvedChange:
    """A field merged without user input."""

    path: str
    resolved_value: Any
    base_value: Any = MISSING
    source_value: Any = MISSING
    target_value: Any = MISSING

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "path": self.path,
            "resolved_value": _plain(self.resolved_value),
            "base_value": _plain(self.base_value),
            "source_value": _plain(self.source_value),
            "target_value": _plain(self.target_value),
        }


@dataclass
class ConflictDetectionResult:
    """
    Result of a three-way comparison.

    merged_payload is set only when there are no conflicts; None with no
    conflicts means the entity stays deleted. partial_payload always holds
    the auto-resolved fields so resolutions can be applied on top of it.
    """

    conflicts: list[MergeConflict] = field(default_factory=list)
    merged_payload: Optional[dict[str, Any]] = None
    partial_payload: Optional[dict[str, Any]] = None
    auto_resolved: list[AutoResolvedChange] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    @property
    def conflict_paths(self) -> list[str]:
        return [c.path for c in self.conflicts]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "has_conflicts": self.has_conflicts,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "merged_payload": self.merged_payload,
            "auto_resolved": [c.to_dict() for c in self.auto_resolved],
        }


@dataclass
class ConflictResolution:
    """
    User decision for one conflict path.

    resolved_value is a JSON-encoded string and is decoded before use.
    """

    path: str
    resolved_value: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None

    def decoded_value(self) -> Any:
        try:
            return json.loads(self.resolved_value)
        except (TypeError, json.JSONDecodeError) as e:
            raise InvalidInputError(
                f"Resolved value for {self.path} is not valid JSON: {e}"
            ) from e

    def applies_to(self, entity_type: str, entity_id: str) -> bool:
        """Untargeted resolutions apply to any entity."""
        return (self.entity_type in (None, entity_type)) and (self.entity_id in (None, entity_id))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "path": self.path,
            "resolved_value": self.resolved_value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConflictResolution":
        """Create from dictionary."""
        return cls(
            path=data.get("path", ""),
            resolved_value=data.get("resolved_value", "null"),
            entity_type=data.get("entity_type"),
            entity_id=data.get("entity_id"),
        )


@dataclass
class EntityVersions:
    """The three versions a three-way merge compares."""

    base: Optional[Version] = None
    source: Optional[Version] = None
    target: Optional[Version] = None


@dataclass
class EntityMergePreview:
    """Per-entity section of a merge preview."""

    entity_type: str
    entity_id: str
    conflicts: list[MergeConflict] = field(default_factory=list)
    auto_resolved_changes: list[AutoResolvedChange] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "auto_resolved_changes": [c.to_dict() for c in self.auto_resolved_changes],
        }


@dataclass
class MergePreview:
    """What a merge would do, without writing anything."""

    source_branch_id: str
    target_branch_id: str
    common_ancestor_id: str
    entities: list[EntityMergePreview] = field(default_factory=list)

    @property
    def total_conflicts(self) -> int:
        return sum(len(e.conflicts) for e in self.entities)

    @property
    def total_auto_resolved(self) -> int:
        return sum(len(e.auto_resolved_changes) for e in self.entities)

    @property
    def requires_manual_resolution(self) -> bool:
        return self.total_conflicts > 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "source_branch_id": self.source_branch_id,
            "target_branch_id": self.target_branch_id,
            "common_ancestor_id": self.common_ancestor_id,
            "entities": [e.to_dict() for e in self.entities],
            "total_conflicts": self.total_conflicts,
            "total_auto_resolved": self.total_auto_resolved,
            "requires_manual_resolution": self.requires_manual_resolution,
        }


@dataclass
class MergeResult:
    """Outcome of an executed merge."""

    success: bool
    versions_created: int = 0
    merged_entity_ids: list[str] = field(default_factory=list)
    merge_history_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "versions_created": self.versions_created,
            "merged_entity_ids": self.merged_entity_ids,
            "merge_history_id": self.merge_history_id,
        }


@dataclass
class CherryPickResult:
    """Outcome of a cherry-pick."""

    success: bool
    has_conflict: bool = False
    conflicts: list[MergeConflict] = field(default_factory=list)
    version: Optional[Version] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "has_conflict": self.has_conflict,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "version_id": self.version.id if self.version else None,
        }
