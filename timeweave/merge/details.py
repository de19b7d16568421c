"""
Human-readable conflict descriptions.

A decorating layer over detector output for display; merge correctness
never depends on it.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional

from timeweave.merge.models import ConflictType, MergeConflict
from timeweave.versioning.diff import MISSING

# Field labels per entity type; association ids read as the associated entity
FIELD_LABELS: dict[str, dict[str, str]] = {
    "settlement": {
        "name": "settlement name",
        "kingdomId": "owning kingdom",
        "locationId": "location",
        "level": "settlement level",
    },
    "structure": {
        "name": "structure name",
        "settlementId": "parent settlement",
        "type": "structure type",
        "level": "structure level",
    },
    "kingdom": {
        "name": "kingdom name",
        "level": "kingdom level",
    },
}


@dataclass
class ConflictDetail:
    """A conflict with display text."""

    entity_type: str
    path: str
    type: ConflictType
    description: str
    suggestion: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "entity_type": self.entity_type,
            "path": self.path,
            "type": self.type.value,
            "description": self.description,
            "suggestion": self.suggestion,
        }


def _render(value: Any) -> str:
    if value is MISSING:
        return "(absent)"
    return json.dumps(value, default=str)


def field_label(entity_type: str, path: str) -> str:
    """Display label for a field path."""
    labels = FIELD_LABELS.get(entity_type, {})
    if path in labels:
        return labels[path]
    if path.startswith("variables."):
        return f"variable '{path[len('variables.'):]}'"
    return path


def describe_conflict(entity_type: str, conflict: MergeConflict) -> ConflictDetail:
    """Describe one conflict."""
    label = field_label(entity_type, conflict.path)
    source = _render(conflict.source_value)
    target = _render(conflict.target_value)

    if conflict.type == ConflictType.MODIFIED_DELETED:
        description = f"The {label} ({conflict.path}) was changed to {source} in the source branch but removed in the target branch"
        suggestion = "Keep the source value or confirm the removal"
    elif conflict.type == ConflictType.DELETED_MODIFIED:
        description = f"The {label} ({conflict.path}) was removed in the source branch but changed to {target} in the target branch"
        suggestion = "Keep the target value or confirm the removal"
    elif conflict.type == ConflictType.BOTH_DELETED:
        description = f"The {label} ({conflict.path}) was removed in both branches"
        suggestion = None
    else:
        description = (
            f"Both branches changed the {label} ({conflict.path}): "
            f"source has {source}, target has {target}"
        )
        if conflict.base_value is not MISSING:
            description += f" (was {_render(conflict.base_value)})"
        suggestion = "Choose one value or enter a new one"

    return ConflictDetail(
        entity_type=entity_type,
        path=conflict.path,
        type=conflict.type,
        description=description,
        suggestion=suggestion,
    )


def describe_conflicts(entity_type: str, conflicts: list[MergeConflict]) -> list[ConflictDetail]:
    return [describe_conflict(entity_type, c) for c in conflicts]
