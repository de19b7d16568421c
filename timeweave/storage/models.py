"""
Persisted record shapes for the timeline store.

Branches and versions are held in id-indexed maps; a branch refers to its
parent only by id. Timestamps are timezone-aware UTC.
"""

import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from timeweave.exceptions import InvalidInputError


def utc_now() -> datetime:
    """Current wall-clock time in UTC."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any, field_name: str = "timestamp") -> datetime:
    """
    Parse an ISO-8601 string (or pass through a datetime) as UTC.

    Raises:
        InvalidInputError: If the value is not a valid date
    """
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, str) and value:
        try:
            # Python < 3.11 does not accept a trailing "Z"
            return to_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            pass
    raise InvalidInputError(f"{field_name} must be a valid date")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return to_utc(datetime.fromisoformat(value)) if value else None


@dataclass
class Branch:
    """A named timeline. The parent relation forms a forest."""

    scope_id: str
    name: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    parent_id: Optional[str] = None
    description: Optional[str] = None
    diverged_at: Optional[datetime] = None
    is_pinned: bool = False
    color: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "scope_id": self.scope_id,
            "name": self.name,
            "parent_id": self.parent_id,
            "description": self.description,
            "diverged_at": _iso(self.diverged_at),
            "is_pinned": self.is_pinned,
            "color": self.color,
            "tags": list(self.tags),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "deleted_at": _iso(self.deleted_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Branch":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            scope_id=data.get("scope_id", ""),
            name=data.get("name", ""),
            parent_id=data.get("parent_id"),
            description=data.get("description"),
            diverged_at=_from_iso(data.get("diverged_at")),
            is_pinned=data.get("is_pinned", False),
            color=data.get("color"),
            tags=list(data.get("tags", [])),
            created_at=_from_iso(data.get("created_at")) or utc_now(),
            updated_at=_from_iso(data.get("updated_at")) or utc_now(),
            deleted_at=_from_iso(data.get("deleted_at")),
        )


@dataclass
class Version:
    """
    Immutable snapshot of one entity within one branch.

    Valid over the half-open interval [valid_from, valid_to); a valid_to of
    None means the version is current. Only valid_to ever changes after
    creation.
    """

    entity_type: str
    entity_id: str
    branch_id: str
    version: int
    valid_from: datetime
    payload: bytes
    created_by: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    valid_to: Optional[datetime] = None
    comment: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def is_valid_at(self, as_of: datetime) -> bool:
        """Whether as_of falls inside [valid_from, valid_to)."""
        return self.valid_from <= as_of and (self.valid_to is None or self.valid_to > as_of)

    def to_dict(self, include_payload: bool = True) -> dict[str, Any]:
        """Convert to dictionary. The payload blob is base64-encoded."""
        data = {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "branch_id": self.branch_id,
            "version": self.version,
            "valid_from": _iso(self.valid_from),
            "valid_to": _iso(self.valid_to),
            "created_by": self.created_by,
            "comment": self.comment,
            "created_at": _iso(self.created_at),
        }
        if include_payload:
            data["payload"] = base64.b64encode(self.payload).decode("ascii")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Version":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            branch_id=data["branch_id"],
            version=int(data["version"]),
            valid_from=_from_iso(data["valid_from"]),
            valid_to=_from_iso(data.get("valid_to")),
            payload=base64.b64decode(data.get("payload", "")),
            created_by=data.get("created_by", ""),
            comment=data.get("comment"),
            created_at=_from_iso(data.get("created_at")) or utc_now(),
        )


@dataclass
class EntityRecord:
    """
    Current (non-temporal) state of an entity, guarded by an
    optimistic-concurrency version counter.
    """

    entity_type: str
    entity_id: str
    scope_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    version: int = 1
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return entity_key(self.entity_type, self.entity_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "scope_id": self.scope_id,
            "fields": self.fields,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "deleted_at": _iso(self.deleted_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntityRecord":
        """Create from dictionary."""
        return cls(
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            scope_id=data.get("scope_id", ""),
            fields=data.get("fields", {}),
            version=data.get("version", 1),
            created_at=_from_iso(data.get("created_at")) or utc_now(),
            updated_at=_from_iso(data.get("updated_at")) or utc_now(),
            deleted_at=_from_iso(data.get("deleted_at")),
        )


@dataclass
class MergeHistoryRecord:
    """Record of a completed branch merge."""

    source_branch_id: str
    target_branch_id: str
    common_ancestor_id: str
    world_time: datetime
    merged_by: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    conflicts_count: int = 0
    entities_merged: int = 0
    resolutions_data: list[dict[str, Any]] = field(default_factory=list)
    merged_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "source_branch_id": self.source_branch_id,
            "target_branch_id": self.target_branch_id,
            "common_ancestor_id": self.common_ancestor_id,
            "world_time": _iso(self.world_time),
            "merged_by": self.merged_by,
            "conflicts_count": self.conflicts_count,
            "entities_merged": self.entities_merged,
            "resolutions_data": self.resolutions_data,
            "merged_at": _iso(self.merged_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MergeHistoryRecord":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            source_branch_id=data["source_branch_id"],
            target_branch_id=data["target_branch_id"],
            common_ancestor_id=data.get("common_ancestor_id", ""),
            world_time=_from_iso(data["world_time"]),
            merged_by=data.get("merged_by", ""),
            conflicts_count=data.get("conflicts_count", 0),
            entities_merged=data.get("entities_merged", 0),
            resolutions_data=data.get("resolutions_data", []),
            merged_at=_from_iso(data.get("merged_at")) or utc_now(),
        )


def entity_key(entity_type: str, entity_id: str) -> str:
    """Composite key used for entity records and audit ids."""
    return f"{entity_type}:{entity_id}"
