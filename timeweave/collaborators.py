"""
Contracts for the services the engine calls out to.

Access control is mandatory before any mutation. Audit appends and cache
invalidation are side channels: their failures are logged and never undo
a committed change.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from timeweave.exceptions import ForbiddenError
from timeweave.storage.models import utc_now

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    """Actions recorded in the audit log."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    RESTORE = "RESTORE"
    FORK = "FORK"
    MERGE = "MERGE"
    CHERRY_PICK = "CHERRY_PICK"


class MemberRole(str, Enum):
    """Role of a user within a scope."""

    OWNER = "owner"
    GM = "gm"
    PLAYER = "player"
    VIEWER = "viewer"


class AccessControl(ABC):
    """Authorization checks scoped to a branch's owning scope."""

    @abstractmethod
    def can_read(self, scope_id: str, user_id: str) -> bool:
        """Whether the user may read data in the scope."""

    @abstractmethod
    def can_edit(self, scope_id: str, user_id: str) -> bool:
        """Whether the user may mutate data in the scope."""

    @abstractmethod
    def is_owner(self, scope_id: str, user_id: str) -> bool:
        """Whether the user owns the scope."""

    def require_read(self, scope_id: str, user_id: str) -> None:
        if not self.can_read(scope_id, user_id):
            raise ForbiddenError(f"User {user_id} cannot read scope {scope_id}")

    def require_edit(self, scope_id: str, user_id: str) -> None:
        if not self.can_edit(scope_id, user_id):
            raise ForbiddenError(f"User {user_id} cannot edit scope {scope_id}")


class AllowAllAccessControl(AccessControl):
    """Grants everything. Used by the local CLI and in tests."""

    def can_read(self, scope_id: str, user_id: str) -> bool:
        return True

    def can_edit(self, scope_id: str, user_id: str) -> bool:
        return True

    def is_owner(self, scope_id: str, user_id: str) -> bool:
        return True


class MembershipAccessControl(AccessControl):
    """
    Role-based access from an explicit membership table.

    Owners and GMs may edit; any member may read.
    """

    EDIT_ROLES = {MemberRole.OWNER, MemberRole.GM}

    def __init__(self):
        self._members: dict[str, dict[str, MemberRole]] = {}

    def add_member(self, scope_id: str, user_id: str, role: MemberRole) -> None:
        self._members.setdefault(scope_id, {})[user_id] = role

    def role_of(self, scope_id: str, user_id: str) -> Optional[MemberRole]:
        return self._members.get(scope_id, {}).get(user_id)

    def can_read(self, scope_id: str, user_id: str) -> bool:
        return self.role_of(scope_id, user_id) is not None

    def can_edit(self, scope_id: str, user_id: str) -> bool:
        return self.role_of(scope_id, user_id) in self.EDIT_ROLES

    def is_owner(self, scope_id: str, user_id: str) -> bool:
        return self.role_of(scope_id, user_id) == MemberRole.OWNER


@dataclass
class AuditEntry:
    """One audit log line."""

    entity_kind: str
    entity_id: str
    action: str
    actor: str
    detail: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "entity_kind": self.entity_kind,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditLog(ABC):
    """Append-only audit trail."""

    @abstractmethod
    def append(
        self,
        entity_kind: str,
        entity_id: str,
        action: str,
        actor: str,
        detail: Optional[dict[str, Any]] = None,
    ) -> None:
        """Record an action."""


class InMemoryAuditLog(AuditLog):
    """Audit log kept in a list."""

    def __init__(self):
        self.entries: list[AuditEntry] = []

    def append(
        self,
        entity_kind: str,
        entity_id: str,
        action: str,
        actor: str,
        detail: Optional[dict[str, Any]] = None,
    ) -> None:
        self.entries.append(AuditEntry(
            entity_kind=entity_kind,
            entity_id=entity_id,
            action=str(getattr(action, "value", action)),
            actor=actor,
            detail=detail or {},
        ))

    def for_entity(self, entity_kind: str, entity_id: str) -> list[AuditEntry]:
        return [
            e for e in self.entries
            if e.entity_kind == entity_kind and e.entity_id == entity_id
        ]


class LoggingAuditLog(AuditLog):
    """Audit log that writes entries to the Python logger."""

    def __init__(self, logger_name: str = "timeweave.audit"):
        self._logger = logging.getLogger(logger_name)

    def append(
        self,
        entity_kind: str,
        entity_id: str,
        action: str,
        actor: str,
        detail: Optional[dict[str, Any]] = None,
    ) -> None:
        self._logger.info(
            f"{getattr(action, 'value', action)} {entity_kind} {entity_id} by {actor}"
        )


class CacheInvalidator(ABC):
    """Signal sink for cache invalidation after entity mutations."""

    @abstractmethod
    def invalidate(self, entity_type: str, entity_id: str, branch_id: str) -> None:
        """Drop cached data for an entity in a branch."""


class NullCacheInvalidator(CacheInvalidator):
    """No caches to invalidate."""

    def invalidate(self, entity_type: str, entity_id: str, branch_id: str) -> None:
        pass


class RecordingCacheInvalidator(CacheInvalidator):
    """Keeps every signal it receives."""

    def __init__(self):
        self.calls: list[tuple[str, str, str]] = []

    def invalidate(self, entity_type: str, entity_id: str, branch_id: str) -> None:
        self.calls.append((entity_type, entity_id, branch_id))


def record_audit(
    audit: Optional[AuditLog],
    entity_kind: str,
    entity_id: str,
    action: AuditAction,
    actor: str,
    detail: Optional[dict[str, Any]] = None,
) -> None:
    """Append to the audit log, logging and swallowing any failure."""
    if audit is None:
        return
    try:
        audit.append(entity_kind, entity_id, action.value, actor, detail)
    except Exception as e:
        logger.warning(f"Audit append failed for {action.value} {entity_kind} {entity_id}: {e}")


def signal_invalidate(
    cache: Optional[CacheInvalidator],
    entity_type: str,
    entity_id: str,
    branch_id: str,
) -> None:
    """Send a cache-invalidate signal, logging and swallowing any failure."""
    if cache is None:
        return
    try:
        cache.invalidate(entity_type, entity_id, branch_id)
    except Exception as e:
        logger.warning(f"Cache invalidation failed for {entity_type} {entity_id}: {e}")
