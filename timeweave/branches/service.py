"""
Branch hierarchy manager.

Maintains the branch forest of each scope: creation, metadata updates,
soft deletion, ancestry chains and hierarchy trees. Branches are never
re-parented and never hard-deleted.
"""

import logging
from datetime import datetime
from typing import Optional

from timeweave.branches.tree import BranchNode, build_branch_map, build_hierarchy, walk_ancestry
from timeweave.collaborators import (
    AccessControl,
    AllowAllAccessControl,
    AuditAction,
    AuditLog,
    record_audit,
)
from timeweave.config.settings import Settings, get_settings
from timeweave.exceptions import InvalidInputError, InvalidOperationError, NotFoundError
from timeweave.storage.models import Branch, to_utc, utc_now
from timeweave.storage.store import TimelineStore, Transaction
from timeweave.telemetry.decorators import trace_async

logger = logging.getLogger(__name__)

# Fields update() may change; parent_id and scope_id are fixed at creation
UPDATABLE_FIELDS = ("name", "description", "is_pinned", "color", "tags")


class BranchService:
    """Branch CRUD and tree queries over a TimelineStore."""

    def __init__(
        self,
        store: TimelineStore,
        access: Optional[AccessControl] = None,
        audit: Optional[AuditLog] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.access = access or AllowAllAccessControl()
        self.audit = audit
        self.settings = settings or get_settings()

    def stage_branch(
        self,
        tx: Transaction,
        scope_id: str,
        name: str,
        parent_id: Optional[str] = None,
        description: Optional[str] = None,
        diverged_at: Optional[datetime] = None,
        is_pinned: bool = False,
        color: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> Branch:
        """
        Validate and stage a new branch inside an open transaction.

        Raises:
            InvalidInputError: On an empty or duplicate name, or a parent
                outside the scope
        """
        if not isinstance(name, str) or not name.strip():
            raise InvalidInputError("name is required and cannot be empty")

        if tx.find_branch_by_name(scope_id, name) is not None:
            raise InvalidInputError(f'A branch named "{name}" already exists in this scope')

        if parent_id:
            parent = tx.get_branch(parent_id)
            if parent is None or parent.scope_id != scope_id:
                raise InvalidInputError(
                    f"Parent branch with ID {parent_id} not found or does not belong to this scope"
                )

        return tx.put_branch(Branch(
            scope_id=scope_id,
            name=name,
            parent_id=parent_id,
            description=description,
            diverged_at=to_utc(diverged_at) if diverged_at else None,
            is_pinned=is_pinned,
            color=color,
            tags=list(tags or []),
        ))

    @trace_async("branch.create")
    async def create(
        self,
        scope_id: str,
        name: str,
        user_id: str,
        parent_id: Optional[str] = None,
        description: Optional[str] = None,
        diverged_at: Optional[datetime] = None,
        is_pinned: bool = False,
        color: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> Branch:
        """
        Create a branch.

        Args:
            scope_id: Owning scope (e.g. a campaign id)
            name: Name, unique among live branches of the scope
            user_id: Acting user
            parent_id: Parent branch in the same scope; None creates a root
            description: Optional description
            diverged_at: World time the branch split from its parent

        Returns:
            The created Branch
        """
        self.access.require_edit(scope_id, user_id)

        with self.store.transaction() as tx:
            branch = self.stage_branch(
                tx, scope_id, name,
                parent_id=parent_id,
                description=description,
                diverged_at=diverged_at,
                is_pinned=is_pinned,
                color=color,
                tags=tags,
            )

        record_audit(self.audit, "branch", branch.id, AuditAction.CREATE, user_id, {
            "name": branch.name,
            "description": branch.description,
            "parent_id": branch.parent_id,
            "diverged_at": branch.diverged_at.isoformat() if branch.diverged_at else None,
        })
        logger.info(f"Created branch '{branch.name}' ({branch.id}) in scope {scope_id}")
        return branch

    async def find_by_id(self, branch_id: str) -> Optional[Branch]:
        return self.store.get_branch(branch_id)

    async def get(self, branch_id: str) -> Branch:
        """Get a live branch or raise NotFoundError."""
        branch = self.store.get_branch(branch_id)
        if branch is None:
            raise NotFoundError(f"Branch with ID {branch_id} not found")
        return branch

    async def find_by_scope(self, scope_id: str) -> list[Branch]:
        """Live branches of a scope, ordered by name."""
        return self.store.list_branches(scope_id)

    async def get_children(self, branch_id: str) -> list[Branch]:
        return sorted(self.store.list_children(branch_id), key=lambda b: b.name)

    @trace_async("branch.update")
    async def update(self, branch_id: str, user_id: str, **changes) -> Branch:
        """
        Update branch metadata.

        Only name, description, is_pinned, color and tags can change.

        Raises:
            InvalidInputError: On unknown fields or a duplicate name
        """
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidInputError(f"Cannot update branch fields: {', '.join(sorted(unknown))}")

        branch = await self.get(branch_id)
        self.access.require_edit(branch.scope_id, user_id)

        updates = {k: v for k, v in changes.items() if v is not None}
        if "tags" in updates:
            updates["tags"] = list(updates["tags"])

        with self.store.transaction() as tx:
            if "name" in updates:
                name = updates["name"]
                if not isinstance(name, str) or not name.strip():
                    raise InvalidInputError("name is required and cannot be empty")
                existing = tx.find_branch_by_name(branch.scope_id, name)
                if existing is not None and existing.id != branch_id:
                    raise InvalidInputError(f'A branch named "{name}" already exists in this scope')
            updated = tx.update_branch(branch_id, **updates)

        record_audit(self.audit, "branch", branch_id, AuditAction.UPDATE, user_id, updates)
        return updated

    @trace_async("branch.delete")
    async def delete(self, branch_id: str, user_id: str) -> Branch:
        """
        Soft-delete a branch.

        Raises:
            InvalidOperationError: If the branch is a root or has live children
        """
        branch = await self.get(branch_id)
        self.access.require_edit(branch.scope_id, user_id)

        if branch.is_root:
            raise InvalidOperationError(
                "Cannot delete root branch. Root branches must be preserved for scope integrity."
            )

        with self.store.transaction() as tx:
            children = tx.count_children(branch_id)
            if children > 0:
                raise InvalidOperationError(
                    f"Cannot delete branch with {children} child branch(es). Delete children first."
                )
            deleted = tx.update_branch(branch_id, deleted_at=utc_now())

        record_audit(self.audit, "branch", branch_id, AuditAction.DELETE, user_id, {"name": branch.name})
        logger.info(f"Deleted branch '{branch.name}' ({branch_id})")
        return deleted

    async def get_ancestry(self, branch_id: str) -> list[Branch]:
        """
        Ancestry chain of a branch, root first, ending with the branch.

        Raises:
            NotFoundError: If the branch does not exist
            CycleDetectedError: If the chain exceeds the maximum depth
        """
        branch = await self.get(branch_id)
        branch_map = build_branch_map(self.store.list_branches(branch.scope_id))
        return walk_ancestry(branch_map, branch_id, self.settings.max_ancestry_depth)

    async def get_hierarchy(self, scope_id: str) -> list[BranchNode]:
        """Branch forest of a scope. Orphaned branches appear as roots."""
        return build_hierarchy(self.store.list_branches(scope_id))
