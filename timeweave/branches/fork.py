"""
Fork orchestrator.

Creates a child branch and seeds it with the snapshot of every tracked
entity visible from the source branch at the divergence instant.

Resolution runs first and only reads; the branch and every seeded
version are then written in a single transaction, so a fork either
lands completely or not at all.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from timeweave.branches.service import BranchService
from timeweave.branches.tree import walk_ancestry
from timeweave.collaborators import AuditAction, record_audit
from timeweave.exceptions import InvalidInputError, NotFoundError
from timeweave.storage.models import Branch, Version, to_utc
from timeweave.telemetry.decorators import trace_async
from timeweave.versioning.service import VersionService

logger = logging.getLogger(__name__)


@dataclass
class ForkResult:
    """Outcome of a fork."""

    branch: Branch
    versions_copied: int = 0
    copied_by_type: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "branch": self.branch.to_dict(),
            "versions_copied": self.versions_copied,
            "copied_by_type": self.copied_by_type,
        }


class ForkOrchestrator:
    """Branch-with-history creation on top of the version store."""

    def __init__(
        self,
        branches: BranchService,
        versions: VersionService,
        tracked_entity_types: Optional[list[str]] = None,
    ):
        self.branches = branches
        self.versions = versions
        self.store = versions.store
        self.tracked_entity_types = tracked_entity_types or list(
            versions.settings.tracked_entity_types
        )

    async def _resolve_entity_type(
        self,
        entity_type: str,
        source_branch_id: str,
        ancestry_ids: list[str],
        branch_map: dict[str, Branch],
        diverge_at: datetime,
    ) -> list[Version]:
        """Canonical snapshot of every entity of one type visible at diverge_at."""
        candidates = self.store.find_versions(
            entity_type=entity_type,
            branch_ids=ancestry_ids,
            as_of=diverge_at,
        )
        entity_ids = sorted({v.entity_id for v in candidates})

        resolved = await asyncio.gather(*[
            self.versions.resolve_version(
                entity_type, entity_id, source_branch_id, diverge_at, branch_map=branch_map,
            )
            for entity_id in entity_ids
        ])
        return [v for v in resolved if v is not None]

    @trace_async("branch.fork")
    async def fork(
        self,
        source_branch_id: str,
        name: str,
        diverge_at: datetime,
        user_id: str,
        description: Optional[str] = None,
    ) -> ForkResult:
        """
        Fork a branch at a world time.

        Args:
            source_branch_id: Branch to fork from
            name: Name of the new branch
            diverge_at: World time of the divergence
            user_id: Acting user
            description: Optional description of the new branch

        Returns:
            ForkResult with the new branch and the number of versions copied

        Raises:
            NotFoundError: If the source branch does not exist
            InvalidInputError: On a duplicate name or invalid divergence time
        """
        if not isinstance(diverge_at, datetime):
            raise InvalidInputError("divergedAt must be a valid date")
        diverge_at = to_utc(diverge_at)

        source = self.store.get_branch(source_branch_id)
        if source is None:
            raise NotFoundError(f"Source branch with ID {source_branch_id} not found")
        self.branches.access.require_edit(source.scope_id, user_id)

        branch_map = self.versions.scope_branch_map(source_branch_id)
        ancestry_ids = [
            b.id for b in walk_ancestry(branch_map, source_branch_id, self.versions.settings.max_ancestry_depth)
        ]

        snapshots: dict[str, list[Version]] = {}
        for entity_type in self.tracked_entity_types:
            snapshots[entity_type] = await self._resolve_entity_type(
                entity_type, source_branch_id, ancestry_ids, branch_map, diverge_at,
            )

        comment = f"Forked from branch {source_branch_id} at {diverge_at.isoformat()}"
        with self.store.transaction() as tx:
            if tx.get_branch(source_branch_id) is None:
                raise NotFoundError(f"Source branch with ID {source_branch_id} not found")

            child = self.branches.stage_branch(
                tx,
                source.scope_id,
                name,
                parent_id=source_branch_id,
                description=description,
                diverged_at=diverge_at,
            )

            copied_by_type: dict[str, int] = {}
            for entity_type, versions in snapshots.items():
                for resolved in versions:
                    self.versions.stage_version(
                        tx,
                        entity_type,
                        resolved.entity_id,
                        child.id,
                        diverge_at,
                        resolved.payload,
                        user_id,
                        comment=comment,
                    )
                copied_by_type[entity_type] = len(versions)

        result = ForkResult(
            branch=child,
            versions_copied=sum(copied_by_type.values()),
            copied_by_type={k: v for k, v in copied_by_type.items() if v},
        )

        record_audit(self.branches.audit, "branch", child.id, AuditAction.FORK, user_id, {
            "name": child.name,
            "source_branch_id": source_branch_id,
            "diverged_at": diverge_at.isoformat(),
            "versions_copied": result.versions_copied,
        })
        logger.info(
            f"Forked branch '{child.name}' from {source_branch_id} at {diverge_at.isoformat()}: "
            f"{result.versions_copied} versions copied"
        )
        return result
