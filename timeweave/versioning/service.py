"""
Temporal version store.

Creates, closes, restores and resolves versioned snapshots of entities.
Resolution walks branch ancestry so that a branch sees its ancestors'
history until it records a version of its own.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from timeweave.branches.tree import build_branch_map
from timeweave.collaborators import (
    AccessControl,
    AllowAllAccessControl,
    AuditAction,
    AuditLog,
    CacheInvalidator,
    record_audit,
    signal_invalidate,
)
from timeweave.config.settings import Settings, get_settings
from timeweave.exceptions import CycleDetectedError, InvalidInputError, NotFoundError
from timeweave.storage.codec import compress_payload, decompress_payload
from timeweave.storage.models import Branch, Version, to_utc, utc_now
from timeweave.storage.store import TimelineStore, Transaction
from timeweave.telemetry.decorators import trace_async
from timeweave.versioning.diff import VersionDiff, calculate_diff

logger = logging.getLogger(__name__)


def _require_text(value: Optional[str], name: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{name} is required and cannot be empty")


class VersionService:
    """
    Version store operations over a TimelineStore.

    Version numbers per (entity_type, entity_id, branch_id) start at 1 and
    increase by one. Valid intervals of one entity within one branch never
    overlap: a new version closes whichever version covers its valid_from
    and ends where the next later version begins.
    """

    def __init__(
        self,
        store: TimelineStore,
        access: Optional[AccessControl] = None,
        audit: Optional[AuditLog] = None,
        cache: Optional[CacheInvalidator] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.access = access or AllowAllAccessControl()
        self.audit = audit
        self.cache = cache
        self.settings = settings or get_settings()

    # Codec

    def compress(self, payload: Any) -> bytes:
        return compress_payload(payload, self.settings.max_payload_bytes)

    def decompress_version(self, version: Version) -> dict[str, Any]:
        """Decode a version's payload."""
        return decompress_payload(version.payload, self.settings.max_payload_bytes)

    # Writes

    def _require_branch(self, branch_id: str, reader: Optional[Any] = None) -> Branch:
        branch = (reader or self.store).get_branch(branch_id)
        if branch is None:
            raise NotFoundError(f"Branch with ID {branch_id} not found")
        return branch

    def stage_version(
        self,
        tx: Transaction,
        entity_type: str,
        entity_id: str,
        branch_id: str,
        valid_from: datetime,
        payload_blob: bytes,
        created_by: str,
        valid_to: Optional[datetime] = None,
        comment: Optional[str] = None,
    ) -> Version:
        """
        Stage a new version inside an open transaction.

        The payload must already be compressed. Used by every write path
        (create, restore, fork, merge, cherry-pick).

        Raises:
            InvalidInputError: If the interval is empty or would overlap a
                later version
        """
        valid_from = to_utc(valid_from)
        valid_to = to_utc(valid_to) if valid_to else None
        if valid_to is not None and valid_to <= valid_from:
            raise InvalidInputError("validTo must be after validFrom")

        existing = tx.find_versions(entity_type, entity_id, [branch_id])

        later_starts = [v.valid_from for v in existing if v.valid_from > valid_from]
        if later_starts:
            next_start = min(later_starts)
            if valid_to is None:
                valid_to = next_start
            elif valid_to > next_start:
                raise InvalidInputError(
                    f"Version interval overlaps a later version starting at {next_start.isoformat()}"
                )

        for current in existing:
            if current.is_valid_at(valid_from):
                tx.set_version_valid_to(current.id, valid_from)

        version = Version(
            entity_type=entity_type,
            entity_id=entity_id,
            branch_id=branch_id,
            version=tx.max_version_number(entity_type, entity_id, branch_id) + 1,
            valid_from=valid_from,
            valid_to=valid_to,
            payload=payload_blob,
            created_by=created_by,
            comment=comment,
        )
        tx.add_version(version)
        logger.debug(
            f"Staged {entity_type} {entity_id} v{version.version} in branch {branch_id}"
        )
        return version

    @trace_async("version.create")
    async def create_version(
        self,
        entity_type: str,
        entity_id: str,
        branch_id: str,
        valid_from: datetime,
        payload: dict[str, Any],
        user_id: str,
        valid_to: Optional[datetime] = None,
        comment: Optional[str] = None,
    ) -> Version:
        """
        Create a new version of an entity in a branch.

        Args:
            entity_type: Entity type (e.g. "settlement")
            entity_id: Entity id
            branch_id: Branch receiving the version
            valid_from: World time the version becomes valid
            payload: Entity state (a JSON object)
            user_id: Author
            valid_to: Optional end of validity
            comment: Optional description

        Returns:
            The created Version

        Raises:
            InvalidInputError: On empty ids, invalid dates, or non-object payload
            NotFoundError: If the branch does not exist
            ForbiddenError: If the user cannot edit the branch's scope
        """
        _require_text(entity_type, "entityType")
        _require_text(entity_id, "entityId")
        _require_text(branch_id, "branchId")
        if not isinstance(valid_from, datetime):
            raise InvalidInputError("validFrom must be a valid date")
        if valid_to is not None and not isinstance(valid_to, datetime):
            raise InvalidInputError("validTo must be null or a valid date")
        if not isinstance(payload, dict):
            raise InvalidInputError("payload must be a non-null object")

        branch = self._require_branch(branch_id)
        self.access.require_edit(branch.scope_id, user_id)

        blob = self.compress(payload)
        with self.store.transaction() as tx:
            self._require_branch(branch_id, tx)
            version = self.stage_version(
                tx, entity_type, entity_id, branch_id, valid_from, blob, user_id,
                valid_to=valid_to, comment=comment,
            )

        record_audit(self.audit, "version", version.id, AuditAction.CREATE, user_id, {
            "entity_type": entity_type,
            "entity_id": entity_id,
            "branch_id": branch_id,
            "version": version.version,
        })
        signal_invalidate(self.cache, entity_type, entity_id, branch_id)
        return version

    @trace_async("version.close")
    async def close_version(self, version_id: str, valid_to: datetime, user_id: str) -> Version:
        """
        End a version's validity at valid_to.

        Raises:
            NotFoundError: If the version does not exist
            InvalidInputError: If valid_to is not after valid_from or runs
                past the start of a later version
        """
        version = self.store.get_version(version_id)
        if version is None:
            raise NotFoundError(f"Version with ID {version_id} not found")

        branch = self.store.get_branch(version.branch_id, include_deleted=True)
        if branch is not None:
            self.access.require_edit(branch.scope_id, user_id)

        valid_to = to_utc(valid_to)
        if valid_to <= version.valid_from:
            raise InvalidInputError("validTo must be after validFrom")

        with self.store.transaction() as tx:
            later_starts = [
                v.valid_from
                for v in tx.find_versions(version.entity_type, version.entity_id, [version.branch_id])
                if v.valid_from > version.valid_from
            ]
            if later_starts and valid_to > min(later_starts):
                raise InvalidInputError(
                    f"Version interval overlaps a later version starting at {min(later_starts).isoformat()}"
                )
            closed = tx.set_version_valid_to(version_id, valid_to)

        signal_invalidate(self.cache, closed.entity_type, closed.entity_id, closed.branch_id)
        return closed

    @trace_async("version.restore")
    async def restore_version(
        self,
        version_id: str,
        branch_id: str,
        user_id: str,
        valid_from: Optional[datetime] = None,
        comment: Optional[str] = None,
    ) -> Version:
        """
        Restore a historical version as a new version in a branch.

        The stored compressed payload is reused as-is. History is never
        rewritten.

        Args:
            version_id: Version to restore
            branch_id: Branch receiving the restored version
            user_id: Author
            valid_from: World time of the restore (defaults to now)
            comment: Defaults to "Restored from <version_id>"
        """
        world_time = valid_from or utc_now()
        if not isinstance(world_time, datetime):
            raise InvalidInputError("validFrom must be a valid date")

        historical = self.store.get_version(version_id)
        if historical is None:
            raise NotFoundError(f"Version with ID {version_id} not found")

        branch = self._require_branch(branch_id)
        self.access.require_edit(branch.scope_id, user_id)

        with self.store.transaction() as tx:
            version = self.stage_version(
                tx,
                historical.entity_type,
                historical.entity_id,
                branch_id,
                world_time,
                historical.payload,
                user_id,
                comment=comment or f"Restored from {version_id}",
            )

        record_audit(self.audit, "version", version.id, AuditAction.RESTORE, user_id, {
            "restored_from": version_id,
            "branch_id": branch_id,
        })
        signal_invalidate(self.cache, version.entity_type, version.entity_id, branch_id)
        return version

    # Reads

    async def get_version(self, version_id: str) -> Version:
        version = self.store.get_version(version_id)
        if version is None:
            raise NotFoundError(f"Version with ID {version_id} not found")
        return version

    async def find_version_history(
        self,
        entity_type: str,
        entity_id: str,
        branch_id: str,
        user_id: str,
    ) -> list[Version]:
        """All versions of an entity in one branch, oldest first."""
        branch = self._require_branch(branch_id)
        self.access.require_read(branch.scope_id, user_id)
        return self.store.find_versions(entity_type, entity_id, [branch_id])

    async def find_version_in_branch(
        self,
        entity_type: str,
        entity_id: str,
        branch_id: str,
        as_of: datetime,
    ) -> Optional[Version]:
        """
        Version of an entity valid at as_of in exactly this branch.

        Ties (which the non-overlap rule should prevent) go to the latest
        valid_from.
        """
        return self._find_in_branch(entity_type, entity_id, branch_id, to_utc(as_of))

    def _find_in_branch(
        self,
        entity_type: str,
        entity_id: str,
        branch_id: str,
        as_of: datetime,
    ) -> Optional[Version]:
        matches = self.store.find_versions(entity_type, entity_id, [branch_id], as_of=as_of)
        return matches[-1] if matches else None

    async def get_versions_for_branch_and_type(
        self,
        branch_id: str,
        entity_type: str,
        as_of: Optional[datetime] = None,
    ) -> list[Version]:
        """Versions recorded directly in a branch for one entity type."""
        return self.store.find_versions(
            entity_type=entity_type,
            branch_ids=[branch_id],
            as_of=to_utc(as_of) if as_of else None,
        )

    def scope_branch_map(self, branch_id: str) -> dict[str, Branch]:
        """Id-indexed map of every live branch in the branch's scope."""
        branch = self._require_branch(branch_id)
        return build_branch_map(self.store.list_branches(branch.scope_id))

    @trace_async("version.resolve")
    async def resolve_version(
        self,
        entity_type: str,
        entity_id: str,
        branch_id: str,
        as_of: datetime,
        branch_map: Optional[dict[str, Branch]] = None,
    ) -> Optional[Version]:
        """
        Resolve the version visible from a branch at a world time.

        Checks the branch itself, then each ancestor toward the root,
        returning the first version valid at as_of.

        Args:
            entity_type: Entity type
            entity_id: Entity id
            branch_id: Branch to resolve from
            as_of: World time
            branch_map: Pre-fetched scope branch map; fetched once if None

        Returns:
            The visible Version, or None if no branch in the chain has one

        Raises:
            NotFoundError: If the branch does not exist
            CycleDetectedError: If the ancestry walk exceeds the depth limit
        """
        as_of = to_utc(as_of)
        if branch_map is None:
            branch_map = self.scope_branch_map(branch_id)
        elif branch_id not in branch_map:
            raise NotFoundError(f"Branch with ID {branch_id} not found")

        current_id: Optional[str] = branch_id
        hops = 0
        while current_id is not None:
            if hops >= self.settings.max_ancestry_depth:
                raise CycleDetectedError(branch_id, self.settings.max_ancestry_depth)
            version = self._find_in_branch(entity_type, entity_id, current_id, as_of)
            if version is not None:
                if current_id != branch_id:
                    logger.debug(
                        f"Resolved {entity_type} {entity_id} from ancestor {current_id} "
                        f"for branch {branch_id}"
                    )
                return version

            current = branch_map.get(current_id)
            current_id = current.parent_id if current else None
            hops += 1

        return None

    async def get_version_diff(self, version_id1: str, version_id2: str, user_id: str) -> VersionDiff:
        """
        Top-level field diff from one version to another.

        Raises:
            InvalidInputError: If the versions belong to different branches
        """
        first = await self.get_version(version_id1)
        second = await self.get_version(version_id2)
        if first.branch_id != second.branch_id:
            raise InvalidInputError("Cannot diff versions from different branches")

        branch = self.store.get_branch(first.branch_id, include_deleted=True)
        if branch is not None:
            self.access.require_read(branch.scope_id, user_id)

        return calculate_diff(self.decompress_version(first), self.decompress_version(second))
