"""
Entity registry with optimistic concurrency.

Holds the current (non-temporal) state of entities. Every mutation must
name the version the caller last saw; the write is conditional on that
version and is snapshotted into the version store in the same
transaction.
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Optional

from timeweave.collaborators import AuditAction, record_audit, signal_invalidate
from timeweave.exceptions import InvalidInputError, NotFoundError, OptimisticLockError
from timeweave.storage.models import Branch, EntityRecord, to_utc, utc_now
from timeweave.telemetry.decorators import trace_async
from timeweave.versioning.service import VersionService

logger = logging.getLogger(__name__)


class EntityService:
    """Create, update and delete entities, versioning every change."""

    def __init__(self, versions: VersionService):
        self.versions = versions
        self.store = versions.store
        self.access = versions.access

    def _branch_in_scope(self, branch_id: str, scope_id: str) -> Branch:
        branch = self.store.get_branch(branch_id)
        if branch is None or branch.scope_id != scope_id:
            raise InvalidInputError(
                f"Branch with ID {branch_id} not found or does not belong to this entity's scope"
            )
        return branch

    async def get(self, entity_type: str, entity_id: str) -> EntityRecord:
        record = self.store.get_entity(entity_type, entity_id)
        if record is None:
            raise NotFoundError(f"{entity_type} with ID {entity_id} not found")
        return record

    async def list(self, scope_id: str, entity_type: Optional[str] = None) -> list[EntityRecord]:
        return self.store.list_entities(entity_type=entity_type, scope_id=scope_id)

    @trace_async("entity.create")
    async def create(
        self,
        entity_type: str,
        scope_id: str,
        fields: dict[str, Any],
        branch_id: str,
        user_id: str,
        entity_id: Optional[str] = None,
        world_time: Optional[datetime] = None,
    ) -> EntityRecord:
        """
        Create an entity and its first version in a branch.

        Args:
            entity_type: Entity type
            scope_id: Owning scope
            fields: Initial state (a JSON object)
            branch_id: Branch receiving the first version
            user_id: Acting user
            entity_id: Id to use (generated if omitted)
            world_time: World time of creation (defaults to now)
        """
        if not isinstance(fields, dict):
            raise InvalidInputError("fields must be a non-null object")
        self._branch_in_scope(branch_id, scope_id)
        self.access.require_edit(scope_id, user_id)

        entity_id = entity_id or str(uuid.uuid4())
        world_time = to_utc(world_time) if world_time else utc_now()
        blob = self.versions.compress(fields)

        with self.store.transaction() as tx:
            if tx.get_entity(entity_type, entity_id, include_deleted=True) is not None:
                raise InvalidInputError(f"{entity_type} with ID {entity_id} already exists")
            record = tx.put_entity(EntityRecord(
                entity_type=entity_type,
                entity_id=entity_id,
                scope_id=scope_id,
                fields=dict(fields),
            ))
            self.versions.stage_version(
                tx, entity_type, entity_id, branch_id, world_time, blob, user_id,
                comment="Created",
            )

        record_audit(self.versions.audit, entity_type, entity_id, AuditAction.CREATE, user_id, {
            "branch_id": branch_id,
        })
        return record

    @trace_async("entity.update")
    async def update(
        self,
        entity_type: str,
        entity_id: str,
        changes: dict[str, Any],
        expected_version: int,
        branch_id: str,
        user_id: str,
        world_time: Optional[datetime] = None,
    ) -> EntityRecord:
        """
        Apply field changes if the entity is still at expected_version.

        The entity update and its version snapshot are one unit: on a lock
        failure neither is written.

        Raises:
            OptimisticLockError: If the stored version differs from expected_version
        """
        if not isinstance(changes, dict):
            raise InvalidInputError("changes must be a non-null object")

        record = await self.get(entity_type, entity_id)
        self._branch_in_scope(branch_id, record.scope_id)

        if record.version != expected_version:
            raise OptimisticLockError(entity_type, entity_id, expected_version, record.version)

        self.access.require_edit(record.scope_id, user_id)

        fields = {**record.fields, **changes}
        world_time = to_utc(world_time) if world_time else utc_now()
        blob = self.versions.compress(fields)

        with self.store.transaction() as tx:
            updated = tx.update_entity_if_version(entity_type, entity_id, expected_version, fields)
            if updated == 0:
                current = tx.get_entity(entity_type, entity_id)
                raise OptimisticLockError(
                    entity_type, entity_id, expected_version,
                    current.version if current else None,
                )
            self.versions.stage_version(
                tx, entity_type, entity_id, branch_id, world_time, blob, user_id,
                comment=f"Updated {', '.join(sorted(changes))}" if changes else None,
            )
            result = tx.get_entity(entity_type, entity_id)

        record_audit(self.versions.audit, entity_type, entity_id, AuditAction.UPDATE, user_id, {
            "changed_fields": sorted(changes),
            "version": result.version,
            "branch_id": branch_id,
        })
        signal_invalidate(self.versions.cache, entity_type, entity_id, branch_id)
        return result

    @trace_async("entity.delete")
    async def delete(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int,
        branch_id: str,
        user_id: str,
        world_time: Optional[datetime] = None,
    ) -> EntityRecord:
        """
        Soft-delete an entity and end its version in the branch.

        Raises:
            OptimisticLockError: If the stored version differs from expected_version
        """
        record = await self.get(entity_type, entity_id)
        self._branch_in_scope(branch_id, record.scope_id)
        if record.version != expected_version:
            raise OptimisticLockError(entity_type, entity_id, expected_version, record.version)
        self.access.require_edit(record.scope_id, user_id)

        world_time = to_utc(world_time) if world_time else utc_now()
        with self.store.transaction() as tx:
            current = tx.get_entity(entity_type, entity_id)
            if current is None or current.version != expected_version:
                raise OptimisticLockError(
                    entity_type, entity_id, expected_version,
                    current.version if current else None,
                )
            deleted = tx.put_entity(replace(
                current,
                version=current.version + 1,
                deleted_at=utc_now(),
                updated_at=utc_now(),
            ))
            for version in tx.find_versions(entity_type, entity_id, [branch_id], as_of=world_time):
                if world_time > version.valid_from:
                    tx.set_version_valid_to(version.id, world_time)

        record_audit(self.versions.audit, entity_type, entity_id, AuditAction.DELETE, user_id, {
            "branch_id": branch_id,
        })
        signal_invalidate(self.versions.cache, entity_type, entity_id, branch_id)
        return deleted
