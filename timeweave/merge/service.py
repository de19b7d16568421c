"""
Merge engine.

Reconciles two branches of a scope through a three-way merge anchored at
their most recent common ancestor, and applies single versions across
branches (cherry-pick). Reads run first; every write of a merge lands in
one transaction.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from timeweave.branches.tree import build_branch_map, walk_ancestry
from timeweave.collaborators import (
    AuditAction,
    AuditLog,
    CacheInvalidator,
    record_audit,
    signal_invalidate,
)
from timeweave.exceptions import (
    IncompleteResolutionError,
    InvalidInputError,
    NotFoundError,
)
from timeweave.merge.config import MergeConfig, get_merge_config
from timeweave.merge.detector import ConflictDetector
from timeweave.merge.models import (
    CherryPickResult,
    ConflictDetectionResult,
    ConflictResolution,
    EntityMergePreview,
    EntityVersions,
    MergePreview,
    MergeResult,
)
from timeweave.storage.models import Branch, MergeHistoryRecord, entity_key, to_utc
from timeweave.telemetry.config import get_meter
from timeweave.telemetry.decorators import trace_async
from timeweave.versioning.diff import set_value_at_path, values_equal
from timeweave.versioning.service import VersionService

logger = logging.getLogger(__name__)

_merge_counter = get_meter(__name__).create_counter(
    "timeweave.merge.executed",
    description="Branch merges executed",
)


@dataclass
class _EntityMerge:
    """Read-phase state for one entity of a branch merge."""

    entity_type: str
    entity_id: str
    versions: EntityVersions
    target_payload: Optional[dict[str, Any]]
    detection: ConflictDetectionResult

    @property
    def key(self) -> str:
        return entity_key(self.entity_type, self.entity_id)


class MergeService:
    """Three-way branch merge and cherry-pick."""

    def __init__(
        self,
        versions: VersionService,
        detector: Optional[ConflictDetector] = None,
        config: Optional[MergeConfig] = None,
        audit: Optional[AuditLog] = None,
        cache: Optional[CacheInvalidator] = None,
    ):
        self.versions = versions
        self.store = versions.store
        self.access = versions.access
        self.config = config or get_merge_config()
        self.detector = detector or ConflictDetector(self.config)
        self.audit = audit if audit is not None else versions.audit
        self.cache = cache if cache is not None else versions.cache

    def _max_depth(self) -> int:
        return self.versions.settings.max_ancestry_depth

    def _get_branch(self, branch_id: str, role: str = "Branch") -> Branch:
        branch = self.store.get_branch(branch_id)
        if branch is None:
            raise NotFoundError(f"{role} {branch_id} not found")
        return branch

    # Ancestry

    async def find_common_ancestor(self, branch_a_id: str, branch_b_id: str) -> Optional[Branch]:
        """
        Most recent branch shared by both ancestries.

        Returns:
            The common ancestor, or None if the branches are in disjoint trees
        """
        branch_a = self._get_branch(branch_a_id)
        branch_b = self._get_branch(branch_b_id)
        if branch_a.scope_id != branch_b.scope_id:
            return None

        branch_map = build_branch_map(self.store.list_branches(branch_a.scope_id))
        return self._common_ancestor(branch_map, branch_a_id, branch_b_id)

    def _common_ancestor(
        self,
        branch_map: dict[str, Branch],
        branch_a_id: str,
        branch_b_id: str,
    ) -> Optional[Branch]:
        ancestry_a = {b.id for b in walk_ancestry(branch_map, branch_a_id, self._max_depth())}
        for branch in reversed(walk_ancestry(branch_map, branch_b_id, self._max_depth())):
            if branch.id in ancestry_a:
                return branch
        return None

    def _divergence_below(
        self,
        branch_map: dict[str, Branch],
        ancestor_id: str,
        branch_id: str,
    ) -> Optional[datetime]:
        """Divergence time of the first branch below the ancestor on the path to branch_id."""
        chain = [b.id for b in walk_ancestry(branch_map, branch_id, self._max_depth())]
        if ancestor_id not in chain:
            return None
        index = chain.index(ancestor_id)
        if index + 1 >= len(chain):
            return None
        return branch_map[chain[index + 1]].diverged_at

    def merge_base_time(
        self,
        branch_map: dict[str, Branch],
        ancestor_id: str,
        source_branch_id: str,
        target_branch_id: str,
        world_time: datetime,
    ) -> datetime:
        """
        World time at which the base payload is read.

        The earliest divergence of either line from the common ancestor,
        never later than world_time.
        """
        candidates = [world_time]
        for branch_id in (source_branch_id, target_branch_id):
            diverged = self._divergence_below(branch_map, ancestor_id, branch_id)
            if diverged is not None:
                candidates.append(diverged)
        return min(candidates)

    # Version retrieval

    async def get_entity_versions_for_merge(
        self,
        entity_type: str,
        entity_id: str,
        source_branch_id: str,
        target_branch_id: str,
        world_time: datetime,
        common_ancestor_id: Optional[str] = None,
        branch_map: Optional[dict[str, Branch]] = None,
    ) -> EntityVersions:
        """
        Resolve the base, source and target versions of an entity.

        Any of the three may be None.

        Raises:
            InvalidInputError: If the branches share no ancestor
        """
        world_time = to_utc(world_time)
        if branch_map is None:
            branch_map = self.versions.scope_branch_map(source_branch_id)
        if common_ancestor_id is None:
            ancestor = self._common_ancestor(branch_map, source_branch_id, target_branch_id)
            if ancestor is None:
                raise InvalidInputError("Cannot merge branches with no common ancestor")
            common_ancestor_id = ancestor.id

        base_time = self.merge_base_time(
            branch_map, common_ancestor_id, source_branch_id, target_branch_id, world_time,
        )
        base, source, target = await asyncio.gather(
            self.versions.resolve_version(entity_type, entity_id, common_ancestor_id, base_time, branch_map=branch_map),
            self.versions.resolve_version(entity_type, entity_id, source_branch_id, world_time, branch_map=branch_map),
            self.versions.resolve_version(entity_type, entity_id, target_branch_id, world_time, branch_map=branch_map),
        )
        return EntityVersions(base=base, source=source, target=target)

    def _payload(self, version) -> Optional[dict[str, Any]]:
        return self.versions.decompress_version(version) if version is not None else None

    # Branch merge

    def _validate_pair(self, source_branch_id: str, target_branch_id: str) -> tuple[Branch, Branch]:
        source = self._get_branch(source_branch_id, "Source branch")
        target = self._get_branch(target_branch_id, "Target branch")
        if source_branch_id == target_branch_id:
            raise InvalidInputError("Cannot merge a branch into itself")
        if source.scope_id != target.scope_id:
            raise InvalidInputError("Cannot merge branches from different scopes")
        return source, target

    async def _analyze(
        self,
        source: Branch,
        target: Branch,
        world_time: datetime,
    ) -> tuple[Branch, list[_EntityMerge]]:
        """Read phase shared by preview and execute."""
        branch_map = build_branch_map(self.store.list_branches(source.scope_id))
        ancestor = self._common_ancestor(branch_map, source.id, target.id)
        if ancestor is None:
            raise InvalidInputError(
                "Cannot merge branches with no common ancestor. "
                "Branches must be in the same hierarchy tree."
            )

        lineage = {b.id for b in walk_ancestry(branch_map, source.id, self._max_depth())}
        lineage |= {b.id for b in walk_ancestry(branch_map, target.id, self._max_depth())}

        entities: list[_EntityMerge] = []
        for entity_type in self.config.entity_types:
            entity_ids = sorted({
                v.entity_id
                for v in self.store.find_versions(entity_type=entity_type, branch_ids=lineage)
            })
            resolved = await asyncio.gather(*[
                self.get_entity_versions_for_merge(
                    entity_type, entity_id, source.id, target.id, world_time,
                    common_ancestor_id=ancestor.id, branch_map=branch_map,
                )
                for entity_id in entity_ids
            ])
            for entity_id, versions in zip(entity_ids, resolved):
                base_payload = self._payload(versions.base)
                target_payload = self._payload(versions.target)
                detection = self.detector.detect_property_conflicts(
                    base_payload, self._payload(versions.source), target_payload,
                )
                entities.append(_EntityMerge(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    versions=versions,
                    target_payload=target_payload,
                    detection=detection,
                ))

        return ancestor, entities

    @trace_async("merge.preview")
    async def preview_merge(
        self,
        source_branch_id: str,
        target_branch_id: str,
        world_time: datetime,
        user_id: str,
    ) -> MergePreview:
        """
        Report conflicts and automatic changes without writing anything.

        Only entities the merge would touch are listed.
        """
        world_time = to_utc(world_time)
        source, target = self._validate_pair(source_branch_id, target_branch_id)
        self.access.require_read(source.scope_id, user_id)

        ancestor, entities = await self._analyze(source, target, world_time)

        preview = MergePreview(
            source_branch_id=source_branch_id,
            target_branch_id=target_branch_id,
            common_ancestor_id=ancestor.id,
        )
        for entity in entities:
            changes = []
            if self.config.include_auto_resolved:
                changes = [
                    c for c in entity.detection.auto_resolved
                    if not values_equal(c.resolved_value, c.target_value)
                ]
            if entity.detection.conflicts or changes:
                preview.entities.append(EntityMergePreview(
                    entity_type=entity.entity_type,
                    entity_id=entity.entity_id,
                    conflicts=entity.detection.conflicts,
                    auto_resolved_changes=changes,
                ))

        logger.info(
            f"Merge preview {source_branch_id} -> {target_branch_id}: "
            f"{preview.total_conflicts} conflicts, {preview.total_auto_resolved} auto-resolved"
        )
        return preview

    @staticmethod
    def _apply_resolutions(
        entity_type: str,
        entity_id: str,
        detection: ConflictDetectionResult,
        resolutions: list[ConflictResolution],
    ) -> tuple[Optional[dict[str, Any]], list[str]]:
        """
        Final payload for one entity.

        Returns:
            (payload, unresolved conflict paths)
        """
        if not detection.has_conflicts:
            return detection.merged_payload, []

        by_path = {
            r.path: r for r in resolutions if r.applies_to(entity_type, entity_id)
        }
        missing = [p for p in detection.conflict_paths if p not in by_path]
        if missing:
            return None, missing

        payload = copy.deepcopy(detection.partial_payload) if detection.partial_payload else {}
        for path in detection.conflict_paths:
            set_value_at_path(payload, path, by_path[path].decoded_value())
        return payload, []

    @trace_async("merge.execute")
    async def execute_merge(
        self,
        source_branch_id: str,
        target_branch_id: str,
        world_time: datetime,
        user_id: str,
        resolutions: Optional[list[ConflictResolution]] = None,
    ) -> MergeResult:
        """
        Merge the source branch into the target branch at a world time.

        Args:
            source_branch_id: Branch whose changes are merged
            target_branch_id: Branch receiving the changes
            world_time: World time of the merge; new versions start here
            user_id: Acting user
            resolutions: One resolution per conflict path

        Returns:
            MergeResult with the number of versions created

        Raises:
            IncompleteResolutionError: If any conflict lacks a resolution
            InvalidInputError: If the branches cannot be merged
        """
        world_time = to_utc(world_time)
        resolutions = resolutions or []
        source, target = self._validate_pair(source_branch_id, target_branch_id)
        self.access.require_edit(target.scope_id, user_id)

        ancestor, entities = await self._analyze(source, target, world_time)

        finals: list[tuple[_EntityMerge, Optional[dict[str, Any]]]] = []
        unresolved: list[str] = []
        for entity in entities:
            payload, missing = self._apply_resolutions(
                entity.entity_type, entity.entity_id, entity.detection, resolutions,
            )
            unresolved.extend(f"{entity.key}:{path}" for path in missing)
            finals.append((entity, payload))

        if unresolved:
            raise IncompleteResolutionError(
                unresolved,
                f"Cannot merge: not all conflicts have been resolved ({len(unresolved)} remaining)",
            )

        # Compress outside the transaction
        pending = [
            (entity, payload, self.versions.compress(payload) if payload is not None else None)
            for entity, payload in finals
        ]

        comment = f"Merged from branch {source.name} ({source_branch_id})"
        merged_ids: list[str] = []
        versions_created = 0
        with self.store.transaction() as tx:
            for entity, payload, blob in pending:
                current = entity.versions.target
                if payload is None:
                    if current is None:
                        continue
                    if current.branch_id != target_branch_id:
                        logger.warning(
                            f"Cannot record deletion of {entity.key} in {target_branch_id}: "
                            f"visible version is inherited from {current.branch_id}"
                        )
                        continue
                    if world_time <= current.valid_from:
                        logger.warning(
                            f"Cannot record deletion of {entity.key} in {target_branch_id}: "
                            f"visible version {current.id} starts at the merge time"
                        )
                        continue
                    tx.set_version_valid_to(current.id, world_time)
                    merged_ids.append(entity.key)
                    continue

                if current is not None and values_equal(payload, entity.target_payload):
                    continue

                self.versions.stage_version(
                    tx,
                    entity.entity_type,
                    entity.entity_id,
                    target_branch_id,
                    world_time,
                    blob,
                    user_id,
                    comment=comment,
                )
                merged_ids.append(entity.key)
                versions_created += 1

            history = tx.add_merge_history(MergeHistoryRecord(
                source_branch_id=source_branch_id,
                target_branch_id=target_branch_id,
                common_ancestor_id=ancestor.id,
                world_time=world_time,
                merged_by=user_id,
                conflicts_count=sum(len(e.detection.conflicts) for e in entities),
                entities_merged=len(merged_ids),
                resolutions_data=[r.to_dict() for r in resolutions],
            ))

        _merge_counter.add(1, {"conflicts_resolved": bool(resolutions)})

        result = MergeResult(
            success=True,
            versions_created=versions_created,
            merged_entity_ids=merged_ids,
            merge_history_id=history.id,
        )

        record_audit(self.audit, "branch", target_branch_id, AuditAction.MERGE, user_id, {
            "source_branch_id": source_branch_id,
            "common_ancestor_id": ancestor.id,
            "world_time": world_time.isoformat(),
            "versions_created": versions_created,
            "resolutions": len(resolutions),
        })
        for key in merged_ids:
            entity_type, entity_id = key.split(":", 1)
            signal_invalidate(self.cache, entity_type, entity_id, target_branch_id)

        logger.info(
            f"Merged {source_branch_id} into {target_branch_id} at {world_time.isoformat()}: "
            f"{versions_created} versions created"
        )
        return result

    async def get_merge_history(self, branch_id: str, user_id: str) -> list[MergeHistoryRecord]:
        """Merges where the branch was source or target, most recent first."""
        branch = self._get_branch(branch_id)
        self.access.require_read(branch.scope_id, user_id)
        return self.store.list_merge_history(branch_id)

    # Cherry-pick

    @trace_async("merge.cherry_pick")
    async def cherry_pick(
        self,
        source_version_id: str,
        target_branch_id: str,
        user_id: str,
        resolutions: Optional[list[ConflictResolution]] = None,
    ) -> CherryPickResult:
        """
        Apply one historical version onto another branch.

        The target's version at the source version's valid_from is compared
        field by field with the source payload; any difference is a
        conflict. With no resolutions, conflicts are returned unapplied.

        Raises:
            NotFoundError: If the version or the target branch is missing
            IncompleteResolutionError: If resolutions do not cover every conflict
        """
        source_version = self.store.get_version(source_version_id)
        if source_version is None:
            raise NotFoundError(f"Version {source_version_id} not found")
        target = self._get_branch(target_branch_id, "Target branch")

        source_branch = self.store.get_branch(source_version.branch_id, include_deleted=True)
        if source_branch is not None and source_branch.scope_id != target.scope_id:
            raise InvalidInputError("Cannot cherry-pick between branches from different scopes")
        self.access.require_edit(target.scope_id, user_id)

        entity_type = source_version.entity_type
        entity_id = source_version.entity_id
        world_time = source_version.valid_from

        current = await self.versions.resolve_version(entity_type, entity_id, target_branch_id, world_time)
        source_payload = self.versions.decompress_version(source_version)

        payload = source_payload
        conflicts = []
        if current is not None:
            conflicts = self.detector.detect_pairwise_conflicts(
                source_payload, self.versions.decompress_version(current),
            )

        if conflicts:
            if not resolutions:
                return CherryPickResult(success=False, has_conflict=True, conflicts=conflicts)

            by_path = {
                r.path: r for r in resolutions if r.applies_to(entity_type, entity_id)
            }
            missing = [c.path for c in conflicts if c.path not in by_path]
            if missing:
                raise IncompleteResolutionError(
                    missing, "Cannot cherry-pick: not all conflicts have been resolved",
                )
            payload = copy.deepcopy(source_payload)
            for conflict in conflicts:
                set_value_at_path(payload, conflict.path, by_path[conflict.path].decoded_value())

        blob = self.versions.compress(payload)
        with self.store.transaction() as tx:
            version = self.versions.stage_version(
                tx,
                entity_type,
                entity_id,
                target_branch_id,
                world_time,
                blob,
                user_id,
                comment=f"Cherry-picked from version {source_version_id}",
            )

        record_audit(self.audit, "version", entity_key(entity_type, entity_id), AuditAction.CHERRY_PICK, user_id, {
            "source_version_id": source_version_id,
            "target_branch_id": target_branch_id,
            "had_conflict": bool(conflicts),
            "resolutions_count": len(resolutions or []),
        })
        signal_invalidate(self.cache, entity_type, entity_id, target_branch_id)
        return CherryPickResult(success=True, has_conflict=False, version=version)
