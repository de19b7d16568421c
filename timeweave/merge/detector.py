"""
Conflict detection for branch merges.

Compares the base, source and target payloads of one entity field by
field. Fields changed on only one side, or changed identically on both,
are merged automatically; fields changed differently on both sides become
conflicts. Arrays are compared as whole values.
"""

import copy
import logging
from typing import Any, Optional

from timeweave.merge.config import MergeConfig, get_merge_config
from timeweave.merge.models import (
    AutoResolvedChange,
    ConflictDetectionResult,
    ConflictType,
    MergeConflict,
)
from timeweave.telemetry.decorators import trace_sync
from timeweave.versioning.diff import (
    MISSING,
    collect_leaf_paths,
    get_value_at_path,
    set_value_at_path,
    values_equal,
)

logger = logging.getLogger(__name__)

Payload = Optional[dict[str, Any]]


def _exists(value: Any) -> bool:
    return value is not MISSING


class ConflictDetector:
    """
    Three-way and pairwise payload comparison.

    Detection never raises on conflicts; callers decide what an unresolved
    conflict list means for them.
    """

    def __init__(self, config: Optional[MergeConfig] = None):
        """
        Initialize conflict detector.

        Args:
            config: Merge configuration
        """
        self.config = config or get_merge_config()

    def _paths(self, *payloads: Payload) -> list[str]:
        paths: set[str] = set()
        for payload in payloads:
            if payload is not None:
                paths |= collect_leaf_paths(payload, max_depth=self.config.max_depth)
        return sorted(paths)

    @trace_sync("merge.detect")
    def detect_property_conflicts(
        self,
        base: Payload,
        source: Payload,
        target: Payload,
    ) -> ConflictDetectionResult:
        """
        Classify every field of an entity across a three-way merge.

        Args:
            base: Payload at the common ancestor (None if absent)
            source: Payload on the source branch (None if absent or deleted)
            target: Payload on the target branch (None if absent or deleted)

        Returns:
            ConflictDetectionResult; merged_payload is set only when there
            are no conflicts
        """
        if base is not None and (source is None or target is None):
            return self._detect_entity_deletion(base, source, target)

        if base is None:
            if source is not None and target is not None:
                # Both sides created the entity independently
                return self.detect_property_conflicts({}, source, target)
            created = source if source is not None else target
            merged = copy.deepcopy(created)
            return ConflictDetectionResult(merged_payload=merged, partial_payload=merged)

        conflicts: list[MergeConflict] = []
        auto_resolved: list[AutoResolvedChange] = []
        merged: dict[str, Any] = {}

        for path in self._paths(base, source, target):
            base_value = get_value_at_path(base, path)
            source_value = get_value_at_path(source, path)
            target_value = get_value_at_path(target, path)
            source_changed = not values_equal(base_value, source_value)
            target_changed = not values_equal(base_value, target_value)

            if source_changed and target_changed and not values_equal(source_value, target_value):
                conflicts.append(MergeConflict(
                    path=path,
                    type=self._conflict_type(base_value, source_value, target_value),
                    base_value=base_value,
                    source_value=source_value,
                    target_value=target_value,
                ))
                continue

            if source_changed:
                resolved = source_value
            elif target_changed:
                resolved = target_value
            else:
                resolved = base_value

            set_value_at_path(merged, path, copy.deepcopy(resolved))
            if source_changed or target_changed:
                auto_resolved.append(AutoResolvedChange(
                    path=path,
                    resolved_value=resolved,
                    base_value=base_value,
                    source_value=source_value,
                    target_value=target_value,
                ))

        if conflicts:
            logger.debug(f"Detected {len(conflicts)} conflicts: {[c.path for c in conflicts]}")

        return ConflictDetectionResult(
            conflicts=conflicts,
            merged_payload=None if conflicts else merged,
            partial_payload=merged,
            auto_resolved=auto_resolved,
        )

    def _detect_entity_deletion(
        self,
        base: dict[str, Any],
        source: Payload,
        target: Payload,
    ) -> ConflictDetectionResult:
        """Entity existed at the base and is gone on at least one side."""
        if source is None and target is None:
            return ConflictDetectionResult()

        survivor = source if source is not None else target
        if values_equal(base, survivor):
            # Deleted on one side, untouched on the other
            return ConflictDetectionResult(auto_resolved=[
                AutoResolvedChange(
                    path=path,
                    resolved_value=MISSING,
                    base_value=get_value_at_path(base, path),
                    source_value=get_value_at_path(source, path) if source is not None else MISSING,
                    target_value=get_value_at_path(target, path) if target is not None else MISSING,
                )
                for path in self._paths(base)
            ])

        conflict_type = (
            ConflictType.DELETED_MODIFIED if source is None else ConflictType.MODIFIED_DELETED
        )
        conflicts = [
            MergeConflict(
                path=path,
                type=conflict_type,
                base_value=get_value_at_path(base, path),
                source_value=get_value_at_path(source, path) if source is not None else MISSING,
                target_value=get_value_at_path(target, path) if target is not None else MISSING,
            )
            for path in self._paths(base, survivor)
        ]
        logger.debug(f"Entity deleted on one side and modified on the other ({len(conflicts)} paths)")
        return ConflictDetectionResult(conflicts=conflicts, partial_payload=None)

    @staticmethod
    def _conflict_type(base_value: Any, source_value: Any, target_value: Any) -> ConflictType:
        if _exists(base_value) and not _exists(source_value) and not _exists(target_value):
            return ConflictType.BOTH_DELETED
        if _exists(source_value) and not _exists(target_value):
            return ConflictType.MODIFIED_DELETED
        if not _exists(source_value) and _exists(target_value):
            return ConflictType.DELETED_MODIFIED
        return ConflictType.BOTH_MODIFIED

    def detect_pairwise_conflicts(
        self,
        incoming: dict[str, Any],
        current: dict[str, Any],
    ) -> list[MergeConflict]:
        """
        Two-way comparison used by cherry-pick.

        Every leaf path whose values differ is a conflict.

        Args:
            incoming: Payload being applied (the source)
            current: Payload already in place (the target)
        """
        conflicts = []
        for path in self._paths(incoming, current):
            source_value = get_value_at_path(incoming, path)
            target_value = get_value_at_path(current, path)
            if values_equal(source_value, target_value):
                continue
            conflicts.append(MergeConflict(
                path=path,
                type=self._conflict_type(MISSING, source_value, target_value),
                source_value=source_value,
                target_value=target_value,
            ))
        return conflicts
