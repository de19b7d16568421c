"""
Branch merge engine.

Three-way merge with conflict detection, merge previews, and cherry-pick
of single versions.
"""

from timeweave.merge.config import MergeConfig, configure_merge, get_merge_config, set_merge_config
from timeweave.merge.detector import ConflictDetector
from timeweave.merge.models import (
    CherryPickResult,
    ConflictDetectionResult,
    ConflictResolution,
    ConflictType,
    MergeConflict,
    MergePreview,
    MergeResult,
)

__all__ = [
    "CherryPickResult",
    "ConflictDetectionResult",
    "ConflictDetector",
    "ConflictResolution",
    "ConflictType",
    "MergeConfig",
    "MergeConflict",
    "MergePreview",
    "MergeResult",
    "configure_merge",
    "get_merge_config",
    "set_merge_config",
]
