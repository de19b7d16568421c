"""Temporal version store and structural differ."""

from timeweave.versioning.diff import MISSING, ValueKind, VersionDiff, calculate_diff, values_equal
from timeweave.versioning.service import VersionService

__all__ = [
    "MISSING",
    "ValueKind",
    "VersionDiff",
    "VersionService",
    "calculate_diff",
    "values_equal",
]
