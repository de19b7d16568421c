"""
Error kinds raised by the timeline engine.

Merge conflicts are never raised; they are returned as values by the
conflict detector. Everything here propagates to the caller.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class TimeweaveError(Exception):
    """Base class for all engine errors."""

    retryable = False


class NotFoundError(TimeweaveError):
    """A branch, version, or entity does not exist."""


class InvalidInputError(TimeweaveError):
    """Malformed caller input."""


class PayloadTooLargeError(InvalidInputError):
    """Payload exceeds the codec size limit."""


class PayloadCodecError(InvalidInputError):
    """Stored payload blob could not be decoded."""


class ForbiddenError(TimeweaveError):
    """The access-control collaborator denied the operation."""


class InvalidOperationError(TimeweaveError):
    """Operation is not allowed in the current state of the branch tree."""


class OptimisticLockError(TimeweaveError):
    """
    Stored version did not match the caller's expected version.

    The caller should re-fetch the current state and retry.
    """

    retryable = True

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int,
        actual_version: Optional[int] = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        message = (
            f"{entity_type} {entity_id} was modified by another user "
            f"(expected version {expected_version}"
        )
        if actual_version is not None:
            message += f", found {actual_version}"
        super().__init__(message + ")")


class CycleDetectedError(TimeweaveError):
    """Ancestry walk exceeded the maximum depth."""

    def __init__(self, branch_id: str, max_depth: int):
        self.branch_id = branch_id
        self.max_depth = max_depth
        super().__init__(
            f"Maximum branch depth ({max_depth}) exceeded while walking "
            f"ancestry of {branch_id}. Possible circular reference."
        )
        logger.error(f"Branch ancestry integrity fault: {self}")


class IncompleteResolutionError(TimeweaveError):
    """Conflicts were submitted without a resolution for every path."""

    def __init__(self, missing_paths: list[str], message: Optional[str] = None):
        self.missing_paths = missing_paths
        super().__init__(
            message
            or f"Not all conflicts have been resolved (missing: {', '.join(missing_paths)})"
        )
