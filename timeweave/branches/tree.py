"""
Branch forest walks.

Branches refer to their parent by id only. Every walk here runs over an
id-indexed map fetched once per operation.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from timeweave.exceptions import CycleDetectedError
from timeweave.storage.models import Branch

logger = logging.getLogger(__name__)

MAX_ANCESTRY_DEPTH = 100


def build_branch_map(branches: Iterable[Branch]) -> dict[str, Branch]:
    """Index branches by id."""
    return {branch.id: branch for branch in branches}


def walk_ancestry(
    branch_map: dict[str, Branch],
    branch_id: str,
    max_depth: int = MAX_ANCESTRY_DEPTH,
) -> list[Branch]:
    """
    Ancestry chain of a branch, ordered root first.

    The walk stops early at a parent id that is not in the map.

    Raises:
        CycleDetectedError: If more than max_depth hops are needed
    """
    chain: list[Branch] = []
    current = branch_map.get(branch_id)
    while current is not None:
        if len(chain) >= max_depth:
            raise CycleDetectedError(branch_id, max_depth)
        chain.append(current)
        current = branch_map.get(current.parent_id) if current.parent_id else None

    chain.reverse()
    return chain


@dataclass
class BranchNode:
    """A branch with its children, for hierarchy trees."""

    branch: Branch
    children: list["BranchNode"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "branch": self.branch.to_dict(),
            "children": [child.to_dict() for child in self.children],
        }

    def find(self, branch_id: str) -> Optional["BranchNode"]:
        if self.branch.id == branch_id:
            return self
        for child in self.children:
            found = child.find(branch_id)
            if found:
                return found
        return None


def build_hierarchy(branches: list[Branch]) -> list[BranchNode]:
    """
    Build the branch forest in two passes.

    A branch whose parent is absent from the list is promoted to a root.
    Roots and children keep the order of the input list.
    """
    nodes = {branch.id: BranchNode(branch=branch) for branch in branches}

    roots: list[BranchNode] = []
    for branch in branches:
        node = nodes[branch.id]
        parent = nodes.get(branch.parent_id) if branch.parent_id else None
        if parent is None:
            if branch.parent_id:
                logger.debug(f"Branch {branch.id} has missing parent {branch.parent_id}, treating as root")
            roots.append(node)
        else:
            parent.children.append(node)

    return roots
