"""Branch hierarchy management and forking."""

from timeweave.branches.service import BranchService
from timeweave.branches.tree import BranchNode, build_hierarchy, walk_ancestry

__all__ = ["BranchNode", "BranchService", "build_hierarchy", "walk_ancestry"]
