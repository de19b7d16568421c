"""
Timeline store.

Holds branches, versions, entity records and merge history in id-indexed
maps, optionally persisted to a JSON index file. All writes go through a
Transaction: changes are staged on copies of the maps and swapped in only
when the transaction block exits cleanly.
"""

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from timeweave.exceptions import NotFoundError
from timeweave.storage.models import (
    Branch,
    EntityRecord,
    MergeHistoryRecord,
    Version,
    entity_key,
    utc_now,
)

logger = logging.getLogger(__name__)


class _TimelineView:
    """Read operations shared by the store and open transactions."""

    _branches: dict[str, Branch]
    _versions: dict[str, Version]
    _entities: dict[str, EntityRecord]
    _merge_history: dict[str, MergeHistoryRecord]

    # Branches

    def get_branch(self, branch_id: str, include_deleted: bool = False) -> Optional[Branch]:
        """Get a branch by id. Soft-deleted branches are hidden by default."""
        branch = self._branches.get(branch_id)
        if branch is None or (branch.is_deleted and not include_deleted):
            return None
        return branch

    def list_branches(self, scope_id: str, include_deleted: bool = False) -> list[Branch]:
        """All branches of a scope, ordered by name."""
        branches = [
            b for b in self._branches.values()
            if b.scope_id == scope_id and (include_deleted or not b.is_deleted)
        ]
        return sorted(branches, key=lambda b: b.name)

    def find_branch_by_name(self, scope_id: str, name: str) -> Optional[Branch]:
        """Live branch with an exact (case-sensitive) name in a scope."""
        for branch in self._branches.values():
            if branch.scope_id == scope_id and branch.name == name and not branch.is_deleted:
                return branch
        return None

    def list_children(self, branch_id: str) -> list[Branch]:
        """Live child branches of a branch."""
        return [
            b for b in self._branches.values()
            if b.parent_id == branch_id and not b.is_deleted
        ]

    def count_children(self, branch_id: str) -> int:
        return len(self.list_children(branch_id))

    # Versions

    def get_version(self, version_id: str) -> Optional[Version]:
        return self._versions.get(version_id)

    def find_versions(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        branch_ids: Optional[Iterable[str]] = None,
        as_of: Optional[datetime] = None,
    ) -> list[Version]:
        """
        Query versions.

        Args:
            entity_type: Restrict to an entity type
            entity_id: Restrict to an entity id
            branch_ids: Restrict to a set of branches
            as_of: Only versions whose valid interval contains this instant

        Returns:
            Matching versions ordered by valid_from ascending
        """
        branch_set = set(branch_ids) if branch_ids is not None else None
        matches = [
            v for v in self._versions.values()
            if (entity_type is None or v.entity_type == entity_type)
            and (entity_id is None or v.entity_id == entity_id)
            and (branch_set is None or v.branch_id in branch_set)
            and (as_of is None or v.is_valid_at(as_of))
        ]
        return sorted(matches, key=lambda v: (v.valid_from, v.version))

    def max_version_number(self, entity_type: str, entity_id: str, branch_id: str) -> int:
        """Highest version number for an entity in a branch, 0 if none."""
        numbers = [
            v.version for v in self._versions.values()
            if v.entity_type == entity_type
            and v.entity_id == entity_id
            and v.branch_id == branch_id
        ]
        return max(numbers, default=0)

    # Entities

    def get_entity(self, entity_type: str, entity_id: str, include_deleted: bool = False) -> Optional[EntityRecord]:
        record = self._entities.get(entity_key(entity_type, entity_id))
        if record is None or (record.deleted_at is not None and not include_deleted):
            return None
        return record

    def list_entities(self, entity_type: Optional[str] = None, scope_id: Optional[str] = None) -> list[EntityRecord]:
        return [
            e for e in self._entities.values()
            if e.deleted_at is None
            and (entity_type is None or e.entity_type == entity_type)
            and (scope_id is None or e.scope_id == scope_id)
        ]

    # Merge history

    def list_merge_history(self, branch_id: str) -> list[MergeHistoryRecord]:
        """Merges where the branch was source or target, most recent first."""
        records = [
            r for r in self._merge_history.values()
            if branch_id in (r.source_branch_id, r.target_branch_id)
        ]
        return sorted(records, key=lambda r: r.merged_at, reverse=True)


class Transaction(_TimelineView):
    """
    Unit of work over a TimelineStore.

    Reads see the staged state including this transaction's own writes.
    Records are replaced, never mutated in place, so the committed maps
    are untouched until commit.
    """

    def __init__(self, store: "TimelineStore"):
        self.store = store
        self._branches = dict(store._branches)
        self._versions = dict(store._versions)
        self._entities = dict(store._entities)
        self._merge_history = dict(store._merge_history)
        self.writes = 0

    def put_branch(self, branch: Branch) -> Branch:
        self._branches[branch.id] = branch
        self.writes += 1
        return branch

    def update_branch(self, branch_id: str, **changes: Any) -> Branch:
        current = self._branches.get(branch_id)
        if current is None:
            raise NotFoundError(f"Branch with ID {branch_id} not found")
        return self.put_branch(replace(current, updated_at=utc_now(), **changes))

    def add_version(self, version: Version) -> Version:
        self._versions[version.id] = version
        self.writes += 1
        return version

    def set_version_valid_to(self, version_id: str, valid_to: Optional[datetime]) -> Version:
        current = self._versions.get(version_id)
        if current is None:
            raise NotFoundError(f"Version with ID {version_id} not found")
        return self.add_version(replace(current, valid_to=valid_to))

    def put_entity(self, record: EntityRecord) -> EntityRecord:
        self._entities[record.key] = record
        self.writes += 1
        return record

    def update_entity_if_version(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int,
        fields: dict[str, Any],
    ) -> int:
        """
        Conditional write keyed on the stored version.

        Returns:
            Number of records updated (0 if the version did not match)
        """
        current = self.get_entity(entity_type, entity_id)
        if current is None or current.version != expected_version:
            return 0
        self.put_entity(replace(
            current,
            fields=fields,
            version=current.version + 1,
            updated_at=utc_now(),
        ))
        return 1

    def add_merge_history(self, record: MergeHistoryRecord) -> MergeHistoryRecord:
        self._merge_history[record.id] = record
        self.writes += 1
        return record


class TimelineStore(_TimelineView):
    """
    In-memory timeline store with optional JSON persistence.

    Usage:
        store = TimelineStore("data/timeline")
        with store.transaction() as tx:
            tx.put_branch(Branch(scope_id="c1", name="Main"))
    """

    INDEX_FILE = ".timeline_index.json"

    def __init__(self, base_path: Optional[str] = None):
        """
        Initialize the store.

        Args:
            base_path: Directory for the index file. Memory only if None.
        """
        self.base_path = Path(base_path) if base_path else None
        self._branches: dict[str, Branch] = {}
        self._versions: dict[str, Version] = {}
        self._entities: dict[str, EntityRecord] = {}
        self._merge_history: dict[str, MergeHistoryRecord] = {}

        self._lock = threading.RLock()
        self._active: Optional[Transaction] = None

        if self.base_path:
            self.base_path.mkdir(parents=True, exist_ok=True)
            self._load_index()

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """
        Open a transaction.

        Commits when the block exits normally and discards every staged
        write if it raises. A transaction opened while another is active on
        the same thread joins the outer one.
        """
        with self._lock:
            if self._active is not None:
                yield self._active
                return

            tx = Transaction(self)
            self._active = tx
            try:
                yield tx
            except Exception:
                logger.debug(f"Transaction rolled back ({tx.writes} staged writes discarded)")
                raise
            finally:
                self._active = None

            self._commit(tx)

    def _commit(self, tx: Transaction) -> None:
        if tx.writes == 0:
            return
        self._branches = tx._branches
        self._versions = tx._versions
        self._entities = tx._entities
        self._merge_history = tx._merge_history
        self._save_index()

    def _save_index(self) -> None:
        if not self.base_path:
            return

        index = {
            "branches": [b.to_dict() for b in self._branches.values()],
            "versions": [v.to_dict() for v in self._versions.values()],
            "entities": [e.to_dict() for e in self._entities.values()],
            "merge_history": [m.to_dict() for m in self._merge_history.values()],
        }

        index_path = self.base_path / self.INDEX_FILE
        tmp_path = index_path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(index, f, indent=2)
        tmp_path.replace(index_path)

    def _load_index(self) -> None:
        index_path = self.base_path / self.INDEX_FILE
        if not index_path.exists():
            return

        with open(index_path) as f:
            index = json.load(f)

        self._branches = {b["id"]: Branch.from_dict(b) for b in index.get("branches", [])}
        self._versions = {v["id"]: Version.from_dict(v) for v in index.get("versions", [])}
        entities = [EntityRecord.from_dict(e) for e in index.get("entities", [])]
        self._entities = {e.key: e for e in entities}
        self._merge_history = {
            m["id"]: MergeHistoryRecord.from_dict(m) for m in index.get("merge_history", [])
        }
        logger.debug(
            f"Loaded timeline index: {len(self._branches)} branches, "
            f"{len(self._versions)} versions"
        )
