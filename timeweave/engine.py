"""
Service wiring.

Builds every service over one shared store and collaborator set.
"""

from typing import Optional

from timeweave.branches.fork import ForkOrchestrator
from timeweave.branches.service import BranchService
from timeweave.collaborators import (
    AccessControl,
    AllowAllAccessControl,
    AuditLog,
    CacheInvalidator,
    LoggingAuditLog,
    NullCacheInvalidator,
)
from timeweave.config.settings import Settings, get_settings
from timeweave.entities.service import EntityService
from timeweave.merge.config import MergeConfig
from timeweave.merge.service import MergeService
from timeweave.storage.store import TimelineStore
from timeweave.versioning.service import VersionService


class TimelineEngine:
    """All engine services over one TimelineStore."""

    def __init__(
        self,
        store: Optional[TimelineStore] = None,
        settings: Optional[Settings] = None,
        access: Optional[AccessControl] = None,
        audit: Optional[AuditLog] = None,
        cache: Optional[CacheInvalidator] = None,
        merge_config: Optional[MergeConfig] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or TimelineStore(self.settings.store_path)
        self.access = access or AllowAllAccessControl()
        self.audit = audit or LoggingAuditLog()
        self.cache = cache or NullCacheInvalidator()

        self.versions = VersionService(
            self.store, access=self.access, audit=self.audit, cache=self.cache, settings=self.settings,
        )
        self.branches = BranchService(
            self.store, access=self.access, audit=self.audit, settings=self.settings,
        )
        self.forks = ForkOrchestrator(self.branches, self.versions)
        self.merges = MergeService(
            self.versions,
            config=merge_config or MergeConfig(entity_types=list(self.settings.merge_entity_types)),
        )
        self.entities = EntityService(self.versions)
