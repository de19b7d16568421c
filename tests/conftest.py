"""Shared fixtures for Timeweave tests."""

import pytest

from timeweave.collaborators import InMemoryAuditLog, RecordingCacheInvalidator
from timeweave.config.settings import Settings
from timeweave.engine import TimelineEngine
from timeweave.merge.config import MergeConfig
from timeweave.storage.store import TimelineStore

SCOPE = "campaign-1"


@pytest.fixture
def settings():
    """Memory-only settings."""
    return Settings(store_path=None)


@pytest.fixture
def store():
    """Empty in-memory store."""
    return TimelineStore()


@pytest.fixture
def audit():
    return InMemoryAuditLog()


@pytest.fixture
def cache():
    return RecordingCacheInvalidator()


@pytest.fixture
def engine(store, settings, audit, cache):
    """Engine wired to recording collaborators."""
    return TimelineEngine(
        store=store,
        settings=settings,
        audit=audit,
        cache=cache,
        merge_config=MergeConfig(entity_types=["settlement", "structure"]),
    )


@pytest.fixture
def root(engine):
    """Root branch of the test scope."""
    with engine.store.transaction() as tx:
        return engine.branches.stage_branch(tx, SCOPE, "Main")
