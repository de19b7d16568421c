"""Persistence layer: record shapes, payload codec and the timeline store."""

from timeweave.storage.codec import compress_payload, decompress_payload
from timeweave.storage.models import (
    Branch,
    EntityRecord,
    MergeHistoryRecord,
    Version,
    to_utc,
    utc_now,
)
from timeweave.storage.store import TimelineStore, Transaction

__all__ = [
    "Branch",
    "EntityRecord",
    "MergeHistoryRecord",
    "TimelineStore",
    "Transaction",
    "Version",
    "compress_payload",
    "decompress_payload",
    "to_utc",
    "utc_now",
]
