"""Snapshot scheduling, retention and object storage."""
from __future__ import annotations

from .retention import object_key, parse_object_key, select_for_pruning, slot_time
from .scheduler import CycleOutcome, CycleReport, PruneReport, SnapshotScheduler
from .storage import ObjectStorage, S3ObjectStorage, StoredObject

__all__ = [
    "CycleOutcome",
    "CycleReport",
    "ObjectStorage",
    "PruneReport",
    "S3ObjectStorage",
    "SnapshotScheduler",
    "StoredObject",
    "object_key",
    "parse_object_key",
    "select_for_pruning",
    "slot_time",
]
