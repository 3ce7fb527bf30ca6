"""Snapshot object naming and retention selection."""
from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import UTC, datetime

from ..models import SnapshotRecord
from .storage import StoredObject

SNAPSHOT_SUFFIX = ".snap"
KEY_TIME_FORMAT = "%Y-%m-%dT%H-%M-%S"
_KEY_STAMP = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2})\.snap$")


def cluster_prefix(cluster_id: str) -> str:
    """Return the object prefix holding *cluster_id*'s snapshots."""
    return f"{cluster_id}/"


def slot_time(now: datetime, frequency: float) -> datetime:
    """Align *now* down to the start of its snapshot slot.

    Every node computes the same slot for the same cycle, so the object key
    doubles as a duplicate guard.
    """
    moment = now.astimezone(UTC) if now.tzinfo else now.replace(tzinfo=UTC)
    step = max(int(frequency), 1)
    epoch = int(moment.timestamp())
    return datetime.fromtimestamp(epoch - epoch % step, tz=UTC)


def object_key(cluster_id: str, timestamp: datetime) -> str:
    """Return the deterministic object key for a snapshot taken at *timestamp*."""
    moment = timestamp.astimezone(UTC) if timestamp.tzinfo else timestamp
    return f"{cluster_prefix(cluster_id)}{moment.strftime(KEY_TIME_FORMAT)}{SNAPSHOT_SUFFIX}"


def parse_object_key(cluster_id: str, key: str) -> datetime | None:
    """Return the timestamp encoded in *key*, or ``None`` for foreign objects."""
    prefix = cluster_prefix(cluster_id)
    if not key.startswith(prefix):
        return None
    match = _KEY_STAMP.match(key[len(prefix):])
    if match is None:
        return None
    return datetime.strptime(match.group(1), KEY_TIME_FORMAT).replace(tzinfo=UTC)


def records_from_listing(cluster_id: str, objects: Iterable[StoredObject]) -> list[SnapshotRecord]:
    """Return snapshot records for *objects*, newest first."""
    records = []
    for obj in objects:
        timestamp = parse_object_key(cluster_id, obj.key)
        if timestamp is None:
            continue
        records.append(SnapshotRecord(timestamp=timestamp, object_key=obj.key, size_bytes=obj.size))
    return sorted(records, reverse=True)


def select_for_pruning(records: Iterable[SnapshotRecord], retain: int) -> list[SnapshotRecord]:
    """Return the records beyond the newest *retain*, oldest last."""
    if retain < 1:
        raise ValueError("retain must be at least 1.")
    ordered = sorted(records, reverse=True)
    return ordered[retain:]


__all__ = [
    "KEY_TIME_FORMAT",
    "SNAPSHOT_SUFFIX",
    "cluster_prefix",
    "object_key",
    "parse_object_key",
    "records_from_listing",
    "select_for_pruning",
    "slot_time",
]
