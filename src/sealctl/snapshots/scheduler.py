"""Recurring snapshot loop with leader affinity and retention pruning.

Each cycle authenticates as the snapshot principal, checks that this node
is the Raft leader, streams a snapshot into a spooled temporary file while
hashing it, uploads it through :class:`~sealctl.snapshots.storage.ObjectStorage`
and prunes objects beyond the retention count. Cycle failures are reported,
never raised out of :meth:`SnapshotScheduler.run_forever`.
"""
from __future__ import annotations

import hashlib
import logging
import tempfile
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import IO

from ..api.client import SecretsAPIClient
from ..config import SnapshotConfig
from ..errors import (
    AuthorizationDenied,
    IntegrityViolation,
    SealctlError,
    StorageError,
    TransientNetworkError,
)
from ..logging import OperationScope, StructuredLogger
from ..models import AppRoleCredential, SnapshotRecord
from ..retry import Backoff, Sleeper, retry_call
from .retention import (
    cluster_prefix,
    object_key,
    records_from_listing,
    select_for_pruning,
    slot_time,
)
from .storage import ObjectStorage

LOG = logging.getLogger(__name__)

_SPOOL_MAX_MEMORY = 32 * 1024 * 1024

LeaderCheck = Callable[[], bool]


class CycleOutcome(str, Enum):
    """Result of one scheduler cycle."""

    SUCCESS = "success"
    SKIPPED_NOT_LEADER = "skipped-not-leader"
    SKIPPED_EXISTS = "skipped-exists"
    FAILED = "failed"


@dataclass(slots=True)
class PruneReport:
    """Objects deleted (or not) by a retention pass."""

    kept: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"kept": list(self.kept), "deleted": list(self.deleted), "errors": list(self.errors)}


@dataclass(slots=True)
class CycleReport:
    """Observation emitted for every cycle."""

    outcome: CycleOutcome
    object_key: str
    attempts: int = 0
    record: SnapshotRecord | None = None
    prune: PruneReport | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "outcome": self.outcome.value,
            "object_key": self.object_key,
            "attempts": self.attempts,
            "record": self.record.to_dict() if self.record else None,
            "prune": self.prune.to_dict() if self.prune else None,
            "error": self.error,
        }


class _Skip(Exception):
    def __init__(self, outcome: CycleOutcome) -> None:
        super().__init__(outcome.value)
        self.outcome = outcome


class SnapshotScheduler:
    """Snapshot loop for one node of one cluster."""

    def __init__(
        self,
        *,
        cluster_id: str,
        node_id: str,
        client: SecretsAPIClient,
        credential: AppRoleCredential,
        storage: ObjectStorage,
        config: SnapshotConfig,
        logger: StructuredLogger | None = None,
        leader_check: LeaderCheck | None = None,
        backoff: Backoff | None = None,
        sleep: Sleeper = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Bind the scheduler to its node client, credential and storage."""
        self.cluster_id = cluster_id
        self.node_id = node_id
        self._client = client.with_token(None)
        self._credential = credential
        self._storage = storage
        self._config = config
        self._logger = logger
        self._leader_check = leader_check
        self._backoff = backoff or Backoff(initial=1.0, factor=2.0, cap=30.0)
        self._sleep = sleep
        self._clock = clock
        self._session_token: str | None = None
        self._session_expires_at = 0.0
        self.records: list[SnapshotRecord] = []

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    def _authenticate(self, *, force: bool = False) -> str:
        now = self._clock()
        if (
            not force
            and self._session_token
            and now < self._session_expires_at - self._config.renew_margin
        ):
            return self._session_token
        auth = self._client.approle_login(self._credential.role_id, self._credential.secret_id)
        self._session_token = str(auth["client_token"])
        lease = auth.get("lease_duration")
        duration = float(lease) if isinstance(lease, (int, float)) and lease > 0 else 0.0
        self._session_expires_at = now + duration if duration else float("inf")
        LOG.debug("authenticated as %s on %s", self._credential.role_name, self.node_id)
        return self._session_token

    def _session(self) -> SecretsAPIClient:
        return self._client.with_token(self._authenticate())

    def _is_leader(self) -> bool:
        if self._leader_check is not None:
            return self._leader_check()
        leader = self._client.leader()
        return bool(leader.get("is_self"))

    def _download(self, spool: IO[bytes]) -> tuple[int, str]:
        for reauthenticated in (False, True):
            try:
                with self._session().stream_snapshot() as chunks:
                    return _spool(chunks, spool)
            except AuthorizationDenied:
                if reauthenticated:
                    raise
                LOG.info("session for %s rejected; re-authenticating", self.node_id)
                self._authenticate(force=True)
                spool.seek(0)
                spool.truncate()
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    def run_cycle(self, now: datetime | None = None) -> CycleReport:
        """Run one cycle and return its report; never raises :class:`SealctlError`."""
        moment = now or datetime.fromtimestamp(self._clock(), tz=UTC)
        key = object_key(self.cluster_id, slot_time(moment, self._config.frequency))
        report = CycleReport(outcome=CycleOutcome.FAILED, object_key=key)
        with self._operation(key) as op:
            try:
                self._cycle(key, moment, report, op)
            except _Skip as skip:
                report.outcome = skip.outcome
            except IntegrityViolation as exc:
                report.error = str(exc)
                LOG.error("snapshot %s failed integrity checks: %s", key, exc)
            except SealctlError as exc:
                report.error = str(exc)
                LOG.warning("snapshot cycle for %s abandoned: %s", key, exc)
            self._record(op, report)
        return report

    def _cycle(
        self, key: str, moment: datetime, report: CycleReport, op: OperationScope | None
    ) -> None:
        spool = tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_MEMORY)
        with spool:

            def prepare() -> tuple[int, str]:
                report.attempts += 1
                self._authenticate()
                if not self._is_leader():
                    raise _Skip(CycleOutcome.SKIPPED_NOT_LEADER)
                if self._storage.exists(key):
                    raise _Skip(CycleOutcome.SKIPPED_EXISTS)
                spool.seek(0)
                spool.truncate()
                return self._download(spool)

            def on_retry(attempt: int, exc: BaseException, delay: float) -> None:
                if op is not None:
                    op.add_step("retry", status="warning", detail={"attempt": attempt, "error": str(exc)})

            size, digest = retry_call(
                prepare,
                attempts=self._config.attempts,
                backoff=self._backoff,
                retry_on=(TransientNetworkError,),
                sleep=self._sleep,
                on_retry=on_retry,
            )
            if size == 0:
                raise IntegrityViolation(f"Snapshot stream for {key} was empty.")
            if op is not None:
                op.add_step("snapshot.stream", detail={"bytes": size})
            spool.seek(0)
            self._storage.put_verified(key, spool, size=size, sha256_hex=digest)

        record = SnapshotRecord(
            timestamp=slot_time(moment, self._config.frequency),
            object_key=key,
            size_bytes=size,
            checksum=digest,
        )
        report.record = record
        report.outcome = CycleOutcome.SUCCESS
        if op is not None:
            op.add_step("snapshot.upload", detail=record.to_dict())
        report.prune = self.prune()

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    def prune(self) -> PruneReport:
        """Delete snapshots beyond the retention count; deletion failures are only reported."""
        report = PruneReport()
        try:
            listing = self._storage.list_objects(cluster_prefix(self.cluster_id))
        except (StorageError, TransientNetworkError) as exc:
            report.errors.append(f"list: {exc}")
            LOG.warning("could not list snapshots for pruning: %s", exc)
            return report
        records = records_from_listing(self.cluster_id, listing)
        doomed = select_for_pruning(records, self._config.retain)
        doomed_keys = {record.object_key for record in doomed}
        report.kept = [record.object_key for record in records if record.object_key not in doomed_keys]
        for record in doomed:
            try:
                self._storage.delete(record.object_key)
            except (StorageError, TransientNetworkError) as exc:
                report.errors.append(f"{record.object_key}: {exc}")
                LOG.warning("could not delete %s; will retry next cycle: %s", record.object_key, exc)
            else:
                report.deleted.append(record.object_key)
        self.records = [record for record in records if record.object_key not in report.deleted]
        return report

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    def run_forever(self, stop: threading.Event, *, max_cycles: int | None = None) -> None:
        """Run cycles at the configured frequency until *stop* is set."""
        cycles = 0
        while not stop.is_set():
            try:
                self.run_cycle()
            except Exception:  # pragma: no cover - a cycle must never stop the loop
                LOG.exception("unexpected error in snapshot cycle")
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                return
            stop.wait(self.seconds_until_next_slot())

    def seconds_until_next_slot(self) -> float:
        """Return the delay until the next slot boundary."""
        frequency = max(int(self._config.frequency), 1)
        return frequency - (self._clock() % frequency)

    # ------------------------------------------------------------------
    def _operation(self, key: str) -> AbstractContextManager[OperationScope | None]:
        if self._logger is None:
            return nullcontext()
        return self._logger.operation(
            "snapshot cycle",
            args={"object_key": key},
            target={"cluster": self.cluster_id, "node": self.node_id},
        )

    @staticmethod
    def _record(op: OperationScope | None, report: CycleReport) -> None:
        if op is None:
            return
        context = report.to_dict()
        if report.outcome is CycleOutcome.SUCCESS:
            warnings = report.prune.errors if report.prune else []
            if warnings:
                op.warning("Snapshot uploaded; pruning incomplete.", warnings=warnings,
                           changed=1, artifacts=[report.object_key], context=context)
            else:
                op.success("Snapshot uploaded.", changed=1, artifacts=[report.object_key],
                           context=context)
        elif report.outcome is CycleOutcome.FAILED:
            op.error(f"Snapshot cycle failed: {report.error}", context=context)
        else:
            op.success(f"Snapshot skipped ({report.outcome.value}).", changed=0, context=context)


def _spool(chunks: Iterator[bytes], spool: IO[bytes]) -> tuple[int, str]:
    digest = hashlib.sha256()
    size = 0
    for chunk in chunks:
        if not chunk:
            continue
        spool.write(chunk)
        digest.update(chunk)
        size += len(chunk)
    spool.flush()
    return size, digest.hexdigest()


__all__ = ["CycleOutcome", "CycleReport", "PruneReport", "SnapshotScheduler"]
