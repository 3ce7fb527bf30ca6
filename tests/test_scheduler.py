"""Tests for the snapshot scheduler."""
from __future__ import annotations

import hashlib
import json
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import requests
from fakes import FakeNetwork, FakeResponse, FakeS3Client, FakeVaultNode, build_cluster

from sealctl.api import SecretsAPIClient
from sealctl.bootstrap import AppRoleProvisioner
from sealctl.config import SnapshotConfig
from sealctl.logging import StructuredLogger
from sealctl.models import AppRoleCredential
from sealctl.snapshots import CycleOutcome, S3ObjectStorage, SnapshotScheduler, object_key
from sealctl.state import MemoryStateStore

NOW = datetime(2024, 3, 1, 12, 0, 30, tzinfo=UTC)
SLOT_KEY = "cluster1/2024-03-01T12-00-00.snap"
SNAPSHOT_PATH = "sys/storage/raft/snapshot"


def _client(network: FakeNetwork, address: str, token: str | None = None) -> SecretsAPIClient:
    return SecretsAPIClient(
        address=address,
        token=token,
        read_attempts=1,
        session=network.session(),  # type: ignore[arg-type]
        sleep=lambda seconds: None,
    )


class Cluster:
    """A formed fake cluster with a provisioned snapshot principal."""

    def __init__(self, count: int = 3) -> None:
        self.network = FakeNetwork()
        self.nodes = build_cluster(self.network, count)
        seed = _client(self.network, self.nodes[0].address)
        self.root_token = str(seed.initialize(recovery_shares=1, recovery_threshold=1)["root_token"])
        seed.seal_status()
        for node in self.nodes[1:]:
            member = _client(self.network, node.address)
            member.raft_join(self.nodes[0].address)
            member.seal_status()
        admin = _client(self.network, self.nodes[0].address, self.root_token)
        self.credential: AppRoleCredential = AppRoleProvisioner(
            admin, MemoryStateStore(), cluster_id="cluster1"
        ).provision("snapshot-agent")
        self.s3 = FakeS3Client()

    @property
    def leader(self) -> FakeVaultNode:
        return self.nodes[0]

    def scheduler(
        self,
        node: FakeVaultNode | None = None,
        *,
        logger: StructuredLogger | None = None,
        **config: object,
    ) -> SnapshotScheduler:
        node = node or self.leader
        return SnapshotScheduler(
            cluster_id="cluster1",
            node_id=node.node_id,
            client=_client(self.network, node.address),
            credential=self.credential,
            storage=S3ObjectStorage(self.s3, "vault-snapshots"),
            config=SnapshotConfig(**config),  # type: ignore[arg-type]
            logger=logger,
            sleep=lambda seconds: None,
            clock=lambda: 1_000.0,
        )


@pytest.fixture
def cluster() -> Cluster:
    """Return a formed three node cluster."""
    return Cluster()


def test_leader_uploads_verified_snapshot(cluster: Cluster) -> None:
    """The leader streams, hashes and uploads the snapshot under the slot key."""
    report = cluster.scheduler().run_cycle(NOW)

    assert report.outcome is CycleOutcome.SUCCESS
    assert report.object_key == SLOT_KEY
    assert report.attempts == 1
    assert report.record is not None
    assert report.record.checksum == hashlib.sha256(cluster.leader.snapshot).hexdigest()
    assert report.record.size_bytes == len(cluster.leader.snapshot)
    assert cluster.s3.objects[SLOT_KEY]["Body"] == cluster.leader.snapshot
    assert cluster.s3.uploads() == [SLOT_KEY]


def test_only_one_node_uploads_per_slot(cluster: Cluster) -> None:
    """Schedulers on every node produce exactly one object for the slot."""
    schedulers = [cluster.scheduler(node) for node in cluster.nodes]
    outcomes: dict[str, CycleOutcome] = {}

    def run(scheduler: SnapshotScheduler) -> None:
        outcomes[scheduler.node_id] = scheduler.run_cycle(NOW).outcome

    threads = [threading.Thread(target=run, args=(s,)) for s in schedulers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes == {
        "vault1": CycleOutcome.SUCCESS,
        "vault2": CycleOutcome.SKIPPED_NOT_LEADER,
        "vault3": CycleOutcome.SKIPPED_NOT_LEADER,
    }
    assert cluster.s3.uploads() == [SLOT_KEY]


def test_existing_object_skips_the_cycle(cluster: Cluster) -> None:
    """A second run within the same slot does not download again."""
    scheduler = cluster.scheduler()
    scheduler.run_cycle(NOW)
    downloads = cluster.network.count(SNAPSHOT_PATH)

    report = scheduler.run_cycle(NOW + timedelta(minutes=10))

    assert report.outcome is CycleOutcome.SKIPPED_EXISTS
    assert cluster.network.count(SNAPSHOT_PATH) == downloads


def test_leader_check_override(cluster: Cluster) -> None:
    """An injected leadership probe is honoured."""
    scheduler = SnapshotScheduler(
        cluster_id="cluster1",
        node_id="vault1",
        client=_client(cluster.network, cluster.leader.address),
        credential=cluster.credential,
        storage=S3ObjectStorage(cluster.s3, "vault-snapshots"),
        config=SnapshotConfig(),
        leader_check=lambda: False,
        sleep=lambda seconds: None,
    )

    assert scheduler.run_cycle(NOW).outcome is CycleOutcome.SKIPPED_NOT_LEADER
    assert cluster.s3.objects == {}


def test_transient_download_failure_is_retried(cluster: Cluster) -> None:
    """A 503 on the snapshot endpoint costs one extra attempt."""
    cluster.network.fail(cluster.leader.address, SNAPSHOT_PATH, 503)

    report = cluster.scheduler(attempts=3).run_cycle(NOW)

    assert report.outcome is CycleOutcome.SUCCESS
    assert report.attempts == 2


def test_exhausted_retries_fail_without_upload(cluster: Cluster) -> None:
    """Persistent transient failures end the cycle as failed."""
    cluster.network.fail(cluster.leader.address, SNAPSHOT_PATH, 503, 503)

    report = cluster.scheduler(attempts=2).run_cycle(NOW)

    assert report.outcome is CycleOutcome.FAILED
    assert report.attempts == 2
    assert report.error is not None
    assert cluster.s3.objects == {}


def test_stream_broken_midway_is_retried(cluster: Cluster) -> None:
    """A snapshot body cut short by the peer is retried like any transient failure."""
    broken = FakeResponse(
        200,
        chunks=[b"raft-snapshot:"],
        broken=requests.exceptions.ChunkedEncodingError("Connection broken: IncompleteRead"),
    )
    cluster.network.fail(cluster.leader.address, SNAPSHOT_PATH, broken)

    report = cluster.scheduler(attempts=3).run_cycle(NOW)

    assert report.outcome is CycleOutcome.SUCCESS
    assert report.attempts == 2
    assert report.record is not None
    assert report.record.checksum == hashlib.sha256(cluster.leader.snapshot).hexdigest()
    assert cluster.s3.objects[SLOT_KEY]["Body"] == cluster.leader.snapshot


def test_stream_broken_on_every_attempt_fails_the_cycle(cluster: Cluster) -> None:
    """Exhausted retries on a broken stream produce a failed report, not an exception."""
    for _ in range(2):
        cluster.network.fail(
            cluster.leader.address,
            SNAPSHOT_PATH,
            FakeResponse(200, chunks=[b"raft-"], broken=requests.ConnectionError("reset")),
        )

    report = cluster.scheduler(attempts=2).run_cycle(NOW)

    assert report.outcome is CycleOutcome.FAILED
    assert report.error is not None and "broke" in report.error
    assert cluster.s3.objects == {}


def test_session_token_is_cached(cluster: Cluster) -> None:
    """Cycles within the token lifetime reuse the session."""
    scheduler = cluster.scheduler()

    scheduler.run_cycle(NOW)
    scheduler.run_cycle(NOW + timedelta(hours=1))

    assert cluster.network.count("auth/approle/login") == 1
    assert len(cluster.s3.objects) == 2


def test_revoked_session_reauthenticates_once(cluster: Cluster) -> None:
    """A rejected session token triggers a single fresh login."""
    scheduler = cluster.scheduler()
    scheduler.run_cycle(NOW)
    shared = cluster.leader.shared
    assert shared is not None
    for token in [t for t, info in shared.tokens.items() if "snapshot-agent" in info["policies"]]:
        del shared.tokens[token]

    report = scheduler.run_cycle(NOW + timedelta(hours=1))

    assert report.outcome is CycleOutcome.SUCCESS
    assert cluster.network.count("auth/approle/login") == 2


def test_empty_snapshot_is_never_uploaded(cluster: Cluster) -> None:
    """A zero byte stream is an integrity failure."""
    cluster.leader.snapshot = b""

    report = cluster.scheduler().run_cycle(NOW)

    assert report.outcome is CycleOutcome.FAILED
    assert report.error is not None and "empty" in report.error
    assert cluster.s3.objects == {}


def test_retention_prunes_oldest_and_reports_failures(cluster: Cluster) -> None:
    """Pruning keeps the newest objects; a failed delete is only reported."""
    slot = datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC)
    older = [object_key("cluster1", slot - timedelta(hours=h)) for h in range(1, 5)]
    for key in older:
        cluster.s3.put_raw(key)
    cluster.s3.put_raw("cluster2/2020-01-01T00-00-00.snap")
    cluster.s3.fail_delete.add(older[3])

    report = cluster.scheduler(retain=3).run_cycle(NOW)

    assert report.outcome is CycleOutcome.SUCCESS
    assert report.prune is not None
    assert report.prune.kept == [SLOT_KEY, older[0], older[1]]
    assert report.prune.deleted == [older[2]]
    assert len(report.prune.errors) == 1
    assert older[3] in cluster.s3.objects
    assert "cluster2/2020-01-01T00-00-00.snap" in cluster.s3.objects


def test_cycle_is_logged(cluster: Cluster, tmp_path: Path) -> None:
    """Each cycle appends a structured record."""
    logger = StructuredLogger(tmp_path / "logs")

    cluster.scheduler(logger=logger).run_cycle(NOW)

    (line,) = logger.operations_log.read_text(encoding="utf-8").splitlines()
    record = json.loads(line)
    assert record["command"] == "snapshot cycle"
    assert record["target"] == {"cluster": "cluster1", "node": "vault1"}
    assert record["result"]["artifacts"] == [SLOT_KEY]


def test_run_forever_honours_limits(cluster: Cluster) -> None:
    """The loop stops after the requested cycles or when signalled."""
    scheduler = cluster.scheduler()
    stopped = threading.Event()
    stopped.set()

    scheduler.run_forever(stopped)
    assert cluster.s3.objects == {}

    scheduler.run_forever(threading.Event(), max_cycles=1)
    assert len(cluster.s3.objects) == 1


def test_seconds_until_next_slot(cluster: Cluster) -> None:
    """The wait lands on the next frequency boundary."""
    assert cluster.scheduler(frequency=300).seconds_until_next_slot() == 200.0
