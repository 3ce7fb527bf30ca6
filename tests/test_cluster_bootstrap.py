"""Tests for Raft cluster formation."""
from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path

import pytest
from fakes import FakeNetwork, FakeVaultNode, build_cluster

from sealctl.api import SecretsAPIClient
from sealctl.bootstrap import BootstrapOutcome, ClusterBootstrapper
from sealctl.bootstrap.cluster import INIT_KEY, LEASE_KEY, NODES_KEY, STATE_KEY
from sealctl.config import ClusterConfig, PollConfig
from sealctl.errors import ConcurrentBootstrapError, QuorumNotMet
from sealctl.locking import LockManager
from sealctl.models import ClusterState, JoinStatus, NodeSpec
from sealctl.state import MemoryStateStore


def _config(count: int = 3, *, token: str | None = None) -> ClusterConfig:
    return ClusterConfig(
        id="cluster1",
        nodes=tuple(
            NodeSpec(node_id=f"vault{i}", api_addr=f"https://vault{i}:8200")
            for i in range(1, count + 1)
        ),
        token=token,
        unseal_poll=PollConfig(interval=0.1, max_attempts=5),
        join_poll=PollConfig(interval=0.1, max_attempts=5),
    )


def _factory(network: FakeNetwork) -> Callable[[NodeSpec, str | None], SecretsAPIClient]:
    def make(spec: NodeSpec, token: str | None) -> SecretsAPIClient:
        return SecretsAPIClient(
            address=spec.api_addr,
            token=token,
            read_attempts=2,
            session=network.session(),  # type: ignore[arg-type]
            sleep=lambda seconds: None,
        )

    return make


def _bootstrapper(
    network: FakeNetwork,
    store: MemoryStateStore,
    config: ClusterConfig | None = None,
    **kwargs: object,
) -> ClusterBootstrapper:
    return ClusterBootstrapper(
        config or _config(),
        store,
        _factory(network),
        sleep=lambda seconds: None,
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.fixture
def network() -> FakeNetwork:
    """Return a network with three uninitialised auto-unseal nodes."""
    net = FakeNetwork()
    build_cluster(net, 3)
    return net


def _node(network: FakeNetwork, node_id: str) -> FakeVaultNode:
    node = network.node_by_id(node_id)
    assert node is not None
    return node


def test_three_nodes_become_fully_active(network: FakeNetwork) -> None:
    """The seed is initialised once and the others join it."""
    store = MemoryStateStore()

    result = _bootstrapper(network, store).bootstrap()

    assert result.outcome is BootstrapOutcome.FULLY_ACTIVE
    assert result.state is ClusterState.ACTIVE
    assert result.seed == "vault1"
    assert result.joined == ["vault1", "vault2", "vault3"]
    assert result.initialized_now is True
    assert result.recovery is not None
    assert len(result.recovery.shares) == 5
    assert result.recovery.threshold == 3
    assert _node(network, "vault1").init_calls == 1
    assert _node(network, "vault2").init_calls == 0
    assert _node(network, "vault3").init_calls == 0
    assert store.read("cluster1", STATE_KEY) == "active"
    stored_init = store.read("cluster1", INIT_KEY)
    assert isinstance(stored_init, dict)
    assert stored_init["seed"] == "vault1"
    assert store.read("cluster1", LEASE_KEY) is None
    assert result.to_dict()["recovery_shares"] == 5
    assert "shares" not in result.to_dict()


def test_rerun_only_verifies(network: FakeNetwork) -> None:
    """A formed cluster is verified without re-initialising or re-joining."""
    store = MemoryStateStore()
    _bootstrapper(network, store).bootstrap()
    joins = _node(network, "vault2").join_calls

    result = _bootstrapper(network, store).bootstrap()

    assert result.verified_only is True
    assert result.outcome is BootstrapOutcome.FULLY_ACTIVE
    assert result.initialized_now is False
    assert _node(network, "vault1").init_calls == 1
    assert _node(network, "vault2").join_calls == joins


def test_rerun_with_lost_state_does_not_reinitialise(network: FakeNetwork) -> None:
    """An unsealed seed is detected from the API even with an empty store."""
    _bootstrapper(network, MemoryStateStore()).bootstrap()
    store = MemoryStateStore()

    result = _bootstrapper(network, store).bootstrap()

    assert result.verified_only is True
    assert _node(network, "vault1").init_calls == 1
    assert store.read("cluster1", STATE_KEY) == "active"


def test_one_failed_join_is_degraded_but_usable(network: FakeNetwork) -> None:
    """Quorum is met when one of three nodes cannot join."""
    _node(network, "vault3").join_fails = True

    result = _bootstrapper(network, MemoryStateStore()).bootstrap()

    assert result.outcome is BootstrapOutcome.DEGRADED_BUT_USABLE
    assert result.joined == ["vault1", "vault2"]
    assert result.failed == ["vault3"]
    assert result.quorum == 2
    assert result.quorum_error() is None
    failed = next(node for node in result.nodes if node.node_id == "vault3")
    assert failed.attempts == 5
    assert failed.last_error is not None


def test_two_failed_joins_fail_to_form(network: FakeNetwork) -> None:
    """Below quorum the outcome is failure and the error lists each node."""
    _node(network, "vault2").join_fails = True
    network.down.add("https://vault3:8200")
    store = MemoryStateStore()

    result = _bootstrapper(network, store).bootstrap()

    assert result.outcome is BootstrapOutcome.FAILED_TO_FORM
    assert result.state is ClusterState.FORMING_RAFT
    error = result.quorum_error()
    assert isinstance(error, QuorumNotMet)
    assert error.joined == ("vault1",)
    assert error.failed == ("vault2", "vault3")
    stored_nodes = store.read("cluster1", NODES_KEY)
    assert isinstance(stored_nodes, list)
    assert {entry["join_status"] for entry in stored_nodes} == {"joined", "failed"}


def test_interrupted_formation_resumes(
    network: FakeNetwork, caplog: pytest.LogCaptureFixture
) -> None:
    """A rerun after a partial formation joins the remaining nodes only."""
    store = MemoryStateStore()
    network.down.update({"https://vault2:8200", "https://vault3:8200"})
    first = _bootstrapper(network, store).bootstrap()
    assert first.outcome is BootstrapOutcome.FAILED_TO_FORM
    assert ClusterState(store.read("cluster1", STATE_KEY)).is_transitional

    network.down.clear()
    with caplog.at_level("WARNING", logger="sealctl.bootstrap.cluster"):
        second = _bootstrapper(network, store).bootstrap()

    assert "resuming bootstrap interrupted in forming-raft" in caplog.text

    assert second.outcome is BootstrapOutcome.FULLY_ACTIVE
    assert second.initialized_now is False
    assert _node(network, "vault1").init_calls == 1


def test_seed_that_never_unseals_fails(network: FakeNetwork) -> None:
    """Without a working transit seal no node is asked to join."""
    _node(network, "vault1").never_unseals = True

    result = _bootstrapper(network, MemoryStateStore()).bootstrap()

    assert result.outcome is BootstrapOutcome.FAILED_TO_FORM
    assert "vault1" in result.failed
    assert _node(network, "vault2").join_calls == 0


def test_concurrent_bootstrap_is_rejected_while_lease_held(network: FakeNetwork) -> None:
    """A second bootstrap of the same cluster fails fast."""
    store = MemoryStateStore()
    holder = _bootstrapper(network, store, owner="first")

    with holder.lease():
        with pytest.raises(ConcurrentBootstrapError, match="first"):
            _bootstrapper(network, store, owner="second").bootstrap()

    assert _node(network, "vault1").init_calls == 0


def test_host_lock_rejects_parallel_process(network: FakeNetwork, tmp_path: Path) -> None:
    """The on-host cluster lock also excludes a second bootstrap."""
    locks = LockManager(tmp_path / "run")
    store = MemoryStateStore()

    with locks.cluster_lock("cluster1"):
        with pytest.raises(ConcurrentBootstrapError):
            _bootstrapper(network, store, locks=locks).bootstrap()


def test_racing_bootstraps_initialise_once(network: FakeNetwork) -> None:
    """Two simultaneous bootstraps yield exactly one initialisation."""
    store = MemoryStateStore()
    outcomes: list[object] = []
    guard = threading.Lock()

    def run(owner: str) -> None:
        try:
            result: object = _bootstrapper(network, store, owner=owner).bootstrap().outcome
        except ConcurrentBootstrapError as exc:
            result = exc
        with guard:
            outcomes.append(result)

    threads = [threading.Thread(target=run, args=(f"owner{i}",)) for i in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert _node(network, "vault1").init_calls == 1
    assert BootstrapOutcome.FULLY_ACTIVE in outcomes


def test_stale_lease_is_taken_over(network: FakeNetwork) -> None:
    """A lease older than its TTL no longer blocks bootstrap."""
    store = MemoryStateStore()
    store.write("cluster1", LEASE_KEY, {"owner": "crashed", "acquired_at": 0.0, "ttl": 10.0})

    result = _bootstrapper(network, store, clock=lambda: 1_000.0).bootstrap()

    assert result.outcome is BootstrapOutcome.FULLY_ACTIVE
    assert store.read("cluster1", LEASE_KEY) is None


def test_join_node_retries_single_node(network: FakeNetwork) -> None:
    """A failed node can be rejoined without touching the others."""
    store = MemoryStateStore()
    _node(network, "vault3").join_fails = True
    _bootstrapper(network, store).bootstrap()
    _node(network, "vault3").join_fails = False
    joins = _node(network, "vault2").join_calls

    node = _bootstrapper(network, store).join_node("vault3")

    assert node.join_status is JoinStatus.JOINED
    assert _node(network, "vault2").join_calls == joins
    stored = store.read("cluster1", NODES_KEY)
    assert isinstance(stored, list)
    statuses = {entry["node_id"]: entry["join_status"] for entry in stored}
    assert statuses == {"vault1": "joined", "vault2": "joined", "vault3": "joined"}


def test_join_node_rejects_seed(network: FakeNetwork) -> None:
    """The seed never joins itself."""
    with pytest.raises(ValueError):
        _bootstrapper(network, MemoryStateStore()).join_node("vault1")


def test_health_check_reports_leader_and_degradation(network: FakeNetwork) -> None:
    """Health follows quorum and persists ACTIVE/DEGRADED flips."""
    store = MemoryStateStore()
    _bootstrapper(network, store).bootstrap()
    root = store.read("cluster1", INIT_KEY)
    assert isinstance(root, dict)
    checker = _bootstrapper(network, store, _config(token=str(root["root_token"])))

    healthy = checker.health_check()
    assert healthy.state is ClusterState.ACTIVE
    assert healthy.leader_id == "vault1"
    assert healthy.is_leader("vault1")
    assert sorted(healthy.voters) == ["vault1", "vault2", "vault3"]

    network.down.update({"https://vault2:8200", "https://vault3:8200"})
    degraded = _bootstrapper(network, store).health_check()
    assert degraded.state is ClusterState.DEGRADED
    assert degraded.unreachable == ["vault2", "vault3"]
    assert store.read("cluster1", STATE_KEY) == "degraded"

    network.down.clear()
    assert checker.health_check().state is ClusterState.ACTIVE
    assert store.read("cluster1", STATE_KEY) == "active"
