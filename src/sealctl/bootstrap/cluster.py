"""Raft cluster formation: single initialisation followed by parallel joins.

The lifecycle is modelled by :class:`~sealctl.models.ClusterState`. Every
transition is computed by :func:`next_state` from the current state and a
:class:`ClusterObservation` of the seed node, so a re-run resumes from
whatever the API reports instead of replaying a script.

Only one bootstrap sequence may own a cluster at a time. Ownership is a lease
stored under ``cluster.lease`` and taken with ``compare_and_swap``; an
optional :class:`~sealctl.locking.LockManager` lock additionally serialises
processes on the same host.
"""
from __future__ import annotations

import concurrent.futures
import logging
import os
import socket
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from ..api.client import SecretsAPIClient
from ..config import ClusterConfig
from ..errors import (
    AlreadySatisfied,
    APIError,
    AuthorizationDenied,
    ConcurrentBootstrapError,
    QuorumNotMet,
    SealctlError,
    TransientNetworkError,
)
from ..locking import LockManager, LockTimeoutError
from ..models import ClusterState, JoinStatus, NodeRole, NodeSpec, RaftNode, RecoveryKeySet
from ..retry import Backoff, Clock, Sleeper, poll, retry_call
from ..state.store import StateStore

LOG = logging.getLogger(__name__)

STATE_KEY = "cluster.state"
LEASE_KEY = "cluster.lease"
NODES_KEY = "cluster.nodes"
INIT_KEY = "cluster.init"

ClientFactory = Callable[[NodeSpec, str | None], SecretsAPIClient]

_RANK = {
    ClusterState.UNINITIALIZED: 0,
    ClusterState.INITIALIZING: 1,
    ClusterState.UNSEALING: 2,
    ClusterState.FORMING_RAFT: 3,
    ClusterState.ACTIVE: 4,
    ClusterState.DEGRADED: 4,
}


def quorum_size(voters: int) -> int:
    """Return the Raft quorum for *voters* expected voters."""
    return voters // 2 + 1


def elect_seed(nodes: Sequence[NodeSpec]) -> NodeSpec:
    """Return the node that performs first-time initialisation."""
    if not nodes:
        raise ValueError("Cannot elect a seed node from an empty node list.")
    return min(nodes, key=lambda node: node.node_id)


@dataclass(frozen=True, slots=True)
class ClusterObservation:
    """What the API reported about the cluster at one instant."""

    initialized: bool
    sealed: bool
    voters: int = 0
    expected_voters: int = 1
    has_leader: bool = False

    @property
    def quorum(self) -> int:
        """Return the quorum for the expected voter count."""
        return quorum_size(self.expected_voters)

    @property
    def has_quorum(self) -> bool:
        """Return ``True`` when a leader is elected and enough voters are present."""
        return self.has_leader and not self.sealed and self.voters >= self.quorum


def next_state(current: ClusterState, observation: ClusterObservation) -> ClusterState:
    """Return the state that follows *current* given *observation*.

    States never move backwards, except that a formed cluster flips between
    ``ACTIVE`` and ``DEGRADED`` with quorum health.
    """
    if current.is_formed:
        return ClusterState.ACTIVE if observation.has_quorum else ClusterState.DEGRADED
    if not observation.initialized:
        return current
    if observation.sealed:
        candidate = ClusterState.UNSEALING
    elif observation.has_quorum:
        candidate = ClusterState.ACTIVE
    else:
        candidate = ClusterState.FORMING_RAFT
    return candidate if _RANK[candidate] > _RANK[current] else current


class BootstrapOutcome(str, Enum):
    """User-facing result of a bootstrap run."""

    FULLY_ACTIVE = "fully-active"
    DEGRADED_BUT_USABLE = "degraded-but-usable"
    FAILED_TO_FORM = "failed-to-form"


@dataclass(slots=True)
class BootstrapResult:
    """Structured result of :meth:`ClusterBootstrapper.bootstrap`."""

    outcome: BootstrapOutcome
    state: ClusterState
    seed: str
    nodes: list[RaftNode]
    quorum: int
    initialized_now: bool = False
    verified_only: bool = False
    recovery: RecoveryKeySet | None = field(default=None, repr=False)

    @property
    def joined(self) -> list[str]:
        """Return the ids of nodes that are voting members."""
        return [node.node_id for node in self.nodes if node.join_status is JoinStatus.JOINED]

    @property
    def failed(self) -> list[str]:
        """Return the ids of nodes that failed to join."""
        return [node.node_id for node in self.nodes if node.join_status is JoinStatus.FAILED]

    def quorum_error(self) -> QuorumNotMet | None:
        """Return a :class:`QuorumNotMet` describing a failed formation, if any."""
        if self.outcome is not BootstrapOutcome.FAILED_TO_FORM:
            return None
        return QuorumNotMet(
            f"Only {len(self.joined)} of {len(self.nodes)} nodes joined; quorum is {self.quorum}.",
            joined=self.joined,
            failed=self.failed,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation without recovery material."""
        return {
            "outcome": self.outcome.value,
            "state": self.state.value,
            "seed": self.seed,
            "quorum": self.quorum,
            "joined": self.joined,
            "failed": self.failed,
            "initialized_now": self.initialized_now,
            "verified_only": self.verified_only,
            "recovery_shares": len(self.recovery.shares) if self.recovery else None,
            "nodes": [node.to_dict() for node in self.nodes],
        }


@dataclass(slots=True)
class ClusterHealth:
    """Point-in-time health of a formed cluster."""

    state: ClusterState
    leader_id: str | None
    leader_address: str | None
    voters: list[str]
    expected: int
    sealed: list[str] = field(default_factory=list)
    unreachable: list[str] = field(default_factory=list)

    @property
    def quorum(self) -> int:
        """Return the quorum for the expected voter count."""
        return quorum_size(self.expected)

    def is_leader(self, node_id: str) -> bool:
        """Return ``True`` when *node_id* is the current leader."""
        return self.leader_id is not None and self.leader_id == node_id

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "leader_id": self.leader_id,
            "leader_address": self.leader_address,
            "voters": list(self.voters),
            "expected": self.expected,
            "quorum": self.quorum,
            "sealed": list(self.sealed),
            "unreachable": list(self.unreachable),
        }


class ClusterBootstrapper:
    """Drive a cluster from uninitialised to an active Raft quorum."""

    def __init__(
        self,
        config: ClusterConfig,
        store: StateStore,
        client_factory: ClientFactory,
        *,
        locks: LockManager | None = None,
        ca_pem: str | None = None,
        owner: str | None = None,
        sleep: Sleeper = time.sleep,
        clock: Clock = time.time,
    ) -> None:
        """Bind the bootstrapper to a cluster definition and its collaborators."""
        self._config = config
        self._store = store
        self._client_factory = client_factory
        self._locks = locks
        self._ca_pem = ca_pem
        self._owner = owner or f"{socket.gethostname()}:{os.getpid()}"
        self._sleep = sleep
        self._clock = clock
        self._token = config.token

    @property
    def cluster_id(self) -> str:
        """Return the cluster identity."""
        return self._config.id

    @property
    def seed(self) -> NodeSpec:
        """Return the elected seed node."""
        return elect_seed(self._config.nodes)

    def current_state(self) -> ClusterState:
        """Return the stored cluster state."""
        raw = self._store.read(self.cluster_id, STATE_KEY)
        return ClusterState(raw) if raw else ClusterState.UNINITIALIZED

    # ------------------------------------------------------------------
    # Lease
    # ------------------------------------------------------------------
    @contextmanager
    def lease(self) -> Iterator[dict[str, object]]:
        """Hold the exclusive bootstrap lease for this cluster."""
        with ExitStack() as stack:
            if self._locks is not None:
                try:
                    stack.enter_context(
                        self._locks.cluster_lock(self.cluster_id, timeout=0, owner=self._owner)
                    )
                except LockTimeoutError as exc:
                    raise ConcurrentBootstrapError(
                        f"Another bootstrap on this host holds the lock for '{self.cluster_id}'."
                    ) from exc
            lease = self._acquire_lease()
            try:
                yield lease
            finally:
                if not self._store.compare_and_swap(self.cluster_id, LEASE_KEY, lease, None):
                    LOG.warning("bootstrap lease for %s was taken over before release", self.cluster_id)

    def _acquire_lease(self) -> dict[str, object]:
        now = self._clock()
        lease: dict[str, object] = {
            "owner": self._owner,
            "acquired_at": now,
            "ttl": self._config.lease_ttl,
        }
        current = self._store.read(self.cluster_id, LEASE_KEY)
        if current is None:
            if self._store.compare_and_swap(self.cluster_id, LEASE_KEY, None, lease):
                return lease
        elif isinstance(current, Mapping) and _lease_expired(current, now):
            LOG.warning(
                "taking over stale bootstrap lease of %s on %s", current.get("owner"), self.cluster_id
            )
            if self._store.compare_and_swap(self.cluster_id, LEASE_KEY, current, lease):
                return lease
        holder = current.get("owner") if isinstance(current, Mapping) else "another process"
        raise ConcurrentBootstrapError(
            f"Cluster '{self.cluster_id}' is already being bootstrapped by {holder}."
        )

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------
    def bootstrap(self) -> BootstrapResult:
        """Initialise the seed, wait for it to unseal and join every other node."""
        with self.lease():
            return self._bootstrap_locked()

    def _bootstrap_locked(self) -> BootstrapResult:
        seed_spec = self.seed
        nodes = self._raft_nodes(seed_spec)
        seed_node = nodes[0]
        seed_client = self._client(seed_spec)
        state = self.current_state()
        if state.is_transitional:
            LOG.warning(
                "cluster %s: resuming bootstrap interrupted in %s", self.cluster_id, state.value
            )

        status = self._read(seed_client.seal_status)
        if state.is_formed or (status.get("initialized") and not status.get("sealed")):
            health = self.health_check()
            if health.state is ClusterState.ACTIVE or state.is_formed:
                if not state.is_formed:
                    self._transition(state, health.state)
                return self._verified(health, nodes, seed_spec)

        initialized_now = False
        recovery: RecoveryKeySet | None = None
        if not status.get("initialized"):
            state = self._transition(state, ClusterState.INITIALIZING)
            recovery = self._initialize(seed_client, seed_spec)
            initialized_now = recovery is not None
            seed_client = self._client(seed_spec)

        state = self._transition(state, ClusterState.UNSEALING)
        unsealed = poll(
            seed_client.seal_status,
            lambda s: bool(s.get("initialized")) and not s.get("sealed"),
            interval=self._config.unseal_poll.interval,
            max_attempts=self._config.unseal_poll.max_attempts,
            sleep=self._sleep,
        )
        seed_node.attempts = 1
        if unsealed is None:
            seed_node.join_status = JoinStatus.FAILED
            seed_node.last_error = "seed node did not report unsealed within the poll budget"
            LOG.error("seed %s never unsealed; is the transit seal configured?", seed_spec.node_id)
            return self._finish(
                state, nodes, seed_spec, initialized_now=initialized_now, recovery=recovery
            )
        seed_node.join_status = JoinStatus.JOINED

        state = self._transition(state, ClusterState.FORMING_RAFT)
        self._join_all(seed_spec, nodes[1:])
        return self._finish(
            state, nodes, seed_spec, initialized_now=initialized_now, recovery=recovery
        )

    def _initialize(self, client: SecretsAPIClient, seed: NodeSpec) -> RecoveryKeySet | None:
        try:
            response = client.initialize(
                recovery_shares=self._config.recovery_shares,
                recovery_threshold=self._config.recovery_threshold,
            )
        except AlreadySatisfied:
            LOG.info("seed %s already initialised; continuing", seed.node_id)
            return None
        recovery = RecoveryKeySet.from_init_response(response, self._config.recovery_threshold)
        root_token = response.get("root_token")
        written = self._store.write_once(
            self.cluster_id,
            INIT_KEY,
            {
                "recovery": recovery.to_dict(),
                "root_token": root_token,
                "seed": seed.node_id,
                "initialized_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
            },
        )
        if not written:
            LOG.warning("recovery material for %s already recorded; keeping the first copy",
                        self.cluster_id)
        if not self._token and root_token:
            self._token = str(root_token)
        return recovery

    def _finish(
        self,
        state: ClusterState,
        nodes: list[RaftNode],
        seed: NodeSpec,
        *,
        initialized_now: bool,
        recovery: RecoveryKeySet | None,
    ) -> BootstrapResult:
        expected = len(nodes)
        joined = sum(1 for node in nodes if node.join_status is JoinStatus.JOINED)
        observation = ClusterObservation(
            initialized=True,
            sealed=nodes[0].join_status is not JoinStatus.JOINED,
            voters=joined,
            expected_voters=expected,
            has_leader=nodes[0].join_status is JoinStatus.JOINED,
        )
        state = self._transition(state, next_state(state, observation))
        self._store.write(self.cluster_id, NODES_KEY, [node.to_dict() for node in nodes])

        if not observation.has_quorum:
            outcome = BootstrapOutcome.FAILED_TO_FORM
        elif joined == expected:
            outcome = BootstrapOutcome.FULLY_ACTIVE
        else:
            outcome = BootstrapOutcome.DEGRADED_BUT_USABLE
        return BootstrapResult(
            outcome=outcome,
            state=state,
            seed=seed.node_id,
            nodes=nodes,
            quorum=quorum_size(expected),
            initialized_now=initialized_now,
            recovery=recovery,
        )

    def _verified(
        self, health: ClusterHealth, nodes: list[RaftNode], seed: NodeSpec
    ) -> BootstrapResult:
        voters = set(health.voters)
        for node in nodes:
            node.join_status = JoinStatus.JOINED if node.node_id in voters else JoinStatus.FAILED
            if node.join_status is JoinStatus.FAILED:
                node.last_error = "not a voter"
        joined = len(voters & {node.node_id for node in nodes})
        if health.state is ClusterState.DEGRADED:
            outcome = BootstrapOutcome.FAILED_TO_FORM
        elif joined == len(nodes):
            outcome = BootstrapOutcome.FULLY_ACTIVE
        else:
            outcome = BootstrapOutcome.DEGRADED_BUT_USABLE
        return BootstrapResult(
            outcome=outcome,
            state=health.state,
            seed=seed.node_id,
            nodes=nodes,
            quorum=health.quorum,
            verified_only=True,
        )

    # ------------------------------------------------------------------
    # Joins
    # ------------------------------------------------------------------
    def join_node(self, node_id: str) -> RaftNode:
        """Retry the Raft join of a single node without touching the others."""
        spec = self._config.node(node_id)
        seed = self.seed
        if spec.node_id == seed.node_id:
            raise ValueError(f"Node '{node_id}' is the seed; it does not join.")
        with self.lease():
            node = RaftNode(node_id=spec.node_id, address=spec.api_addr)
            self._join_one(seed, node)
            stored = self._store.read(self.cluster_id, NODES_KEY)
            entries: list[object] = []
            if isinstance(stored, list):
                entries = [
                    entry
                    for entry in stored
                    if isinstance(entry, Mapping) and entry.get("node_id") != node_id
                ]
            entries.append(node.to_dict())
            self._store.write(self.cluster_id, NODES_KEY, entries)

            current = self.current_state()
            if not current.is_formed and self.health_check().state is ClusterState.ACTIVE:
                self._transition(current, ClusterState.ACTIVE)
        return node

    def _join_all(self, seed: NodeSpec, nodes: Sequence[RaftNode]) -> None:
        if not nodes:
            return
        max_workers = max(1, min(self._config.max_parallel_joins, len(nodes)))
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {executor.submit(self._join_one, seed, node): node for node in nodes}
            for future in concurrent.futures.as_completed(futures):
                node = futures[future]
                exc = future.exception()
                if exc is not None:
                    node.join_status = JoinStatus.FAILED
                    node.last_error = str(exc)
                    LOG.error("join of %s aborted: %s", node.node_id, exc)

    def _join_one(self, seed: NodeSpec, node: RaftNode) -> None:
        spec = self._config.node(node.node_id)
        client = self._client(spec)
        budget = self._config.join_poll
        join_requested = False
        for attempt in range(1, budget.max_attempts + 1):
            node.attempts = attempt
            try:
                status = client.seal_status()
                if status.get("initialized") and not status.get("sealed"):
                    node.join_status = JoinStatus.JOINED
                    node.last_error = None
                    LOG.info("node %s joined after %d attempt(s)", node.node_id, attempt)
                    return
                if not join_requested and not status.get("initialized"):
                    join_requested = client.raft_join(seed.api_addr, leader_ca_cert=self._ca_pem)
            except AuthorizationDenied as exc:
                node.join_status = JoinStatus.FAILED
                node.last_error = str(exc)
                return
            except (TransientNetworkError, APIError) as exc:
                node.last_error = str(exc)
                LOG.debug("join attempt %d for %s failed: %s", attempt, node.node_id, exc)
            if attempt < budget.max_attempts:
                self._sleep(budget.interval)
        node.join_status = JoinStatus.FAILED
        if node.last_error is None:
            node.last_error = "node did not unseal within the join budget"

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    def health_check(self) -> ClusterHealth:
        """Return leader, voter and seal information for the whole cluster."""
        sealed: list[str] = []
        unreachable: list[str] = []
        unsealed: list[str] = []
        initialized = False
        leader_address: str | None = None
        for spec in self._config.nodes:
            client = self._client(spec)
            try:
                status = client.health()
                initialized = initialized or bool(status.get("initialized"))
                if not status.get("initialized") or status.get("sealed"):
                    sealed.append(spec.node_id)
                    continue
                unsealed.append(spec.node_id)
                if leader_address is None:
                    leader = client.leader()
                    address = leader.get("leader_address")
                    leader_address = str(address).rstrip("/") if address else None
            except SealctlError as exc:
                LOG.debug("health probe of %s failed: %s", spec.node_id, exc)
                unreachable.append(spec.node_id)

        leader_id = next(
            (spec.node_id for spec in self._config.nodes if spec.api_addr == leader_address),
            None,
        )
        voters = self._voters(leader_id, unsealed)
        expected = len(self._config.nodes)
        observation = ClusterObservation(
            initialized=initialized,
            sealed=not unsealed,
            voters=len(voters),
            expected_voters=expected,
            has_leader=leader_id is not None,
        )
        current = self.current_state()
        state = next_state(current, observation)
        if current.is_formed and state is not current:
            self._store.compare_and_swap(self.cluster_id, STATE_KEY, current.value, state.value)
        return ClusterHealth(
            state=state,
            leader_id=leader_id,
            leader_address=leader_address,
            voters=voters,
            expected=expected,
            sealed=sealed,
            unreachable=unreachable,
        )

    def _voters(self, leader_id: str | None, unsealed: list[str]) -> list[str]:
        if leader_id is None or not self._token:
            return unsealed
        leader_spec = self._config.node(leader_id)
        try:
            servers = self._client(leader_spec).raft_configuration()
        except SealctlError as exc:
            LOG.debug("raft configuration unavailable (%s); using seal status", exc)
            return unsealed
        known = {spec.node_id for spec in self._config.nodes}
        return [
            str(server["node_id"])
            for server in servers
            if server.get("voter", True) and str(server.get("node_id")) in known
        ]

    # ------------------------------------------------------------------
    def _client(self, spec: NodeSpec) -> SecretsAPIClient:
        return self._client_factory(spec, self._token)

    def _raft_nodes(self, seed: NodeSpec) -> list[RaftNode]:
        ordered = [seed] + sorted(
            (node for node in self._config.nodes if node.node_id != seed.node_id),
            key=lambda node: node.node_id,
        )
        return [
            RaftNode(
                node_id=node.node_id,
                address=node.api_addr,
                role=NodeRole.LEADER_CANDIDATE if node is seed else NodeRole.VOTER,
            )
            for node in ordered
        ]

    def _read(self, func: Callable[[], dict[str, object]]) -> dict[str, object]:
        return retry_call(
            func,
            attempts=self._config.unseal_poll.max_attempts,
            backoff=Backoff(initial=self._config.unseal_poll.interval, cap=30.0),
            sleep=self._sleep,
        )

    def _transition(self, current: ClusterState, target: ClusterState) -> ClusterState:
        if target is current:
            return current
        if _RANK[target] < _RANK[current]:
            return current
        stored = self._store.read(self.cluster_id, STATE_KEY)
        if (stored or ClusterState.UNINITIALIZED.value) != current.value or not (
            self._store.compare_and_swap(self.cluster_id, STATE_KEY, stored, target.value)
        ):
            raise ConcurrentBootstrapError(
                f"Cluster '{self.cluster_id}' state changed underneath this bootstrap."
            )
        LOG.info("cluster %s: %s -> %s", self.cluster_id, current.value, target.value)
        return target


def _lease_expired(lease: Mapping[str, object], now: float) -> bool:
    try:
        acquired = float(lease.get("acquired_at", 0.0))  # type: ignore[arg-type]
        ttl = float(lease.get("ttl", 0.0))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return True
    return now - acquired > ttl


__all__ = [
    "BootstrapOutcome",
    "BootstrapResult",
    "ClusterBootstrapper",
    "ClusterHealth",
    "ClusterObservation",
    "elect_seed",
    "next_state",
    "quorum_size",
]
