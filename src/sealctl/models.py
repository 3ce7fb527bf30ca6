"""Data model shared by the bootstrap and snapshot workflows."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


def _redact(secret: str | None) -> str | None:
    if not secret:
        return secret
    return f"{secret[:4]}****" if len(secret) > 8 else "****"


class ClusterState(str, Enum):
    """Lifecycle of a main cluster.

    Transitions are monotonic along the declared order except for the
    ``ACTIVE``/``DEGRADED`` pair which follows node health.
    """

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    UNSEALING = "unsealing"
    FORMING_RAFT = "forming-raft"
    ACTIVE = "active"
    DEGRADED = "degraded"

    @property
    def is_transitional(self) -> bool:
        """Return ``True`` while a bootstrap sequence owns the cluster."""
        return self in _TRANSITIONAL_STATES

    @property
    def is_formed(self) -> bool:
        """Return ``True`` once the cluster reached quorum at least once."""
        return self in (ClusterState.ACTIVE, ClusterState.DEGRADED)


_TRANSITIONAL_STATES = frozenset(
    {ClusterState.INITIALIZING, ClusterState.UNSEALING, ClusterState.FORMING_RAFT}
)


class NodeRole(str, Enum):
    """Role a node plays during bootstrap."""

    LEADER_CANDIDATE = "leader-candidate"
    VOTER = "voter"


class JoinStatus(str, Enum):
    """Outcome of a node's Raft join handshake."""

    PENDING = "pending"
    JOINED = "joined"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class NodeSpec:
    """Static description of a main-cluster node."""

    node_id: str
    api_addr: str
    config_dir: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"id": self.node_id, "api_addr": self.api_addr, "config_dir": self.config_dir}


@dataclass(frozen=True, slots=True)
class TransitKeyRef:
    """Reference to the wrapping key on the transit instance."""

    key_name: str
    mount_path: str

    @property
    def encrypt_path(self) -> str:
        """Return the API path used to wrap with this key."""
        return f"{self.mount_path}/encrypt/{self.key_name}"

    @property
    def decrypt_path(self) -> str:
        """Return the API path used to unwrap with this key."""
        return f"{self.mount_path}/decrypt/{self.key_name}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"key_name": self.key_name, "mount_path": self.mount_path}

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> TransitKeyRef:
        """Rebuild a key reference from its stored mapping."""
        return cls(key_name=str(data["key_name"]), mount_path=str(data["mount_path"]))


@dataclass(frozen=True, slots=True)
class UnsealCredential:
    """Transit token restricted to wrap/unwrap on a single key."""

    token: str
    policy: str
    key_ref: TransitKeyRef
    accessor: str | None = None

    @property
    def policy_scope(self) -> tuple[str, ...]:
        """Return the only API paths this credential may use."""
        return (self.key_ref.encrypt_path, self.key_ref.decrypt_path)

    def to_dict(self, *, redact: bool = True) -> dict[str, object]:
        """Return a serialisable representation, redacting the token by default."""
        return {
            "token": _redact(self.token) if redact else self.token,
            "policy": self.policy,
            "key_ref": self.key_ref.to_dict(),
            "accessor": self.accessor,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> UnsealCredential:
        """Rebuild a credential from its stored (unredacted) mapping."""
        key_ref = data["key_ref"]
        if not isinstance(key_ref, Mapping):
            raise ValueError("Stored credential is missing its key reference.")
        accessor = data.get("accessor")
        return cls(
            token=str(data["token"]),
            policy=str(data["policy"]),
            key_ref=TransitKeyRef.from_mapping(key_ref),
            accessor=str(accessor) if accessor else None,
        )


@dataclass(slots=True)
class RaftNode:
    """Bootstrap-time view of a single node."""

    node_id: str
    address: str
    role: NodeRole = NodeRole.VOTER
    join_status: JoinStatus = JoinStatus.PENDING
    attempts: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "node_id": self.node_id,
            "address": self.address,
            "role": self.role.value,
            "join_status": self.join_status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


@dataclass(frozen=True, slots=True)
class RecoveryKeySet:
    """Recovery shares produced exactly once at first-node initialisation."""

    shares: tuple[str, ...]
    threshold: int

    def __post_init__(self) -> None:
        """Reject inconsistent share/threshold combinations."""
        if self.threshold < 1 or self.threshold > len(self.shares):
            raise ValueError(
                f"Recovery threshold {self.threshold} is invalid for {len(self.shares)} shares."
            )

    @classmethod
    def from_init_response(cls, payload: Mapping[str, object], threshold: int) -> RecoveryKeySet:
        """Extract shares from an init response (recovery or Shamir keys)."""
        for field_name in ("recovery_keys_base64", "keys_base64", "recovery_keys", "keys"):
            raw = payload.get(field_name)
            if isinstance(raw, Sequence) and not isinstance(raw, str) and raw:
                return cls(shares=tuple(str(item) for item in raw), threshold=threshold)
        raise ValueError("Init response did not contain any key shares.")

    def to_dict(self) -> dict[str, object]:
        """Return the full share material for write-once persistence."""
        return {"shares": list(self.shares), "threshold": self.threshold}


@dataclass(frozen=True, slots=True)
class AppRoleCredential:
    """Role identifier and secret identifier for a machine principal."""

    role_name: str
    role_id: str
    secret_id: str
    policy: str
    secret_id_accessor: str | None = None
    expiry: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Return ``True`` if the secret id has a known expiry in the past."""
        if self.expiry is None:
            return False
        return (now or datetime.now(tz=UTC)) >= self.expiry

    def to_dict(self, *, redact: bool = True) -> dict[str, object]:
        """Return a serialisable representation, redacting the secret id by default."""
        return {
            "role_name": self.role_name,
            "role_id": self.role_id,
            "secret_id": _redact(self.secret_id) if redact else self.secret_id,
            "policy": self.policy,
            "secret_id_accessor": self.secret_id_accessor,
            "expiry": self.expiry.isoformat() if self.expiry else None,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> AppRoleCredential:
        """Rebuild a credential from its stored (unredacted) mapping."""
        expiry_raw = data.get("expiry")
        accessor = data.get("secret_id_accessor")
        return cls(
            role_name=str(data["role_name"]),
            role_id=str(data["role_id"]),
            secret_id=str(data["secret_id"]),
            policy=str(data["policy"]),
            secret_id_accessor=str(accessor) if accessor else None,
            expiry=datetime.fromisoformat(str(expiry_raw)) if expiry_raw else None,
        )


@dataclass(frozen=True, slots=True, order=True)
class SnapshotRecord:
    """Metadata for an uploaded snapshot, ordered by timestamp."""

    timestamp: datetime
    object_key: str = field(compare=False)
    size_bytes: int = field(compare=False, default=0)
    checksum: str = field(compare=False, default="")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "object_key": self.object_key,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
        }


__all__ = [
    "AppRoleCredential",
    "ClusterState",
    "JoinStatus",
    "NodeRole",
    "NodeSpec",
    "RaftNode",
    "RecoveryKeySet",
    "SnapshotRecord",
    "TransitKeyRef",
    "UnsealCredential",
]
