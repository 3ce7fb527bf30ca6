"""Bootstrap workflows: transit, auto-unseal, cluster formation and AppRole."""
from __future__ import annotations

from .approle import (
    SNAPSHOT_POLICY,
    AppRoleProvisioner,
    ProvisionResult,
    check_least_privilege,
)
from .autounseal import SEAL_FILE_NAME, AutoUnsealCoordinator, SealStanza
from .cluster import (
    BootstrapOutcome,
    BootstrapResult,
    ClusterBootstrapper,
    ClusterHealth,
    ClusterObservation,
    elect_seed,
    next_state,
    quorum_size,
)
from .transit import TransitBootstrapper, TransitBootstrapResult, unseal_policy_document

__all__ = [
    # transit
    "TransitBootstrapper",
    "TransitBootstrapResult",
    "unseal_policy_document",
    # auto-unseal
    "AutoUnsealCoordinator",
    "SealStanza",
    "SEAL_FILE_NAME",
    # cluster formation
    "BootstrapOutcome",
    "BootstrapResult",
    "ClusterBootstrapper",
    "ClusterHealth",
    "ClusterObservation",
    "elect_seed",
    "next_state",
    "quorum_size",
    # approle
    "AppRoleProvisioner",
    "ProvisionResult",
    "SNAPSHOT_POLICY",
    "check_least_privilege",
]
