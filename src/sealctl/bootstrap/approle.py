"""Least-privilege AppRole credentials for machine principals."""
from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from ..api.client import SecretsAPIClient
from ..errors import PolicyError
from ..models import AppRoleCredential
from ..state.store import StateStore

LOG = logging.getLogger(__name__)

APPROLE_MOUNT = "approle"

SNAPSHOT_POLICY = """\
path "sys/storage/raft/snapshot" {
  capabilities = ["read"]
}
"""

_PATH_BLOCK = re.compile(r'path\s+"([^"]*)"\s*\{(.*?)\}', re.DOTALL)
_CAPABILITIES = re.compile(r"capabilities\s*=\s*\[(.*?)\]", re.DOTALL)
_WILDCARD_PATHS = {"*", "+", "+/*", "auth/*"}
_SNAPSHOT_PATH = "sys/storage/raft/snapshot"
_ADMIN_PATH = re.compile(r"^(sys(/|$)|auth/token/(create|root)|auth/[^/]+/role(/|$))")
_FORBIDDEN_CAPABILITIES = {"sudo", "root"}
_RESERVED_POLICIES = {"root", "default"}


def state_key(principal: str) -> str:
    """Return the state store key holding *principal*'s credential."""
    return f"approle.{principal}"


def check_least_privilege(name: str, document: str) -> dict[str, list[str]]:
    """Parse *document* and reject administrative grants.

    Returns the ``{path: capabilities}`` mapping of the accepted document.
    """
    if name in _RESERVED_POLICIES:
        raise PolicyError(f"Policy name '{name}' is reserved.")
    grants: dict[str, list[str]] = {}
    for path, body in _PATH_BLOCK.findall(document):
        match = _CAPABILITIES.search(body)
        capabilities = (
            [item.strip().strip('"') for item in match.group(1).split(",") if item.strip()]
            if match
            else []
        )
        if path in _WILDCARD_PATHS or (path.startswith("sys/") and path.endswith("*")):
            raise PolicyError(f"Policy '{name}' grants wildcard path '{path}'.")
        if path != _SNAPSHOT_PATH and _ADMIN_PATH.match(path):
            raise PolicyError(f"Policy '{name}' grants administrative path '{path}'.")
        forbidden = _FORBIDDEN_CAPABILITIES.intersection(capabilities)
        if forbidden:
            raise PolicyError(
                f"Policy '{name}' grants {', '.join(sorted(forbidden))} on '{path}'."
            )
        grants[path] = capabilities
    if not grants:
        raise PolicyError(f"Policy '{name}' does not grant any path.")
    return grants


@dataclass(slots=True)
class ProvisionResult:
    """Outcome of an AppRole provisioning run."""

    credential: AppRoleCredential
    policy_updated: bool
    secret_minted: bool

    def to_dict(self) -> dict[str, object]:
        """Return a redacted, serialisable representation."""
        return {
            "credential": self.credential.to_dict(),
            "policy_updated": self.policy_updated,
            "secret_minted": self.secret_minted,
        }


class AppRoleProvisioner:
    """Create or update a policy, a role and a secret identifier for a principal."""

    def __init__(
        self,
        client: SecretsAPIClient,
        store: StateStore,
        *,
        cluster_id: str,
        mount: str = APPROLE_MOUNT,
        token_ttl: str = "1h",
        token_max_ttl: str = "4h",
        now: Callable[[], datetime] | None = None,
    ) -> None:
        """Bind the provisioner to an authenticated admin client."""
        self._client = client
        self._store = store
        self._cluster_id = cluster_id
        self._mount = mount
        self._token_ttl = token_ttl
        self._token_max_ttl = token_max_ttl
        self._now = now or (lambda: datetime.now(tz=UTC))

    def provision(
        self,
        principal: str,
        policy_document: str = SNAPSHOT_POLICY,
        *,
        rotate: bool = False,
    ) -> AppRoleCredential:
        """Return a valid credential for *principal*, minting one only when needed."""
        return self.run(principal, policy_document, rotate=rotate).credential

    def run(
        self,
        principal: str,
        policy_document: str = SNAPSHOT_POLICY,
        *,
        rotate: bool = False,
    ) -> ProvisionResult:
        """Provision *principal* and report what changed."""
        check_least_privilege(principal, policy_document)
        client = self._client

        if f"{self._mount}/" not in client.list_auth():
            client.enable_auth(self._mount, "approle")
            LOG.info("enabled approle auth at %s/", self._mount)

        policy_updated = client.read_policy(principal) != policy_document
        if policy_updated:
            client.write_policy(principal, policy_document)

        client.write_approle_role(
            principal,
            policies=[principal],
            token_ttl=self._token_ttl,
            token_max_ttl=self._token_max_ttl,
            mount=self._mount,
        )
        role_id = client.read_role_id(principal, mount=self._mount)

        if not rotate:
            existing = self._reusable(principal, role_id)
            if existing is not None:
                return ProvisionResult(
                    credential=existing, policy_updated=policy_updated, secret_minted=False
                )

        data = client.generate_secret_id(principal, mount=self._mount)
        ttl = _as_int(data.get("secret_id_ttl"))
        accessor = data.get("secret_id_accessor")
        credential = AppRoleCredential(
            role_name=principal,
            role_id=role_id,
            secret_id=str(data["secret_id"]),
            policy=principal,
            secret_id_accessor=str(accessor) if accessor else None,
            expiry=self._now() + timedelta(seconds=ttl) if ttl > 0 else None,
        )
        self._store.write(self._cluster_id, state_key(principal), credential.to_dict(redact=False))
        LOG.info("minted new secret id for %s%s", principal, " (rotation)" if rotate else "")
        return ProvisionResult(credential=credential, policy_updated=policy_updated, secret_minted=True)

    def _reusable(self, principal: str, role_id: str) -> AppRoleCredential | None:
        stored = self._store.read(self._cluster_id, state_key(principal))
        if not isinstance(stored, Mapping):
            return None
        try:
            credential = AppRoleCredential.from_mapping(stored)
        except (KeyError, ValueError):
            return None
        if credential.role_id != role_id or credential.is_expired(self._now()):
            return None
        lookup = self._client.lookup_secret_id(principal, credential.secret_id, mount=self._mount)
        if lookup is None:
            return None
        return credential


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return 0


__all__ = [
    "APPROLE_MOUNT",
    "SNAPSHOT_POLICY",
    "AppRoleProvisioner",
    "ProvisionResult",
    "check_least_privilege",
    "state_key",
]
