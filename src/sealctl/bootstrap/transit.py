"""Bootstrap the standalone transit instance used for auto-unseal.

The bootstrapper is idempotent: every step first observes the current state
and only changes what is missing. Re-running it against an initialised
transit instance returns the same key reference and reuses the stored
unseal credential while it is still valid, so credentials already deployed
to running nodes are never orphaned.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from ..api.client import SecretsAPIClient
from ..config import TransitConfig
from ..errors import (
    AlreadySatisfied,
    AuthorizationDenied,
    IntegrityViolation,
    TransitSealedError,
)
from ..models import RecoveryKeySet, TransitKeyRef, UnsealCredential
from ..retry import Backoff, Clock, Sleeper, wait_until_reachable
from ..state.store import StateStore

LOG = logging.getLogger(__name__)

KEY_REF_KEY = "transit.key_ref"
CREDENTIAL_KEY = "transit.credential"
INIT_KEY = "transit.init"


def unseal_policy_document(key_ref: TransitKeyRef) -> str:
    """Return an ACL policy granting wrap/unwrap on *key_ref* and nothing else."""
    return (
        f'path "{key_ref.encrypt_path}" {{\n'
        '  capabilities = ["update"]\n'
        "}\n\n"
        f'path "{key_ref.decrypt_path}" {{\n'
        '  capabilities = ["update"]\n'
        "}\n"
    )


@dataclass(slots=True)
class TransitBootstrapResult:
    """Outcome of a transit bootstrap run."""

    key_ref: TransitKeyRef
    credential: UnsealCredential
    actions: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return ``True`` when anything on the transit instance was modified."""
        return bool(self.actions)

    def to_dict(self) -> dict[str, object]:
        """Return a redacted, serialisable representation."""
        return {
            "key_ref": self.key_ref.to_dict(),
            "credential": self.credential.to_dict(),
            "actions": list(self.actions),
        }


class TransitBootstrapper:
    """Prepare the transit engine, wrapping key, policy and unseal credential."""

    def __init__(
        self,
        client: SecretsAPIClient,
        store: StateStore,
        config: TransitConfig,
        *,
        cluster_id: str,
        sleep: Sleeper = time.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        """Bind the bootstrapper to a transit client and state store."""
        self._client = client
        self._store = store
        self._config = config
        self._cluster_id = cluster_id
        self._sleep = sleep
        self._clock = clock

    @property
    def key_ref(self) -> TransitKeyRef:
        """Return the configured key reference."""
        return TransitKeyRef(key_name=self._config.key_name, mount_path=self._config.mount_path)

    def bootstrap(self, transit_address: str | None = None) -> tuple[TransitKeyRef, UnsealCredential]:
        """Run every bootstrap step and return the key reference and credential."""
        result = self.run(transit_address)
        return result.key_ref, result.credential

    def run(self, transit_address: str | None = None) -> TransitBootstrapResult:
        """Run every bootstrap step and report which ones changed anything."""
        client = self._client
        if transit_address and transit_address.rstrip("/") != client.address:
            client = replace(client, address=transit_address)
        actions: list[str] = []

        status = wait_until_reachable(
            client.seal_status,
            timeout=self._config.reachability_timeout,
            backoff=Backoff(initial=1.0, factor=2.0, cap=self._config.backoff_cap),
            describe=f"transit instance {client.address}",
            sleep=self._sleep,
            clock=self._clock,
        )

        admin_token = self._config.token or client.token or self._recorded_root_token()
        if not status.get("initialized"):
            status, root_token = self._initialize(client, actions)
            admin_token = admin_token or root_token

        if status.get("sealed"):
            raise TransitSealedError(
                f"Transit instance {client.address} is sealed; unseal it manually before "
                "bootstrapping (the transit instance has no auto-unseal of its own)."
            )
        if not admin_token:
            raise AuthorizationDenied(
                "No transit admin token configured; set transit.token to bootstrap an "
                "initialised transit instance."
            )

        admin = client.with_token(admin_token)
        key_ref = self.key_ref
        self._ensure_mount(admin, key_ref, actions)
        self._ensure_key(admin, key_ref, actions)
        self._ensure_policy(admin, key_ref, actions)
        credential = self._ensure_credential(admin, key_ref, actions)
        self._store.write(self._cluster_id, KEY_REF_KEY, key_ref.to_dict())
        return TransitBootstrapResult(key_ref=key_ref, credential=credential, actions=actions)

    # ------------------------------------------------------------------
    def _recorded_root_token(self) -> str | None:
        recorded = self._store.read(self._cluster_id, INIT_KEY)
        if isinstance(recorded, Mapping) and recorded.get("root_token"):
            return str(recorded["root_token"])
        return None

    def _initialize(
        self, client: SecretsAPIClient, actions: list[str]
    ) -> tuple[Mapping[str, object], str | None]:
        try:
            response = client.initialize(
                secret_shares=self._config.key_shares,
                secret_threshold=self._config.key_threshold,
            )
        except AlreadySatisfied:
            LOG.info("transit instance %s was initialised concurrently", client.address)
            return client.seal_status(), None

        keys = RecoveryKeySet.from_init_response(response, self._config.key_threshold)
        root_token = response.get("root_token")
        written = self._store.write_once(
            self._cluster_id,
            INIT_KEY,
            {
                "keys": keys.to_dict(),
                "root_token": root_token,
                "initialized_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
            },
        )
        if not written:
            LOG.warning("transit init material already recorded; keeping the first copy")
        actions.append("initialized")

        status: Mapping[str, object] = client.seal_status()
        if status.get("sealed") and self._config.unseal_on_init:
            for share in keys.shares[: keys.threshold]:
                status = client.submit_unseal_key(share)
                if not status.get("sealed"):
                    break
            actions.append("unsealed")
        return status, str(root_token) if root_token else None

    def _ensure_mount(
        self, admin: SecretsAPIClient, key_ref: TransitKeyRef, actions: list[str]
    ) -> None:
        mounts = admin.list_mounts()
        existing = mounts.get(f"{key_ref.mount_path}/")
        if existing is None:
            admin.enable_mount(key_ref.mount_path, "transit", description="auto-unseal keys")
            actions.append("mount-enabled")
            return
        mount_type = existing.get("type") if isinstance(existing, Mapping) else None
        if mount_type != "transit":
            raise IntegrityViolation(
                f"Mount '{key_ref.mount_path}/' exists with type {mount_type!r}, not 'transit'."
            )

    def _ensure_key(
        self, admin: SecretsAPIClient, key_ref: TransitKeyRef, actions: list[str]
    ) -> None:
        if admin.read_transit_key(key_ref.mount_path, key_ref.key_name) is not None:
            return
        admin.create_transit_key(key_ref.mount_path, key_ref.key_name)
        actions.append("key-created")

    def _ensure_policy(
        self, admin: SecretsAPIClient, key_ref: TransitKeyRef, actions: list[str]
    ) -> None:
        document = unseal_policy_document(key_ref)
        if admin.read_policy(self._config.policy_name) == document:
            return
        admin.write_policy(self._config.policy_name, document)
        actions.append("policy-written")

    def _ensure_credential(
        self, admin: SecretsAPIClient, key_ref: TransitKeyRef, actions: list[str]
    ) -> UnsealCredential:
        stored = self._store.read(self._cluster_id, CREDENTIAL_KEY)
        if isinstance(stored, Mapping):
            try:
                candidate = UnsealCredential.from_mapping(stored)
            except (KeyError, ValueError):
                LOG.warning("stored transit credential is unreadable; minting a new one")
            else:
                if self._still_valid(admin, candidate, key_ref):
                    return candidate

        auth = admin.create_token(
            policies=[self._config.policy_name],
            period=self._config.token_period,
            display_name=f"autounseal-{self._cluster_id}",
        )
        accessor = auth.get("accessor")
        credential = UnsealCredential(
            token=str(auth["client_token"]),
            policy=self._config.policy_name,
            key_ref=key_ref,
            accessor=str(accessor) if accessor else None,
        )
        self._store.write(self._cluster_id, CREDENTIAL_KEY, credential.to_dict(redact=False))
        actions.append("credential-minted")
        return credential

    def _still_valid(
        self, admin: SecretsAPIClient, credential: UnsealCredential, key_ref: TransitKeyRef
    ) -> bool:
        if credential.key_ref != key_ref or credential.policy != self._config.policy_name:
            return False
        lookup = admin.lookup_token(credential.token)
        if lookup is None:
            return False
        policies = lookup.get("policies") or []
        return self._config.policy_name in policies


__all__ = [
    "CREDENTIAL_KEY",
    "INIT_KEY",
    "KEY_REF_KEY",
    "TransitBootstrapResult",
    "TransitBootstrapper",
    "unseal_policy_document",
]
