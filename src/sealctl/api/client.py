"""Typed client for a secrets-engine node's HTTP control API.

The client is stateless apart from the bearer token it was created with.
Transport failures are mapped onto the :mod:`sealctl.errors` taxonomy so the
bootstrap and snapshot workflows can decide on retries by exception class:

* connection errors, timeouts and 502/503/504 responses raise
  :class:`~sealctl.errors.TransientNetworkError`;
* 401/403 responses raise :class:`~sealctl.errors.AuthorizationDenied`;
* "already initialized" responses raise :class:`~sealctl.errors.AlreadySatisfied`;
* anything else non-2xx raises :class:`~sealctl.errors.APIError`.

Idempotent reads are retried with bounded exponential backoff; writes are
sent once.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import requests

from ..errors import AlreadySatisfied, APIError, AuthorizationDenied, TransientNetworkError
from ..retry import Backoff, Sleeper, retry_call
from ..tls import load_ca_bundle

LOG = logging.getLogger(__name__)

TOKEN_HEADER = "X-Vault-Token"
_TRANSIENT_STATUS = {502, 503, 504}
_AUTH_STATUS = {401, 403}
_ALREADY_SATISFIED_MARKERS = ("already initialized", "already been initialized")
_SNAPSHOT_CHUNK = 64 * 1024


@dataclass(slots=True)
class SecretsAPIClient:
    """HTTP client bound to a single node address."""

    address: str
    token: str | None = None
    timeout: float = 10.0
    verify: bool | str = True
    read_attempts: int = 3
    backoff: Backoff = field(default_factory=lambda: Backoff(initial=0.5, cap=5.0))
    session: requests.Session = field(default_factory=requests.Session)
    sleep: Sleeper = time.sleep

    def __post_init__(self) -> None:
        """Normalise the base address."""
        self.address = self.address.rstrip("/")

    def with_token(self, token: str | None) -> SecretsAPIClient:
        """Return a copy of this client authenticated with *token*."""
        return replace(self, token=token)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _url(self, path: str) -> str:
        return f"{self.address}/v1/{path.lstrip('/')}"

    def _send(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, object] | None = None,
        params: Mapping[str, object] | None = None,
        stream: bool = False,
    ) -> requests.Response:
        headers = {TOKEN_HEADER: self.token} if self.token else {}
        try:
            response = self.session.request(
                method,
                self._url(path),
                json=dict(json) if json is not None else None,
                params=dict(params) if params else None,
                headers=headers,
                timeout=self.timeout,
                verify=self.verify,
                stream=stream,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientNetworkError(f"{method} {self.address}/{path}: {exc}") from exc
        except requests.RequestException as exc:
            raise APIError(f"{method} {self.address}/{path}: {exc}") from exc
        return response

    def _raise_for_status(self, method: str, path: str, response: requests.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        errors = _error_messages(response)
        summary = "; ".join(errors) if errors else response.reason or f"HTTP {status}"
        message = f"{method} /v1/{path.lstrip('/')} failed ({status}): {summary}"
        if status in _AUTH_STATUS:
            raise AuthorizationDenied(message, status_code=status)
        if status in _TRANSIENT_STATUS:
            raise TransientNetworkError(message)
        lowered = summary.lower()
        if status == 400 and any(marker in lowered for marker in _ALREADY_SATISFIED_MARKERS):
            raise AlreadySatisfied(message)
        raise APIError(message, status_code=status, errors=errors)

    def _call(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, object] | None = None,
        params: Mapping[str, object] | None = None,
        allow_missing: bool = False,
    ) -> dict[str, Any] | None:
        def attempt() -> dict[str, Any] | None:
            response = self._send(method, path, json=json, params=params)
            try:
                if allow_missing and response.status_code == 404:
                    return None
                self._raise_for_status(method, path, response)
                if response.status_code == 204 or not response.content:
                    return {}
                payload = response.json()
            finally:
                response.close()
            if not isinstance(payload, dict):
                raise APIError(f"{method} /v1/{path}: expected a JSON object response.")
            return payload

        if method in {"GET", "LIST"}:
            return retry_call(
                attempt,
                attempts=self.read_attempts,
                backoff=self.backoff,
                sleep=self.sleep,
                on_retry=lambda n, exc, delay: LOG.debug(
                    "read %s %s failed (%s); retry %d", method, path, exc, n
                ),
            )
        return attempt()

    def _get(self, path: str, **kwargs: Any) -> dict[str, Any]:
        return self._call("GET", path, **kwargs) or {}

    def _write(self, method: str, path: str, body: Mapping[str, object] | None = None) -> dict[str, Any]:
        return self._call(method, path, json=body or {}) or {}

    # ------------------------------------------------------------------
    # System
    # ------------------------------------------------------------------
    def health(self) -> dict[str, Any]:
        """Return ``sys/health`` without treating sealed/standby states as errors."""
        return self._get(
            "sys/health",
            params={
                "standbyok": "true",
                "perfstandbyok": "true",
                "sealedcode": 200,
                "uninitcode": 200,
            },
        )

    def seal_status(self) -> dict[str, Any]:
        """Return ``sys/seal-status``."""
        return self._get("sys/seal-status")

    def initialize(
        self,
        *,
        recovery_shares: int | None = None,
        recovery_threshold: int | None = None,
        secret_shares: int | None = None,
        secret_threshold: int | None = None,
    ) -> dict[str, Any]:
        """Initialise the node; raises :class:`AlreadySatisfied` if it already is."""
        body: dict[str, object] = {}
        if recovery_shares is not None:
            body["recovery_shares"] = recovery_shares
            body["recovery_threshold"] = recovery_threshold or recovery_shares
        if secret_shares is not None:
            body["secret_shares"] = secret_shares
            body["secret_threshold"] = secret_threshold or secret_shares
        return self._write("PUT", "sys/init", body)

    def submit_unseal_key(self, key: str) -> dict[str, Any]:
        """Submit one unseal key share and return the resulting seal status."""
        return self._write("PUT", "sys/unseal", {"key": key})

    def leader(self) -> dict[str, Any]:
        """Return ``sys/leader``."""
        return self._get("sys/leader")

    # ------------------------------------------------------------------
    # Mounts and transit keys
    # ------------------------------------------------------------------
    def list_mounts(self) -> dict[str, Any]:
        """Return the secrets engine mounts keyed by ``path/``."""
        payload = self._get("sys/mounts")
        data = payload.get("data")
        return dict(data) if isinstance(data, Mapping) else _mount_entries(payload)

    def enable_mount(self, path: str, engine_type: str, *, description: str = "") -> None:
        """Enable a secrets engine of *engine_type* at *path*."""
        self._write(
            "POST",
            f"sys/mounts/{path.strip('/')}",
            {"type": engine_type, "description": description},
        )

    def read_transit_key(self, mount_path: str, name: str) -> dict[str, Any] | None:
        """Return the transit key definition, or ``None`` if it does not exist."""
        payload = self._call("GET", f"{mount_path}/keys/{name}", allow_missing=True)
        if payload is None:
            return None
        data = payload.get("data")
        return dict(data) if isinstance(data, Mapping) else {}

    def create_transit_key(self, mount_path: str, name: str, *, key_type: str = "aes256-gcm96") -> None:
        """Create the named transit key."""
        self._write("POST", f"{mount_path}/keys/{name}", {"type": key_type})

    def delete_transit_key(self, mount_path: str, name: str) -> None:
        """Delete the named transit key."""
        self._write("DELETE", f"{mount_path}/keys/{name}")

    def encrypt(self, mount_path: str, name: str, plaintext_b64: str) -> str:
        """Wrap *plaintext_b64* with the named key and return the ciphertext."""
        payload = self._write(
            "POST", f"{mount_path}/encrypt/{name}", {"plaintext": plaintext_b64}
        )
        return str(_data(payload).get("ciphertext", ""))

    def decrypt(self, mount_path: str, name: str, ciphertext: str) -> str:
        """Unwrap *ciphertext* with the named key and return base64 plaintext."""
        payload = self._write(
            "POST", f"{mount_path}/decrypt/{name}", {"ciphertext": ciphertext}
        )
        return str(_data(payload).get("plaintext", ""))

    # ------------------------------------------------------------------
    # Policies and tokens
    # ------------------------------------------------------------------
    def read_policy(self, name: str) -> str | None:
        """Return the ACL policy document named *name*, if present."""
        payload = self._call("GET", f"sys/policies/acl/{name}", allow_missing=True)
        if payload is None:
            return None
        policy = _data(payload).get("policy")
        return str(policy) if policy is not None else None

    def write_policy(self, name: str, document: str) -> None:
        """Create or replace the ACL policy *name*."""
        self._write("PUT", f"sys/policies/acl/{name}", {"policy": document})

    def create_token(
        self,
        *,
        policies: list[str],
        period: str | None = None,
        display_name: str | None = None,
        orphan: bool = True,
    ) -> dict[str, Any]:
        """Mint a token bound to *policies* and return its ``auth`` block."""
        body: dict[str, object] = {
            "policies": policies,
            "no_default_policy": False,
            "renewable": True,
        }
        if period:
            body["period"] = period
        if display_name:
            body["display_name"] = display_name
        path = "auth/token/create-orphan" if orphan else "auth/token/create"
        return _auth(self._write("POST", path, body))

    def lookup_token(self, token: str) -> dict[str, Any] | None:
        """Return token metadata, or ``None`` when the token is unknown or revoked."""
        try:
            payload = self._write("POST", "auth/token/lookup", {"token": token})
        except APIError as exc:
            if exc.status_code in {400, 404}:
                return None
            raise
        except AuthorizationDenied as exc:
            # lookups of unknown tokens answer 403 "bad token"
            if "bad token" in str(exc):
                return None
            raise
        return _data(payload)

    # ------------------------------------------------------------------
    # Auth backends and AppRole
    # ------------------------------------------------------------------
    def list_auth(self) -> dict[str, Any]:
        """Return the enabled auth methods keyed by ``path/``."""
        payload = self._get("sys/auth")
        data = payload.get("data")
        return dict(data) if isinstance(data, Mapping) else _mount_entries(payload)

    def enable_auth(self, path: str, method_type: str) -> None:
        """Enable the auth method *method_type* at *path*."""
        self._write("POST", f"sys/auth/{path.strip('/')}", {"type": method_type})

    def write_approle_role(
        self,
        role_name: str,
        *,
        policies: list[str],
        token_ttl: str = "1h",
        token_max_ttl: str = "4h",
        secret_id_ttl: str = "0",
        mount: str = "approle",
    ) -> None:
        """Create or update an AppRole role."""
        self._write(
            "POST",
            f"auth/{mount}/role/{role_name}",
            {
                "token_policies": policies,
                "token_ttl": token_ttl,
                "token_max_ttl": token_max_ttl,
                "secret_id_ttl": secret_id_ttl,
            },
        )

    def read_role_id(self, role_name: str, *, mount: str = "approle") -> str:
        """Return the role identifier for *role_name*."""
        payload = self._get(f"auth/{mount}/role/{role_name}/role-id")
        role_id = _data(payload).get("role_id")
        if not role_id:
            raise APIError(f"Role '{role_name}' returned no role_id.")
        return str(role_id)

    def generate_secret_id(self, role_name: str, *, mount: str = "approle") -> dict[str, Any]:
        """Mint a new secret identifier for *role_name*."""
        payload = self._write("POST", f"auth/{mount}/role/{role_name}/secret-id")
        data = _data(payload)
        if not data.get("secret_id"):
            raise APIError(f"Role '{role_name}' returned no secret_id.")
        return data

    def lookup_secret_id(
        self, role_name: str, secret_id: str, *, mount: str = "approle"
    ) -> dict[str, Any] | None:
        """Return secret identifier metadata, or ``None`` if it is not valid."""
        payload = self._call(
            "POST",
            f"auth/{mount}/role/{role_name}/secret-id/lookup",
            json={"secret_id": secret_id},
            allow_missing=True,
        )
        if not payload:
            return None
        data = _data(payload)
        return data or None

    def approle_login(self, role_id: str, secret_id: str, *, mount: str = "approle") -> dict[str, Any]:
        """Exchange AppRole credentials for a session token ``auth`` block."""
        return _auth(
            self._write(
                "POST", f"auth/{mount}/login", {"role_id": role_id, "secret_id": secret_id}
            )
        )

    # ------------------------------------------------------------------
    # Raft
    # ------------------------------------------------------------------
    def raft_join(self, leader_api_addr: str, *, leader_ca_cert: str | None = None) -> bool:
        """Ask this node to join the Raft cluster led by *leader_api_addr*."""
        body: dict[str, object] = {"leader_api_addr": leader_api_addr}
        if leader_ca_cert:
            body["leader_ca_cert"] = leader_ca_cert
        payload = self._write("POST", "sys/storage/raft/join", body)
        return bool(payload.get("joined", False))

    def raft_configuration(self) -> list[dict[str, Any]]:
        """Return the Raft peer list (``node_id``, ``address``, ``leader``, ``voter``)."""
        payload = self._get("sys/storage/raft/configuration")
        config = _data(payload).get("config")
        servers = config.get("servers") if isinstance(config, Mapping) else None
        if not isinstance(servers, list):
            return []
        return [dict(server) for server in servers if isinstance(server, Mapping)]

    @contextmanager
    def stream_snapshot(self, *, chunk_size: int = _SNAPSHOT_CHUNK) -> Iterator[Iterator[bytes]]:
        """Yield an iterator over the bytes of a point-in-time Raft snapshot."""
        path = "sys/storage/raft/snapshot"

        def open_stream() -> requests.Response:
            response = self._send("GET", path, stream=True)
            try:
                self._raise_for_status("GET", path, response)
            except BaseException:
                response.close()
                raise
            return response

        response = retry_call(
            open_stream, attempts=self.read_attempts, backoff=self.backoff, sleep=self.sleep
        )
        try:
            yield response.iter_content(chunk_size=chunk_size)
        except requests.RequestException as exc:
            raise TransientNetworkError(f"Snapshot stream from {self.address} broke: {exc}") from exc
        finally:
            response.close()


def build_client(
    address: str,
    *,
    token: str | None = None,
    ca_cert: Path | None = None,
    skip_verify: bool = False,
    timeout: float = 10.0,
    read_attempts: int = 3,
    session: requests.Session | None = None,
    sleep: Sleeper = time.sleep,
) -> SecretsAPIClient:
    """Create a client, validating the CA bundle before it is used for TLS."""
    verify: bool | str = True
    if skip_verify:
        verify = False
    elif ca_cert is not None:
        verify = str(load_ca_bundle(ca_cert).path)
    return SecretsAPIClient(
        address=address,
        token=token,
        timeout=timeout,
        verify=verify,
        read_attempts=read_attempts,
        session=session or requests.Session(),
        sleep=sleep,
    )


def _data(payload: Mapping[str, Any]) -> dict[str, Any]:
    data = payload.get("data")
    return dict(data) if isinstance(data, Mapping) else {}


def _auth(payload: Mapping[str, Any]) -> dict[str, Any]:
    auth = payload.get("auth")
    if not isinstance(auth, Mapping) or not auth.get("client_token"):
        raise APIError("Response did not contain an auth block with a client token.")
    return dict(auth)


def _mount_entries(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key.endswith("/")}


def _error_messages(response: requests.Response) -> list[str]:
    try:
        payload = response.json()
    except ValueError:
        text = (response.text or "").strip()
        return [text] if text else []
    if isinstance(payload, Mapping):
        errors = payload.get("errors")
        if isinstance(errors, list):
            return [str(item) for item in errors]
    return []


__all__ = ["TOKEN_HEADER", "SecretsAPIClient", "build_client"]
