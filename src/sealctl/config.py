"""Configuration loader for sealctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/sealctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SEALCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SEALCTL_SNAPSHOTS__RETAIN=5
    export SEALCTL_TRANSIT__ADDRESS=https://transit:8200

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``. Everything is validated here, before any bootstrap
transition can begin.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast
from urllib.parse import urlsplit

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load sealctl configuration. Install with "
        "`pip install sealctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .models import NodeSpec
from .tls import all_loopback, is_loopback_address

ENV_PREFIX = "SEALCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PollConfig:
    """Fixed-interval polling budget."""

    interval: float = 2.0
    max_attempts: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"interval": self.interval, "max_attempts": self.max_attempts}


@dataclass(frozen=True)
class HttpConfig:
    """Timeouts and retry budget for secrets API calls."""

    timeout: float = 10.0
    read_attempts: int = 3

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout, "read_attempts": self.read_attempts}


@dataclass(frozen=True)
class TransitConfig:
    """Standalone transit instance used as the unseal key provider."""

    address: str = "https://transit:8200"
    key_name: str = "autounseal"
    mount_path: str = "transit"
    policy_name: str = "autounseal"
    token: str | None = None
    key_shares: int = 1
    key_threshold: int = 1
    unseal_on_init: bool = True
    reachability_timeout: float = 300.0
    backoff_cap: float = 30.0
    token_period: str = "768h"
    ca_cert: Path | None = None
    tls_skip_verify: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (tokens redacted)."""
        return {
            "address": self.address,
            "key_name": self.key_name,
            "mount_path": self.mount_path,
            "policy_name": self.policy_name,
            "token": "****" if self.token else None,
            "key_shares": self.key_shares,
            "key_threshold": self.key_threshold,
            "unseal_on_init": self.unseal_on_init,
            "reachability_timeout": self.reachability_timeout,
            "backoff_cap": self.backoff_cap,
            "token_period": self.token_period,
            "ca_cert": str(self.ca_cert) if self.ca_cert else None,
            "tls_skip_verify": self.tls_skip_verify,
        }


@dataclass(frozen=True)
class ClusterConfig:
    """Main Raft cluster description."""

    id: str = "cluster1"
    nodes: tuple[NodeSpec, ...] = ()
    recovery_shares: int = 5
    recovery_threshold: int = 3
    token: str | None = None
    ca_cert: Path | None = None
    tls_skip_verify: bool = False
    unseal_poll: PollConfig = PollConfig()
    join_poll: PollConfig = PollConfig()
    max_parallel_joins: int = 4
    lease_ttl: float = 900.0

    def node(self, node_id: str) -> NodeSpec:
        """Return the node named *node_id*."""
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        raise ConfigError(f"Unknown node '{node_id}' for cluster '{self.id}'.")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (tokens redacted)."""
        return {
            "id": self.id,
            "nodes": [node.to_dict() for node in self.nodes],
            "recovery_shares": self.recovery_shares,
            "recovery_threshold": self.recovery_threshold,
            "token": "****" if self.token else None,
            "ca_cert": str(self.ca_cert) if self.ca_cert else None,
            "tls_skip_verify": self.tls_skip_verify,
            "unseal_poll": self.unseal_poll.to_dict(),
            "join_poll": self.join_poll.to_dict(),
            "max_parallel_joins": self.max_parallel_joins,
            "lease_ttl": self.lease_ttl,
        }


@dataclass(frozen=True)
class StorageConfig:
    """S3-compatible object storage for snapshots."""

    bucket: str = "vault-snapshots"
    endpoint: str | None = None
    region: str = "us-east-1"
    access_key: str | None = None
    secret_key: str | None = None
    staging_prefix: str = ".staging/"
    addressing_style: str = "path"
    server_checksum: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (credentials redacted)."""
        return {
            "bucket": self.bucket,
            "endpoint": self.endpoint,
            "region": self.region,
            "access_key": "****" if self.access_key else None,
            "secret_key": "****" if self.secret_key else None,
            "staging_prefix": self.staging_prefix,
            "addressing_style": self.addressing_style,
            "server_checksum": self.server_checksum,
        }


@dataclass(frozen=True)
class SnapshotConfig:
    """Snapshot scheduler settings."""

    principal: str = "snapshot-agent"
    frequency: float = 3600.0
    retain: int = 3
    attempts: int = 3
    node_id: str | None = None
    renew_margin: float = 60.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "principal": self.principal,
            "frequency": self.frequency,
            "retain": self.retain,
            "attempts": self.attempts,
            "node_id": self.node_id,
            "renew_margin": self.renew_margin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for sealctl."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    http: HttpConfig
    transit: TransitConfig
    cluster: ClusterConfig
    storage: StorageConfig
    snapshots: SnapshotConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "http": self.http.to_dict(),
            "transit": self.transit.to_dict(),
            "cluster": self.cluster.to_dict(),
            "storage": self.storage.to_dict(),
            "snapshots": self.snapshots.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/sealctl/config.yml",
    "state_dir": "/var/lib/sealctl",
    "logs_dir": "/var/log/sealctl",
    "runtime_dir": "/run/sealctl",
    "lock_timeout": 30.0,
    "http": {"timeout": 10.0, "read_attempts": 3},
    "transit": {
        "address": "https://transit:8200",
        "key_name": "autounseal",
        "mount_path": "transit",
        "policy_name": "autounseal",
        "token": None,
        "key_shares": 1,
        "key_threshold": 1,
        "unseal_on_init": True,
        "reachability_timeout": 300.0,
        "backoff_cap": 30.0,
        "token_period": "768h",
        "ca_cert": None,
        "tls_skip_verify": False,
    },
    "cluster": {
        "id": "cluster1",
        "nodes": [],
        "recovery_shares": 5,
        "recovery_threshold": 3,
        "token": None,
        "ca_cert": None,
        "tls_skip_verify": False,
        "unseal_poll": {"interval": 2.0, "max_attempts": 30},
        "join_poll": {"interval": 2.0, "max_attempts": 30},
        "max_parallel_joins": 4,
        "lease_ttl": 900.0,
    },
    "storage": {
        "bucket": "vault-snapshots",
        "endpoint": None,
        "region": "us-east-1",
        "access_key": None,
        "secret_key": None,
        "staging_prefix": ".staging/",
        "addressing_style": "path",
        "server_checksum": False,
    },
    "snapshots": {
        "principal": "snapshot-agent",
        "frequency": 3600.0,
        "retain": 3,
        "attempts": 3,
        "node_id": None,
        "renew_margin": 60.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_ADDRESSING_STYLES = {"path", "virtual", "auto"}
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("http", "transit", "cluster", "storage", "snapshots")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    cluster = _as_dict(raw.get("cluster"), "cluster")
    for poll_key in ("unseal_poll", "join_poll"):
        poll_map = _as_dict(cluster.get(poll_key), f"cluster.{poll_key}")
        unknown = set(poll_map.keys()) - {"interval", "max_attempts"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown cluster.{poll_key} keys: {joined}.")

    storage = _as_dict(raw.get("storage"), "storage")
    style = storage.get("addressing_style")
    if style is not None and str(style) not in ALLOWED_ADDRESSING_STYLES:
        allowed = ", ".join(sorted(ALLOWED_ADDRESSING_STYLES))
        raise ConfigError(f"Unsupported storage.addressing_style '{style}'. Allowed: {allowed}.")


def _build_nodes(raw: object) -> tuple[NodeSpec, ...]:
    nodes: list[NodeSpec] = []
    seen_ids: set[str] = set()
    seen_addrs: set[str] = set()
    for index, entry in enumerate(_as_sequence(raw if raw is not None else [], "cluster.nodes")):
        mapping = _as_dict(entry, f"cluster.nodes[{index}]")
        unknown = set(mapping.keys()) - {"id", "api_addr", "config_dir"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown keys for cluster.nodes[{index}]: {joined}.")
        node_id = str(mapping.get("id") or "").strip()
        api_addr = str(mapping.get("api_addr") or "").strip().rstrip("/")
        if not node_id or not api_addr:
            raise ConfigError(f"cluster.nodes[{index}] requires both 'id' and 'api_addr'.")
        if node_id in seen_ids:
            raise ConfigError(f"Duplicate node id '{node_id}' in cluster.nodes.")
        if api_addr in seen_addrs:
            raise ConfigError(f"Duplicate node address '{api_addr}' in cluster.nodes.")
        _validate_url(api_addr, f"cluster.nodes[{index}].api_addr")
        seen_ids.add(node_id)
        seen_addrs.add(api_addr)
        config_dir = mapping.get("config_dir")
        nodes.append(
            NodeSpec(
                node_id=node_id,
                api_addr=api_addr,
                config_dir=str(_to_path(config_dir)) if config_dir else None,
            )
        )
    return tuple(nodes)


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    http_map = _as_dict(raw.get("http"), "http")
    http = HttpConfig(
        timeout=_expect_positive_float(http_map.get("timeout"), "http.timeout", default=10.0),
        read_attempts=_expect_positive_int(
            http_map.get("read_attempts"), "http.read_attempts", default=3
        ),
    )

    transit_map = _as_dict(raw.get("transit"), "transit")
    transit_address = str(transit_map.get("address") or "").strip().rstrip("/")
    if not transit_address:
        raise ConfigError("transit.address must be a non-empty URL.")
    _validate_url(transit_address, "transit.address")
    key_shares = _expect_positive_int(transit_map.get("key_shares"), "transit.key_shares", default=1)
    key_threshold = _expect_positive_int(
        transit_map.get("key_threshold"), "transit.key_threshold", default=1
    )
    if key_threshold > key_shares:
        raise ConfigError("transit.key_threshold must not exceed transit.key_shares.")
    transit_skip = _expect_bool(transit_map.get("tls_skip_verify"), "transit.tls_skip_verify")
    if transit_skip and not is_loopback_address(transit_address):
        raise ConfigError("transit.tls_skip_verify is only permitted for loopback addresses.")
    transit = TransitConfig(
        address=transit_address,
        key_name=_expect_name(transit_map.get("key_name"), "transit.key_name"),
        mount_path=_expect_name(transit_map.get("mount_path"), "transit.mount_path").strip("/"),
        policy_name=_expect_name(transit_map.get("policy_name"), "transit.policy_name"),
        token=_optional_str(transit_map.get("token")),
        key_shares=key_shares,
        key_threshold=key_threshold,
        unseal_on_init=_expect_bool(
            transit_map.get("unseal_on_init"), "transit.unseal_on_init", default=True
        ),
        reachability_timeout=_expect_positive_float(
            transit_map.get("reachability_timeout"), "transit.reachability_timeout", default=300.0
        ),
        backoff_cap=_expect_positive_float(
            transit_map.get("backoff_cap"), "transit.backoff_cap", default=30.0
        ),
        token_period=str(transit_map.get("token_period") or "768h"),
        ca_cert=_optional_path(transit_map.get("ca_cert")),
        tls_skip_verify=transit_skip,
    )

    cluster_map = _as_dict(raw.get("cluster"), "cluster")
    nodes = _build_nodes(cluster_map.get("nodes"))
    if not nodes:
        raise ConfigError("cluster.nodes must list at least one node.")
    recovery_shares = _expect_positive_int(
        cluster_map.get("recovery_shares"), "cluster.recovery_shares", default=5
    )
    recovery_threshold = _expect_positive_int(
        cluster_map.get("recovery_threshold"), "cluster.recovery_threshold", default=3
    )
    if recovery_threshold > recovery_shares:
        raise ConfigError("cluster.recovery_threshold must not exceed cluster.recovery_shares.")
    for node in nodes:
        if not node.api_addr.startswith("https://") and not is_loopback_address(node.api_addr):
            raise ConfigError(
                f"Node '{node.node_id}' must use https:// (TLS is required for cluster nodes)."
            )
    cluster_skip = _expect_bool(cluster_map.get("tls_skip_verify"), "cluster.tls_skip_verify")
    if cluster_skip and not all_loopback(node.api_addr for node in nodes):
        raise ConfigError("cluster.tls_skip_verify is only permitted when all nodes are loopback.")
    cluster = ClusterConfig(
        id=_expect_name(cluster_map.get("id"), "cluster.id"),
        nodes=nodes,
        recovery_shares=recovery_shares,
        recovery_threshold=recovery_threshold,
        token=_optional_str(cluster_map.get("token")),
        ca_cert=_optional_path(cluster_map.get("ca_cert")),
        tls_skip_verify=cluster_skip,
        unseal_poll=_build_poll(cluster_map.get("unseal_poll"), "cluster.unseal_poll"),
        join_poll=_build_poll(cluster_map.get("join_poll"), "cluster.join_poll"),
        max_parallel_joins=_expect_positive_int(
            cluster_map.get("max_parallel_joins"), "cluster.max_parallel_joins", default=4
        ),
        lease_ttl=_expect_positive_float(
            cluster_map.get("lease_ttl"), "cluster.lease_ttl", default=900.0
        ),
    )

    storage_map = _as_dict(raw.get("storage"), "storage")
    staging_prefix = str(storage_map.get("staging_prefix") or ".staging/")
    if not staging_prefix.endswith("/"):
        staging_prefix += "/"
    if staging_prefix.startswith(f"{cluster.id}/"):
        raise ConfigError("storage.staging_prefix must not live under the cluster prefix.")
    endpoint = _optional_str(storage_map.get("endpoint"))
    if endpoint:
        _validate_url(endpoint, "storage.endpoint")
    storage = StorageConfig(
        bucket=_expect_name(storage_map.get("bucket"), "storage.bucket"),
        endpoint=endpoint,
        region=str(storage_map.get("region") or "us-east-1"),
        access_key=_optional_str(storage_map.get("access_key")),
        secret_key=_optional_str(storage_map.get("secret_key")),
        staging_prefix=staging_prefix,
        addressing_style=str(storage_map.get("addressing_style") or "path"),
        server_checksum=_expect_bool(
            storage_map.get("server_checksum"), "storage.server_checksum"
        ),
    )

    snapshots_map = _as_dict(raw.get("snapshots"), "snapshots")
    snapshot_node = _optional_str(snapshots_map.get("node_id"))
    if snapshot_node is not None:
        cluster.node(snapshot_node)
    snapshots = SnapshotConfig(
        principal=_expect_name(snapshots_map.get("principal"), "snapshots.principal"),
        frequency=_expect_positive_float(
            snapshots_map.get("frequency"), "snapshots.frequency", default=3600.0
        ),
        retain=_expect_positive_int(snapshots_map.get("retain"), "snapshots.retain", default=3),
        attempts=_expect_positive_int(
            snapshots_map.get("attempts"), "snapshots.attempts", default=3
        ),
        node_id=snapshot_node,
        renew_margin=_expect_positive_float(
            snapshots_map.get("renew_margin"), "snapshots.renew_margin", default=60.0
        ),
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        http=http,
        transit=transit,
        cluster=cluster,
        storage=storage,
        snapshots=snapshots,
    )


def _build_poll(value: object | None, label: str) -> PollConfig:
    mapping = _as_dict(value, label)
    return PollConfig(
        interval=_expect_positive_float(mapping.get("interval"), f"{label}.interval", default=2.0),
        max_attempts=_expect_positive_int(
            mapping.get("max_attempts"), f"{label}.max_attempts", default=30
        ),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _validate_url(value: str, label: str) -> None:
    parts = urlsplit(value)
    if parts.scheme not in {"http", "https"} or not parts.hostname:
        raise ConfigError(f"{label} must be an http(s) URL. Got {value!r}.")


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_path(value: object | None) -> Path | None:
    if value in (None, ""):
        return None
    return _to_path(value)


def _optional_str(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _expect_name(value: object | None, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a non-empty string.")
    return value.strip()


def _expect_bool(value: object | None, label: str, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_int(value: object | None, label: str, *, default: int) -> int:
    number = _expect_int(value, label, default=default)
    if number < 1:
        raise ConfigError(f"{label} must be at least 1. Got {number}.")
    return number


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ClusterConfig",
    "ConfigError",
    "HttpConfig",
    "PollConfig",
    "SnapshotConfig",
    "StorageConfig",
    "TransitConfig",
    "load_config",
]
