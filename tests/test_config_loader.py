"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from sealctl.config import AppConfig, ConfigError, load_config

NODES_YAML = (
    "cluster:\n"
    "  nodes:\n"
    "    - id: vault1\n"
    "      api_addr: https://vault1:8200\n"
    "    - id: vault2\n"
    "      api_addr: https://vault2:8200/\n"
)


def _write(tmp_path: Path, body: str, *, nodes: bool = True) -> Path:
    cfg = tmp_path / "config.yml"
    cfg.write_text((NODES_YAML if nodes else "") + body, encoding="utf-8")
    return cfg


def test_load_config_defaults_with_minimal_file(tmp_path: Path) -> None:
    """Defaults apply to every setting the file does not mention."""
    config = load_config(config_file=_write(tmp_path, ""), env={})

    assert isinstance(config, AppConfig)
    assert config.state_dir == Path("/var/lib/sealctl")
    assert config.transit.key_name == "autounseal"
    assert config.transit.mount_path == "transit"
    assert config.cluster.id == "cluster1"
    assert config.cluster.recovery_shares == 5
    assert config.cluster.recovery_threshold == 3
    assert config.snapshots.retain == 3
    assert config.snapshots.frequency == 3600.0
    assert config.storage.staging_prefix == ".staging/"
    assert [node.node_id for node in config.cluster.nodes] == ["vault1", "vault2"]
    assert config.cluster.node("vault2").api_addr == "https://vault2:8200"


def test_missing_nodes_is_rejected(tmp_path: Path) -> None:
    """A cluster without nodes cannot be bootstrapped."""
    with pytest.raises(ConfigError, match="at least one node"):
        load_config(config_file=_write(tmp_path, "", nodes=False), env={})


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = _write(tmp_path, "snapshots:\n  retain: 7\n")
    env = {
        "SEALCTL_SNAPSHOTS__RETAIN": "5",
        "SEALCTL_TRANSIT__ADDRESS": "https://transit.internal:8200",
        "SEALCTL_CLUSTER__JOIN_POLL__MAX_ATTEMPTS": "4",
        "SEALCTL_STATE_DIR": str(tmp_path / "state"),
        "SEALCTL_LOCK_TIMEOUT": "45",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.snapshots.retain == 5
    assert config.transit.address == "https://transit.internal:8200"
    assert config.cluster.join_poll.max_attempts == 4
    assert config.cluster.join_poll.interval == 2.0
    assert config.state_dir == tmp_path / "state"
    assert config.lock_timeout == 45.0


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """The SEALCTL_CONFIG_FILE variable selects an alternate file."""
    cfg = _write(tmp_path, "storage:\n  bucket: backups\n")

    config = load_config(env={"SEALCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.storage.bucket == "backups"


def test_non_mapping_file_raises(tmp_path: Path) -> None:
    """A YAML list at the top level is rejected."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_file=cfg, env={})


def test_unknown_keys_raise(tmp_path: Path) -> None:
    """Unexpected top-level and section keys trigger ConfigError."""
    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=_write(tmp_path, "unknown: value\n"), env={})
    with pytest.raises(ConfigError, match="Unknown snapshots configuration keys"):
        load_config(config_file=_write(tmp_path, "snapshots:\n  keep: 2\n"), env={})


def test_duplicate_node_ids_raise(tmp_path: Path) -> None:
    """Node identities must be unique."""
    cfg = _write(
        tmp_path,
        "cluster:\n"
        "  nodes:\n"
        "    - {id: vault1, api_addr: 'https://a:8200'}\n"
        "    - {id: vault1, api_addr: 'https://b:8200'}\n",
        nodes=False,
    )

    with pytest.raises(ConfigError, match="Duplicate node id"):
        load_config(config_file=cfg, env={})


def test_plain_http_allowed_only_on_loopback(tmp_path: Path) -> None:
    """Remote nodes must use TLS while loopback nodes may use plain HTTP."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(
        "cluster:\n  nodes:\n    - {id: vault1, api_addr: 'http://vault1:8200'}\n",
        encoding="utf-8",
    )
    with pytest.raises(ConfigError, match="https"):
        load_config(config_file=cfg, env={})

    cfg.write_text(
        "cluster:\n  nodes:\n    - {id: vault1, api_addr: 'http://127.0.0.1:8200'}\n",
        encoding="utf-8",
    )
    config = load_config(config_file=cfg, env={})
    assert config.cluster.nodes[0].api_addr == "http://127.0.0.1:8200"


def test_skip_verify_requires_loopback(tmp_path: Path) -> None:
    """Certificate verification can only be disabled for loopback endpoints."""
    with pytest.raises(ConfigError, match="tls_skip_verify"):
        load_config(
            config_file=_write(tmp_path, "transit:\n  tls_skip_verify: true\n"), env={}
        )
    with pytest.raises(ConfigError, match="tls_skip_verify"):
        load_config(
            config_file=_write(tmp_path, ""),
            env={"SEALCTL_CLUSTER__TLS_SKIP_VERIFY": "true"},
        )


def test_threshold_cannot_exceed_shares(tmp_path: Path) -> None:
    """Recovery and unseal thresholds are bounded by the share count."""
    cfg = _write(tmp_path, "")
    with pytest.raises(ConfigError, match="recovery_threshold"):
        load_config(
            config_file=cfg,
            env={"SEALCTL_CLUSTER__RECOVERY_SHARES": "2", "SEALCTL_CLUSTER__RECOVERY_THRESHOLD": "3"},
        )
    with pytest.raises(ConfigError, match="key_threshold"):
        load_config(config_file=cfg, env={"SEALCTL_TRANSIT__KEY_THRESHOLD": "2"})


def test_staging_prefix_outside_cluster_prefix(tmp_path: Path) -> None:
    """Staged uploads must not be visible under the snapshot prefix."""
    cfg = _write(tmp_path, "storage:\n  staging_prefix: cluster1/tmp\n")

    with pytest.raises(ConfigError, match="staging_prefix"):
        load_config(config_file=cfg, env={})


def test_snapshot_node_must_exist(tmp_path: Path) -> None:
    """The snapshot agent's node must be part of the cluster."""
    cfg = _write(tmp_path, "snapshots:\n  node_id: vault9\n")

    with pytest.raises(ConfigError, match="Unknown node"):
        load_config(config_file=cfg, env={})


def test_retain_must_be_positive(tmp_path: Path) -> None:
    """A retention count of zero would delete every snapshot."""
    cfg = _write(tmp_path, "snapshots:\n  retain: 0\n")

    with pytest.raises(ConfigError, match="snapshots.retain"):
        load_config(config_file=cfg, env={})


def test_to_dict_redacts_secrets(tmp_path: Path) -> None:
    """Tokens and storage credentials never appear in rendered config."""
    cfg = _write(
        tmp_path,
        "transit:\n  token: hvs.transit-admin\n"
        "storage:\n  access_key: AKIA123\n  secret_key: s3cr3t\n",
    )

    data = load_config(config_file=cfg, env={"SEALCTL_CLUSTER__TOKEN": "hvs.root"}).to_dict()

    rendered = str(data)
    assert "hvs.transit-admin" not in rendered
    assert "hvs.root" not in rendered
    assert "s3cr3t" not in rendered
    assert data["transit"]["token"] == "****"  # type: ignore[index]
