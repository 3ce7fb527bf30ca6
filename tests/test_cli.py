"""CLI tests driven through Typer's runner against fake services."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from fakes import FakeNetwork, FakeS3Client, build_cluster
from typer.testing import CliRunner

from sealctl import __version__
from sealctl import cli as cli_module
from sealctl.bootstrap import SEAL_FILE_NAME
from sealctl.bootstrap.cluster import INIT_KEY
from sealctl.locking import LockManager
from sealctl.snapshots import S3ObjectStorage
from sealctl.state import FileStateStore

runner = CliRunner()


class Environment:
    """Config file, fake network and fake bucket for one CLI session."""

    def __init__(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        self.root = tmp_path
        self.network = FakeNetwork()
        self.transit = self.network.add_node("https://transit:8200", "transit", auto_unseal=False)
        self.nodes = build_cluster(self.network, 3)
        self.s3 = FakeS3Client()
        self.config_file = tmp_path / "config.yml"
        self.write_config()
        monkeypatch.setattr(cli_module, "_new_session", self.network.session)
        monkeypatch.setattr(
            cli_module, "_new_storage", lambda config: S3ObjectStorage(self.s3, config.storage.bucket)
        )

    def write_config(self, extra: str = "") -> None:
        nodes = "\n".join(
            f"    - id: vault{i}\n"
            f"      api_addr: https://vault{i}:8200\n"
            f"      config_dir: {self.root / 'nodes' / f'vault{i}'}"
            for i in range(1, 4)
        )
        self.config_file.write_text(
            f"state_dir: {self.root / 'state'}\n"
            f"logs_dir: {self.root / 'logs'}\n"
            f"runtime_dir: {self.root / 'run'}\n"
            "http:\n"
            "  read_attempts: 1\n"
            "transit:\n"
            "  address: https://transit:8200\n"
            "  reachability_timeout: 1\n"
            "cluster:\n"
            "  id: cluster1\n"
            "  unseal_poll:\n"
            "    interval: 0.01\n"
            "    max_attempts: 5\n"
            "  join_poll:\n"
            "    interval: 0.01\n"
            "    max_attempts: 5\n"
            "  nodes:\n"
            f"{nodes}\n"
            "storage:\n"
            "  bucket: vault-snapshots\n"
            f"{extra}",
            encoding="utf-8",
        )

    def invoke(self, *args: str, env: dict[str, str] | None = None):  # type: ignore[no-untyped-def]
        return runner.invoke(
            cli_module.app, ["--config-file", str(self.config_file), *args], env=env
        )

    def store(self) -> FileStateStore:
        return FileStateStore(self.root / "state" / "clusters", LockManager(self.root / "run"))

    def root_token(self) -> str:
        recorded = self.store().read("cluster1", INIT_KEY)
        assert isinstance(recorded, dict)
        return str(recorded["root_token"])

    def operations(self) -> list[dict[str, object]]:
        path = self.root / "logs" / "operations.jsonl"
        return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


@pytest.fixture
def environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Environment:
    """Return a fresh CLI environment."""
    return Environment(tmp_path, monkeypatch)


def test_version_flag() -> None:
    """``--version`` prints the package version without loading config."""
    result = runner.invoke(cli_module.app, ["--version"])

    assert result.exit_code == 0
    assert f"sealctl {__version__}" in result.stdout


def test_config_show_redacts_secrets(environment: Environment) -> None:
    """Tokens and storage credentials never appear in the rendered config."""
    environment.write_config("  secret_key: s3-very-secret\n")

    result = environment.invoke(
        "config", "show", "--json", env={"SEALCTL_CLUSTER__TOKEN": "s.root-secret"}
    )

    assert result.exit_code == 0
    assert "s3-very-secret" not in result.stdout
    assert "s.root-secret" not in result.stdout
    assert '"****"' in result.stdout


def test_invalid_config_exits_with_validation_code(environment: Environment) -> None:
    """Configuration errors map to exit code 2."""
    environment.write_config("  addressing_style: sideways\n")

    result = environment.invoke("config", "show")

    assert result.exit_code == 2
    assert "Configuration error" in result.stdout


def test_seal_configure_requires_transit_bootstrap(environment: Environment) -> None:
    """The seal stanza cannot be composed before a credential exists."""
    result = environment.invoke("seal", "configure")

    assert result.exit_code == 2
    assert environment.operations()[-1]["result"]["status"] == "error"  # type: ignore[index]


def test_full_workflow(environment: Environment) -> None:
    """Transit, seal, cluster, approle and snapshot commands run in order."""
    transit = environment.invoke("transit", "bootstrap", "--json")
    assert transit.exit_code == 0, transit.stdout
    assert environment.transit.initialized is True

    seal = environment.invoke("seal", "configure", "--json")
    assert seal.exit_code == 0, seal.stdout
    stanzas = {
        (environment.root / "nodes" / f"vault{i}" / SEAL_FILE_NAME).read_text() for i in range(1, 4)
    }
    assert len(stanzas) == 1

    cluster = environment.invoke("cluster", "bootstrap", "--json")
    assert cluster.exit_code == 0, cluster.stdout
    assert environment.nodes[0].init_calls == 1

    rerun = environment.invoke("cluster", "bootstrap")
    assert rerun.exit_code == 0, rerun.stdout
    assert environment.nodes[0].init_calls == 1

    token_env = {"SEALCTL_CLUSTER__TOKEN": environment.root_token()}
    approle = environment.invoke("approle", "provision", "--json", env=token_env)
    assert approle.exit_code == 0, approle.stdout

    health = environment.invoke("cluster", "health", "--json", env=token_env)
    assert health.exit_code == 0, health.stdout

    snapshot = environment.invoke("snapshot", "run-once", "--node", "vault1", "--json")
    assert snapshot.exit_code == 0, snapshot.stdout
    assert len(environment.s3.objects) == 1

    follower = environment.invoke("snapshot", "run-once", "--node", "vault2")
    assert follower.exit_code == 0, follower.stdout
    assert "skipped-not-leader" in follower.stdout
    assert len(environment.s3.objects) == 1

    commands = [record["command"] for record in environment.operations()]
    assert commands[:3] == ["transit bootstrap", "seal configure", "cluster bootstrap"]


def test_partial_cluster_exit_code(environment: Environment) -> None:
    """A degraded but usable cluster exits with the partial-success code."""
    environment.network.down.add("https://vault3:8200")

    result = environment.invoke("cluster", "bootstrap")

    assert result.exit_code == 5


def test_failed_cluster_exit_code(environment: Environment) -> None:
    """Missing quorum is reported as a provider failure."""
    environment.network.down.update({"https://vault2:8200", "https://vault3:8200"})

    result = environment.invoke("cluster", "bootstrap", "--json")

    assert result.exit_code == 4
    record = environment.operations()[-1]
    assert record["result"]["status"] == "error"  # type: ignore[index]


def test_approle_requires_cluster_token(environment: Environment) -> None:
    """Provisioning without an admin token is a validation error."""
    result = environment.invoke("approle", "provision")

    assert result.exit_code == 2


def test_snapshot_requires_provisioned_principal(environment: Environment) -> None:
    """The agent refuses to run without a stored AppRole credential."""
    result = environment.invoke("snapshot", "run-once", "--node", "vault1")

    assert result.exit_code == 4
    assert environment.s3.objects == {}


def test_snapshot_requires_known_node(environment: Environment) -> None:
    """An unknown node id is rejected."""
    result = environment.invoke("snapshot", "prune", "--node", "vault9")

    assert result.exit_code == 2


@pytest.mark.mutation_timeout
def test_transit_unreachable_is_environment_error(environment: Environment) -> None:
    """An unreachable transit instance exits with the environment code."""
    environment.network.down.add("https://transit:8200")

    result = environment.invoke("transit", "bootstrap")

    assert result.exit_code == 3
