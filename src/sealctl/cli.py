"""Typer-powered command line interface for ``sealctl``.

Every command loads the layered configuration, opens a structured-log
operation and maps failures from :mod:`sealctl.errors` onto
:class:`~sealctl.exit_codes.ExitCode` values.
"""
from __future__ import annotations

import json
import signal
import textwrap
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import FrameType
from typing import NoReturn

import requests
import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .api.client import SecretsAPIClient, build_client
from .bootstrap import (
    SNAPSHOT_POLICY,
    AppRoleProvisioner,
    AutoUnsealCoordinator,
    BootstrapOutcome,
    ClusterBootstrapper,
    TransitBootstrapper,
)
from .bootstrap.approle import state_key as approle_state_key
from .bootstrap.transit import CREDENTIAL_KEY, KEY_REF_KEY
from .config import AppConfig, ConfigError, load_config
from .errors import (
    AuthorizationDenied,
    ConcurrentBootstrapError,
    IntegrityViolation,
    PolicyError,
    QuorumNotMet,
    ReachabilityTimeout,
    SealctlError,
    TransientNetworkError,
    TransitSealedError,
)
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .models import (
    AppRoleCredential,
    ClusterState,
    JoinStatus,
    NodeSpec,
    TransitKeyRef,
    UnsealCredential,
)
from .snapshots import CycleOutcome, S3ObjectStorage, SnapshotScheduler
from .snapshots.storage import ObjectStorage
from .state import FileStateStore, StateStoreError
from .tls import TLSBundleError, load_ca_bundle

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to an alternate configuration file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Self-unsealing Raft secrets cluster orchestrator.

        Bootstraps the transit unsealer, wires auto-unseal into every node,
        forms the Raft cluster exactly once and runs the snapshot agent.
        """
    ).strip(),
)
transit_app = typer.Typer(help="Bootstrap the transit unsealer instance.")
seal_app = typer.Typer(help="Compose auto-unseal configuration for cluster nodes.")
cluster_app = typer.Typer(help="Form and inspect the Raft cluster.")
approle_app = typer.Typer(help="Provision least-privilege AppRole credentials.")
snapshot_app = typer.Typer(help="Run and prune Raft snapshots.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(transit_app, name="transit")
app.add_typer(seal_app, name="seal")
app.add_typer(cluster_app, name="cluster")
app.add_typer(approle_app, name="approle")
app.add_typer(snapshot_app, name="snapshot")
app.add_typer(config_app, name="config")


def _new_session() -> requests.Session:
    return requests.Session()


def _new_storage(config: AppConfig) -> ObjectStorage:
    return S3ObjectStorage.from_config(config.storage)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    store: FileStateStore
    locks: LockManager
    logger: StructuredLogger
    session_factory: Callable[[], requests.Session]
    storage_factory: Callable[[AppConfig], ObjectStorage]

    def transit_client(self, token: str | None = None) -> SecretsAPIClient:
        """Return a client for the transit instance."""
        transit = self.config.transit
        return build_client(
            transit.address,
            token=token or transit.token,
            ca_cert=transit.ca_cert,
            skip_verify=transit.tls_skip_verify,
            timeout=self.config.http.timeout,
            read_attempts=self.config.http.read_attempts,
            session=self.session_factory(),
        )

    def node_client(self, node: NodeSpec, token: str | None = None) -> SecretsAPIClient:
        """Return a client for a main-cluster node."""
        cluster = self.config.cluster
        return build_client(
            node.api_addr,
            token=token,
            ca_cert=cluster.ca_cert,
            skip_verify=cluster.tls_skip_verify,
            timeout=self.config.http.timeout,
            read_attempts=self.config.http.read_attempts,
            session=self.session_factory(),
        )

    def cluster_bootstrapper(self) -> ClusterBootstrapper:
        """Return a bootstrapper wired to this runtime."""
        cluster = self.config.cluster
        ca_pem = load_ca_bundle(cluster.ca_cert).pem if cluster.ca_cert else None
        return ClusterBootstrapper(
            cluster,
            self.store,
            self.node_client,
            locks=self.locks,
            ca_pem=ca_pem,
        )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    locks = LockManager(config.runtime_dir, config.lock_timeout)
    store = FileStateStore(config.state_dir / "clusters", locks)
    logger = StructuredLogger(config.logs_dir)
    runtime = RuntimeContext(
        config=config,
        store=store,
        locks=locks,
        logger=logger,
        session_factory=_new_session,
        storage_factory=_new_storage,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the sealctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"sealctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Error handling helpers
# ----------------------------------------------------------------------
def _exit_code_for(exc: BaseException) -> ExitCode:
    if isinstance(exc, (ConfigError, PolicyError, IntegrityViolation, TLSBundleError)):
        return ExitCode.VALIDATION
    if isinstance(
        exc,
        (
            ReachabilityTimeout,
            TransientNetworkError,
            TransitSealedError,
            ConcurrentBootstrapError,
            LockTimeoutError,
            StateStoreError,
        ),
    ):
        return ExitCode.ENVIRONMENT
    if isinstance(exc, QuorumNotMet):
        return ExitCode.PARTIAL
    return ExitCode.PROVIDER


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


_HANDLED_ERRORS = (SealctlError, ConfigError, TLSBundleError, LockTimeoutError, StateStoreError)


def _fail(op: OperationScope, exc: BaseException) -> NoReturn:
    rc = int(_exit_code_for(exc))
    _command_error(op, f"{type(exc).__name__}: {exc}", rc=rc, errors=[repr(exc)])


def _emit_json(payload: Mapping[str, object]) -> None:
    console.print_json(data=payload)


def _render_mapping(title: str, data: Mapping[str, object]) -> None:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, (dict, list)):
            rendered = json.dumps(value, indent=2, sort_keys=True)
        else:
            rendered = str(value)
        table.add_row(key, rendered)
    console.print(table)


def _stored_mapping(runtime: RuntimeContext, key: str) -> Mapping[str, object] | None:
    value = runtime.store.read(runtime.config.cluster.id, key)
    return value if isinstance(value, Mapping) else None


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges (secrets redacted)."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    with runtime.logger.operation("config show", args={"json": json_output},
                                  target={"kind": "config"}) as op:
        if json_output:
            _emit_json(data)
        else:
            _render_mapping("Configuration", data)
        op.success("Rendered configuration.", changed=0)


# ----------------------------------------------------------------------
# transit
# ----------------------------------------------------------------------
@transit_app.command("bootstrap")
def transit_bootstrap(
    ctx: typer.Context,
    address: str | None = typer.Option(None, "--address", help="Override transit.address."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Initialise transit, create the wrapping key and mint the unseal credential."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    target = {"kind": "transit", "address": address or config.transit.address}
    with runtime.logger.operation("transit bootstrap", args={"address": address},
                                  target=target) as op:
        try:
            with runtime.locks.cluster_lock(f"{config.cluster.id}-transit", owner="transit bootstrap"):
                bootstrapper = TransitBootstrapper(
                    runtime.transit_client(),
                    runtime.store,
                    config.transit,
                    cluster_id=config.cluster.id,
                )
                result = bootstrapper.run(address)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        for action in result.actions:
            op.add_step(f"transit.{action}")
        payload = result.to_dict()
        if json_output:
            _emit_json(payload)
        else:
            _render_mapping("Transit bootstrap", payload)
        message = (
            f"Transit ready ({', '.join(result.actions)})."
            if result.changed
            else "Transit already bootstrapped; nothing changed."
        )
        op.success(message, changed=len(result.actions), context=payload)


# ----------------------------------------------------------------------
# seal
# ----------------------------------------------------------------------
@seal_app.command("configure")
def seal_configure(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Write the transit seal stanza for every configured node."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("seal configure", target={"kind": "cluster",
                                                            "cluster": config.cluster.id}) as op:
        key_ref_raw = _stored_mapping(runtime, KEY_REF_KEY)
        credential_raw = _stored_mapping(runtime, CREDENTIAL_KEY)
        if key_ref_raw is None or credential_raw is None:
            _command_error(
                op,
                "No transit credential recorded; run `sealctl transit bootstrap` first.",
                rc=int(ExitCode.VALIDATION),
            )
        try:
            key_ref = TransitKeyRef.from_mapping(key_ref_raw)
            credential = UnsealCredential.from_mapping(credential_raw)
            coordinator = AutoUnsealCoordinator(
                config.transit.address,
                ca_cert=config.transit.ca_cert,
                skip_verify=config.transit.tls_skip_verify,
            )
            changed = coordinator.configure_all(config.cluster.nodes, key_ref, credential)
        except (KeyError, ValueError) as exc:
            _command_error(op, f"Stored transit state is unreadable: {exc}",
                           rc=int(ExitCode.VALIDATION))
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        for node_id, applied in changed.items():
            op.add_step("seal.configure", status="success", detail={"node": node_id,
                                                                      "applied": applied})
        stanza = next(iter(coordinator.applied.values()))
        payload: dict[str, object] = {"nodes": changed, "stanza": stanza.to_dict()}
        if json_output:
            _emit_json(payload)
        else:
            table = Table(title="Seal configuration", header_style="bold magenta")
            table.add_column("Node", style="bold")
            table.add_column("Changed")
            for node_id, applied in changed.items():
                table.add_row(node_id, "yes" if applied else "no")
            console.print(table)
        op.success("Seal stanza applied.", changed=sum(changed.values()), context=payload)


# ----------------------------------------------------------------------
# cluster
# ----------------------------------------------------------------------
def _outcome_exit(outcome: BootstrapOutcome) -> ExitCode:
    if outcome is BootstrapOutcome.FULLY_ACTIVE:
        return ExitCode.OK
    if outcome is BootstrapOutcome.DEGRADED_BUT_USABLE:
        return ExitCode.PARTIAL
    return ExitCode.PROVIDER


@cluster_app.command("bootstrap")
def cluster_bootstrap(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Initialise the seed node and join the remaining nodes."""
    runtime = _get_runtime(ctx)
    cluster = runtime.config.cluster
    with runtime.logger.operation(
        "cluster bootstrap",
        target={"kind": "cluster", "cluster": cluster.id,
                "nodes": [node.node_id for node in cluster.nodes]},
    ) as op:
        try:
            result = runtime.cluster_bootstrapper().bootstrap()
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        for node in result.nodes:
            joined = node.join_status is JoinStatus.JOINED
            op.add_step(
                f"node.{node.node_id}",
                status="success" if joined else "error",
                detail=node.to_dict(),
            )
        payload = result.to_dict()
        if json_output:
            _emit_json(payload)
        else:
            table = Table(title=f"Cluster {cluster.id}: {result.outcome.value}",
                          header_style="bold magenta")
            table.add_column("Node", style="bold")
            table.add_column("Role")
            table.add_column("Status")
            table.add_column("Attempts", justify="right")
            table.add_column("Error")
            for node in result.nodes:
                table.add_row(node.node_id, node.role.value, node.join_status.value,
                              str(node.attempts), node.last_error or "")
            console.print(table)
            if result.initialized_now:
                console.print(
                    "[yellow]Recovery shares were recorded in the state store; move them to "
                    "secure storage.[/yellow]"
                )

        rc = _outcome_exit(result.outcome)
        if rc is ExitCode.OK:
            op.success(f"Cluster {result.outcome.value}.", changed=int(not result.verified_only),
                       context=payload)
            return
        quorum_error = result.quorum_error()
        if quorum_error is not None:
            op.error(str(quorum_error), context=payload, rc=int(rc))
        else:
            op.warning(f"Cluster {result.outcome.value}.", warnings=result.failed,
                       context=payload, rc=int(rc))
        raise typer.Exit(code=int(rc))


@cluster_app.command("join")
def cluster_join(ctx: typer.Context, node_id: str = typer.Argument(..., help="Node to rejoin.")) -> None:
    """Retry the Raft join of a single failed node."""
    runtime = _get_runtime(ctx)
    cluster = runtime.config.cluster
    with runtime.logger.operation("cluster join", args={"node": node_id},
                                  target={"kind": "cluster", "cluster": cluster.id}) as op:
        try:
            node = runtime.cluster_bootstrapper().join_node(node_id)
        except ValueError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        op.add_step("raft.join", detail=node.to_dict())
        if node.join_status is not JoinStatus.JOINED:
            _command_error(op, f"Node {node_id} failed to join: {node.last_error}",
                           rc=int(ExitCode.PROVIDER))
        console.print(f"[green]Node {node_id} joined after {node.attempts} attempt(s).[/green]")
        op.success(f"Node {node_id} joined.", changed=1, context=node.to_dict())


@cluster_app.command("health")
def cluster_health(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report leader, voters and sealed nodes."""
    runtime = _get_runtime(ctx)
    cluster = runtime.config.cluster
    with runtime.logger.operation("cluster health", args={"json": json_output},
                                  target={"kind": "cluster", "cluster": cluster.id}) as op:
        try:
            health = runtime.cluster_bootstrapper().health_check()
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        payload = health.to_dict()
        if json_output:
            _emit_json(payload)
        else:
            _render_mapping(f"Cluster {cluster.id}", payload)
        if health.state is ClusterState.ACTIVE:
            op.success("Cluster healthy.", changed=0, context=payload)
            return
        op.warning(f"Cluster {health.state.value}.", context=payload, rc=int(ExitCode.PARTIAL))
        raise typer.Exit(code=int(ExitCode.PARTIAL))


# ----------------------------------------------------------------------
# approle
# ----------------------------------------------------------------------
@approle_app.command("provision")
def approle_provision(
    ctx: typer.Context,
    principal: str | None = typer.Option(None, "--principal", help="Principal/role name."),
    policy_file: Path | None = typer.Option(
        None, "--policy-file", help="ACL policy document (defaults to snapshot-only)."
    ),
    rotate: bool = typer.Option(False, "--rotate", help="Mint a new secret id even if valid."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create or update a least-privilege AppRole for a machine principal."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    name = principal or config.snapshots.principal
    with runtime.logger.operation(
        "approle provision",
        args={"principal": name, "policy_file": policy_file, "rotate": rotate},
        target={"kind": "cluster", "cluster": config.cluster.id},
    ) as op:
        if not config.cluster.token:
            _command_error(op, "cluster.token is required to provision AppRoles.",
                           rc=int(ExitCode.VALIDATION))
        try:
            document = policy_file.read_text(encoding="utf-8") if policy_file else SNAPSHOT_POLICY
        except OSError as exc:
            _command_error(op, f"Unable to read policy file: {exc}", rc=int(ExitCode.VALIDATION))
        try:
            leader = _leader_node(runtime)
            provisioner = AppRoleProvisioner(
                runtime.node_client(leader, config.cluster.token),
                runtime.store,
                cluster_id=config.cluster.id,
            )
            result = provisioner.run(name, document, rotate=rotate)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        payload = result.to_dict()
        if json_output:
            _emit_json(payload)
        else:
            _render_mapping(f"AppRole {name}", payload)
        op.success(
            f"AppRole {name} provisioned.",
            changed=int(result.policy_updated) + int(result.secret_minted),
            context=payload,
        )


def _leader_node(runtime: RuntimeContext) -> NodeSpec:
    health = runtime.cluster_bootstrapper().health_check()
    if health.leader_id is None:
        raise ReachabilityTimeout("No cluster leader is currently elected.")
    return runtime.config.cluster.node(health.leader_id)


# ----------------------------------------------------------------------
# snapshot
# ----------------------------------------------------------------------
def _build_scheduler(runtime: RuntimeContext, node_id: str | None) -> SnapshotScheduler:
    config = runtime.config
    resolved = node_id or config.snapshots.node_id
    if not resolved:
        raise ConfigError("Pass --node or set snapshots.node_id.")
    node = config.cluster.node(resolved)
    stored = _stored_mapping(runtime, approle_state_key(config.snapshots.principal))
    if stored is None:
        raise AuthorizationDenied(
            f"No AppRole credential for '{config.snapshots.principal}'; "
            "run `sealctl approle provision` first."
        )
    return SnapshotScheduler(
        cluster_id=config.cluster.id,
        node_id=node.node_id,
        client=runtime.node_client(node),
        credential=AppRoleCredential.from_mapping(stored),
        storage=runtime.storage_factory(config),
        config=config.snapshots,
        logger=runtime.logger,
    )


NODE_OPTION = typer.Option(None, "--node", help="Node this agent runs beside.")


@snapshot_app.command("run-once")
def snapshot_run_once(
    ctx: typer.Context,
    node_id: str | None = NODE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Run a single snapshot cycle."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("snapshot run-once", args={"node": node_id},
                                  target={"kind": "snapshot"}) as op:
        try:
            scheduler = _build_scheduler(runtime, node_id)
            with runtime.locks.scheduler_lock(scheduler.cluster_id, scheduler.node_id, timeout=0):
                report = scheduler.run_cycle()
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)

        payload = report.to_dict()
        if json_output:
            _emit_json(payload)
        else:
            console.print(f"{report.outcome.value}: {report.object_key}")
        if report.outcome is CycleOutcome.FAILED:
            _command_error(op, f"Snapshot cycle failed: {report.error}",
                           rc=int(ExitCode.PROVIDER))
        op.success(f"Snapshot cycle {report.outcome.value}.",
                   changed=int(report.outcome is CycleOutcome.SUCCESS), context=payload)


@snapshot_app.command("schedule")
def snapshot_schedule(
    ctx: typer.Context,
    node_id: str | None = NODE_OPTION,
    max_cycles: int | None = typer.Option(None, "--max-cycles", help="Stop after N cycles."),
) -> None:
    """Run snapshot cycles at the configured frequency until interrupted."""
    runtime = _get_runtime(ctx)
    stop = threading.Event()

    def _handle_signal(signum: int, frame: FrameType | None) -> None:
        stop.set()

    with runtime.logger.operation("snapshot schedule", args={"node": node_id,
                                                             "max_cycles": max_cycles},
                                  target={"kind": "snapshot"}) as op:
        try:
            scheduler = _build_scheduler(runtime, node_id)
            with runtime.locks.scheduler_lock(scheduler.cluster_id, scheduler.node_id, timeout=0):
                previous = signal.signal(signal.SIGTERM, _handle_signal)
                try:
                    console.print(
                        f"Snapshot agent for {scheduler.node_id} every "
                        f"{runtime.config.snapshots.frequency:.0f}s."
                    )
                    scheduler.run_forever(stop, max_cycles=max_cycles)
                finally:
                    signal.signal(signal.SIGTERM, previous)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        op.success("Snapshot scheduler stopped.", changed=0)


@snapshot_app.command("prune")
def snapshot_prune(
    ctx: typer.Context,
    node_id: str | None = NODE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Apply the retention policy without taking a snapshot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("snapshot prune", args={"node": node_id},
                                  target={"kind": "snapshot"}) as op:
        try:
            report = _build_scheduler(runtime, node_id).prune()
        except _HANDLED_ERRORS as exc:
            _fail(op, exc)
        payload = report.to_dict()
        if json_output:
            _emit_json(payload)
        else:
            for key in report.deleted:
                console.print(f"deleted {key}")
            console.print(f"kept {len(report.kept)} snapshot(s)")
        if report.errors:
            op.warning("Pruning incomplete.", warnings=report.errors, changed=len(report.deleted),
                       context=payload, rc=int(ExitCode.PARTIAL))
            raise typer.Exit(code=int(ExitCode.PARTIAL))
        op.success(f"Pruned {len(report.deleted)} snapshot(s).", changed=len(report.deleted),
                   context=payload)


def main() -> None:  # pragma: no cover - console script entry point
    """Invoke the Typer application."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
