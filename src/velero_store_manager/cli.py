"""Operator command line for the snapshot storage destination."""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import asdict
import json
from pathlib import Path
from typing import Any, Iterator

import typer
import yaml

from .config import AppConfig, ensure_directories
from .configurator import SnapshotStorageConfigurator
from .errors import ConflictError, SnapshotStoreError, ValidationError
from .installer import VeleroCLIInstaller
from .k8s import KubernetesAuthenticationError, load_kubernetes_clients
from .logging import configure_logging
from .metadata import SnapshotScheduleStore
from .models import WORKLOAD_KIND_APP, WORKLOAD_KIND_CLUSTER, NFSConfig, SettingsResult
from .schedule import ScheduleManager
from .store import provider_to_mapping, settings_request_from_mapping

app = typer.Typer(add_completion=False, help="Manage the backup engine's snapshot storage destination.")
snapshot_config_app = typer.Typer(help="Inspect and change scheduled snapshot settings.")
app.add_typer(snapshot_config_app, name="snapshot-config")

EXIT_FAILURE = 1
EXIT_INVALID = 2
EXIT_CONFLICT = 3
EXIT_MINIMAL_RBAC = 4


@app.callback()
def main(
    ctx: typer.Context,
    kubeconfig: str | None = typer.Option(None, "--kubeconfig", help="Path to a kubeconfig file."),
    context: str | None = typer.Option(None, "--context", help="Kubeconfig context to use."),
    in_cluster: bool = typer.Option(False, "--in-cluster", help="Use the pod's service account."),
) -> None:
    config = AppConfig()
    configure_logging(config.log_level, config.log_format)
    ctx.obj = {"config": config, "kubeconfig": kubeconfig, "context": context, "in_cluster": in_cluster}


def build_configurator(ctx: typer.Context) -> SnapshotStorageConfigurator:
    options = ctx.obj
    config: AppConfig = options["config"]
    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=options["kubeconfig"],
            context=options["context"],
            in_cluster=options["in_cluster"],
        )
    except KubernetesAuthenticationError as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=EXIT_FAILURE) from error
    installer = VeleroCLIInstaller(
        binary=config.velero_binary,
        kubeconfig_path=options["kubeconfig"],
        context=options["context"],
    )
    return SnapshotStorageConfigurator(clients=clients, config=config, installer=installer)


def build_schedule_manager(ctx: typer.Context) -> tuple[ScheduleManager, SnapshotScheduleStore]:
    config: AppConfig = ctx.obj["config"]
    ensure_directories(config)
    store = SnapshotScheduleStore(config.metadata_db_path)
    store.initialize()
    return ScheduleManager(store), store


@app.command("status")
def status(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Emit settings as JSON."),
) -> None:
    """Show the backup engine status and the configured storage destination."""
    configurator = build_configurator(ctx)
    with _handle_errors():
        settings = configurator.get_settings()

    data: dict[str, Any] = {
        "engineVersion": settings.engine_version,
        "enginePlugins": list(settings.engine_plugins),
        "isEngineRunning": settings.is_engine_running,
        "companionVersion": settings.companion_version,
        "isCompanionRunning": settings.is_companion_running,
        "isEmbeddedCluster": settings.is_embedded_cluster,
        "store": None,
        "nfs": asdict(settings.nfs_config) if settings.nfs_config else None,
        "warnings": settings.warnings,
    }
    if settings.store is not None:
        data["store"] = {
            "provider": settings.store.provider_kind,
            "bucket": settings.store.bucket,
            "path": settings.store.path,
            settings.store.provider_kind: provider_to_mapping(settings.store.provider),
        }

    if json_output:
        typer.echo(json.dumps(data, indent=2, sort_keys=True))
        return

    if settings.engine_version is None:
        typer.echo("Backup engine: not installed")
    else:
        running = "running" if settings.is_engine_running else "not running"
        typer.echo(f"Backup engine: {settings.engine_version} ({running})")
        typer.echo(f"Plugins: {', '.join(settings.engine_plugins) or '-'}")
    if settings.companion_version is not None:
        running = "running" if settings.is_companion_running else "not running"
        typer.echo(f"Restic: {settings.companion_version} ({running})")
    if settings.store is not None:
        typer.echo(f"Destination: {settings.store.provider_kind} bucket={settings.store.bucket} path={settings.store.path}")
    if settings.nfs_config is not None:
        typer.echo(f"NFS: {settings.nfs_config.server}:{settings.nfs_config.path}")
    for warning in settings.warnings:
        typer.echo(f"Warning: {warning}", err=True)


@app.command("configure-nfs")
def configure_nfs(
    ctx: typer.Context,
    server: str = typer.Option(..., "--server", help="NFS server hostname or address."),
    path: str = typer.Option(..., "--path", help="Exported path on the NFS server."),
    force_reset: bool = typer.Option(False, "--force-reset", help="Reset an existing backend without asking."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Answer yes to the reset confirmation."),
) -> None:
    """Store snapshots on an NFS share through the self-hosted object store."""
    configurator = build_configurator(ctx)
    nfs_config = NFSConfig(server=server.strip(), path=path.strip())
    if not nfs_config.server or not nfs_config.path:
        typer.echo("--server and --path must not be empty", err=True)
        raise typer.Exit(code=EXIT_INVALID)

    try:
        with _handle_errors(conflict_exits=False):
            result = configurator.configure_nfs(nfs_config, force_reset=force_reset)
    except ConflictError as error:
        typer.echo(str(error))
        if not (yes or typer.confirm("Reset the snapshot storage backend?", default=False)):
            typer.echo("Aborted; the existing backend was left unchanged.")
            raise typer.Exit(code=EXIT_CONFLICT) from error
        with _handle_errors():
            result = configurator.configure_nfs(nfs_config, force_reset=True)

    if result.minimal_rbac:
        typer.echo(result.message, err=True)
        raise typer.Exit(code=EXIT_MINIMAL_RBAC)
    _echo_result(result)


@app.command("configure-store")
def configure_store(
    ctx: typer.Context,
    from_file: Path = typer.Option(..., "--from-file", exists=True, dir_okay=False, help="YAML settings file."),
) -> None:
    """Apply a storage destination described in a YAML file."""
    with from_file.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as error:
            typer.echo(f"invalid settings file {from_file}: {error}", err=True)
            raise typer.Exit(code=EXIT_INVALID) from error
    if not isinstance(data, dict):
        typer.echo(f"settings file {from_file} must contain a mapping", err=True)
        raise typer.Exit(code=EXIT_INVALID)

    configurator = build_configurator(ctx)
    with _handle_errors():
        request = settings_request_from_mapping(data)
        result = configurator.update_settings(request)
    _echo_result(result)


@snapshot_config_app.command("show")
def snapshot_config_show(
    ctx: typer.Context,
    workload_id: str = typer.Argument(..., help="Application or instance identifier."),
) -> None:
    manager, _ = build_schedule_manager(ctx)
    with _handle_errors():
        snapshot_config = manager.get_snapshot_config(workload_id)
    typer.echo(json.dumps(asdict(snapshot_config), indent=2, sort_keys=True))


@snapshot_config_app.command("set")
def snapshot_config_set(
    ctx: typer.Context,
    workload_id: str = typer.Argument(..., help="Application or instance identifier."),
    schedule: str = typer.Option("0 0 * * MON", "--schedule", help="Cron expression for scheduled snapshots."),
    ttl_value: str = typer.Option("1", "--ttl-value", help="Retention quantity."),
    ttl_unit: str = typer.Option("month", "--ttl-unit", help="Retention unit (second to year)."),
    disable: bool = typer.Option(False, "--disable", help="Turn scheduled snapshots off."),
    cluster: bool = typer.Option(False, "--cluster", help="Treat the identifier as a cluster-wide instance."),
) -> None:
    """Save the schedule and retention for a workload."""
    manager, store = build_schedule_manager(ctx)
    store.upsert_workload(workload_id, kind=WORKLOAD_KIND_CLUSTER if cluster else WORKLOAD_KIND_APP)
    with _handle_errors():
        snapshot_config = manager.save_snapshot_config(
            workload_id,
            input_value=ttl_value,
            input_time_unit=ttl_unit,
            schedule=schedule,
            auto_enabled=not disable,
        )
    typer.echo(json.dumps(asdict(snapshot_config), indent=2, sort_keys=True))


@contextmanager
def _handle_errors(*, conflict_exits: bool = True) -> Iterator[None]:
    try:
        yield
    except ConflictError as error:
        if not conflict_exits:
            raise
        typer.echo(str(error), err=True)
        raise typer.Exit(code=EXIT_CONFLICT) from error
    except ValidationError as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=EXIT_INVALID) from error
    except SnapshotStoreError as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=EXIT_FAILURE) from error


def _echo_result(result: SettingsResult) -> None:
    if result.installed:
        typer.echo("Backup engine installed.")
    elif result.changed:
        typer.echo("Snapshot storage destination updated.")
    else:
        typer.echo("Snapshot storage destination unchanged.")
    if result.store is not None:
        typer.echo(f"Destination: {result.store.provider_kind} bucket={result.store.bucket}")
    if not result.ready:
        typer.echo(f"Warning: {result.message}", err=True)
