"""Provisioning CLI (provctl).

Runs the engine or a single provisioning pass from the command line, and
checks provisioning files without touching any state.

Usage:
    provctl run                         # Run the engine until interrupted
    provctl provision datasources       # One pass for one resource kind
    provctl provision all               # Every kind, dashboards last
    provctl validate alerting           # Check files, write nothing
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click

from .config import (
    ALERTING_DIR,
    DASHBOARDS_DIR,
    DATASOURCES_DIR,
    NOTIFIERS_DIR,
    PLUGINS_DIR,
    AtomicityPolicy,
    Config,
    ConfigurationError,
)
from .config_reader import read_config_dir
from .main import run_service, setup_logging
from .models import (
    AlertingFile,
    DashboardProvidersFile,
    DatasourcesFile,
    NotifiersFile,
    PluginsFile,
)
from .provenance import ChangeSummary
from .service import ProvisioningError, ProvisioningService
from .services import ServiceHandles
from .store import StateStore, StoreError

# Resource kind → provisioning subdirectory, in init order
KINDS = {
    "datasources": DATASOURCES_DIR,
    "plugins": PLUGINS_DIR,
    "notifiers": NOTIFIERS_DIR,
    "alerting": ALERTING_DIR,
    "dashboards": DASHBOARDS_DIR,
}

FILE_MODELS = {
    "datasources": DatasourcesFile,
    "plugins": PluginsFile,
    "notifiers": NotifiersFile,
    "alerting": AlertingFile,
    "dashboards": DashboardProvidersFile,
}


def build_config(
    path: Path, state_file: Path | None, plugins_dir: Path | None, policy: str, log_level: str
) -> Config:
    try:
        return Config(
            provisioning_path=path,
            state_file=state_file,
            plugins_dir=plugins_dir,
            atomicity_policy=AtomicityPolicy(policy),
            log_level=log_level.upper(),
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def open_service(config: Config) -> ProvisioningService:
    try:
        store = StateStore(config.state_file)
    except StoreError as e:
        raise click.ClickException(str(e)) from e
    return ProvisioningService(config, store, ServiceHandles.from_config(config))


async def provision_kind(service: ProvisioningService, kind: str) -> ChangeSummary | None:
    """Run one provisioning pass; dashboards report no summary."""
    if kind == "datasources":
        return await service.provision_datasources()
    if kind == "plugins":
        return await service.provision_plugins()
    if kind == "notifiers":
        return await service.provision_notifications()
    if kind == "alerting":
        return await service.provision_alert_rules()
    await service.provision_dashboards()
    return None


def echo_summary(kind: str, summary: ChangeSummary | None) -> None:
    if summary is None:
        click.secho(f"✓ {kind} provisioned", fg="green")
        return
    click.secho(
        f"✓ {kind}: {summary.create_count} created, {summary.update_count} updated, "
        f"{summary.delete_count} deleted, {summary.unchanged_count} unchanged",
        fg="green",
    )


# =============================================================================
# Main CLI Group
# =============================================================================

path_option = click.option(
    "--path",
    "path",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="PROVISIONING_PATH",
    default="/etc/provisioning",
    show_default=True,
    help="Provisioning directory",
)
state_file_option = click.option(
    "--state-file",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="STATE_FILE",
    default=None,
    help="JSON state file (default: in memory)",
)
plugins_dir_option = click.option(
    "--plugins-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="PLUGINS_DIR",
    default=None,
    help="Directory of installed plugins",
)
policy_option = click.option(
    "--policy",
    type=click.Choice([p.value for p in AtomicityPolicy]),
    envvar="ATOMICITY_POLICY",
    default=AtomicityPolicy.ALL_OR_NOTHING.value,
    show_default=True,
    help="How invalid files are handled",
)
log_level_option = click.option(
    "--log-level",
    envvar="LOG_LEVEL",
    default="WARNING",
    show_default=True,
    help="Log level",
)


@click.group()
@click.version_option(version="0.1.0", prog_name="provctl")
def cli() -> None:
    """Provisioning CLI (provctl).

    Reconciles provisioning files into the state store.

    \b
    Quick Start:
        provctl validate datasources   # Check files
        provctl provision all          # Apply every kind once
        provctl run                    # Keep dashboards in sync
    """
    pass


@cli.command("run")
@path_option
@state_file_option
@plugins_dir_option
@policy_option
@click.option("--log-level", envvar="LOG_LEVEL", default="INFO", show_default=True, help="Log level")
def run_cmd(
    path: Path, state_file: Path | None, plugins_dir: Path | None, policy: str, log_level: str
) -> None:
    """Provision everything, then keep dashboards in sync until interrupted."""
    config = build_config(path, state_file, plugins_dir, policy, log_level)
    setup_logging(config.log_level)
    service = open_service(config)

    async def _run() -> int:
        try:
            await service.run_init_provisioners()
        except ProvisioningError as e:
            raise click.ClickException(str(e)) from e
        return await run_service(service, logging.getLogger(__name__))

    if asyncio.run(_run()) != 0:
        raise click.ClickException("Provisioning engine stopped with an error")


@cli.command()
@click.argument("kind", type=click.Choice([*KINDS, "all"]))
@path_option
@state_file_option
@plugins_dir_option
@policy_option
@log_level_option
def provision(
    kind: str,
    path: Path,
    state_file: Path | None,
    plugins_dir: Path | None,
    policy: str,
    log_level: str,
) -> None:
    """Run one provisioning pass for KIND."""
    config = build_config(path, state_file, plugins_dir, policy, log_level)
    setup_logging(config.log_level)
    service = open_service(config)
    kinds = list(KINDS) if kind == "all" else [kind]

    async def _provision() -> None:
        for name in kinds:
            summary = await provision_kind(service, name)
            echo_summary(name, summary)

    try:
        asyncio.run(_provision())
    except ProvisioningError as e:
        raise click.ClickException(str(e)) from e


@cli.command()
@click.argument("kind", type=click.Choice([*KINDS, "all"]))
@path_option
def validate(kind: str, path: Path) -> None:
    """Check the provisioning files of KIND without writing anything."""
    kinds = list(KINDS) if kind == "all" else [kind]
    failed = 0

    for name in kinds:
        directory = path / KINDS[name]
        result = read_config_dir(directory, FILE_MODELS[name])
        for error in result.errors:
            click.secho(f"✗ {error}", fg="red", err=True)
        failed += len(result.errors)
        click.echo(f"{name}: {len(result.files)} valid file(s), {len(result.errors)} invalid")

    if failed:
        raise click.ClickException(f"{failed} invalid provisioning file(s)")
    click.secho("✓ All provisioning files are valid", fg="green")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
