"""CLI for Coquillage: run the API, migrate the schema, inspect the stores."""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import sys
from pathlib import Path

import click

from coquillage import __version__
from coquillage.config import ConfigError, ServiceConfig, load_config
from coquillage.errors import SyncError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(".")


def _load(config_dir: Path) -> ServiceConfig:
    try:
        return load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        sys.exit(1)


def _echo_json(payload: dict) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


config_option = click.option(
    "--config",
    "config_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    show_default=True,
    help="Directory containing coquillage.toml",
)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Coquillage: appointment sync between a calendar and a record store."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


@cli.command()
@config_option
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address")
@click.option("--port", type=int, default=None, help="Port (defaults to [service].port)")
def serve(config_dir: Path, host: str, port: int | None) -> None:
    """Run the HTTP API under uvicorn."""
    import uvicorn

    from coquillage.api.app import create_app
    from coquillage.core.logging import configure_logging
    from coquillage.core.metrics import init_metrics
    from coquillage.core.telemetry import init_telemetry

    config = _load(config_dir)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        service_name=config.name,
    )
    init_telemetry(config.name)
    init_metrics(config.name)

    bind_port = port or config.port
    click.echo(f"Starting {config.name} on {host}:{bind_port} ({config.environment})")
    uvicorn.run(create_app(config), host=host, port=bind_port, log_config=None)


@cli.command()
@click.option(
    "--database-url",
    default=None,
    help="Database URL; defaults to DATABASE_URL / POSTGRES_* variables",
)
def migrate(database_url: str | None) -> None:
    """Create the database if needed and run the migrations to head."""
    asyncio.run(_migrate(database_url))
    click.echo("Migrations complete")


async def _migrate(database_url: str | None) -> None:
    from coquillage.db import Database
    from coquillage.migrations import run_migrations

    if database_url is None:
        database = Database.from_env()
        await database.provision()
        database_url = database.sqlalchemy_url()
    await run_migrations(database_url)


@cli.command()
@config_option
def stats(config_dir: Path) -> None:
    """Print the appointment statistics snapshot as JSON."""
    config = _load(config_dir)
    try:
        snapshot = asyncio.run(_stats(config))
    except SyncError as exc:
        _echo_json({"error": exc.to_dict()})
        sys.exit(1)
    _echo_json(snapshot)


async def _stats(config: ServiceConfig) -> dict:
    from coquillage.services import build_services

    services = await build_services(config)
    try:
        snapshot = await services.query.compute_statistics()
    finally:
        await services.aclose()
    return snapshot.model_dump(mode="json")


@cli.command()
@config_option
@click.option(
    "--days",
    type=click.IntRange(min=0),
    default=7,
    show_default=True,
    help="Sweep appointments within this many days of now",
)
def reconcile(config_dir: Path, days: int) -> None:
    """Report calendar events and appointment rows that lost their counterpart."""
    config = _load(config_dir)
    try:
        report = asyncio.run(_reconcile(config, days))
    except SyncError as exc:
        _echo_json({"error": exc.to_dict()})
        sys.exit(1)
    _echo_json(report)
    if report["calendar_orphans"] or report["record_orphans"]:
        sys.exit(2)


async def _reconcile(config: ServiceConfig, days: int) -> dict:
    from coquillage.services import build_services

    now = dt.datetime.now(dt.UTC)
    window = dt.timedelta(days=days)
    services = await build_services(config)
    try:
        report = await services.reconciler.find_orphans(now - window, now + window)
    finally:
        await services.aclose()
    return report.model_dump(mode="json")
