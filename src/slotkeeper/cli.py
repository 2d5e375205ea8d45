"""CLI for slotkeeper: key generation, schema setup, and the HTTP server."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from slotkeeper.config import ConfigError, SlotkeeperConfig, load_config
from slotkeeper.core.logging import configure_logging
from slotkeeper.core.metrics import init_metrics
from slotkeeper.core.telemetry import init_telemetry
from slotkeeper.crypto import generate_key

logger = logging.getLogger(__name__)

SERVICE_NAME = "slotkeeper"

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to slotkeeper.toml (defaults to $SLOTKEEPER_CONFIG, then built-in defaults)",
)


def _load(config_path: Path | None) -> SlotkeeperConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """Slotkeeper: availability and calendar-sync engine."""


@cli.command("generate-key")
def generate_key_cmd() -> None:
    """Print a new 256-bit credential encryption key (hex)."""
    click.echo(generate_key())


@cli.command("init-db")
@_config_option
def init_db(config_path: Path | None) -> None:
    """Create the PostgreSQL tables (idempotent)."""
    config = _load(config_path)
    configure_logging(config.logging.level, config.logging.format)
    if not config.database.url:
        click.echo("database.url is not configured; nothing to initialise", err=True)
        sys.exit(1)
    asyncio.run(_init_db(config.database.url, config.database.max_pool_size))
    click.echo("Database schema is up to date")


async def _init_db(url: str, max_pool_size: int) -> None:
    from slotkeeper.db import Database
    from slotkeeper.storage.postgres import ensure_schema

    database = Database(
        url,
        min_pool_size=1,
        max_pool_size=max(max_pool_size, 1),
    )
    pool = await database.connect()
    try:
        await ensure_schema(pool)
    finally:
        await database.close()


@cli.command()
@_config_option
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port")
def serve(config_path: Path | None, host: str, port: int) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from slotkeeper.api.app import create_app

    config = _load(config_path)
    configure_logging(
        config.logging.level,
        config.logging.format,
        Path(config.logging.log_root) if config.logging.log_root else None,
    )
    init_telemetry(SERVICE_NAME)
    init_metrics(SERVICE_NAME)

    click.echo(f"Serving slotkeeper on http://{host}:{port}")
    uvicorn.run(create_app(config=config), host=host, port=port, log_config=None)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
