# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command line entry point: ``mail-dispatch``."""

from __future__ import annotations

import click
import uvicorn
from rich.console import Console
from rich.table import Table
from rich.text import Text

from .config import load_settings
from .logger import configure_logging, get_logger

console = Console()


@click.group()
def main() -> None:
    """Mail dispatch queue service."""


@main.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="Path to config.ini")
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", type=int, default=None, help="Bind port (overrides config)")
def serve(config_path: str | None, host: str | None, port: int | None) -> None:
    """Run the HTTP API and the dispatch worker."""
    from .server import create_server_app

    try:
        settings = load_settings(config_path)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(settings.log_level)
    logger = get_logger("mail_dispatch.cli")
    try:
        app = create_server_app(settings)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    bind_host = host or settings.host
    bind_port = port or settings.port
    logger.info("Serving mail dispatch queue on %s:%d (transport=%s)", bind_host, bind_port, settings.transport)
    uvicorn.run(app, host=bind_host, port=bind_port, log_config=None)


@main.command("show-config")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="Path to config.ini")
def show_config(config_path: str | None) -> None:
    """Print the resolved settings (secrets masked)."""
    try:
        settings = load_settings(config_path)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    secrets = {"api_token", "smtp_password", "resend_api_key"}
    table = Table(title="Mail dispatch settings")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value")
    for name, value in vars(settings).items():
        if name in secrets and value:
            value = "********"
        table.add_row(name, Text(str(value)))
    console.print(table)


if __name__ == "__main__":
    main()
