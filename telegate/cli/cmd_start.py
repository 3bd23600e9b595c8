"""Gateway start command."""

import sys

import click

from . import cli
from .shared import console


@cli.command()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def start(debug):
    """Start the Telegram gateway."""
    from telegate.main import main as run_gateway
    console.print("[bold blue]Starting Telegate...[/bold blue]")
    status = run_gateway(debug=debug)
    if status:
        sys.exit(status)
