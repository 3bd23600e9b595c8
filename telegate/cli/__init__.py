"""Telegate CLI: command line interface."""

import click
from telegate import __version__
from .shared import console


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="telegate")
@click.pass_context
def cli(ctx):
    """Telegate: Telegram gateway for a local AI agent"""
    if ctx.invoked_subcommand is None:
        _show_help()


def _show_help():
    """Show all available commands grouped by category."""
    console.print(f"[bold]Telegate v{__version__}[/bold]: Telegram gateway for a local AI agent\n")

    groups = {
        "Gateway": [
            ("start", "Start the gateway (Telegram long polling)"),
            ("send", "Deliver an agent reply: send <endpoint> <message>"),
        ],
        "Access": [
            ("admin show", "Show the stored config"),
            ("admin show-owner", "Show the bound owner"),
            ("admin reset-owner", "Unbind the owner (next DM re-binds)"),
            ("admin list-whitelist", "List private-chat grants"),
            ("admin add-whitelist", "Grant by id or username"),
            ("admin remove-whitelist", "Revoke by id or username"),
        ],
        "Groups": [
            ("admin list-groups", "List configured groups"),
            ("admin add-group", "Add a group (--mode mention|broadcast)"),
            ("admin remove-group", "Remove a group"),
            ("admin set-group-policy", "disabled | allowlist | open"),
            ("admin set-allow-from", "Restrict who may trigger the bot in a group"),
        ],
        "Maintenance": [
            ("admin set-media", "Toggle media download (on/off)"),
            ("admin migrate", "Upgrade a legacy config file"),
        ],
    }

    for category, commands in groups.items():
        console.print(f"  [bold cyan]{category}[/bold cyan]")
        for name, desc in commands:
            console.print(f"    [bold]telegate {name:24s}[/bold] {desc}")
        console.print()

    console.print("[dim]Run 'telegate <command> --help' for details on a specific command.[/dim]")


# Import all command modules (registers commands onto cli group)
from . import cmd_start  # noqa: E402, F401
from . import cmd_send  # noqa: E402, F401
from . import cmd_admin  # noqa: E402, F401


@cli.command(name="help", hidden=True)
def help_cmd():
    """Show all available commands."""
    _show_help()


def main():
    """CLI entry point."""
    import sys
    try:
        cli(standalone_mode=False)
    except click.UsageError as e:
        if e.ctx:
            click.echo(e.ctx.command.get_usage(e.ctx), err=True)
        click.echo("Try 'telegate help' for help.\n", err=True)
        click.echo(f"Error: {e.format_message()}", err=True)
        sys.exit(2)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.exceptions.Exit as e:
        sys.exit(e.code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
