"""Access administration commands: thin CRUD over the stored config."""

import json

import click
from rich.table import Table

from . import cli
from .shared import _get_store, _save_or_fail, console

from telegate.security import (
    GROUP_MODES,
    GROUP_POLICIES,
    add_group,
    add_to_whitelist,
    get_group,
    remove_from_whitelist,
    remove_group,
    set_group_allow_from,
    set_group_policy,
)


# Group chat IDs are negative and would otherwise parse as options
_CHAT_ID_ARGS = {"ignore_unknown_options": True}


@cli.group()
def admin():
    """Owner, whitelist and group administration."""
    pass


# ── Overview ─────────────────────────────────────────────────

@admin.command("show")
def admin_show():
    """Print the full stored config."""
    config = _get_store().load()
    console.print_json(json.dumps(config, ensure_ascii=False))


@admin.command("show-owner")
def admin_show_owner():
    """Show the bound owner."""
    owner = _get_store().load()["owner"]
    if owner.get("id") is None:
        console.print("[yellow]No owner bound. The first private message will bind one.[/yellow]")
        return
    console.print(f"[bold]Owner:[/bold] {owner.get('display_name') or '-'} ({owner['id']})")
    console.print(f"[dim]Bound at {owner.get('bound_at') or 'unknown'}[/dim]")


@admin.command("reset-owner")
@click.confirmation_option(prompt="The next private message will bind a new owner. Continue?")
def admin_reset_owner():
    """Unbind the owner."""
    store = _get_store()
    config = store.load()
    config["owner"] = {"id": None, "display_name": None, "bound_at": None}
    _save_or_fail(store, config)
    console.print("[green]✓ Owner reset[/green]")


@admin.command("migrate")
def admin_migrate():
    """Upgrade a legacy config file in place."""
    notes = _get_store().migrate()
    if not notes:
        console.print("Nothing to migrate.")
        return
    for note in notes:
        console.print(f"[green]✓[/green] {note}")


@admin.command("set-media")
@click.argument("state", type=click.Choice(["on", "off"]))
def admin_set_media(state):
    """Turn media download on or off."""
    store = _get_store()
    config = store.load()
    config["features"]["download_media"] = state == "on"
    _save_or_fail(store, config)
    console.print(f"[green]✓ Media download {state}[/green]")


# ── Whitelist ────────────────────────────────────────────────

def _whitelist_args(kind: str, value: str) -> dict:
    if kind == "id":
        return {"sender_id": value}
    return {"username": value.lstrip("@")}


@admin.command("list-whitelist")
def admin_list_whitelist():
    """List private-chat grants."""
    whitelist = _get_store().load()["whitelist"]
    table = Table(title="Whitelist", show_header=True)
    table.add_column("Kind", style="bold")
    table.add_column("Value")
    for i in whitelist.get("ids") or []:
        table.add_row("id", i)
    for n in whitelist.get("names") or []:
        table.add_row("username", f"@{n}")
    console.print(table)


@admin.command("add-whitelist")
@click.argument("kind", type=click.Choice(["id", "username"]))
@click.argument("value")
def admin_add_whitelist(kind, value):
    """Grant private-chat access by user id or username."""
    store = _get_store()
    config = store.load()
    if not add_to_whitelist(config, **_whitelist_args(kind, value)):
        console.print(f"[yellow]{value} is already whitelisted.[/yellow]")
        return
    _save_or_fail(store, config)
    console.print(f"[green]✓ Whitelisted {kind} {value}[/green]")


@admin.command("remove-whitelist")
@click.argument("kind", type=click.Choice(["id", "username"]))
@click.argument("value")
def admin_remove_whitelist(kind, value):
    """Revoke private-chat access."""
    store = _get_store()
    config = store.load()
    if not remove_from_whitelist(config, **_whitelist_args(kind, value)):
        console.print(f"[yellow]{value} is not whitelisted.[/yellow]")
        return
    _save_or_fail(store, config)
    console.print(f"[green]✓ Removed {kind} {value}[/green]")


# ── Groups ───────────────────────────────────────────────────

@admin.command("list-groups")
def admin_list_groups():
    """List configured groups and the group policy."""
    config = _get_store().load()
    console.print(f"[bold]Group policy:[/bold] {config['group_policy']}")
    groups = config.get("groups") or {}
    if not groups:
        console.print("[dim]No groups configured.[/dim]")
        return
    table = Table(show_header=True)
    table.add_column("Chat ID", style="bold")
    table.add_column("Name")
    table.add_column("Mode")
    table.add_column("Allow from")
    table.add_column("History")
    for chat_id, group in groups.items():
        table.add_row(
            chat_id,
            str(group.get("name") or ""),
            str(group.get("mode")),
            ", ".join(group.get("allow_from") or ["*"]),
            str(group.get("history_limit") or ""),
        )
    console.print(table)


@admin.command("add-group", context_settings=_CHAT_ID_ARGS)
@click.argument("chat_id")
@click.argument("name")
@click.option("--mode", type=click.Choice(GROUP_MODES), default="mention", show_default=True,
              help="mention: respond only when addressed; broadcast: forward every message")
@click.option("--history-limit", type=click.IntRange(min=1), default=None, help="Context messages for this group")
def admin_add_group(chat_id, name, mode, history_limit):
    """Allow the bot in a group."""
    store = _get_store()
    config = store.load()
    if not add_group(config, chat_id, name, mode=mode, history_limit=history_limit):
        raise click.ClickException(f"Group {chat_id} already exists. Remove it first to change it.")
    _save_or_fail(store, config)
    console.print(f"[green]✓ Added group {name} ({chat_id}) in {mode} mode[/green]")


@admin.command("remove-group", context_settings=_CHAT_ID_ARGS)
@click.argument("chat_id")
def admin_remove_group(chat_id):
    """Remove a group from the config."""
    store = _get_store()
    config = store.load()
    if not remove_group(config, chat_id):
        raise click.ClickException(f"Group {chat_id} is not configured.")
    _save_or_fail(store, config)
    console.print(f"[green]✓ Removed group {chat_id}[/green]")


@admin.command("set-group-policy")
@click.argument("policy", type=click.Choice(GROUP_POLICIES))
def admin_set_group_policy(policy):
    """Set the default disposition for groups."""
    store = _get_store()
    config = store.load()
    set_group_policy(config, policy)
    _save_or_fail(store, config)
    console.print(f"[green]✓ Group policy set to {policy}[/green]")


@admin.command("set-allow-from", context_settings=_CHAT_ID_ARGS)
@click.argument("chat_id")
@click.argument("senders", nargs=-1, required=True)
def admin_set_allow_from(chat_id, senders):
    """Limit which senders may trigger the bot in a group ('*' for everyone)."""
    store = _get_store()
    config = store.load()
    if not set_group_allow_from(config, chat_id, list(senders)):
        raise click.ClickException(f"Group {chat_id} is not configured.")
    _save_or_fail(store, config)
    allowed = ", ".join(get_group(config, chat_id)["allow_from"])
    console.print(f"[green]✓ Group {chat_id} allows: {allowed}[/green]")
