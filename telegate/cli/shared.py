"""Shared utilities for Telegate CLI commands."""

import click
from rich.console import Console

from telegate.config import load_settings
from telegate.config_store import ConfigStore

console = Console()


def _get_store() -> ConfigStore:
    """ConfigStore for the configured data directory."""
    return ConfigStore(load_settings().config_path)


def _save_or_fail(store: ConfigStore, config: dict) -> None:
    if not store.save(config):
        raise click.ClickException(f"Failed to write {store.path}")
