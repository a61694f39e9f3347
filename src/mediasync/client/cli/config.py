"""Configuration utilities and commands for the mediasync CLI.

Commands:
- config show: Print every setting
- config set KEY VALUE: Change one setting
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any

import click

from mediasync.client.settings import JsonSettingsStore
from mediasync.core.config import SyncConfig
from mediasync.core.errors import ValidationError

CONFIG_DIR_ENV = "MEDIASYNC_CONFIG_DIR"

# Keys managed through `config set`; folders and credentials have their own commands
SETTABLE_KEYS = (
    "server_url",
    "sync_interval",
    "network_timeout",
    "max_retries",
    "retry_base_delay",
    "max_concurrent_uploads",
    "chunk_size",
    "media_extensions",
    "ignored_patterns",
    "sync_directories",
    "propagate_deletions",
)

_SECRET_KEYS = ("auth_token",)


def get_config_dir() -> Path:
    """Get the configuration directory.

    Returns:
        $MEDIASYNC_CONFIG_DIR if set, otherwise ~/.mediasync.
    """
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".mediasync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def open_settings() -> JsonSettingsStore:
    """Open the settings store backed by the config file."""
    return JsonSettingsStore(get_config_file())


def parse_value(raw: str) -> Any:
    """Interpret a command-line value.

    JSON literals (numbers, booleans, lists) are decoded; a comma-separated
    string becomes a list; anything else stays a string.
    """
    try:
        return json.loads(raw)
    except ValueError:
        pass
    if "," in raw:
        return [part.strip() for part in raw.split(",") if part.strip()]
    return raw


def validate_setting(store: JsonSettingsStore, key: str, value: Any) -> None:
    """Check that setting key to value yields a valid configuration.

    Raises:
        ValidationError: If the resulting configuration is invalid.
    """
    probe = JsonSettingsStore()
    for existing_key, existing_value in store.as_dict().items():
        probe.set(existing_key, existing_value)
    probe.set(key, value)
    SyncConfig.from_settings(probe)


@click.group()
def config() -> None:
    """Show or change settings."""


@config.command("show")
def config_show() -> None:
    """Print every setting, defaults included."""
    store = open_settings()
    try:
        current = SyncConfig.from_settings(store)
    except ValidationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Config file: {get_config_file()}")
    for key in SETTABLE_KEYS:
        value = getattr(current, key)
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value)
        click.echo(f"  {key}: {value}")
    click.echo(f"  folders: {len(current.folders)}")
    username = store.get("username")
    logged_in = any(store.get(k) for k in _SECRET_KEYS)
    click.echo(f"  username: {username or '-'}{' (logged in)' if logged_in else ''}")


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Change one setting.

    Lists may be given as JSON or comma-separated
    (e.g. `config set media_extensions .jpg,.png`).
    """
    if key not in SETTABLE_KEYS:
        click.echo(f"Error: Unknown setting '{key}'.", err=True)
        click.echo(f"Settable keys: {', '.join(SETTABLE_KEYS)}", err=True)
        sys.exit(1)

    parsed = parse_value(value)
    if key in ("media_extensions", "ignored_patterns") and isinstance(parsed, str):
        parsed = [parsed]

    store = open_settings()
    try:
        validate_setting(store, key, parsed)
    except ValidationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    store.set(key, parsed)
    click.echo(f"Set {key} = {json.dumps(parsed)}")
