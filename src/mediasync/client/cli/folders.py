"""Folder management commands for the mediasync CLI.

Commands:
- folders add PATH: Start synchronizing a folder
- folders remove PATH: Stop synchronizing a folder
- folders list: Show watched folders
"""

from __future__ import annotations

import os
import sys

import click

from mediasync.client.cli.config import open_settings
from mediasync.client.sync.catalog import normalize_folder
from mediasync.client.sync.types import is_under


@click.group()
def folders() -> None:
    """Manage synchronized folders."""


@folders.command("add")
@click.argument("path", type=click.Path(file_okay=False))
def folders_add(path: str) -> None:
    """Start synchronizing PATH."""
    root = normalize_folder(path)
    if not os.path.isdir(root):
        click.echo(f"Error: Not a directory: {path}", err=True)
        sys.exit(1)

    store = open_settings()
    current = [str(f) for f in store.get("folders") or []]
    covering = next((f for f in current if is_under(root, f)), None)
    if covering is not None:
        click.echo(f"Already synchronized: {covering}")
        return

    nested = [f for f in current if is_under(f, root)]
    updated = [f for f in current if f not in nested] + [root]
    store.set("folders", updated)
    click.echo(f"Added {root}")
    for folder in nested:
        click.echo(f"  (replaces {folder})")


@folders.command("remove")
@click.argument("path", type=click.Path())
def folders_remove(path: str) -> None:
    """Stop synchronizing PATH. Files on the server are left alone."""
    root = normalize_folder(path)
    store = open_settings()
    current = [str(f) for f in store.get("folders") or []]
    if root not in current:
        click.echo(f"Not synchronized: {root}")
        return
    store.set("folders", [f for f in current if f != root])
    click.echo(f"Removed {root}")


@folders.command("list")
def folders_list() -> None:
    """Show synchronized folders."""
    current = [str(f) for f in open_settings().get("folders") or []]
    if not current:
        click.echo("No folders. Add one with 'mediasync folders add PATH'.")
        return
    for folder in current:
        suffix = "" if os.path.isdir(folder) else " (missing)"
        click.echo(f"{folder}{suffix}")
