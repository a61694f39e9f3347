"""Command-line interface for mediasync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- login: Log in and store the bearer token
- logout: Forget the token
- folders: Manage synchronized folders
- config: Show or change settings
- sync: Upload new and modified media files
"""

from __future__ import annotations

import logging

import click

from mediasync.client.cli.config import (
    config,
    get_config_dir,
    get_config_file,
    open_settings,
)
from mediasync.client.cli.folders import folders
from mediasync.client.cli.login import login, logout
from mediasync.client.cli.sync import sync


def configure_logging(verbose: bool) -> None:
    """Attach a stderr handler to the mediasync logger."""
    logger = logging.getLogger("mediasync")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False


@click.group()
@click.version_option(package_name="mediasync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """mediasync - Upload media folders to a media server."""
    configure_logging(verbose)


# Account commands
cli.add_command(login)
cli.add_command(logout)

# Folder and settings commands
cli.add_command(folders)
cli.add_command(config)

# Sync command
cli.add_command(sync)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "configure_logging",
    "get_config_dir",
    "get_config_file",
    "main",
    "open_settings",
]
