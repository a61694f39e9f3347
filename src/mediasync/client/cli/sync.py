"""Sync command for the mediasync CLI.

Commands:
- sync: Upload new and modified media files
"""

from __future__ import annotations

import sys
import threading

import click

from mediasync.client.cli.config import open_settings


@click.command()
@click.option("--watch", "-w", is_flag=True, help="Watch for changes and sync continuously.")
def sync(watch: bool) -> None:
    """Upload new and modified media files in the synchronized folders.

    Runs one scan and upload cycle, or keeps watching with --watch
    until interrupted.
    """
    from mediasync.client.credentials import TokenProvider
    from mediasync.client.sync import (
        DirectoryWatcher,
        SyncController,
        SyncError,
        TransferItem,
        TransferStatus,
        ValidationError,
    )

    store = open_settings()
    if not store.get("folders"):
        click.echo(
            "Error: No folders configured. Run 'mediasync folders add PATH' first.",
            err=True,
        )
        sys.exit(1)

    provider = TokenProvider(store)
    if provider.get_token() is None:
        click.echo("Error: Not logged in. Run 'mediasync login' first.", err=True)
        sys.exit(1)

    try:
        controller = SyncController(
            store,
            watcher=DirectoryWatcher() if watch else None,
            token_provider=provider,
        )
    except ValidationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    output_lock = threading.Lock()

    def on_item(item: TransferItem) -> None:
        if item.status == TransferStatus.COMPLETED:
            line = f"  ✓ {item.remote_path}"
        elif item.status == TransferStatus.RETRYING:
            line = f"  ↻ {item.remote_path}: {item.status_text(controller.queue.max_retries)}"
        elif item.status in (TransferStatus.FAILED, TransferStatus.FILE_NOT_FOUND):
            line = f"  ✗ {item.remote_path}: {item.status.label}"
        else:
            return
        with output_lock:
            click.echo(line)

    def on_error(error: SyncError) -> None:
        with output_lock:
            click.echo(f"Error: {error}", err=True)

    controller.set_on_item_status(on_item)
    controller.set_on_error(on_error)

    try:
        controller.start()
        if watch:
            click.echo("Watching for changes. Press Ctrl+C to stop.")
            threading.Event().wait()
        else:
            controller.wait_idle()
    except KeyboardInterrupt:
        click.echo("\nStopping...")
    finally:
        stats = controller.queue.stats
        controller.shutdown()

    click.echo(
        f"Sync complete: {stats.completed} transferred, {stats.failed} failed, "
        f"{stats.not_found} missing, {stats.retries} retries"
    )
    if stats.failed:
        sys.exit(1)
