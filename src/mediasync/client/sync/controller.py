"""Sync controller orchestrating catalog, queue and transport.

This module provides:
- SyncController: Lifecycle (start/stop), periodic and forced sync
  cycles, folder management and reaction to settings changes

A sync cycle is: rescan the catalog, enqueue what changed, dispatch until
the queue drains. Three sources start work:
1. The periodic tick (sync_interval)
2. Watch notifications, which classify one path and skip the rescan
3. force_sync(), which is ignored while a cycle is running

Cycles never overlap. Every source funnels through the lock shared by
the catalog and the queue.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

from mediasync.client.api import TransportClient
from mediasync.client.sync.catalog import FileCatalog, normalize_folder
from mediasync.client.sync.ignore import MediaFilter
from mediasync.client.sync.queue import TransferQueue
from mediasync.client.sync.retry import ScheduledTask, Scheduler, TimerScheduler
from mediasync.client.sync.types import (
    CatalogChange,
    ChangeKind,
    ControllerState,
    DrainedCallback,
    ErrorCallback,
    InvalidFolderError,
    ItemCallback,
    ProgressCallback,
    SyncError,
    TransferAction,
    ValidationError,
)
from mediasync.core.config import SyncConfig

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from mediasync.client.credentials import TokenProvider
    from mediasync.client.settings import SettingsStore
    from mediasync.client.sync.watcher import DirectoryWatcher

logger = logging.getLogger(__name__)

# Settings keys the controller reacts to
ENGINE_KEYS = frozenset(
    {
        "server_url",
        "auth_token",
        "sync_interval",
        "network_timeout",
        "max_retries",
        "retry_base_delay",
        "max_concurrent_uploads",
        "chunk_size",
        "media_extensions",
        "ignored_patterns",
        "folders",
        "sync_directories",
        "propagate_deletions",
    }
)


class SyncController:
    """Drives synchronization of the watched folders to the server.

    Usage:
        controller = SyncController(JsonSettingsStore(path), watcher=DirectoryWatcher())
        controller.set_on_progress(lambda pct: print(f"{pct}%"))
        controller.start()
        controller.add_folder("~/Pictures")
        ...
        controller.shutdown()
    """

    def __init__(
        self,
        settings: SettingsStore,
        transport: TransportClient | None = None,
        scheduler: Scheduler | None = None,
        watcher: DirectoryWatcher | None = None,
        token_provider: TokenProvider | None = None,
    ) -> None:
        """Initialize the controller from the settings store.

        Args:
            settings: Key/value store read now and observed for changes.
            transport: HTTP transport (created from settings if None).
            scheduler: Runs the periodic tick and retry timers.
            watcher: Directory watcher; None disables watch notifications.
            token_provider: Source of the bearer token (defaults to settings).

        Raises:
            ValidationError: If a stored setting is invalid.
        """
        self._settings = settings
        self._config = SyncConfig.from_settings(settings)
        self._lock = threading.RLock()

        self._token_provider = token_provider
        token = self._current_token(self._config)
        self._owns_transport = transport is None
        if transport is None:
            server = self._config.server_config()
            server.token = token
            transport = TransportClient(
                server,
                max_workers=max(4, self._config.max_concurrent_uploads),
                chunk_size=self._config.chunk_size,
            )
        elif token:
            transport.set_token(token)
        self._transport = transport

        self._owns_scheduler = scheduler is None
        self._scheduler: Scheduler = scheduler or TimerScheduler()

        self._watcher = watcher
        if watcher is not None:
            watcher.set_on_change(self.on_filesystem_change)

        self._catalog = FileCatalog(
            MediaFilter(self._config.media_extensions, self._config.ignored_patterns),
            watch=watcher,
            lock=self._lock,
            sync_directories=self._config.sync_directories,
        )
        self._queue = TransferQueue(
            transport,
            scheduler=self._scheduler,
            max_retries=self._config.max_retries,
            retry_base_delay=self._config.retry_base_delay,
            max_concurrent=self._config.max_concurrent_uploads,
            lock=self._lock,
        )
        # Dispatch is held whenever the controller is not running
        self._queue.pause()
        self._queue.set_on_error(self._emit_error)
        self._queue.set_on_drained(self._on_drained)

        self._state = ControllerState.STOPPED
        self._syncing = False
        self._assembling = False
        self._idle = threading.Event()
        self._idle.set()
        self._tick: ScheduledTask | None = None
        self._closed = False

        self._on_error: ErrorCallback | None = None
        self._on_sync_started: Callable[[], None] | None = None
        self._on_sync_finished: DrainedCallback | None = None

        self._unsubscribe = settings.subscribe(self._on_setting_changed)

    # === Accessors ===

    @property
    def state(self) -> ControllerState:
        """Current lifecycle state."""
        return self._state

    @property
    def is_running(self) -> bool:
        """Check if the controller is started."""
        return self._state == ControllerState.RUNNING

    @property
    def is_syncing(self) -> bool:
        """Check if a sync cycle is in progress."""
        return self._syncing

    @property
    def config(self) -> SyncConfig:
        """Configuration currently in effect."""
        return self._config

    @property
    def catalog(self) -> FileCatalog:
        """The file catalog."""
        return self._catalog

    @property
    def queue(self) -> TransferQueue:
        """The transfer queue."""
        return self._queue

    @property
    def transport(self) -> TransportClient:
        """The HTTP transport."""
        return self._transport

    @property
    def folders(self) -> list[str]:
        """Watched folders."""
        return self._catalog.folders

    # === Callbacks ===

    def set_on_progress(self, callback: ProgressCallback | None) -> None:
        """Set callback for aggregate progress (0-100)."""
        self._queue.set_on_progress(callback)

    def set_on_item_status(self, callback: ItemCallback | None) -> None:
        """Set callback for per-item status changes."""
        self._queue.set_on_item_status(callback)

    def set_on_error(self, callback: ErrorCallback | None) -> None:
        """Set callback for surfaced errors (exhausted retries, bad folders)."""
        self._on_error = callback

    def set_on_sync_started(self, callback: Callable[[], None] | None) -> None:
        """Set callback fired when a sync cycle begins."""
        self._on_sync_started = callback

    def set_on_sync_finished(self, callback: DrainedCallback | None) -> None:
        """Set callback fired when a sync cycle has drained."""
        self._on_sync_finished = callback

    # === Lifecycle ===

    def start(self) -> None:
        """Start periodic syncing and run one cycle now. Idempotent."""
        with self._lock:
            if self._closed:
                raise RuntimeError("Controller is shut down")
            if self._state == ControllerState.RUNNING:
                return
            self._state = ControllerState.RUNNING
            self._queue.resume()
            logger.info("Sync controller started")

        if self._watcher is not None:
            for path in self._watcher.start():
                logger.warning(f"Watch lost on restart: {path}")

        rescan = bool(self._catalog.folders)
        changes = self._load_folders(self._config.folders)
        with self._lock:
            self._arm_tick()
        self._start_cycle(changes, rescan=rescan)

    def stop(self) -> None:
        """Stop periodic syncing and abort transfers in flight. Idempotent."""
        with self._lock:
            if self._state == ControllerState.STOPPED:
                return
            self._state = ControllerState.STOPPED
            self._cancel_tick()
            aborted = self._queue.stop_in_flight()
            # Held until the next start so nothing is dispatched while stopped
            self._queue.pause()
            if self._syncing:
                self._syncing = False
                self._idle.set()
            logger.info(f"Sync controller stopped ({aborted} transfers aborted)")

        if self._watcher is not None:
            self._watcher.stop()

    def shutdown(self) -> None:
        """Stop and release every resource. No callback fires afterwards."""
        self.stop()
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.shutdown()
            self._on_error = None
            self._on_sync_started = None
            self._on_sync_finished = None
        self._unsubscribe()
        if self._owns_transport:
            self._transport.close()
        if self._owns_scheduler and isinstance(self._scheduler, TimerScheduler):
            self._scheduler.shutdown()
        logger.debug("Sync controller shut down")

    def __enter__(self) -> SyncController:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.shutdown()

    def force_sync(self) -> bool:
        """Run a scan and drain cycle now.

        Returns:
            True if a cycle started, False if one was already running or
            the controller is stopped.
        """
        return self._start_cycle([], rescan=True)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no sync cycle is running.

        Returns:
            True if idle within timeout.
        """
        return self._idle.wait(timeout)

    # === Folders ===

    def add_folder(self, path: str) -> int:
        """Start synchronizing a folder and persist the folder list.

        Returns:
            Number of paths surfaced by the initial scan.

        Raises:
            InvalidFolderError: If path is not an existing directory.
        """
        changes = self._catalog.add_folder(path)
        self._persist_folders()
        if changes:
            self._start_cycle(changes, rescan=False)
        return len(changes)

    def remove_folder(self, path: str) -> int:
        """Stop synchronizing a folder and persist the folder list.

        Transfers in flight for the folder are aborted silently.

        Returns:
            Number of queue items withdrawn.
        """
        root = normalize_folder(path)
        if root not in self._catalog.folders:
            return 0
        withdrawn = self._remove_folder(root)
        self._persist_folders()
        return withdrawn

    def _remove_folder(self, root: str) -> int:
        with self._lock:
            self._catalog.remove_folder(root)
            withdrawn = self._queue.withdraw_under(root)
            if self._syncing and self._queue.is_idle and not self._assembling:
                self._finish_cycle()
            return withdrawn

    def _load_folders(self, folders: Iterable[str]) -> list[CatalogChange]:
        changes: list[CatalogChange] = []
        for folder in folders:
            try:
                changes.extend(self._catalog.add_folder(folder))
            except InvalidFolderError as e:
                logger.warning(f"Skipping folder {folder}: {e}")
                self._emit_error(e)
        return changes

    def _persist_folders(self) -> None:
        self._settings.set("folders", self._catalog.folders)

    # === Events ===

    def on_filesystem_change(self, path: str) -> None:
        """Handle a watch notification for a path."""
        if self._state != ControllerState.RUNNING:
            return
        changes = self._catalog.on_filesystem_event(path)
        if changes:
            self._start_cycle(changes, rescan=False)

    def _on_tick(self) -> None:
        with self._lock:
            if self._state != ControllerState.RUNNING:
                return
            self._tick = None
            self._arm_tick()
        logger.debug("Periodic sync tick")
        self.force_sync()

    def _arm_tick(self) -> None:
        self._cancel_tick()
        try:
            self._tick = self._scheduler.call_later(self._config.sync_interval, self._on_tick)
        except RuntimeError:
            logger.debug("Scheduler unavailable, periodic sync disabled")

    def _cancel_tick(self) -> None:
        if self._tick is not None:
            self._tick.cancel()
            self._tick = None

    # === Cycles ===

    def _start_cycle(self, changes: list[CatalogChange], rescan: bool) -> bool:
        with self._lock:
            if self._state != ControllerState.RUNNING:
                self._apply(changes)
                return False
            if self._syncing:
                if not changes:
                    logger.debug("Sync already in progress")
                    return False
                # Join the running cycle
                self._apply(changes)
                self._queue.process()
                if not self._assembling and self._queue.is_idle:
                    self._finish_cycle()
                return False
            self._syncing = True
            self._assembling = True
            self._idle.clear()
            logger.info("Sync started")
            self._call(self._on_sync_started)

        if rescan:
            self._catalog.retry_failed_watches()
            try:
                changes = [*changes, *self._catalog.rescan()]
            except Exception:
                logger.exception("Rescan failed")

        with self._lock:
            self._apply(changes)
            self._assembling = False
            if self._state != ControllerState.RUNNING or not self._syncing:
                return True
            self._queue.process()
            if self._syncing and self._queue.is_idle:
                self._finish_cycle()
        return True

    def _apply(self, changes: list[CatalogChange]) -> None:
        """Hand catalog changes to the queue. Called with the lock held."""
        held = self._assembling
        self._assembling = True
        try:
            self._enqueue_changes(changes)
        finally:
            self._assembling = held

    def _enqueue_changes(self, changes: list[CatalogChange]) -> None:
        for change in changes:
            if change.kind == ChangeKind.REMOVED:
                self._queue.withdraw(change.path)
                if self._config.propagate_deletions:
                    self._queue.enqueue(change.entry, TransferAction.REMOVE)
            else:
                self._queue.enqueue(change.entry)

    def _on_drained(self) -> None:
        if self._assembling or not self._syncing:
            return
        self._finish_cycle()

    def _current_token(self, config: SyncConfig) -> str | None:
        if self._token_provider is not None:
            return self._token_provider.get_token()
        return config.auth_token

    def _finish_cycle(self) -> None:
        self._syncing = False
        self._idle.set()
        stats = self._queue.stats
        logger.info(
            f"Sync finished (completed={stats.completed} failed={stats.failed} "
            f"not_found={stats.not_found} retries={stats.retries})"
        )
        self._call(self._on_sync_finished)

    # === Settings ===

    def _on_setting_changed(self, key: str, value: Any) -> None:
        if key not in ENGINE_KEYS or self._closed:
            return
        try:
            config = SyncConfig.from_settings(self._settings)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid setting {key}: {e}")
            self._emit_error(e)
            return

        with self._lock:
            self._config = config
            if key == "server_url":
                self._transport.set_server_url(config.server_url)
            elif key == "auth_token":
                self._transport.set_token(self._current_token(config))
            elif key == "network_timeout":
                self._transport.set_timeout(config.network_timeout)
            elif key == "max_retries":
                self._queue.set_max_retries(config.max_retries)
            elif key == "retry_base_delay":
                self._queue.set_retry_base_delay(config.retry_base_delay)
            elif key == "max_concurrent_uploads":
                self._queue.set_max_concurrent(config.max_concurrent_uploads)
            elif key == "sync_interval":
                if self._state == ControllerState.RUNNING:
                    self._arm_tick()
            elif key in ("media_extensions", "ignored_patterns"):
                self._catalog.file_filter = MediaFilter(
                    config.media_extensions, config.ignored_patterns
                )
            elif key == "sync_directories":
                self._catalog.sync_directories = config.sync_directories
        logger.debug(f"Applied setting {key}")

        if key == "folders":
            self._reconcile_folders(config.folders)

    def _reconcile_folders(self, folders: list[str]) -> None:
        wanted = []
        for folder in folders:
            try:
                wanted.append(normalize_folder(folder))
            except OSError as e:
                logger.warning(f"Skipping folder {folder}: {e}")
        current = self._catalog.folders
        for root in current:
            if root not in wanted:
                self._remove_folder(root)
        added = self._load_folders(f for f in wanted if f not in current)
        if added:
            self._start_cycle(added, rescan=False)

    # === Observers ===

    def _emit_error(self, error: SyncError) -> None:
        self._call(self._on_error, error)

    @staticmethod
    def _call(callback: Callable[..., None] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Controller observer failed")
