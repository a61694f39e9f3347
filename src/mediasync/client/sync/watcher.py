"""Directory watching with debouncing.

This module provides:
- DirectoryWatcher: Non-recursive per-directory watches using watchdog,
  implementing the catalog's watch/unwatch primitives
- DebouncedEventHandler: Coalesces rapid events per path

Notifications are delivered from a timer thread once the debounce window
closes, never from the observer thread, so the receiver is free to add
or remove watches.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver, ObservedWatch

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str], None]

_RELEVANT = frozenset(
    {EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_DELETED, EVENT_TYPE_MOVED}
)


def _decode(path: str | bytes) -> str:
    if isinstance(path, bytes):
        return path.decode("utf-8", errors="replace")
    return path


class DebouncedEventHandler(FileSystemEventHandler):
    """Event handler that collects changed paths and flushes them in batches."""

    def __init__(
        self,
        on_flush: Callable[[list[str]], None],
        debounce_s: float = 0.5,
    ) -> None:
        """Initialize the debounced handler.

        Args:
            on_flush: Receives the changed paths, oldest first.
            debounce_s: Quiet period after the last event before flushing.
        """
        super().__init__()
        self._on_flush = on_flush
        self._debounce_s = debounce_s

        # Pending paths keyed by path, valued by first-seen time
        self._pending: dict[str, float] = {}
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._stopped = False

    def on_any_event(self, event: FileSystemEvent) -> None:
        """Record the paths touched by an event."""
        if event.event_type not in _RELEVANT:
            return
        paths = [_decode(event.src_path)]
        if event.event_type == EVENT_TYPE_MOVED:
            paths.append(_decode(event.dest_path))

        now = time.monotonic()
        with self._lock:
            if self._stopped:
                return
            for path in paths:
                self._pending.setdefault(path, now)
            self._schedule_flush()

    def _schedule_flush(self) -> None:
        """Restart the flush timer. Called with the lock held."""
        if self._timer:
            self._timer.cancel()
        self._timer = threading.Timer(self._debounce_s, self._flush)
        self._timer.daemon = True
        self._timer.start()

    def _flush(self) -> None:
        with self._lock:
            if not self._pending:
                return
            paths = sorted(self._pending, key=self._pending.__getitem__)
            self._pending.clear()
            self._timer = None

        # Deliver outside the lock
        try:
            self._on_flush(paths)
        except Exception:
            logger.exception("Watch callback failed")

    def flush(self) -> None:
        """Deliver pending paths now."""
        with self._lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None
        self._flush()

    def stop(self) -> None:
        """Drop pending paths and stop the timer."""
        with self._lock:
            self._stopped = True
            self._pending.clear()
            if self._timer:
                self._timer.cancel()
                self._timer = None

    def restart(self) -> None:
        """Accept events again after stop()."""
        with self._lock:
            self._stopped = False


class DirectoryWatcher:
    """Watches individual directories for changes to their direct children.

    Each watched directory is scheduled non-recursively; the catalog adds
    a watch for every subdirectory it discovers.

    Usage:
        watcher = DirectoryWatcher(on_change=controller.on_filesystem_change)
        watcher.start()
        watcher.watch("/media/photos")
    """

    def __init__(
        self,
        on_change: ChangeCallback | None = None,
        debounce_s: float = 0.5,
    ) -> None:
        """Initialize the watcher.

        Args:
            on_change: Called with each changed path after debouncing.
            debounce_s: Debounce window in seconds.
        """
        self._on_change = on_change
        self._handler = DebouncedEventHandler(self._deliver, debounce_s)
        self._observer: BaseObserver = Observer()
        self._watches: dict[str, ObservedWatch] = {}
        self._lock = threading.Lock()
        self._running = False

    def set_on_change(self, callback: ChangeCallback | None) -> None:
        """Set the change callback."""
        self._on_change = callback

    @property
    def is_running(self) -> bool:
        """Check if the watcher is running."""
        return self._running

    @property
    def watched_paths(self) -> list[str]:
        """Directories currently watched."""
        with self._lock:
            return sorted(self._watches)

    def watch(self, path: str) -> bool:
        """Start watching a directory's direct children.

        Returns:
            True if the directory is watched, False if the watch failed.
        """
        path = os.path.abspath(path)
        with self._lock:
            if path in self._watches:
                return True
            try:
                watch = self._observer.schedule(self._handler, path, recursive=False)
            except OSError as e:
                logger.warning(f"Cannot watch {path}: {e}")
                return False
            self._watches[path] = watch
        logger.debug(f"Watching {path}")
        return True

    def unwatch(self, path: str) -> None:
        """Stop watching a directory. Unknown paths are ignored."""
        path = os.path.abspath(path)
        with self._lock:
            watch = self._watches.pop(path, None)
            if watch is None:
                return
            try:
                self._observer.unschedule(watch)
            except (KeyError, OSError) as e:
                # The directory may already be gone
                logger.debug(f"Unschedule of {path} failed: {e}")
        logger.debug(f"Stopped watching {path}")

    def start(self) -> list[str]:
        """Start delivering events.

        Directories watched while stopped are scheduled again on a live
        observer.

        Returns:
            Directories whose watch could not be re-established.
        """
        with self._lock:
            if self._running:
                return []
            if self._observer.ident is not None:
                # A stopped observer cannot be restarted
                self._observer = Observer()
            else:
                self._observer.unschedule_all()
            paths = list(self._watches)
            self._watches.clear()
            self._handler.restart()
            self._observer.start()
            self._running = True
        logger.debug("Directory watcher started")

        failed = [path for path in paths if not self.watch(path)]
        return failed

    def stop(self) -> None:
        """Stop delivering events. Watches are kept for a later start()."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            observer = self._observer
        self._handler.stop()
        observer.stop()
        observer.join(timeout=5.0)
        logger.debug("Directory watcher stopped")

    def flush(self) -> None:
        """Deliver debounced paths immediately."""
        self._handler.flush()

    def _deliver(self, paths: list[str]) -> None:
        callback = self._on_change
        if callback is None:
            return
        for path in paths:
            try:
                callback(path)
            except Exception:
                logger.exception(f"Change callback failed for {path}")

    def __enter__(self) -> DirectoryWatcher:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()
