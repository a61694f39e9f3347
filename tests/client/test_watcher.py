"""Tests for directory watching."""

from __future__ import annotations

import threading
import time
from pathlib import Path

from watchdog.events import (
    FileClosedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from mediasync.client.sync.watcher import DebouncedEventHandler, DirectoryWatcher


class TestDebouncedEventHandler:
    """Tests for DebouncedEventHandler."""

    def test_coalesces_events_per_path(self):
        """Should deliver a path once however many events it got."""
        batches: list[list[str]] = []
        handler = DebouncedEventHandler(batches.append, debounce_s=10)

        handler.on_any_event(FileCreatedEvent("/media/a.jpg"))
        handler.on_any_event(FileModifiedEvent("/media/a.jpg"))
        handler.on_any_event(FileModifiedEvent("/media/b.jpg"))
        handler.flush()

        assert batches == [["/media/a.jpg", "/media/b.jpg"]]

    def test_move_reports_both_paths(self):
        """Should report the source and the destination of a move."""
        batches: list[list[str]] = []
        handler = DebouncedEventHandler(batches.append, debounce_s=10)

        handler.on_any_event(FileMovedEvent("/media/old.jpg", "/media/new.jpg"))
        handler.flush()

        assert batches == [["/media/old.jpg", "/media/new.jpg"]]

    def test_ignores_irrelevant_events(self):
        """Should not deliver anything for close events."""
        batches: list[list[str]] = []
        handler = DebouncedEventHandler(batches.append, debounce_s=10)

        handler.on_any_event(FileClosedEvent("/media/a.jpg"))
        handler.flush()

        assert batches == []

    def test_flushes_after_quiet_period(self):
        """Should deliver on its own once the debounce window closes."""
        delivered = threading.Event()
        handler = DebouncedEventHandler(lambda paths: delivered.set(), debounce_s=0.05)

        handler.on_any_event(FileCreatedEvent("/media/a.jpg"))

        assert delivered.wait(2.0)

    def test_stop_drops_pending(self):
        """Should forget pending paths and ignore later events."""
        batches: list[list[str]] = []
        handler = DebouncedEventHandler(batches.append, debounce_s=10)
        handler.on_any_event(FileCreatedEvent("/media/a.jpg"))

        handler.stop()
        handler.on_any_event(FileCreatedEvent("/media/b.jpg"))
        handler.flush()

        assert batches == []

        handler.restart()
        handler.on_any_event(FileCreatedEvent("/media/c.jpg"))
        handler.flush()
        assert batches == [["/media/c.jpg"]]

    def test_callback_exception_contained(self):
        """Should survive a failing callback."""

        def broken(paths):
            raise RuntimeError("boom")

        handler = DebouncedEventHandler(broken, debounce_s=10)
        handler.on_any_event(FileCreatedEvent("/media/a.jpg"))

        handler.flush()


class TestDirectoryWatcher:
    """Tests for DirectoryWatcher."""

    def test_reports_created_file(self, tmp_path: Path):
        """Should call back with the path of a new file."""
        root = tmp_path.resolve()
        target = str(root / "new.jpg")
        seen: list[str] = []
        found = threading.Event()

        def on_change(path: str) -> None:
            seen.append(path)
            if path == target:
                found.set()

        watcher = DirectoryWatcher(on_change=on_change, debounce_s=0.05)
        with watcher:
            assert watcher.watch(str(root))
            time.sleep(0.1)
            (root / "new.jpg").write_bytes(b"x")
            assert found.wait(5.0), seen

    def test_watch_missing_directory_fails(self, tmp_path: Path):
        """Should report a directory that cannot be watched."""
        watcher = DirectoryWatcher()
        with watcher:
            assert watcher.watch(str(tmp_path / "missing")) is False
            assert watcher.watched_paths == []

    def test_watch_and_unwatch(self, tmp_path: Path):
        """Should track watched directories."""
        root = str(tmp_path.resolve())
        watcher = DirectoryWatcher()
        with watcher:
            assert watcher.watch(root)
            assert watcher.watch(root)
            assert watcher.watched_paths == [root]

            watcher.unwatch(root)
            watcher.unwatch(root)
            assert watcher.watched_paths == []

    def test_restart_keeps_watches(self, tmp_path: Path):
        """Should re-establish watches after a stop and start."""
        root = str(tmp_path.resolve())
        watcher = DirectoryWatcher()
        watcher.start()
        watcher.watch(root)
        watcher.stop()
        assert not watcher.is_running

        failed = watcher.start()

        assert failed == []
        assert watcher.is_running
        assert watcher.watched_paths == [root]
        watcher.stop()
