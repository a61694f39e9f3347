"""Catalog of locally known transferable files.

This module provides:
- FileCatalog: Watched folders, their subdirectories and a CatalogEntry
  per qualifying file, classifying observations as new/modified/removed
- WatchBackend: The "watch path" / "unwatch path" primitives

Directory walks run outside the catalog lock; their results are merged
under it. Modification detection compares size and mtime only.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from mediasync.client.sync.ignore import MediaFilter
from mediasync.client.sync.types import (
    CatalogChange,
    CatalogEntry,
    ChangeKind,
    InvalidFolderError,
    WatchedFolder,
    is_under,
)

logger = logging.getLogger(__name__)


class WatchBackend(Protocol):
    """Per-directory, non-recursive watch primitives."""

    def watch(self, path: str) -> bool:
        """Start watching a directory. Returns False if the watch failed."""
        ...

    def unwatch(self, path: str) -> None:
        """Stop watching a directory."""
        ...


@dataclass
class _Listing:
    """Result of enumerating part of a tree."""

    directories: dict[str, float] = field(default_factory=dict)
    files: dict[str, tuple[int, float]] = field(default_factory=dict)
    unreadable: set[str] = field(default_factory=set)

    def readable(self, path: str) -> bool:
        return not any(is_under(path, d) for d in self.unreadable)


def normalize_folder(path: str | os.PathLike[str]) -> str:
    """Absolute, symlink-free form of a folder path."""
    return str(Path(path).expanduser().resolve())


class FileCatalog:
    """Tracks watched folders and the qualifying files beneath them.

    Every mutating operation returns the CatalogChange list it produced;
    the caller hands those to the transfer queue. Directory changes are
    only surfaced when sync_directories is enabled, and always precede
    the files they contain.

    Usage:
        catalog = FileCatalog(MediaFilter(), watcher)
        for change in catalog.add_folder("~/Pictures"):
            queue.enqueue(change)
    """

    def __init__(
        self,
        file_filter: MediaFilter | None = None,
        watch: WatchBackend | None = None,
        lock: threading.RLock | None = None,
        sync_directories: bool = True,
    ) -> None:
        """Initialize an empty catalog.

        Args:
            file_filter: Extension allow-list and reject-list.
            watch: Watch primitives; None disables watching.
            lock: Lock shared with the transfer queue.
            sync_directories: Surface directory changes.
        """
        self._filter = file_filter or MediaFilter()
        self._watch_backend = watch
        self._lock = lock or threading.RLock()
        self._sync_directories = sync_directories

        self._folders: dict[str, WatchedFolder] = {}
        self._entries: dict[str, CatalogEntry] = {}
        self._failed_watches: set[str] = set()

    @property
    def file_filter(self) -> MediaFilter:
        """Classification rules."""
        return self._filter

    @file_filter.setter
    def file_filter(self, value: MediaFilter) -> None:
        # Takes effect on the next observation; rescan() reconciles existing entries
        with self._lock:
            self._filter = value

    @property
    def sync_directories(self) -> bool:
        """Whether directory changes are surfaced."""
        return self._sync_directories

    @sync_directories.setter
    def sync_directories(self, value: bool) -> None:
        self._sync_directories = value

    @property
    def folders(self) -> list[str]:
        """Watched roots in the order they were added."""
        with self._lock:
            return list(self._folders)

    @property
    def failed_watches(self) -> set[str]:
        """Directories whose watch could not be established."""
        with self._lock:
            return set(self._failed_watches)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._entries

    def get(self, path: str) -> CatalogEntry | None:
        """Entry for a file path, if tracked."""
        with self._lock:
            return self._entries.get(path)

    def entries(self) -> list[CatalogEntry]:
        """Snapshot of every tracked file entry."""
        with self._lock:
            return list(self._entries.values())

    def files(self) -> set[str]:
        """Paths of every tracked file."""
        with self._lock:
            return set(self._entries)

    def folder_for(self, path: str) -> WatchedFolder | None:
        """Watched folder containing a path (the innermost one)."""
        with self._lock:
            matches = [f for f in self._folders.values() if f.contains(path)]
        if not matches:
            return None
        return max(matches, key=lambda f: len(f.path))

    # === Folder management ===

    def add_folder(self, path: str | os.PathLike[str]) -> list[CatalogChange]:
        """Start synchronizing a directory tree.

        Args:
            path: Directory to add.

        Returns:
            NEW changes for the root, its subdirectories and every
            qualifying file. Empty if the folder is already covered.

        Raises:
            InvalidFolderError: If path is not an existing directory.
        """
        root = normalize_folder(path)
        if not os.path.isdir(root):
            raise InvalidFolderError(str(path))

        with self._lock:
            if self._covering_folder(root) is not None:
                logger.debug(f"Folder already watched: {root}")
                return []

        listing = self._walk(root, root, recursive=True)
        mtime = _mtime(root)

        with self._lock:
            if self._covering_folder(root) is not None:
                return []
            # Absorb previously added folders that now lie inside root
            for nested in [f for f in self._folders if is_under(f, root)]:
                logger.info(f"Folder {nested} is now covered by {root}")
                self._drop_folder(nested)

            folder = WatchedFolder(path=root)
            self._folders[root] = folder
            self._watch(root)

            changes: list[CatalogChange] = []
            if self._sync_directories:
                changes.append(
                    CatalogChange(
                        ChangeKind.NEW,
                        CatalogEntry(root, root, 0, mtime, is_directory=True),
                    )
                )
            changes.extend(self._merge(folder, root, listing, recursive=True))

        logger.info(
            f"Added folder {root} ({len(listing.files)} files, "
            f"{len(listing.directories)} subdirectories)"
        )
        return changes

    def remove_folder(self, path: str | os.PathLike[str]) -> list[CatalogEntry]:
        """Stop synchronizing a folder.

        Args:
            path: A root previously passed to add_folder.

        Returns:
            The entries dropped from the catalog. Empty if not watched.
        """
        root = normalize_folder(path)
        with self._lock:
            if root not in self._folders:
                logger.debug(f"Folder not watched: {root}")
                return []
            removed = self._drop_folder(root)
        logger.info(f"Removed folder {root} ({len(removed)} files)")
        return removed

    def _drop_folder(self, root: str) -> list[CatalogEntry]:
        folder = self._folders.pop(root)
        removed = [e for e in self._entries.values() if e.root == root]
        for entry in removed:
            del self._entries[entry.path]
        for directory in reversed(folder.watched_paths):
            self._unwatch(directory)
        self._failed_watches = {
            p for p in self._failed_watches if not is_under(p, root)
        }
        return removed

    def _covering_folder(self, path: str) -> str | None:
        for root in self._folders:
            if is_under(path, root):
                return root
        return None

    # === Observations ===

    def on_filesystem_event(self, path: str) -> list[CatalogChange]:
        """Classify a watch notification for a file or directory.

        A file that no longer exists or no longer passes the filters is
        reported REMOVED. A directory has its immediate children
        re-enumerated; new subdirectories are watched and scanned.

        Args:
            path: Absolute path reported by the watcher.

        Returns:
            The resulting changes (possibly empty).
        """
        path = os.path.abspath(path)
        folder = self.folder_for(path)
        if folder is None:
            return []
        root = folder.path

        if os.path.isdir(path) and not os.path.islink(path):
            if path != root and not self._filter.accepts_directory(Path(path), Path(root)):
                with self._lock:
                    return self._forget_directory(folder, path)
            listing = self._walk(path, root, recursive=False)
            with self._lock:
                if self._folders.get(root) is not folder:
                    return []
                if path != root and path not in folder.subdirectories:
                    if not self._is_known_directory(folder, os.path.dirname(path)):
                        return []
                    changes = self._add_directory(folder, path, _mtime(path))
                    fresh = [path]
                else:
                    known = set(folder.subdirectories)
                    changes = self._merge(folder, path, listing, recursive=False)
                    fresh = [d for d in sorted(listing.directories) if d not in known]
            # Newly seen subdirectories were only listed; scan their contents
            for directory in fresh:
                changes.extend(self._scan_new_subtree(folder, directory))
            return changes

        entry = self._observe_file(path, root)
        with self._lock:
            if self._folders.get(root) is not folder:
                return []
            if path in folder.subdirectories or path == root:
                # The directory itself vanished
                return self._forget_directory(folder, path)
            if entry is None:
                old = self._entries.pop(path, None)
                if old is None:
                    return []
                logger.debug(f"File removed: {path}")
                return [CatalogChange(ChangeKind.REMOVED, old)]
            if not self._is_known_directory(folder, os.path.dirname(path)):
                return []
            return self._record(entry)

    def rescan(self) -> list[CatalogChange]:
        """Walk every watched folder and reconcile the catalog.

        Returns:
            NEW, MODIFIED and REMOVED changes since the last observation.
        """
        with self._lock:
            folders = list(self._folders.values())

        changes: list[CatalogChange] = []
        for folder in folders:
            root = folder.path
            if not os.path.isdir(root):
                logger.warning(f"Watched folder missing: {root}")
                with self._lock:
                    if self._folders.get(root) is folder:
                        changes.extend(self._forget_directory(folder, root))
                continue
            listing = self._walk(root, root, recursive=True)
            with self._lock:
                if self._folders.get(root) is not folder:
                    continue
                if root in self._failed_watches:
                    self._watch(root)
                changes.extend(self._merge(folder, root, listing, recursive=True))
        return changes

    def retry_failed_watches(self) -> int:
        """Try again to watch directories whose watch failed.

        Returns:
            Number of watches recovered.
        """
        with self._lock:
            pending = sorted(self._failed_watches)
            recovered = 0
            for path in pending:
                if not os.path.isdir(path):
                    continue
                self._failed_watches.discard(path)
                self._watch(path)
                if path not in self._failed_watches:
                    recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} directory watches")
        return recovered

    # === Internals (called with the lock held unless noted) ===

    def _walk(self, top: str, root: str, recursive: bool) -> _Listing:
        """Enumerate qualifying entries under top. Runs without the lock."""
        listing = _Listing()
        base = Path(root)
        stack = [top]
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as it:
                    children = list(it)
            except OSError as e:
                logger.warning(f"Cannot list {current}: {e}")
                listing.unreadable.add(current)
                continue
            for child in children:
                try:
                    if child.is_symlink():
                        continue
                    child_path = Path(child.path)
                    if child.is_dir(follow_symlinks=False):
                        if self._filter.accepts_directory(child_path, base):
                            listing.directories[child.path] = child.stat(
                                follow_symlinks=False
                            ).st_mtime
                            if recursive:
                                stack.append(child.path)
                    elif self._filter.accepts_file(child_path, base):
                        st = child.stat(follow_symlinks=False)
                        listing.files[child.path] = (st.st_size, st.st_mtime)
                except OSError as e:
                    logger.debug(f"Skipping {child.path}: {e}")
        return listing

    def _observe_file(self, path: str, root: str) -> CatalogEntry | None:
        """Stat a file, returning None if it is gone or filtered out."""
        if not self._filter.accepts_file(Path(path), Path(root)):
            return None
        try:
            st = os.stat(path)
        except OSError:
            return None
        return CatalogEntry(path, root, st.st_size, st.st_mtime)

    def _record(self, entry: CatalogEntry) -> list[CatalogChange]:
        old = self._entries.get(entry.path)
        self._entries[entry.path] = entry
        if old is None:
            logger.debug(f"New file: {entry.path}")
            return [CatalogChange(ChangeKind.NEW, entry)]
        if entry.differs_from(old):
            logger.debug(f"Modified file: {entry.path}")
            return [CatalogChange(ChangeKind.MODIFIED, entry)]
        return []

    def _merge(
        self,
        folder: WatchedFolder,
        scope: str,
        listing: _Listing,
        recursive: bool,
    ) -> list[CatalogChange]:
        """Fold a listing of scope into the catalog."""
        root = folder.path

        def in_scope(p: str) -> bool:
            if recursive:
                return p != scope and is_under(p, scope)
            return os.path.dirname(p) == scope

        changes: list[CatalogChange] = []
        for directory in sorted(listing.directories):
            if directory not in folder.subdirectories:
                changes.extend(
                    self._add_directory(folder, directory, listing.directories[directory])
                )

        for path in sorted(listing.files):
            size, mtime = listing.files[path]
            changes.extend(self._record(CatalogEntry(path, root, size, mtime)))

        gone_dirs = {
            d
            for d in folder.subdirectories
            if in_scope(d)
            and d not in listing.directories
            and listing.readable(os.path.dirname(d))
        }
        # Descendants of vanished directories vanish with them
        gone_dirs |= {
            d
            for d in folder.subdirectories
            if any(is_under(d, g) for g in gone_dirs)
        }
        gone_files = [
            e
            for e in self._entries.values()
            if e.root == root
            and e.path not in listing.files
            and (
                (in_scope(e.path) and listing.readable(os.path.dirname(e.path)))
                or any(is_under(e.path, g) for g in gone_dirs)
            )
        ]
        changes.extend(self._removed(folder, gone_files, gone_dirs))
        return changes

    def _removed(
        self,
        folder: WatchedFolder,
        files: list[CatalogEntry],
        directories: set[str],
    ) -> list[CatalogChange]:
        """Drop files and directories, children before parents."""
        changes: list[CatalogChange] = []
        for entry in sorted(files, key=lambda e: e.path):
            del self._entries[entry.path]
            changes.append(CatalogChange(ChangeKind.REMOVED, entry))
        for directory in sorted(directories, reverse=True):
            folder.subdirectories.discard(directory)
            self._failed_watches.discard(directory)
            self._unwatch(directory)
            if self._sync_directories:
                entry = CatalogEntry(directory, folder.path, 0, 0.0, is_directory=True)
                changes.append(CatalogChange(ChangeKind.REMOVED, entry))
        if changes:
            logger.debug(f"Removed {len(changes)} paths under {folder.path}")
        return changes

    def _forget_directory(self, folder: WatchedFolder, path: str) -> list[CatalogChange]:
        """Drop a directory that vanished or became filtered out."""
        files = [
            e for e in self._entries.values() if e.root == folder.path and is_under(e.path, path)
        ]
        if path == folder.path:
            # The root stays registered; it is watched again once it reappears
            directories = set(folder.subdirectories)
            changes = self._removed(folder, files, directories)
            self._unwatch(path)
            self._failed_watches.add(path)
            return changes
        directories = {d for d in folder.subdirectories if is_under(d, path)}
        return self._removed(folder, files, directories)

    def _is_known_directory(self, folder: WatchedFolder, path: str) -> bool:
        return path == folder.path or path in folder.subdirectories

    def _add_directory(
        self, folder: WatchedFolder, path: str, mtime: float
    ) -> list[CatalogChange]:
        folder.subdirectories.add(path)
        self._watch(path)
        if not self._sync_directories:
            return []
        entry = CatalogEntry(path, folder.path, 0, mtime, is_directory=True)
        return [CatalogChange(ChangeKind.NEW, entry)]

    def _scan_new_subtree(self, folder: WatchedFolder, directory: str) -> list[CatalogChange]:
        """Walk a freshly discovered subdirectory and add what it holds.

        Called without the lock.
        """
        listing = self._walk(directory, folder.path, recursive=True)
        with self._lock:
            if self._folders.get(folder.path) is not folder:
                return []
            return self._merge(folder, directory, listing, recursive=True)

    def _watch(self, path: str) -> None:
        if self._watch_backend is None:
            return
        if self._watch_backend.watch(path):
            self._failed_watches.discard(path)
        else:
            logger.warning(f"Failed to watch {path}, will retry")
            self._failed_watches.add(path)

    def _unwatch(self, path: str) -> None:
        if self._watch_backend is None:
            return
        self._watch_backend.unwatch(path)


def _mtime(path: str) -> float:
    try:
        return os.stat(path).st_mtime
    except OSError:
        return 0.0
