"""Shared types and dataclasses for the transfer engine.

This module provides:
- TransferStatus, TransferAction: Item lifecycle and the operation it needs
- TransferItem: One file or directory queued for the server
- CatalogEntry, ChangeKind, CatalogChange: Catalog snapshots and classifications
- WatchedFolder: A root under synchronization
- QueueStats, ControllerState: Queue counters and controller lifecycle
- Type aliases for callbacks
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import IntEnum, auto

from mediasync.core.errors import (
    AuthenticationError,
    CancellationError,
    ConnectionFailedError,
    ExhaustedRetriesError,
    InvalidFolderError,
    LocalFileMissingError,
    ProtocolError,
    RequestTimeoutError,
    ResponseParseError,
    SyncError,
    TransportError,
    ValidationError,
)


class TransferStatus(IntEnum):
    """Lifecycle state of a TransferItem.

    Pending -> Syncing -> {Completed | Retrying -> Pending | Failed | FileNotFound}.
    MODIFIED schedules exactly like PENDING.
    """

    PENDING = auto()
    MODIFIED = auto()
    SYNCING = auto()
    RETRYING = auto()
    COMPLETED = auto()
    FAILED = auto()
    FILE_NOT_FOUND = auto()
    CANCELLED = auto()

    @property
    def is_terminal(self) -> bool:
        """Check if the item has left the active queue for good."""
        return self in _TERMINAL

    @property
    def is_eligible(self) -> bool:
        """Check if the item may be dispatched."""
        return self in (TransferStatus.PENDING, TransferStatus.MODIFIED)

    @property
    def label(self) -> str:
        """Human-readable status text."""
        return _LABELS[self]


_TERMINAL = frozenset(
    {
        TransferStatus.COMPLETED,
        TransferStatus.FAILED,
        TransferStatus.FILE_NOT_FOUND,
        TransferStatus.CANCELLED,
    }
)

_LABELS = {
    TransferStatus.PENDING: "Pending",
    TransferStatus.MODIFIED: "Modified",
    TransferStatus.SYNCING: "Syncing",
    TransferStatus.RETRYING: "Retrying",
    TransferStatus.COMPLETED: "Completed",
    TransferStatus.FAILED: "Failed",
    TransferStatus.FILE_NOT_FOUND: "File not found",
    TransferStatus.CANCELLED: "Cancelled",
}


class TransferAction(IntEnum):
    """Network operation an item needs."""

    UPLOAD = auto()
    CREATE_DIRECTORY = auto()
    REMOVE = auto()


@dataclass(frozen=True)
class CatalogEntry:
    """Last-known snapshot of a local path.

    Superseded (never merged) whenever a change is observed.

    Attributes:
        path: Absolute local path
        root: Watched folder this path belongs to
        size: Size in bytes (0 for directories)
        mtime: Modification time as a Unix timestamp
        is_directory: Whether the path is a directory
    """

    path: str
    root: str
    size: int
    mtime: float
    is_directory: bool = False

    @property
    def name(self) -> str:
        """Final path component."""
        return os.path.basename(self.path)

    @property
    def remote_path(self) -> str:
        """Server-side path: root folder name followed by the relative path."""
        root_name = os.path.basename(self.root.rstrip(os.sep)) or self.root
        rel = os.path.relpath(self.path, self.root)
        if rel == ".":
            return root_name
        return f"{root_name}/{rel.replace(os.sep, '/')}"

    def differs_from(self, other: CatalogEntry) -> bool:
        """Check whether size or mtime changed."""
        return self.size != other.size or self.mtime != other.mtime


class ChangeKind(IntEnum):
    """Classification of an observed path."""

    NEW = auto()
    MODIFIED = auto()
    REMOVED = auto()


@dataclass(frozen=True)
class CatalogChange:
    """A classified filesystem observation surfaced by the catalog."""

    kind: ChangeKind
    entry: CatalogEntry

    @property
    def path(self) -> str:
        """Local path of the change."""
        return self.entry.path

    def __repr__(self) -> str:
        """Human-readable representation."""
        return f"CatalogChange({self.kind.name}, path={self.entry.path!r})"


@dataclass
class WatchedFolder:
    """A root directory under active synchronization.

    Attributes:
        path: Absolute root path
        subdirectories: Every discovered descendant directory being watched
    """

    path: str
    subdirectories: set[str] = field(default_factory=set)

    def contains(self, path: str) -> bool:
        """Check if a path is the root or lies under it."""
        return is_under(path, self.path)

    @property
    def watched_paths(self) -> list[str]:
        """Root plus subdirectories, parents first."""
        return [self.path, *sorted(self.subdirectories)]


@dataclass
class TransferItem:
    """One file or directory to move to the server.

    Keyed by local_path; at most one live item per path exists in a queue.

    Attributes:
        local_path: Absolute local path (unique key)
        remote_path: Server-side path
        name: Display name
        size: Size in bytes
        mtime: Last-modified timestamp
        is_directory: Directory items are created remotely, never uploaded
        root: Watched folder owning the item
        action: Network operation needed
        status: Lifecycle state
        retry_count: Retries consumed so far
        progress: Percent complete (0-100)
        error: Last error, if any
        stale: Local file changed while a transfer was in flight
    """

    local_path: str
    remote_path: str
    name: str
    size: int
    mtime: float
    is_directory: bool = False
    root: str = ""
    action: TransferAction = TransferAction.UPLOAD
    status: TransferStatus = TransferStatus.PENDING
    retry_count: int = 0
    progress: int = 0
    error: BaseException | None = None
    stale: bool = False

    @classmethod
    def from_entry(
        cls,
        entry: CatalogEntry,
        action: TransferAction | None = None,
    ) -> TransferItem:
        """Create an item from a catalog snapshot.

        Args:
            entry: The catalog entry
            action: Override the operation (defaults by entry type)

        Returns:
            A new pending TransferItem
        """
        if action is None:
            action = (
                TransferAction.CREATE_DIRECTORY
                if entry.is_directory
                else TransferAction.UPLOAD
            )
        return cls(
            local_path=entry.path,
            remote_path=entry.remote_path,
            name=entry.name,
            size=entry.size,
            mtime=entry.mtime,
            is_directory=entry.is_directory,
            root=entry.root,
            action=action,
        )

    def status_text(self, max_retries: int) -> str:
        """Status string shown to observers.

        Args:
            max_retries: Retry cap, used for "Retrying... (n/max)"
        """
        if self.status == TransferStatus.RETRYING:
            return f"Retrying... ({self.retry_count}/{max_retries})"
        if self.status == TransferStatus.SYNCING and self.action == TransferAction.UPLOAD:
            return f"Uploading... {self.progress}%"
        return self.status.label

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"TransferItem({self.action.name}, path={self.local_path!r}, "
            f"status={self.status.name})"
        )


@dataclass
class QueueStats:
    """Counters for a TransferQueue."""

    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    not_found: int = 0
    retries: int = 0
    cancelled: int = 0


class ControllerState(IntEnum):
    """State of the sync controller."""

    STOPPED = auto()
    RUNNING = auto()


def is_under(path: str, root: str) -> bool:
    """Check if path equals root or lies beneath it (component-wise).

    "/media/photos2" is not under "/media/photos".
    """
    root = root.rstrip(os.sep) or os.sep
    if path == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return path.startswith(prefix)


# Type aliases for observer callbacks
ProgressCallback = Callable[[int], None]
ItemCallback = Callable[[TransferItem], None]
ErrorCallback = Callable[[SyncError], None]
DrainedCallback = Callable[[], None]


__all__ = [
    "AuthenticationError",
    "CancellationError",
    "CatalogChange",
    "CatalogEntry",
    "ChangeKind",
    "ConnectionFailedError",
    "ControllerState",
    "DrainedCallback",
    "ErrorCallback",
    "ExhaustedRetriesError",
    "InvalidFolderError",
    "ItemCallback",
    "LocalFileMissingError",
    "ProgressCallback",
    "ProtocolError",
    "QueueStats",
    "RequestTimeoutError",
    "ResponseParseError",
    "SyncError",
    "TransferAction",
    "TransferItem",
    "TransferStatus",
    "TransportError",
    "ValidationError",
    "WatchedFolder",
    "is_under",
]
