"""Transfer engine for media uploads.

Architecture:
    DirectoryWatcher → FileCatalog → TransferQueue → TransportClient
                            ↑              ↑
                            └── SyncController (timer, folders, settings)

Components:
- **FileCatalog**: Known files and their size/mtime; classifies observations
  into new/modified/removed
- **TransferQueue**: Path-deduplicated work queue with a concurrency cap,
  linear-backoff retries and progress reporting
- **SyncController**: Start/stop lifecycle, periodic and forced cycles,
  folder add/remove, reaction to settings changes
- **DirectoryWatcher**: Per-directory watchdog watches with debouncing
- **MediaFilter**: Extension allow-list and glob reject-list
"""

from mediasync.client.sync.catalog import FileCatalog, WatchBackend, normalize_folder
from mediasync.client.sync.controller import SyncController
from mediasync.client.sync.ignore import MediaFilter
from mediasync.client.sync.queue import TransferBackend, TransferQueue
from mediasync.client.sync.retry import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BASE_DELAY,
    ScheduledTask,
    Scheduler,
    TimerScheduler,
    backoff_delay,
)
from mediasync.client.sync.types import (
    AuthenticationError,
    CancellationError,
    CatalogChange,
    CatalogEntry,
    ChangeKind,
    ConnectionFailedError,
    ControllerState,
    ExhaustedRetriesError,
    InvalidFolderError,
    LocalFileMissingError,
    ProtocolError,
    QueueStats,
    RequestTimeoutError,
    ResponseParseError,
    SyncError,
    TransferAction,
    TransferItem,
    TransferStatus,
    TransportError,
    ValidationError,
    WatchedFolder,
)
from mediasync.client.sync.watcher import DebouncedEventHandler, DirectoryWatcher

__all__ = [
    # Retry
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_RETRY_BASE_DELAY",
    "ScheduledTask",
    "Scheduler",
    "TimerScheduler",
    "backoff_delay",
    # Types
    "CatalogChange",
    "CatalogEntry",
    "ChangeKind",
    "ControllerState",
    "QueueStats",
    "TransferAction",
    "TransferItem",
    "TransferStatus",
    "WatchedFolder",
    # Errors
    "AuthenticationError",
    "CancellationError",
    "ConnectionFailedError",
    "ExhaustedRetriesError",
    "InvalidFolderError",
    "LocalFileMissingError",
    "ProtocolError",
    "RequestTimeoutError",
    "ResponseParseError",
    "SyncError",
    "TransportError",
    "ValidationError",
    # Components
    "FileCatalog",
    "MediaFilter",
    "SyncController",
    "TransferBackend",
    "TransferQueue",
    "WatchBackend",
    "normalize_folder",
    # Watcher
    "DebouncedEventHandler",
    "DirectoryWatcher",
]
