"""Transfer queue with bounded dispatch and retry.

This module provides:
- TransferQueue: Ordered, path-deduplicated work queue driving the
  transport, with linear-backoff retries and progress reporting
- TransferBackend: The transport capability the queue dispatches to

Item lifecycle:
    PENDING/MODIFIED -> SYNCING -> COMPLETED
                                -> RETRYING -> PENDING (after backoff)
                                -> FAILED (retries exhausted or not retryable)
                                -> FILE_NOT_FOUND
    any live state -> CANCELLED (withdrawn by the caller)

The queue never polls. Dispatch happens from process(), from network
completions and from retry timers; all of them funnel through one lock.
Items remain listed until every item of the current cycle is terminal;
the drained callback then fires once and the finished items are purged.

Observer callbacks run with the queue lock held. They may call back into
the queue but must not block on another thread that uses it.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import threading
from typing import TYPE_CHECKING, Any, Protocol

from mediasync.client.sync.retry import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BASE_DELAY,
    ScheduledTask,
    Scheduler,
    TimerScheduler,
    backoff_delay,
)
from mediasync.client.sync.types import (
    CancellationError,
    CatalogEntry,
    DrainedCallback,
    ErrorCallback,
    ExhaustedRetriesError,
    ItemCallback,
    LocalFileMissingError,
    ProgressCallback,
    QueueStats,
    SyncError,
    TransferAction,
    TransferItem,
    TransferStatus,
    TransportError,
    is_under,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from mediasync.client.api import OutstandingRequest, TransferOutcome

logger = logging.getLogger(__name__)


class TransferBackend(Protocol):
    """Asynchronous transport used by the queue.

    Each call returns immediately with a tracked request and later
    invokes on_complete exactly once, unless the request is aborted.
    """

    def upload_file(
        self,
        local_path: str,
        *,
        file_name: str | None = None,
        item_path: str | None = None,
        retry_count: int = 0,
        on_complete: Callable[[OutstandingRequest, TransferOutcome], None] | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> OutstandingRequest:
        """Upload file bytes with metadata."""
        ...

    def create_directory(
        self,
        name: str,
        path: str,
        *,
        item_path: str | None = None,
        retry_count: int = 0,
        on_complete: Callable[[OutstandingRequest, TransferOutcome], None] | None = None,
    ) -> OutstandingRequest:
        """Create or verify a remote directory."""
        ...

    def remove(
        self,
        path: str,
        *,
        item_path: str | None = None,
        retry_count: int = 0,
        on_complete: Callable[[OutstandingRequest, TransferOutcome], None] | None = None,
    ) -> OutstandingRequest:
        """Remove a remote path."""
        ...

    def abort(self, request: OutstandingRequest) -> bool:
        """Abort a request without invoking its completion callback."""
        ...


class _Attempt:
    """One dispatch of one item. Completions for stale attempts are ignored."""

    __slots__ = ("item", "request")

    def __init__(self, item: TransferItem) -> None:
        self.item = item
        self.request: OutstandingRequest | None = None


class TransferQueue:
    """Ordered work queue of TransferItems keyed by local path.

    Usage:
        queue = TransferQueue(transport, max_concurrent=1)
        queue.set_on_progress(lambda pct: print(f"{pct}%"))
        for change in catalog.add_folder(path):
            queue.enqueue(change.entry)
        queue.process()
    """

    def __init__(
        self,
        transport: TransferBackend,
        scheduler: Scheduler | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        max_concurrent: int = 1,
        lock: threading.RLock | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            transport: Where requests are sent.
            scheduler: Runs retry timers (defaults to a TimerScheduler).
            max_retries: Retries per item before it is marked FAILED.
            retry_base_delay: Linear backoff unit in seconds.
            max_concurrent: Cap on simultaneously SYNCING items.
            lock: Lock shared with the file catalog.
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._transport = transport
        self._scheduler: Scheduler = scheduler or TimerScheduler()
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._max_concurrent = max_concurrent
        self._lock = lock or threading.RLock()

        # Insertion-ordered: dispatch order is queue order
        self._items: dict[str, TransferItem] = {}
        self._inflight: dict[str, _Attempt] = {}
        self._retry_tasks: dict[str, ScheduledTask] = {}

        self._paused = False
        self._closed = False
        self._pumping = False
        self._last_progress: int | None = None
        self._stats = QueueStats()

        self._on_progress: ProgressCallback | None = None
        self._on_item_status: ItemCallback | None = None
        self._on_error: ErrorCallback | None = None
        self._on_drained: DrainedCallback | None = None

    # === Configuration ===

    @property
    def max_retries(self) -> int:
        """Retries per item."""
        return self._max_retries

    @property
    def max_concurrent(self) -> int:
        """Cap on simultaneously SYNCING items."""
        return self._max_concurrent

    def set_max_retries(self, value: int) -> None:
        """Change the retry cap for subsequent failures."""
        with self._lock:
            self._max_retries = value

    def set_retry_base_delay(self, value: float) -> None:
        """Change the backoff unit for subsequently scheduled retries."""
        with self._lock:
            self._retry_base_delay = value

    def set_max_concurrent(self, value: int) -> None:
        """Change the concurrency cap. Raising it dispatches immediately."""
        if value < 1:
            raise ValueError("max_concurrent must be at least 1")
        with self._lock:
            self._max_concurrent = value
            if self._items:
                self._pump()

    def set_on_progress(self, callback: ProgressCallback | None) -> None:
        """Set callback for aggregate progress (0-100)."""
        self._on_progress = callback

    def set_on_item_status(self, callback: ItemCallback | None) -> None:
        """Set callback receiving a snapshot of each item that changed."""
        self._on_item_status = callback

    def set_on_error(self, callback: ErrorCallback | None) -> None:
        """Set callback for queue-level errors (exhausted retries and the like)."""
        self._on_error = callback

    def set_on_drained(self, callback: DrainedCallback | None) -> None:
        """Set callback fired once each time every item is terminal."""
        self._on_drained = callback

    # === State ===

    @property
    def stats(self) -> QueueStats:
        """Copy of the queue counters."""
        with self._lock:
            return dataclasses.replace(self._stats)

    @property
    def paused(self) -> bool:
        """Check if dispatch is paused."""
        return self._paused

    @property
    def progress(self) -> int:
        """Aggregate progress of the current cycle (100 when empty)."""
        with self._lock:
            return self._aggregate()

    @property
    def is_idle(self) -> bool:
        """Check if nothing is waiting, running or scheduled for retry."""
        with self._lock:
            return not self._inflight and all(
                item.status.is_terminal for item in self._items.values()
            )

    def __len__(self) -> int:
        """Number of items not yet terminal."""
        with self._lock:
            return sum(1 for item in self._items.values() if not item.status.is_terminal)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._items

    def get(self, path: str) -> TransferItem | None:
        """Snapshot of the item for a path."""
        with self._lock:
            item = self._items.get(path)
            return dataclasses.replace(item) if item else None

    def items(self) -> list[TransferItem]:
        """Snapshot of every item in the current cycle, in queue order."""
        with self._lock:
            return [dataclasses.replace(item) for item in self._items.values()]

    def status_text(self, path: str) -> str | None:
        """Human-readable status of the item for a path."""
        with self._lock:
            item = self._items.get(path)
            return item.status_text(self._max_retries) if item else None

    # === Mutation ===

    def enqueue(
        self,
        entry: CatalogEntry,
        action: TransferAction | None = None,
    ) -> TransferItem | None:
        """Add an entry, or update the live item for its path in place.

        Dispatch starts with process(), or on the next completion if the
        queue is already running.

        Args:
            entry: Catalog snapshot of the path.
            action: Override the operation (defaults by entry type).

        Returns:
            Snapshot of the resulting item, or None if the queue is shut down.
        """
        with self._lock:
            if self._closed:
                logger.debug(f"Queue shut down, ignoring {entry.path}")
                return None

            item = self._items.get(entry.path)
            if item is None:
                item = TransferItem.from_entry(entry, action)
                self._items[entry.path] = item
                logger.debug(f"Queued {item}")
            elif not self._update(item, entry, action):
                return dataclasses.replace(item)

            self._notify_item(item)
            self._emit_progress()
            return dataclasses.replace(item)

    def enqueue_all(self, entries: Iterable[CatalogEntry]) -> int:
        """Enqueue several entries, then start dispatching.

        Returns:
            Number of entries accepted.
        """
        with self._lock:
            count = sum(1 for entry in entries if self.enqueue(entry) is not None)
            self.process()
            return count

    def _update(
        self,
        item: TransferItem,
        entry: CatalogEntry,
        action: TransferAction | None,
    ) -> bool:
        fresh = TransferItem.from_entry(entry, action)
        changed = (
            fresh.action != item.action
            or fresh.size != item.size
            or fresh.mtime != item.mtime
        )
        item.remote_path = fresh.remote_path
        item.name = fresh.name
        item.size = fresh.size
        item.mtime = fresh.mtime
        item.is_directory = fresh.is_directory
        item.root = fresh.root
        item.action = fresh.action
        if not changed:
            return False

        if item.status == TransferStatus.SYNCING:
            # The transfer in flight carries the old content
            item.stale = True
            logger.debug(f"Modified while syncing: {item.local_path}")
            return True
        if item.status == TransferStatus.RETRYING:
            self._cancel_retry(item.local_path)
        self._requeue_modified(item)
        return True

    def _requeue_modified(self, item: TransferItem) -> None:
        item.status = TransferStatus.MODIFIED
        item.retry_count = 0
        item.progress = 0
        item.error = None
        item.stale = False
        logger.debug(f"Re-queued {item.local_path}")

    def withdraw(self, path: str) -> bool:
        """Remove the item for a path, aborting its transfer.

        Nothing is reported for the aborted request.

        Returns:
            True if an item was removed.
        """
        with self._lock:
            removed = self._withdraw(path)
            if removed:
                self._emit_progress()
                self._pump()
            return removed

    def withdraw_under(self, root: str) -> int:
        """Remove every item at or below root, aborting their transfers.

        Returns:
            Number of items removed.
        """
        with self._lock:
            paths = [p for p in self._items if is_under(p, root)]
            count = sum(1 for p in paths if self._withdraw(p))
            if count:
                logger.info(f"Withdrew {count} items under {root}")
                self._emit_progress()
                self._pump()
            return count

    def _withdraw(self, path: str) -> bool:
        item = self._items.get(path)
        if item is None:
            return False
        self._abort_inflight(path)
        self._cancel_retry(path)
        del self._items[path]
        if not item.status.is_terminal:
            item.status = TransferStatus.CANCELLED
            self._stats.cancelled += 1
            self._notify_item(item)
        logger.debug(f"Withdrew {path}")
        return True

    def process(self) -> None:
        """Dispatch eligible items up to the concurrency cap."""
        with self._lock:
            if self._closed:
                return
            self._emit_progress()
            self._pump()

    def pause(self) -> None:
        """Stop dispatching; transfers in flight are aborted and re-queued."""
        with self._lock:
            if self._paused:
                return
            self._paused = True
            aborted = self._revert_inflight()
            logger.info(f"Queue paused ({aborted} transfers re-queued)")

    def resume(self) -> None:
        """Resume dispatching."""
        with self._lock:
            if not self._paused:
                return
            self._paused = False
            logger.info("Queue resumed")
            self._pump()

    def stop_in_flight(self) -> int:
        """Abort running transfers and pending retries; items return to PENDING.

        Returns:
            Number of transfers aborted.
        """
        with self._lock:
            aborted = self._revert_inflight()
            for path in list(self._retry_tasks):
                self._cancel_retry(path)
                item = self._items.get(path)
                if item is not None and item.status == TransferStatus.RETRYING:
                    item.status = TransferStatus.PENDING
                    self._notify_item(item)
            return aborted

    def shutdown(self) -> None:
        """Abort everything and detach observers. The queue accepts nothing after."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.stop_in_flight()
            self._on_progress = None
            self._on_item_status = None
            self._on_error = None
            self._on_drained = None
        logger.debug("Queue shut down")

    # === Dispatch ===

    def _pump(self) -> None:
        if self._pumping:
            # The outer loop re-evaluates after the current dispatch
            return
        self._pumping = True
        try:
            while (
                not self._paused
                and not self._closed
                and len(self._inflight) < self._max_concurrent
            ):
                item = self._next_eligible()
                if item is None:
                    break
                self._dispatch(item)
        finally:
            self._pumping = False
        self._check_drained()

    def _next_eligible(self) -> TransferItem | None:
        for path, item in self._items.items():
            if item.status.is_eligible and path not in self._inflight:
                return item
        return None

    def _dispatch(self, item: TransferItem) -> None:
        path = item.local_path
        if not self._local_exists(item):
            item.status = TransferStatus.FILE_NOT_FOUND
            item.error = LocalFileMissingError(path)
            self._stats.not_found += 1
            logger.warning(f"File not found at dispatch: {path}")
            self._notify_item(item)
            self._emit_progress()
            return

        item.status = TransferStatus.SYNCING
        item.stale = False
        self._stats.dispatched += 1
        attempt = _Attempt(item)
        self._inflight[path] = attempt
        self._notify_item(item)
        self._emit_progress()

        def on_complete(request: OutstandingRequest, outcome: TransferOutcome) -> None:
            self._on_complete(attempt, outcome)

        def on_progress(sent: int, total: int) -> None:
            self._on_bytes(attempt, sent, total)

        logger.debug(f"Dispatching {item} (retry {item.retry_count})")
        try:
            if item.action == TransferAction.UPLOAD:
                request = self._transport.upload_file(
                    path,
                    file_name=item.name,
                    item_path=path,
                    retry_count=item.retry_count,
                    on_complete=on_complete,
                    on_progress=on_progress,
                )
            elif item.action == TransferAction.CREATE_DIRECTORY:
                request = self._transport.create_directory(
                    item.name,
                    item.remote_path,
                    item_path=path,
                    retry_count=item.retry_count,
                    on_complete=on_complete,
                )
            else:
                request = self._transport.remove(
                    item.remote_path,
                    item_path=path,
                    retry_count=item.retry_count,
                    on_complete=on_complete,
                )
        except SyncError as e:
            self._complete_failed(attempt, e)
            return
        except Exception as e:
            logger.exception(f"Transport refused {path}")
            self._complete_failed(attempt, TransportError(str(e)))
            return

        if self._inflight.get(path) is attempt:
            attempt.request = request

    @staticmethod
    def _local_exists(item: TransferItem) -> bool:
        if item.action == TransferAction.REMOVE:
            return True
        if item.action == TransferAction.CREATE_DIRECTORY:
            return os.path.isdir(item.local_path)
        return os.path.isfile(item.local_path)

    def _complete_failed(self, attempt: _Attempt, error: SyncError) -> None:
        if self._inflight.get(attempt.item.local_path) is attempt:
            del self._inflight[attempt.item.local_path]
            self._handle_failure(attempt.item, error)

    # === Completion ===

    def _on_bytes(self, attempt: _Attempt, sent: int, total: int) -> None:
        with self._lock:
            if self._inflight.get(attempt.item.local_path) is not attempt:
                return
            item = attempt.item
            percent = min(100, sent * 100 // total) if total > 0 else 0
            if percent > item.progress:
                item.progress = percent
                self._notify_item(item)
                self._emit_progress()

    def _on_complete(self, attempt: _Attempt, outcome: TransferOutcome) -> None:
        with self._lock:
            path = attempt.item.local_path
            if self._closed or self._inflight.get(path) is not attempt:
                return
            del self._inflight[path]
            item = attempt.item

            if outcome.error is None:
                self._handle_success(item)
            elif isinstance(outcome.error, CancellationError):
                # Cancelled from outside the queue; send it again
                item.status = TransferStatus.PENDING
                self._notify_item(item)
            else:
                self._handle_failure(item, outcome.error)
            self._pump()

    def _handle_success(self, item: TransferItem) -> None:
        if item.stale:
            self._requeue_modified(item)
            self._notify_item(item)
            self._emit_progress()
            return
        item.status = TransferStatus.COMPLETED
        item.progress = 100
        item.retry_count = 0
        item.error = None
        self._stats.completed += 1
        logger.info(f"Transfer completed: {item.remote_path}")
        self._notify_item(item)
        self._emit_progress()

    def _handle_failure(self, item: TransferItem, error: SyncError) -> None:
        item.error = error

        if isinstance(error, LocalFileMissingError):
            item.status = TransferStatus.FILE_NOT_FOUND
            self._stats.not_found += 1
            logger.warning(f"File not found: {item.local_path}")
        elif not isinstance(error, TransportError):
            item.status = TransferStatus.FAILED
            self._stats.failed += 1
            logger.error(f"Transfer failed: {item.local_path}: {error}")
            self._notify_item(item)
            self._emit_progress()
            self._emit_error(error)
            return
        elif item.retry_count < self._max_retries:
            item.retry_count += 1
            item.status = TransferStatus.RETRYING
            self._stats.retries += 1
            delay = backoff_delay(item.retry_count, self._retry_base_delay)
            logger.warning(
                f"Retrying {item.local_path} in {delay:.1f}s "
                f"({item.retry_count}/{self._max_retries}): {error}"
            )
            self._schedule_retry(item, delay)
        else:
            exhausted = ExhaustedRetriesError(item.local_path, item.retry_count + 1, error)
            item.status = TransferStatus.FAILED
            item.error = exhausted
            item.retry_count = 0
            self._stats.failed += 1
            logger.error(str(exhausted))
            self._notify_item(item)
            self._emit_progress()
            self._emit_error(exhausted)
            return

        self._notify_item(item)
        self._emit_progress()

    def _schedule_retry(self, item: TransferItem, delay: float) -> None:
        path = item.local_path

        def due() -> None:
            self._retry_due(item)

        try:
            self._retry_tasks[path] = self._scheduler.call_later(delay, due)
        except RuntimeError:
            logger.debug(f"Scheduler unavailable, retry of {path} dropped")

    def _retry_due(self, item: TransferItem) -> None:
        with self._lock:
            path = item.local_path
            if self._closed or self._items.get(path) is not item:
                return
            if self._retry_tasks.pop(path, None) is None:
                return
            if item.status != TransferStatus.RETRYING:
                return
            item.status = TransferStatus.PENDING
            self._notify_item(item)
            self._pump()

    def _cancel_retry(self, path: str) -> None:
        task = self._retry_tasks.pop(path, None)
        if task is not None:
            task.cancel()

    def _abort_inflight(self, path: str) -> None:
        attempt = self._inflight.pop(path, None)
        if attempt is not None and attempt.request is not None:
            self._transport.abort(attempt.request)

    def _revert_inflight(self) -> int:
        paths = list(self._inflight)
        for path in paths:
            attempt = self._inflight[path]
            self._abort_inflight(path)
            item = attempt.item
            if self._items.get(path) is item and item.status == TransferStatus.SYNCING:
                item.status = TransferStatus.PENDING
                self._notify_item(item)
        if paths:
            self._emit_progress()
        return len(paths)

    def _check_drained(self) -> None:
        if not self._items or self._inflight:
            return
        if not all(item.status.is_terminal for item in self._items.values()):
            return
        self._emit_progress()
        completed = sum(1 for i in self._items.values() if i.status == TransferStatus.COMPLETED)
        logger.info(f"Queue drained ({len(self._items)} items: {completed} completed)")
        # Purge before notifying so the observer sees an empty cycle
        self._items.clear()
        self._last_progress = None
        self._call(self._on_drained)

    # === Observers ===

    def _aggregate(self) -> int:
        if not self._items:
            return 100
        total = sum(
            100 if item.status.is_terminal else item.progress
            for item in self._items.values()
        )
        return total // len(self._items)

    def _emit_progress(self) -> None:
        if not self._items:
            return
        value = self._aggregate()
        if value == self._last_progress:
            return
        self._last_progress = value
        self._call(self._on_progress, value)

    def _notify_item(self, item: TransferItem) -> None:
        if self._on_item_status is not None:
            self._call(self._on_item_status, dataclasses.replace(item))

    def _emit_error(self, error: SyncError) -> None:
        self._call(self._on_error, error)

    @staticmethod
    def _call(callback: Callable[..., None] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Queue observer failed")
