"""Retry timing and scheduled tasks.

This module provides:
- backoff_delay: Linear backoff (base * retry_count)
- Scheduler / ScheduledTask: The scheduled-task abstraction used for
  retry timers and the periodic sync tick
- TimerScheduler: threading.Timer based implementation
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 2.0  # seconds


def backoff_delay(retry_count: int, base_delay: float = DEFAULT_RETRY_BASE_DELAY) -> float:
    """Delay before the next attempt of an item.

    Linear, not exponential: the n-th retry waits n * base_delay.

    Args:
        retry_count: Retries consumed so far, including the one being scheduled.
        base_delay: Delay unit in seconds.

    Returns:
        Delay in seconds.
    """
    if retry_count < 1:
        return 0.0
    return base_delay * retry_count


class ScheduledTask(Protocol):
    """Handle on a pending callback."""

    def cancel(self) -> None:
        """Prevent the callback from running if it has not started."""
        ...


class Scheduler(Protocol):
    """Runs callbacks after a delay."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        """Schedule callback to run once after delay seconds."""
        ...

    def cancel_all(self) -> None:
        """Cancel every pending callback."""
        ...


class _TimerTask:
    """A ScheduledTask backed by a daemon threading.Timer."""

    def __init__(
        self,
        scheduler: TimerScheduler,
        delay: float,
        callback: Callable[[], None],
    ) -> None:
        self._scheduler = scheduler
        self._callback = callback
        self._timer = threading.Timer(delay, self._run)
        self._timer.daemon = True

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        self._timer.cancel()
        self._scheduler._discard(self)

    def _run(self) -> None:
        self._scheduler._discard(self)
        try:
            self._callback()
        except Exception:
            logger.exception("Scheduled callback failed")


class TimerScheduler:
    """Scheduler running each callback on its own daemon timer thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: set[_TimerTask] = set()
        self._closed = False

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledTask:
        """Schedule callback to run once after delay seconds.

        Raises:
            RuntimeError: If the scheduler has been shut down.
        """
        task = _TimerTask(self, max(delay, 0.0), callback)
        with self._lock:
            if self._closed:
                raise RuntimeError("Scheduler is shut down")
            self._tasks.add(task)
        task.start()
        return task

    def cancel_all(self) -> None:
        """Cancel every pending callback."""
        with self._lock:
            tasks = list(self._tasks)
            self._tasks.clear()
        for task in tasks:
            task.cancel()

    def shutdown(self) -> None:
        """Cancel everything and refuse new callbacks."""
        with self._lock:
            self._closed = True
        self.cancel_all()

    @property
    def pending(self) -> int:
        """Number of callbacks not yet run or cancelled."""
        with self._lock:
            return len(self._tasks)

    def _discard(self, task: _TimerTask) -> None:
        with self._lock:
            self._tasks.discard(task)
