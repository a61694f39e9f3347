"""Key/value settings store.

This module provides:
- SettingsStore: the protocol the engine reads at startup and writes on change
- JsonSettingsStore: a JSON file backed implementation with change subscription

The engine never reaches for a global settings object; a store is passed
in explicitly and observers are notified of every change.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

SettingsListener = Callable[[str, Any], None]


class SettingsStore(Protocol):
    """Key/value store the engine reads from and writes to."""

    def get(self, key: str, default: Any = None) -> Any:
        """Read a value, or default when unset."""
        ...

    def set(self, key: str, value: Any) -> None:
        """Write a value and notify subscribers."""
        ...

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe function."""
        ...


class JsonSettingsStore:
    """Settings persisted as a flat JSON object.

    Every set() rewrites the file. A store without a path keeps values in
    memory only.
    """

    def __init__(self, path: Path | None = None) -> None:
        """Initialize the store and load existing values.

        Args:
            path: JSON file location, or None for an in-memory store.
        """
        self._path = path
        self._lock = threading.RLock()
        self._values: dict[str, Any] = {}
        self._listeners: list[SettingsListener] = []
        self._load()

    @property
    def path(self) -> Path | None:
        """Backing file, if any."""
        return self._path

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable settings file {self._path}: {e}")
            return
        if isinstance(data, dict):
            self._values = data
        else:
            logger.warning(f"Ignoring settings file {self._path}: not a JSON object")

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._values, indent=2), encoding="utf-8")
        os.replace(tmp, self._path)

    def get(self, key: str, default: Any = None) -> Any:
        """Read a value, or default when unset."""
        with self._lock:
            return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Write a value, persist it and notify subscribers.

        Setting a key to its current value is a no-op.
        """
        with self._lock:
            if key in self._values and self._values[key] == value:
                return
            self._values[key] = value
            self._save()
            listeners = list(self._listeners)
        self._notify(listeners, key, value)

    def remove(self, key: str) -> None:
        """Delete a key and notify subscribers with None."""
        with self._lock:
            if key not in self._values:
                return
            del self._values[key]
            self._save()
            listeners = list(self._listeners)
        self._notify(listeners, key, None)

    def as_dict(self) -> dict[str, Any]:
        """Copy of every stored value."""
        with self._lock:
            return dict(self._values)

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        """Register a change listener.

        Returns:
            Function removing the listener again.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    @staticmethod
    def _notify(listeners: list[SettingsListener], key: str, value: Any) -> None:
        for listener in listeners:
            try:
                listener(key, value)
            except Exception:
                logger.exception(f"Settings listener failed for {key}")
