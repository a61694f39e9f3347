"""File classification for synchronization.

This module provides:
- MediaFilter: Extension allow-list plus glob reject-list matching

Classification is a pure function of the two lists and the current stat
of the path; the filter keeps no other state.
"""

from __future__ import annotations

import fnmatch
from pathlib import Path

from mediasync.core.config import DEFAULT_IGNORED_PATTERNS, DEFAULT_MEDIA_EXTENSIONS


def normalize_extension(ext: str) -> str:
    """Lowercase an extension and make sure it starts with a dot."""
    ext = ext.strip().lower()
    if ext and not ext.startswith("."):
        ext = "." + ext
    return ext


class MediaFilter:
    """Decides which files and directories take part in synchronization."""

    def __init__(
        self,
        extensions: list[str] | None = None,
        ignored_patterns: list[str] | None = None,
    ) -> None:
        """Initialize with an allow-list and a reject-list.

        Args:
            extensions: Media extensions to accept (".jpg" or "jpg").
            ignored_patterns: Glob patterns to reject (e.g. "*.tmp").
        """
        if extensions is None:
            extensions = DEFAULT_MEDIA_EXTENSIONS
        if ignored_patterns is None:
            ignored_patterns = DEFAULT_IGNORED_PATTERNS
        self._extensions = {normalize_extension(e) for e in extensions if e.strip()}
        self._patterns = list(ignored_patterns)

    @property
    def extensions(self) -> frozenset[str]:
        """Accepted extensions, normalized."""
        return frozenset(self._extensions)

    @property
    def patterns(self) -> list[str]:
        """Reject patterns."""
        return list(self._patterns)

    def add_pattern(self, pattern: str) -> None:
        """Add a reject pattern."""
        self._patterns.append(pattern)

    def is_ignored(self, path: Path, base_path: Path) -> bool:
        """Check if a path matches the reject-list.

        Args:
            path: Absolute path to check.
            base_path: Watched root the path belongs to.

        Returns:
            True if the path should be ignored.
        """
        # Symlinks are never followed
        if path.is_symlink():
            return True

        try:
            rel_str = str(path.relative_to(base_path)).replace("\\", "/")
        except ValueError:
            rel_str = path.name

        for pattern in self._patterns:
            if pattern.endswith("/"):
                pattern = pattern[:-1]
                if path.is_dir() and fnmatch.fnmatch(path.name, pattern):
                    return True
                if any(fnmatch.fnmatch(part, pattern) for part in rel_str.split("/")[:-1]):
                    return True
            elif "**" in pattern or "/" in pattern:
                if fnmatch.fnmatch(rel_str, pattern):
                    return True
            elif fnmatch.fnmatch(path.name, pattern):
                return True

        return False

    def has_media_extension(self, path: Path) -> bool:
        """Check the extension against the allow-list."""
        return path.suffix.lower() in self._extensions

    def accepts_file(self, path: Path, base_path: Path) -> bool:
        """Check if an existing regular file qualifies for upload.

        Args:
            path: Absolute file path.
            base_path: Watched root the file belongs to.

        Returns:
            True if the file exists, has a media extension and is not ignored.
        """
        if not path.is_file():
            return False
        if not self.has_media_extension(path):
            return False
        return not self.is_ignored(path, base_path)

    def accepts_directory(self, path: Path, base_path: Path) -> bool:
        """Check if an existing directory should be watched and scanned."""
        if not path.is_dir():
            return False
        if path == base_path:
            return True
        return not self.is_ignored(path, base_path)
