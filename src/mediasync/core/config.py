"""Shared configuration classes for mediasync.

This module defines:
- ServerConfig: connection settings used by the transport
- SyncConfig: every tunable of the transfer engine, read from a settings store
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from mediasync.core.errors import ValidationError

if TYPE_CHECKING:
    from mediasync.client.settings import SettingsStore

DEFAULT_SERVER_URL = "http://localhost:3000"
DEFAULT_SYNC_INTERVAL = 300.0  # 5 minutes
DEFAULT_NETWORK_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 2.0
DEFAULT_MAX_CONCURRENT_UPLOADS = 1
DEFAULT_CHUNK_SIZE = 1024 * 1024

DEFAULT_MEDIA_EXTENSIONS = [
    ".mp4", ".avi", ".mov", ".mkv", ".mp3", ".wav", ".flac",
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".tiff", ".webp",
]

DEFAULT_IGNORED_PATTERNS = [
    "*.tmp",
    "*.temp",
    "*.cache",
    "*.log",
    "Thumbs.db",
    ".DS_Store",
]


def validate_server_url(url: str) -> str:
    """Check that a server URL is an absolute http(s) URL.

    Args:
        url: The URL to validate.

    Returns:
        The URL without trailing slash.

    Raises:
        ValidationError: If the URL is malformed.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Malformed server URL: {url!r}")
    return url.rstrip("/")


@dataclass
class ServerConfig:
    """Configuration for connecting to the media server.

    Attributes:
        server_url: Base URL of the server (e.g., "https://media.example.com").
        token: Bearer token, or None when not logged in.
        timeout: Request deadline in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str = DEFAULT_SERVER_URL
    token: str | None = None
    timeout: float = DEFAULT_NETWORK_TIMEOUT
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize and validate server URL."""
        self.server_url = validate_server_url(self.server_url)
        if self.timeout <= 0:
            raise ValidationError(f"Timeout must be positive, got {self.timeout}")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS."""
        return self.server_url.startswith("https://")


@dataclass
class SyncConfig:
    """Tunables of the transfer engine.

    Built once at construction time and re-read from the settings store
    on demand, never through global state.
    """

    server_url: str = DEFAULT_SERVER_URL
    auth_token: str | None = None
    sync_interval: float = DEFAULT_SYNC_INTERVAL
    network_timeout: float = DEFAULT_NETWORK_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY
    max_concurrent_uploads: int = DEFAULT_MAX_CONCURRENT_UPLOADS
    chunk_size: int = DEFAULT_CHUNK_SIZE  # reserved, only used as read size
    media_extensions: list[str] = field(
        default_factory=lambda: list(DEFAULT_MEDIA_EXTENSIONS)
    )
    ignored_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_IGNORED_PATTERNS)
    )
    folders: list[str] = field(default_factory=list)
    sync_directories: bool = True
    propagate_deletions: bool = False

    def __post_init__(self) -> None:
        """Validate numeric limits and the server URL."""
        self.server_url = validate_server_url(self.server_url)
        if self.sync_interval <= 0:
            raise ValidationError(f"sync_interval must be positive, got {self.sync_interval}")
        if self.network_timeout <= 0:
            raise ValidationError(
                f"network_timeout must be positive, got {self.network_timeout}"
            )
        if self.max_retries < 0:
            raise ValidationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_base_delay < 0:
            raise ValidationError(
                f"retry_base_delay must be >= 0, got {self.retry_base_delay}"
            )
        if self.max_concurrent_uploads < 1:
            raise ValidationError(
                f"max_concurrent_uploads must be >= 1, got {self.max_concurrent_uploads}"
            )
        if self.chunk_size < 1:
            raise ValidationError(f"chunk_size must be >= 1, got {self.chunk_size}")
        for name in ("sync_directories", "propagate_deletions"):
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ValidationError(f"{name} must be true or false, got {value!r}")

    @classmethod
    def from_settings(cls, store: SettingsStore) -> SyncConfig:
        """Read every engine setting from a settings store.

        Missing keys fall back to the defaults above.

        Args:
            store: The key/value settings collaborator.

        Returns:
            A validated SyncConfig.

        Raises:
            ValidationError: If a stored value is out of range or malformed.
        """
        def get(key: str, default: Any) -> Any:
            value = store.get(key)
            return default if value is None else value

        try:
            return cls(
                server_url=str(get("server_url", DEFAULT_SERVER_URL)),
                auth_token=store.get("auth_token") or None,
                sync_interval=float(get("sync_interval", DEFAULT_SYNC_INTERVAL)),
                network_timeout=float(get("network_timeout", DEFAULT_NETWORK_TIMEOUT)),
                max_retries=int(get("max_retries", DEFAULT_MAX_RETRIES)),
                retry_base_delay=float(get("retry_base_delay", DEFAULT_RETRY_BASE_DELAY)),
                max_concurrent_uploads=int(
                    get("max_concurrent_uploads", DEFAULT_MAX_CONCURRENT_UPLOADS)
                ),
                chunk_size=int(get("chunk_size", DEFAULT_CHUNK_SIZE)),
                media_extensions=list(get("media_extensions", DEFAULT_MEDIA_EXTENSIONS)),
                ignored_patterns=list(get("ignored_patterns", DEFAULT_IGNORED_PATTERNS)),
                folders=[str(f) for f in get("folders", [])],
                sync_directories=get("sync_directories", True),
                propagate_deletions=get("propagate_deletions", False),
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid setting value: {e}") from e

    def server_config(self, verify_ssl: bool = True) -> ServerConfig:
        """Get the connection subset of this configuration."""
        return ServerConfig(
            server_url=self.server_url,
            token=self.auth_token,
            timeout=self.network_timeout,
            verify_ssl=verify_ssl,
        )
