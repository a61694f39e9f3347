"""Core module - Shared configuration and error taxonomy."""

from mediasync.core.config import (
    DEFAULT_IGNORED_PATTERNS,
    DEFAULT_MEDIA_EXTENSIONS,
    ServerConfig,
    SyncConfig,
    validate_server_url,
)
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

__all__ = [
    # Config
    "DEFAULT_IGNORED_PATTERNS",
    "DEFAULT_MEDIA_EXTENSIONS",
    "ServerConfig",
    "SyncConfig",
    "validate_server_url",
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
]
