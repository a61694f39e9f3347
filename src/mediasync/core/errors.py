"""Exception taxonomy shared by the transport and the transfer engine.

Retry policy keys off these classes:
- TransportError (and its subclasses, RequestTimeoutError included) is retried
- CancellationError is never retried
- ValidationError, LocalFileMissingError and ExhaustedRetriesError are terminal
"""

from __future__ import annotations


class SyncError(Exception):
    """Base exception for mediasync errors."""


class ValidationError(SyncError):
    """Invalid input reported immediately (bad folder path, malformed URL)."""


class InvalidFolderError(ValidationError):
    """Folder path does not resolve to an existing directory."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Not a directory: {path}")
        self.path = path


class TransportError(SyncError):
    """Connection or protocol level failure of a request."""

    retryable = True


class ConnectionFailedError(TransportError):
    """Connection refused, host not found, TLS failure and the like."""


class ProtocolError(TransportError):
    """Server answered with a non-2xx status or an unusable body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ProtocolError):
    """Credentials or bearer token rejected."""


class ResponseParseError(ProtocolError):
    """Response body is not the JSON document the endpoint promises."""


class RequestTimeoutError(TransportError):
    """Request deadline expired and the request was aborted."""


class CancellationError(SyncError):
    """Request was aborted on purpose (shutdown, folder removal, pause)."""

    retryable = False


class LocalFileMissingError(SyncError):
    """Local file disappeared between scan and dispatch."""

    def __init__(self, path: str) -> None:
        super().__init__(f"File not found: {path}")
        self.path = path


class ExhaustedRetriesError(SyncError):
    """An item failed more than max_retries times and was abandoned."""

    def __init__(self, path: str, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(
            f"Transfer of {path} failed after {attempts} attempts: {last_error}"
        )
        self.path = path
        self.attempts = attempts
        self.last_error = last_error
