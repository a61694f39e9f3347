"""HTTP transport for the media server API.

This module provides:
- TransportClient: asynchronous, authenticated requests against the server
- OutstandingRequest: one tracked in-flight request with its deadline
- TransferOutcome: status + parsed body or a classified error
- login(): bearer token exchange

Every request runs on a worker thread and reports back through a
completion callback. Each one carries a deadline; when it expires the
request is aborted and completes with RequestTimeoutError. Explicitly
aborted requests never invoke their completion callback.

httpx exceptions are translated into the mediasync error taxonomy here
and nowhere else.
"""

from __future__ import annotations

import contextlib
import itertools
import json
import logging
import os
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import IO, Any

import httpx

from mediasync import __version__
from mediasync.core.config import DEFAULT_CHUNK_SIZE, ServerConfig, validate_server_url
from mediasync.core.errors import (
    AuthenticationError,
    CancellationError,
    ConnectionFailedError,
    LocalFileMissingError,
    ProtocolError,
    RequestTimeoutError,
    ResponseParseError,
    SyncError,
    TransportError,
)

logger = logging.getLogger(__name__)

USER_AGENT = f"mediasync/{__version__}"

LOGIN_ENDPOINT = "/api/v1/auth/login"
UPLOAD_ENDPOINT = "/api/v1/media/upload"
CREATE_DIRECTORY_ENDPOINT = "/api/v1/media/create-directory"
REMOVE_ENDPOINT = "/api/v1/media/remove"


@dataclass
class TransferOutcome:
    """Result of one request.

    Attributes:
        status_code: HTTP status, or None when no response arrived.
        body: Parsed JSON body (None for empty bodies).
        error: Classified error, None on success.
    """

    status_code: int | None
    body: Any = None
    error: SyncError | None = None

    @property
    def ok(self) -> bool:
        """Check if the request succeeded."""
        return self.error is None


@dataclass
class LoginResult:
    """Result of a successful login."""

    token: str
    username: str


CompletionCallback = Callable[["OutstandingRequest", TransferOutcome], None]
ByteProgressCallback = Callable[[int, int], None]


@dataclass(eq=False)
class OutstandingRequest:
    """One in-flight network operation, owned by the TransportClient.

    Attributes:
        request_id: Unique id within the client.
        method: HTTP method.
        endpoint: Server path.
        item_path: Local path of the associated item, if any.
        started_at: Monotonic start time.
        deadline: Monotonic time at which the request is aborted.
        retry_count: Retries the caller had consumed when sending.
    """

    request_id: int
    method: str
    endpoint: str
    item_path: str | None
    started_at: float
    deadline: float
    retry_count: int = 0
    timed_out: bool = False
    finished: bool = False
    outcome: TransferOutcome | None = None
    _cancel: threading.Event = field(default_factory=threading.Event, repr=False)
    _done: threading.Event = field(default_factory=threading.Event, repr=False)
    _timer: threading.Timer | None = field(default=None, repr=False)

    @property
    def cancel_requested(self) -> bool:
        """Check if the request was aborted or timed out."""
        return self._cancel.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the request is finished, aborted or timed out.

        Returns:
            True if the request finished within timeout.
        """
        return self._done.wait(timeout)


class _UploadAborted(Exception):
    """Raised from inside the body stream to stop sending."""


class _ProgressReader:
    """Binary file wrapper reporting bytes read and honouring cancellation."""

    def __init__(
        self,
        fileobj: IO[bytes],
        total: int,
        request: OutstandingRequest,
        on_progress: ByteProgressCallback | None,
        chunk_size: int,
    ) -> None:
        self._file = fileobj
        self._total = total
        self._request = request
        self._on_progress = on_progress
        self._chunk_size = chunk_size
        self._sent = 0

    def read(self, size: int = -1) -> bytes:
        if self._request.cancel_requested:
            raise _UploadAborted()
        if size is None or size < 0 or size > self._chunk_size:
            size = self._chunk_size
        data = self._file.read(size)
        if data:
            self._sent += len(data)
            if self._on_progress and not self._request.finished:
                self._on_progress(self._sent, self._total)
        return data

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        position = self._file.seek(offset, whence)
        self._sent = position
        return position

    def tell(self) -> int:
        return self._file.tell()

    def fileno(self) -> int:
        return self._file.fileno()


def _format_mtime(mtime: float) -> str:
    """ISO 8601 UTC timestamp for upload metadata."""
    return datetime.fromtimestamp(mtime, tz=UTC).isoformat(timespec="seconds")


def translate_exception(exc: Exception, endpoint: str = "") -> SyncError:
    """Map an httpx exception to the mediasync error taxonomy.

    Args:
        exc: Exception raised by httpx.
        endpoint: Endpoint for the error message.

    Returns:
        The classified error.
    """
    suffix = f" for endpoint: {endpoint}" if endpoint else ""
    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeoutError(f"Request timeout{suffix}")
    if isinstance(exc, httpx.ConnectError):
        return ConnectionFailedError(f"Connection failed{suffix}: {exc}")
    if isinstance(exc, (httpx.NetworkError, httpx.ProxyError)):
        return ConnectionFailedError(f"Network error{suffix}: {exc}")
    if isinstance(exc, (httpx.ProtocolError, httpx.DecodingError, httpx.TooManyRedirects)):
        return ProtocolError(f"Protocol failure{suffix}: {exc}")
    return TransportError(f"Network error occurred{suffix}: {exc}")


def _error_detail(response: httpx.Response) -> str:
    """Best-effort error message from a failed response."""
    try:
        data = response.json()
    except ValueError:
        return response.reason_phrase or "Unknown error"
    if isinstance(data, dict):
        for key in ("message", "detail", "error"):
            if isinstance(data.get(key), str):
                return str(data[key])
    return response.reason_phrase or "Unknown error"


def classify_response(response: httpx.Response, endpoint: str = "") -> TransferOutcome:
    """Turn a received response into an outcome.

    2xx with an empty body is a success. A non-empty body must be a JSON
    object; {"success": false} is a server-reported failure.

    Args:
        response: The received response.
        endpoint: Endpoint for error messages.

    Returns:
        The outcome, with error set on failure.
    """
    code = response.status_code
    if code == 401:
        return TransferOutcome(code, error=AuthenticationError("Invalid or expired token", code))
    if not 200 <= code < 300:
        detail = _error_detail(response)
        return TransferOutcome(
            code,
            error=ProtocolError(f"Server returned {code} for {endpoint}: {detail}", code),
        )

    if not response.content.strip():
        return TransferOutcome(code)

    try:
        body = response.json()
    except ValueError:
        return TransferOutcome(
            code, error=ResponseParseError(f"Malformed JSON from {endpoint}", code)
        )
    if not isinstance(body, dict):
        return TransferOutcome(
            code,
            body=body,
            error=ResponseParseError(f"Expected a JSON object from {endpoint}", code),
        )
    if body.get("success") is False:
        message = body.get("message") or "Server reported failure"
        return TransferOutcome(code, body=body, error=ProtocolError(str(message), code))
    return TransferOutcome(code, body=body)


BodyFactory = Callable[
    [contextlib.ExitStack, OutstandingRequest, ByteProgressCallback | None],
    dict[str, Any],
]


class TransportClient:
    """Authenticated, asynchronous HTTP client for the media server.

    Usage:
        client = TransportClient(ServerConfig(server_url="http://host:3000"))
        client.set_token(token)
        request = client.upload_file("/media/a.jpg", on_complete=callback)
        ...
        client.close()  # aborts whatever is still in flight
    """

    def __init__(
        self,
        config: ServerConfig,
        transport: httpx.BaseTransport | None = None,
        max_workers: int = 4,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """Initialize the transport.

        Args:
            config: Server URL, token, timeout and TLS settings.
            transport: Optional httpx transport (tests, proxies).
            max_workers: Threads available for concurrent requests.
            chunk_size: Read size when streaming file bodies.
        """
        self._lock = threading.Lock()
        self._server_url = config.server_url
        self._token = config.token
        self._timeout = config.timeout
        self._chunk_size = chunk_size
        self._client = httpx.Client(
            timeout=config.timeout,
            verify=config.verify_ssl,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="mediasync-http",
        )
        self._outstanding: dict[int, OutstandingRequest] = {}
        self._ids = itertools.count(1)
        self._closed = False

    def __enter__(self) -> TransportClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    # === Configuration ===

    @property
    def server_url(self) -> str:
        """Base URL used for the next request."""
        with self._lock:
            return self._server_url

    @property
    def token(self) -> str | None:
        """Bearer token used for the next request."""
        with self._lock:
            return self._token

    @property
    def timeout(self) -> float:
        """Deadline applied to the next request, in seconds."""
        with self._lock:
            return self._timeout

    def set_token(self, token: str | None) -> None:
        """Set the bearer token. In-flight requests keep the old one."""
        with self._lock:
            self._token = token or None

    def set_server_url(self, url: str) -> None:
        """Set the base URL. In-flight requests keep the old one.

        Raises:
            ValidationError: If the URL is malformed.
        """
        url = validate_server_url(url)
        with self._lock:
            self._server_url = url

    def set_timeout(self, timeout: float) -> None:
        """Set the request deadline for subsequent requests."""
        if timeout <= 0:
            raise ValueError(f"Timeout must be positive, got {timeout}")
        with self._lock:
            self._timeout = timeout

    def _headers(self, json_body: bool) -> dict[str, str]:
        """Build request headers from the current token (lock held)."""
        headers: dict[str, str] = {}
        if json_body:
            headers["Content-Type"] = "application/json"
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    # === Outstanding requests ===

    @property
    def outstanding(self) -> list[OutstandingRequest]:
        """Snapshot of requests still in flight."""
        with self._lock:
            return list(self._outstanding.values())

    def outstanding_for(self, item_path: str) -> list[OutstandingRequest]:
        """In-flight requests associated with one item."""
        with self._lock:
            return [r for r in self._outstanding.values() if r.item_path == item_path]

    def abort(self, request: OutstandingRequest) -> bool:
        """Abort a request. Its completion callback will not run.

        Returns:
            True if the request was still in flight.
        """
        with self._lock:
            if request.finished:
                return False
            request.finished = True
            request._cancel.set()
            self._outstanding.pop(request.request_id, None)
            timer = request._timer

        if timer:
            timer.cancel()
        request.outcome = TransferOutcome(None, error=CancellationError("Request aborted"))
        request._done.set()
        logger.debug(f"Aborted {request.method} {request.endpoint} (item={request.item_path})")
        return True

    def abort_where(self, predicate: Callable[[OutstandingRequest], bool]) -> int:
        """Abort every in-flight request matching predicate.

        Returns:
            Number of requests aborted.
        """
        return sum(1 for r in self.outstanding if predicate(r) and self.abort(r))

    def abort_all(self) -> int:
        """Abort every in-flight request."""
        return self.abort_where(lambda r: True)

    # === Requests ===

    def send(
        self,
        method: str,
        endpoint: str,
        payload: dict[str, Any] | None = None,
        *,
        item_path: str | None = None,
        retry_count: int = 0,
        on_complete: CompletionCallback | None = None,
    ) -> OutstandingRequest:
        """Send a JSON request without blocking.

        Args:
            method: HTTP method.
            endpoint: Server path (e.g. "/api/v1/media/remove").
            payload: JSON body, if any.
            item_path: Local path of the associated item.
            retry_count: Retries consumed so far, for bookkeeping.
            on_complete: Called once with the outcome, unless aborted.

        Returns:
            The tracked request.

        Raises:
            CancellationError: If the client is closed.
        """
        def body(
            stack: contextlib.ExitStack,
            request: OutstandingRequest,
            on_progress: ByteProgressCallback | None,
        ) -> dict[str, Any]:
            if payload is None:
                return {}
            return {"content": json.dumps(payload).encode("utf-8")}

        return self._submit(
            method,
            endpoint,
            body,
            json_body=payload is not None,
            item_path=item_path,
            retry_count=retry_count,
            on_complete=on_complete,
            on_progress=None,
        )

    def upload_file(
        self,
        local_path: str,
        *,
        file_name: str | None = None,
        file_size: int | None = None,
        last_modified: float | None = None,
        item_path: str | None = None,
        retry_count: int = 0,
        on_complete: CompletionCallback | None = None,
        on_progress: ByteProgressCallback | None = None,
    ) -> OutstandingRequest:
        """Upload a file as multipart: file part plus JSON metadata part.

        Metadata is {fileName, fileSize, originalPath, lastModified}. The
        file is opened on the worker thread and streamed; a vanished file
        completes with LocalFileMissingError.

        Args:
            local_path: File to upload.
            file_name: Name reported to the server (default: basename).
            file_size: Size reported to the server (default: current size).
            last_modified: mtime reported to the server (default: current).
            item_path: Local path of the associated item (default: local_path).
            retry_count: Retries consumed so far.
            on_complete: Called once with the outcome, unless aborted.
            on_progress: Called with (bytes_sent, bytes_total).

        Returns:
            The tracked request.
        """
        name = file_name or os.path.basename(local_path)

        def body(
            stack: contextlib.ExitStack,
            request: OutstandingRequest,
            progress: ByteProgressCallback | None,
        ) -> dict[str, Any]:
            fileobj = stack.enter_context(open(local_path, "rb"))
            stat = os.fstat(fileobj.fileno())
            metadata = {
                "fileName": name,
                "fileSize": file_size if file_size is not None else stat.st_size,
                "originalPath": local_path,
                "lastModified": _format_mtime(
                    last_modified if last_modified is not None else stat.st_mtime
                ),
            }
            reader = _ProgressReader(
                fileobj, stat.st_size, request, progress, self._chunk_size
            )
            return {
                "files": {
                    "file": (name, reader, "application/octet-stream"),
                    "metadata": (
                        None,
                        json.dumps(metadata).encode("utf-8"),
                        "application/json",
                    ),
                }
            }

        return self._submit(
            "POST",
            UPLOAD_ENDPOINT,
            body,
            json_body=False,
            item_path=item_path or local_path,
            retry_count=retry_count,
            on_complete=on_complete,
            on_progress=on_progress,
        )

    def create_directory(
        self,
        name: str,
        path: str,
        *,
        item_path: str | None = None,
        retry_count: int = 0,
        on_complete: CompletionCallback | None = None,
    ) -> OutstandingRequest:
        """Create (or verify) a directory on the server."""
        return self.send(
            "POST",
            CREATE_DIRECTORY_ENDPOINT,
            {"name": name, "path": path},
            item_path=item_path,
            retry_count=retry_count,
            on_complete=on_complete,
        )

    def remove(
        self,
        path: str,
        *,
        item_path: str | None = None,
        retry_count: int = 0,
        on_complete: CompletionCallback | None = None,
    ) -> OutstandingRequest:
        """Remove a file or directory on the server."""
        return self.send(
            "POST",
            REMOVE_ENDPOINT,
            {"path": path},
            item_path=item_path,
            retry_count=retry_count,
            on_complete=on_complete,
        )

    def login(self, username: str, password: str) -> LoginResult:
        """Exchange credentials for a bearer token (blocking).

        On success the token is also set on this client.

        Args:
            username: Account name.
            password: Account password.

        Returns:
            The token and username.

        Raises:
            AuthenticationError: If the server rejects the credentials.
            ResponseParseError: If the response is not the expected JSON.
            TransportError: On connection or protocol failure.
        """
        with self._lock:
            url = self._server_url + LOGIN_ENDPOINT
            timeout = self._timeout
        try:
            response = self._client.post(
                url,
                json={"username": username, "password": password},
                timeout=timeout,
            )
        except httpx.HTTPError as e:
            raise translate_exception(e, LOGIN_ENDPOINT) from e

        if response.status_code in (400, 401, 403):
            raise AuthenticationError(
                f"Login failed: {_error_detail(response)}", response.status_code
            )
        outcome = classify_response(response, LOGIN_ENDPOINT)
        if outcome.error is not None:
            if isinstance(outcome.body, dict) and outcome.body.get("success") is False:
                raise AuthenticationError(str(outcome.error), response.status_code)
            raise outcome.error

        body = outcome.body
        data = body.get("data") if isinstance(body, dict) else None
        token = data.get("accessToken") if isinstance(data, dict) else None
        if body is None or body.get("success") is not True or not isinstance(token, str):
            raise ResponseParseError("Unexpected login response", response.status_code)

        self.set_token(token)
        logger.info(f"Logged in as {username}")
        return LoginResult(token=token, username=username)

    def _submit(
        self,
        method: str,
        endpoint: str,
        body: BodyFactory,
        *,
        json_body: bool,
        item_path: str | None,
        retry_count: int,
        on_complete: CompletionCallback | None,
        on_progress: ByteProgressCallback | None,
    ) -> OutstandingRequest:
        """Register a request, arm its deadline and hand it to a worker."""
        with self._lock:
            if self._closed:
                raise CancellationError("Transport is closed")
            url = self._server_url + endpoint
            headers = self._headers(json_body)
            timeout = self._timeout
            now = time.monotonic()
            request = OutstandingRequest(
                request_id=next(self._ids),
                method=method,
                endpoint=endpoint,
                item_path=item_path,
                started_at=now,
                deadline=now + timeout,
                retry_count=retry_count,
            )
            timer = threading.Timer(timeout, self._on_deadline, args=(request, on_complete))
            timer.daemon = True
            request._timer = timer
            self._outstanding[request.request_id] = request

        timer.start()
        logger.debug(f"Sending {method} {endpoint} (item={item_path})")
        self._executor.submit(
            self._perform, request, url, headers, timeout, body, on_complete, on_progress
        )
        return request

    def _perform(
        self,
        request: OutstandingRequest,
        url: str,
        headers: dict[str, str],
        timeout: float,
        body: BodyFactory,
        on_complete: CompletionCallback | None,
        on_progress: ByteProgressCallback | None,
    ) -> None:
        """Run one request on a worker thread."""
        if request.cancel_requested:
            return
        try:
            with contextlib.ExitStack() as stack:
                kwargs = body(stack, request, on_progress)
                response = self._client.request(
                    request.method, url, headers=headers, timeout=timeout, **kwargs
                )
            outcome = classify_response(response, request.endpoint)
        except _UploadAborted:
            outcome = TransferOutcome(None, error=CancellationError("Upload aborted"))
        except FileNotFoundError:
            outcome = TransferOutcome(
                None, error=LocalFileMissingError(request.item_path or url)
            )
        except OSError as e:
            outcome = TransferOutcome(None, error=SyncError(f"Cannot open file: {e}"))
        except httpx.HTTPError as e:
            outcome = TransferOutcome(None, error=translate_exception(e, request.endpoint))
        except Exception as e:
            logger.exception(f"Unexpected error during {request.method} {request.endpoint}")
            outcome = TransferOutcome(None, error=TransportError(str(e)))

        self._finish(request, outcome, on_complete)

    def _on_deadline(
        self,
        request: OutstandingRequest,
        on_complete: CompletionCallback | None,
    ) -> None:
        """Abort a request whose deadline expired and report the timeout."""
        with self._lock:
            if request.finished:
                return
            request.timed_out = True
            request._cancel.set()
        logger.warning(f"Request timeout for endpoint: {request.endpoint}")
        self._finish(
            request,
            TransferOutcome(
                None,
                error=RequestTimeoutError(f"Request timeout for endpoint: {request.endpoint}"),
            ),
            on_complete,
        )

    def _finish(
        self,
        request: OutstandingRequest,
        outcome: TransferOutcome,
        on_complete: CompletionCallback | None,
    ) -> None:
        """Complete a request exactly once and notify the caller."""
        with self._lock:
            if request.finished:
                return
            if request.cancel_requested and not request.timed_out:
                return
            request.finished = True
            self._outstanding.pop(request.request_id, None)
            timer = request._timer

        if timer:
            timer.cancel()
        request.outcome = outcome
        request._done.set()

        if outcome.error is not None:
            logger.debug(f"{request.method} {request.endpoint} failed: {outcome.error}")

        if on_complete is None:
            return
        try:
            on_complete(request, outcome)
        except Exception:
            logger.exception(f"Completion callback failed for {request.endpoint}")

    def close(self) -> None:
        """Abort everything in flight and release the HTTP client."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        aborted = self.abort_all()
        if aborted:
            logger.info(f"Aborted {aborted} outstanding requests on close")
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._client.close()
