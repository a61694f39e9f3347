"""Shared fakes for transfer engine tests."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from mediasync.client.api import TransferOutcome
from mediasync.client.sync.types import CatalogEntry, SyncError


@dataclass(eq=False)
class FakeRequest:
    """Stands in for an OutstandingRequest."""

    kind: str
    item_path: str
    target: str
    retry_count: int
    on_complete: Callable[[FakeRequest, TransferOutcome], None] | None
    on_progress: Callable[[int, int], None] | None = None
    name: str | None = None


@dataclass
class FakeTransport:
    """Records requests; tests complete them by hand."""

    calls: list[FakeRequest] = field(default_factory=list)
    aborted: list[FakeRequest] = field(default_factory=list)
    token: str | None = None
    server_url: str = "http://localhost:3000"
    timeout: float = 30.0

    def upload_file(self, local_path, *, file_name=None, item_path=None, retry_count=0,
                    on_complete=None, on_progress=None, **kwargs):  # type: ignore[no-untyped-def]
        return self._record("upload", item_path or local_path, local_path, retry_count,
                            on_complete, on_progress, file_name)

    def create_directory(self, name, path, *, item_path=None, retry_count=0,
                         on_complete=None):  # type: ignore[no-untyped-def]
        return self._record("mkdir", item_path or path, path, retry_count, on_complete, None, name)

    def remove(self, path, *, item_path=None, retry_count=0,
               on_complete=None):  # type: ignore[no-untyped-def]
        return self._record("remove", item_path or path, path, retry_count, on_complete, None)

    def abort(self, request: FakeRequest) -> bool:
        self.aborted.append(request)
        return True

    def set_token(self, token: str | None) -> None:
        self.token = token

    def set_server_url(self, url: str) -> None:
        self.server_url = url

    def set_timeout(self, timeout: float) -> None:
        self.timeout = timeout

    def close(self) -> None:
        pass

    def _record(self, kind, item_path, target, retry_count, on_complete, on_progress,
                name=None):  # type: ignore[no-untyped-def]
        request = FakeRequest(kind, item_path, target, retry_count, on_complete, on_progress, name)
        self.calls.append(request)
        return request

    @property
    def paths(self) -> list[str]:
        """Item path of every request, in order."""
        return [c.item_path for c in self.calls]

    def succeed(self, index: int = -1) -> None:
        call = self.calls[index]
        assert call.on_complete is not None
        call.on_complete(call, TransferOutcome(200, body={"success": True}))

    def fail(self, error: SyncError, index: int = -1) -> None:
        call = self.calls[index]
        assert call.on_complete is not None
        call.on_complete(call, TransferOutcome(None, error=error))


class ManualTask:
    """Scheduled task run only when the test says so."""

    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.ran = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler driven explicitly by tests."""

    def __init__(self) -> None:
        self.tasks: list[ManualTask] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTask:
        task = ManualTask(delay, callback)
        self.tasks.append(task)
        return task

    def cancel_all(self) -> None:
        for task in self.tasks:
            task.cancel()

    @property
    def pending(self) -> list[ManualTask]:
        return [t for t in self.tasks if not t.cancelled and not t.ran]

    def run_pending(self) -> int:
        """Run every task due so far. Returns how many ran."""
        due = self.pending
        for task in due:
            task.ran = True
            task.callback()
        return len(due)


@pytest.fixture
def transport() -> FakeTransport:
    """Fake transport recording requests."""
    return FakeTransport()


@pytest.fixture
def scheduler() -> ManualScheduler:
    """Manually driven scheduler."""
    return ManualScheduler()


@pytest.fixture
def media_root(tmp_path: Path) -> Path:
    """Folder with a few media files and one document."""
    root = tmp_path.resolve() / "photos"
    (root / "trip").mkdir(parents=True)
    (root / "a.jpg").write_bytes(b"a" * 10)
    (root / "b.png").write_bytes(b"b" * 20)
    (root / "trip" / "c.mp4").write_bytes(b"c" * 30)
    (root / "notes.txt").write_text("not media")
    return root


@pytest.fixture
def make_entry() -> Callable[..., CatalogEntry]:
    """Build a CatalogEntry from a real path."""

    def factory(path: Path, root: Path, size: int | None = None) -> CatalogEntry:
        st = path.stat()
        return CatalogEntry(
            str(path),
            str(root),
            st.st_size if size is None else size,
            st.st_mtime,
            is_directory=path.is_dir(),
        )

    return factory
