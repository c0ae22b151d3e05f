"""Pytest configuration and in-memory doubles for the twinsftp tests."""
from __future__ import annotations

import io
import posixpath
import sys
import threading
from concurrent.futures import Executor, Future
from pathlib import Path
from typing import Callable, Dict, List, Set, Tuple

import pytest

_SRC = Path(__file__).resolve().parents[1] / "src"
_src_str = str(_SRC)
if _src_str not in sys.path:
    sys.path.insert(0, _src_str)

from twinsftp.errors import (  # noqa: E402
    AlreadyExistsAsFileError,
    NotFoundError,
    PermissionDeniedError,
)
from twinsftp.fileops import ByteSink, ByteSource, FileEntry, Filesystem  # noqa: E402


class InlineExecutor(Executor):
    """Run submitted callables immediately on the calling thread."""

    def submit(self, fn, *args, **kwargs) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class ManualExecutor(Executor):
    """Hold submitted callables until the test runs them."""

    def __init__(self) -> None:
        self.queued: List[Tuple[Future, Callable, tuple]] = []

    def submit(self, fn, *args, **kwargs) -> Future:
        future: Future = Future()
        self.queued.append((future, fn, args))
        return future

    def run_one(self) -> None:
        future, fn, args = self.queued.pop(0)
        try:
            future.set_result(fn(*args))
        except Exception as exc:
            future.set_exception(exc)

    def run_all(self) -> None:
        while self.queued:
            self.run_one()


class _GatedReader(io.BytesIO):
    """Serves the first read, then blocks every further read on ``gate``.

    ``started`` is set when the second read begins, so the first chunk has
    been written and reported by then.
    """

    def __init__(self, data: bytes, gate: threading.Event, started: threading.Event) -> None:
        super().__init__(data)
        self._gate = gate
        self._started = started
        self._reads = 0

    def read(self, n: int = -1) -> bytes:
        if self._reads:
            self._started.set()
            self._gate.wait(5)
        self._reads += 1
        return super().read(n)


class _MemoryWriter:
    def __init__(self, fs: "MemoryFilesystem", path: str) -> None:
        self._fs = fs
        self._path = path
        self.closed = False

    def write(self, data: bytes) -> None:
        if self._path in self._fs.fail_write:
            raise OSError(28, "No space left on device")
        self._fs.files[self._path] += data

    def close(self) -> None:
        self.closed = True


class MemoryFilesystem(Filesystem):
    """POSIX-style filesystem held in two dictionaries."""

    pathmod = posixpath

    def __init__(self, label: str = "memory", home: str = "/home/user") -> None:
        self.label = label
        self.home = home
        self.files: Dict[str, bytes] = {}
        self.dirs: Set[str] = {"/"}
        self.mkdir_log: List[str] = []
        self.fail_list: Set[str] = set()
        self.fail_mkdir: Set[str] = set()
        self.fail_read: Set[str] = set()
        self.fail_write: Set[str] = set()
        self.gates: Dict[str, Tuple[threading.Event, threading.Event]] = {}
        self.add_dir(home)

    # -- fixture helpers ---------------------------------------------------

    def add_dir(self, path: str) -> None:
        while path not in self.dirs:
            self.dirs.add(path)
            path = posixpath.dirname(path)

    def add_file(self, path: str, data: bytes = b"") -> None:
        self.add_dir(posixpath.dirname(path))
        self.files[path] = data

    def gate(self, path: str) -> Tuple[threading.Event, threading.Event]:
        """Make reads of ``path`` block after the first chunk.

        Returns ``(release, started)``: set ``release`` to let the read go on;
        ``started`` is set once the reader comes back for a second chunk.
        """
        pair = (threading.Event(), threading.Event())
        self.gates[path] = pair
        return pair

    # -- Filesystem ----------------------------------------------------------

    def normalize(self, path: str) -> str:
        if path == "~" or path.startswith("~/"):
            path = self.home + path[1:]
        elif not path.startswith("/"):
            path = posixpath.join(self.home, path)
        return posixpath.normpath(path)

    def list_directory(self, path: str) -> List[FileEntry]:
        if path in self.fail_list:
            raise PermissionDeniedError(path)
        if path not in self.dirs:
            raise NotFoundError(path)
        entries = []
        for d in self.dirs:
            if d != "/" and posixpath.dirname(d) == path:
                entries.append(FileEntry(posixpath.basename(d), True))
        for f, data in self.files.items():
            if posixpath.dirname(f) == path:
                entries.append(FileEntry(posixpath.basename(f), False, len(data)))
        return entries

    def open_read(self, path: str) -> ByteSource:
        if path in self.fail_read or path not in self.files:
            raise NotFoundError(path)
        data = self.files[path]
        if path in self.gates:
            release, started = self.gates[path]
            handle = _GatedReader(data, release, started)
        else:
            handle = io.BytesIO(data)
        return ByteSource(handle, len(data), path)

    def open_write(self, path: str) -> ByteSink:
        if posixpath.dirname(path) not in self.dirs:
            raise NotFoundError(path)
        self.files[path] = b""
        return ByteSink(_MemoryWriter(self, path), path)

    def make_directory(self, path: str) -> bool:
        if path in self.fail_mkdir:
            raise PermissionDeniedError(path)
        if path in self.dirs:
            return False
        if path in self.files:
            raise AlreadyExistsAsFileError(path)
        if posixpath.dirname(path) not in self.dirs:
            raise NotFoundError(posixpath.dirname(path))
        self.dirs.add(path)
        self.mkdir_log.append(path)
        return True


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def local_fs() -> MemoryFilesystem:
    return MemoryFilesystem("local")


@pytest.fixture
def remote_fs() -> MemoryFilesystem:
    return MemoryFilesystem("remote", home="/srv")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def inline_executor() -> InlineExecutor:
    return InlineExecutor()


@pytest.fixture
def manual_executor() -> ManualExecutor:
    return ManualExecutor()


def entry(name: str, is_dir: bool = False, size: int = 0) -> FileEntry:
    return FileEntry(name, is_dir, size)


def drain_until(predicate: Callable[[], bool], step: Callable[[], None],
                timeout: float = 5.0) -> bool:
    """Call ``step`` until ``predicate`` holds or ``timeout`` passes."""
    deadline = threading.Event()
    timer = threading.Timer(timeout, deadline.set)
    timer.start()
    try:
        while not predicate():
            if deadline.is_set():
                return False
            step()
            deadline.wait(0.005)
        return True
    finally:
        timer.cancel()


__all__ = [
    "FakeClock",
    "InlineExecutor",
    "ManualExecutor",
    "MemoryFilesystem",
    "drain_until",
    "entry",
]
