"""Entry model and filesystem capability shared by both panes."""

from __future__ import annotations

import abc
import logging
import os
import stat
from dataclasses import dataclass
from datetime import datetime
from types import ModuleType
from typing import BinaryIO, List, Optional, Tuple

from .errors import AlreadyExistsAsFileError, NotFoundError, translate_os_error

logger = logging.getLogger(__name__)

HIDDEN_PREFIX = "."


@dataclass(frozen=True)
class FileEntry:
    """Immutable description of a directory entry."""

    name: str
    is_dir: bool
    size: int = 0
    modified: float = 0.0

    def __post_init__(self) -> None:
        """Validate entry data."""
        if not self.name:
            raise ValueError("File name cannot be empty")
        if "/" in self.name or os.sep in self.name:
            raise ValueError(f"File name cannot contain a path separator: {self.name!r}")
        if self.size < 0 or self.is_dir:
            object.__setattr__(self, "size", 0)
        if self.modified < 0:
            object.__setattr__(self, "modified", 0.0)

    @property
    def is_hidden(self) -> bool:
        return self.name.startswith(HIDDEN_PREFIX)

    @property
    def sort_key(self) -> Tuple[bool, str, str]:
        """Directories first, then case-insensitive name."""
        return (not self.is_dir, self.name.casefold(), self.name)

    @property
    def label(self) -> str:
        return f"{self.name}/" if self.is_dir else self.name


def format_size(size_bytes: int) -> str:
    """Format file size for display."""
    if size_bytes < 0:
        return "—"
    if size_bytes < 1024:
        return f"{size_bytes} B"

    value = float(size_bytes)
    for unit in ("KB", "MB", "GB", "TB", "PB"):
        value /= 1024.0
        if value < 1024.0:
            return f"{value:.1f} {unit}" if value < 10 else f"{value:.0f} {unit}"
    return f"{value:.1f} EB"


def format_time(ts: float) -> str:
    """Convert timestamp to human readable format."""
    try:
        return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")
    except (OverflowError, OSError, ValueError):
        return "—"


# -- byte streams -------------------------------------------------------


class ByteSource:
    """Readable handle with a known total length."""

    def __init__(self, handle: BinaryIO, size: int, path: str) -> None:
        self._handle = handle
        self.size = size
        self.path = path

    def read(self, n: int) -> bytes:
        try:
            return self._handle.read(n)
        except Exception as exc:
            raise translate_os_error(exc, self.path) from exc

    def close(self) -> None:
        self._handle.close()

    def __enter__(self) -> "ByteSource":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ByteSink:
    """Writable handle opened with truncate-create semantics."""

    def __init__(self, handle: BinaryIO, path: str) -> None:
        self._handle = handle
        self.path = path

    def write(self, data: bytes) -> None:
        try:
            self._handle.write(data)
        except Exception as exc:
            raise translate_os_error(exc, self.path) from exc

    def close(self) -> None:
        try:
            self._handle.close()
        except Exception as exc:
            raise translate_os_error(exc, self.path) from exc

    def __enter__(self) -> "ByteSink":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# -- capability ---------------------------------------------------------


class Filesystem(abc.ABC):
    """Listing and byte-level access to one side of the browser.

    The planner and the transfer engine only ever talk to this interface;
    uploads and downloads differ only in which implementation is bound to
    the source and which to the destination.
    """

    label: str = "filesystem"
    pathmod: ModuleType = os.path

    def join(self, base: str, name: str) -> str:
        return self.pathmod.join(base, name)

    def parent(self, path: str) -> str:
        parent = self.pathmod.dirname(path.rstrip(self.pathmod.sep) or self.pathmod.sep)
        return parent or self.pathmod.sep

    @abc.abstractmethod
    def normalize(self, path: str) -> str:
        """Return an absolute path with ``~`` expanded."""

    @abc.abstractmethod
    def list_directory(self, path: str) -> List[FileEntry]:
        """Return the entries of ``path`` in no particular order."""

    @abc.abstractmethod
    def open_read(self, path: str) -> ByteSource:
        """Open ``path`` for chunked reading."""

    @abc.abstractmethod
    def open_write(self, path: str) -> ByteSink:
        """Create or truncate ``path`` for chunked writing."""

    @abc.abstractmethod
    def make_directory(self, path: str) -> bool:
        """Create ``path``; ``False`` when it already exists as a directory."""


def normalize_local_path(path: Optional[str]) -> str:
    """Expand user and resolve an absolute local filesystem path."""
    expanded = os.path.expanduser(path or "/")
    return os.path.abspath(expanded)


def load_local_directory(path: str) -> Tuple[str, List[FileEntry]]:
    """Return normalized path and entries for a local directory."""
    normalized = normalize_local_path(path)
    entries: List[FileEntry] = []
    try:
        with os.scandir(normalized) as it:
            for dirent in it:
                try:
                    stat_result = dirent.stat(follow_symlinks=True)
                    is_dir = stat.S_ISDIR(stat_result.st_mode)
                except OSError:
                    # Dangling symlink: show it as a plain file.
                    stat_result = dirent.stat(follow_symlinks=False)
                    is_dir = False
                entries.append(FileEntry(
                    name=dirent.name,
                    is_dir=is_dir,
                    size=stat_result.st_size or 0,
                    modified=stat_result.st_mtime or 0.0,
                ))
    except OSError as exc:
        raise translate_os_error(exc, normalized) from exc
    return normalized, entries


class LocalFilesystem(Filesystem):
    """:class:`Filesystem` backed by the local operating system."""

    label = "local"
    pathmod = os.path

    def normalize(self, path: str) -> str:
        return normalize_local_path(path)

    def list_directory(self, path: str) -> List[FileEntry]:
        _, entries = load_local_directory(path)
        logger.debug(f"Listed {len(entries)} local entries in {path}")
        return entries

    def open_read(self, path: str) -> ByteSource:
        try:
            handle = open(path, "rb")
        except OSError as exc:
            raise translate_os_error(exc, path) from exc
        try:
            size = os.fstat(handle.fileno()).st_size
        except OSError as exc:
            handle.close()
            raise translate_os_error(exc, path) from exc
        return ByteSource(handle, size, path)

    def open_write(self, path: str) -> ByteSink:
        try:
            handle = open(path, "wb")
        except OSError as exc:
            raise translate_os_error(exc, path) from exc
        return ByteSink(handle, path)

    def make_directory(self, path: str) -> bool:
        try:
            os.mkdir(path)
        except FileExistsError:
            if os.path.isdir(path):
                return False
            raise AlreadyExistsAsFileError(path) from None
        except FileNotFoundError as exc:
            raise NotFoundError(self.parent(path)) from exc
        except OSError as exc:
            raise translate_os_error(exc, path) from exc
        logger.info(f"Created local directory: {path}")
        return True
