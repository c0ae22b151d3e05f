"""Exception taxonomy shared by the filesystem backends and the core."""

from __future__ import annotations

import errno
import socket
from typing import Optional

import paramiko


class TwinSFTPError(Exception):
    """Base class for every error raised by twinsftp."""


class FilesystemError(TwinSFTPError):
    """A local or remote filesystem primitive failed on ``path``."""

    def __init__(self, path: str, message: Optional[str] = None) -> None:
        self.path = path
        self.message = message or self.default_message
        super().__init__(f"{self.message}: {path}")

    default_message = "filesystem error"


class NotFoundError(FilesystemError):
    default_message = "no such file or directory"


class PermissionDeniedError(FilesystemError):
    default_message = "permission denied"


class ConnectionLostError(FilesystemError):
    default_message = "connection lost"


class DiskFullError(FilesystemError):
    default_message = "no space left on device"


class AlreadyExistsAsFileError(FilesystemError):
    default_message = "a file is in the way"


class NavigationError(TwinSFTPError):
    """A directory listing could not be fetched for a pane."""


class PlanningError(TwinSFTPError):
    """A path could not be expanded while planning a transfer batch."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class TransferError(TwinSFTPError):
    """Opening, reading or writing failed for a single transfer task."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class SessionError(TwinSFTPError):
    """The SSH session could not be established or was lost."""


_ERRNO_MAP = {
    errno.ENOENT: NotFoundError,
    errno.ENOTDIR: NotFoundError,
    errno.EACCES: PermissionDeniedError,
    errno.EPERM: PermissionDeniedError,
    errno.EROFS: PermissionDeniedError,
    errno.ENOSPC: DiskFullError,
    errno.EDQUOT: DiskFullError,
}

# paramiko reports a dropped transport through these rather than an errno.
_CONNECTION_ERRORS = (paramiko.SSHException, EOFError, ConnectionError, socket.timeout)


def translate_os_error(exc: BaseException, path: str) -> FilesystemError:
    """Map a native exception from ``os`` or paramiko onto the taxonomy."""
    if isinstance(exc, FilesystemError):
        return exc
    if isinstance(exc, _CONNECTION_ERRORS) or str(exc) == "Socket is closed":
        return ConnectionLostError(path, str(exc) or ConnectionLostError.default_message)
    if isinstance(exc, FileNotFoundError):
        return NotFoundError(path)
    if isinstance(exc, PermissionError):
        return PermissionDeniedError(path)
    if isinstance(exc, OSError):
        cls = _ERRNO_MAP.get(exc.errno)
        if cls is not None:
            return cls(path)
        detail = exc.strerror or (exc.args[0] if exc.args else "") or "I/O error"
        return FilesystemError(path, str(detail))
    return FilesystemError(path, str(exc) or type(exc).__name__)
