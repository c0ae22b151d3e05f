"""Paramiko session establishment and the remote filesystem backend."""

from __future__ import annotations

import base64
import getpass
import hashlib
import logging
import os
import posixpath
import socket
import stat
import threading
from typing import Callable, List, Optional, Tuple

import paramiko

from .errors import (
    AlreadyExistsAsFileError,
    SessionError,
    translate_os_error,
)
from .fileops import ByteSink, ByteSource, FileEntry, Filesystem

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22
KNOWN_HOSTS_PATH = os.path.join("~", ".ssh", "known_hosts")


def parse_destination(
    destination: str, username: Optional[str] = None, port: Optional[int] = None
) -> Tuple[str, str, int]:
    """Split ``[user@]host[:port]`` into its parts.

    Explicit ``username`` and ``port`` arguments win over the values embedded
    in ``destination``.
    """
    host = destination
    embedded_user: Optional[str] = None
    embedded_port: Optional[int] = None
    if "@" in host:
        embedded_user, host = host.rsplit("@", 1)
    if host.startswith("["):
        # [::1]:2222
        end = host.find("]")
        if end != -1:
            rest = host[end + 1:]
            if rest.startswith(":"):
                embedded_port = _parse_port(rest[1:])
            host = host[1:end]
    elif host.count(":") == 1:
        host, raw_port = host.split(":")
        embedded_port = _parse_port(raw_port)
    if not host:
        raise SessionError(f"invalid destination: {destination!r}")
    return (
        host,
        username or embedded_user or getpass.getuser(),
        port or embedded_port or DEFAULT_PORT,
    )


def _parse_port(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise SessionError("unable to parse port number") from None
    if not 0 < port < 65536:
        raise SessionError("unable to parse port number")
    return port


def fingerprint(key: paramiko.PKey) -> str:
    """Return the OpenSSH style ``SHA256:`` fingerprint of ``key``."""
    digest = hashlib.sha256(key.asbytes()).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def _ask_on_terminal(question: str) -> bool:
    answer = input(f"{question} (yes/no)? ")
    return answer.strip().lower() in ("y", "yes")


class PromptHostKeyPolicy(paramiko.MissingHostKeyPolicy):
    """Ask the user before trusting an unknown host, then remember it."""

    def __init__(
        self,
        confirm: Callable[[str], bool],
        known_hosts: Optional[str] = None,
    ) -> None:
        self._confirm = confirm
        self._known_hosts = known_hosts

    def missing_host_key(self, client, hostname, key) -> None:
        question = (
            f"The host key for {hostname} was not found in {self._known_hosts}.\n"
            f"Fingerprint: {fingerprint(key)}\n"
            "Would you like to add it"
        )
        if not self._confirm(question):
            raise SessionError(f"the authenticity of host {hostname} cannot be established")
        client.get_host_keys().add(hostname, key.get_name(), key)
        if self._known_hosts:
            try:
                client.save_host_keys(self._known_hosts)
            except OSError as exc:
                logger.warning(f"Could not save host key to {self._known_hosts}: {exc}")
        logger.info(f"Added host key for {hostname} ({fingerprint(key)})")


class RemoteSession:
    """The single SSH/SFTP session of one run.

    Created once at startup by :func:`open_session` and handed to whoever
    needs it; there is no module-level session.
    """

    def __init__(self, client: paramiko.SSHClient, sftp: paramiko.SFTPClient,
                 host: str, username: str, port: int) -> None:
        self.client = client
        self.sftp = sftp
        self.host = host
        self.username = username
        self.port = port
        self._lock = threading.RLock()

    @property
    def description(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    def is_active(self) -> bool:
        with self._lock:
            transport = self.client.get_transport() if self.client else None
            return bool(transport and transport.is_active())

    def close(self) -> None:
        """Close connections and cleanup resources."""
        logger.info(f"Closing session {self.description}")
        with self._lock:
            if self.sftp is not None:
                try:
                    self.sftp.close()
                except Exception as e:
                    logger.warning(f"Error closing SFTP client: {e}")
                finally:
                    self.sftp = None
            if self.client is not None:
                try:
                    self.client.close()
                except Exception as e:
                    logger.warning(f"Error closing SSH client: {e}")
                finally:
                    self.client = None


def open_session(
    host: str,
    username: str,
    port: int = DEFAULT_PORT,
    *,
    password: Optional[str] = None,
    confirm: Optional[Callable[[str], bool]] = None,
    password_prompt: Optional[Callable[[str], str]] = None,
    known_hosts: Optional[str] = None,
    client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    timeout: float = 15,
) -> RemoteSession:
    """Establish an SSH/SFTP session or raise :class:`SessionError`."""
    known_hosts = os.path.expanduser(known_hosts or KNOWN_HOSTS_PATH)
    logger.info(f"Connecting to {username}@{host}:{port}")

    client = client_factory()
    try:
        if os.path.exists(known_hosts):
            client.load_host_keys(known_hosts)
        client.set_missing_host_key_policy(
            PromptHostKeyPolicy(confirm or _ask_on_terminal, known_hosts)
        )
        try:
            client.connect(
                hostname=host,
                username=username,
                password=password,
                port=port,
                allow_agent=True,
                look_for_keys=True,
                timeout=timeout,
                auth_timeout=timeout,
            )
        except paramiko.AuthenticationException:
            if password_prompt is None or password is not None:
                raise
            client.connect(
                hostname=host,
                username=username,
                password=password_prompt(f"{username}@{host}'s password: "),
                port=port,
                allow_agent=False,
                look_for_keys=False,
                timeout=timeout,
                auth_timeout=timeout,
            )
        sftp = client.open_sftp()
    except SessionError:
        client.close()
        raise
    except paramiko.BadHostKeyException as e:
        client.close()
        logger.error(f"Host key mismatch for {host}: {e}")
        raise SessionError("possible person in the middle attack") from e
    except paramiko.AuthenticationException as e:
        client.close()
        raise SessionError(f"unable to authenticate session for {username}@{host}") from e
    except (paramiko.SSHException, socket.error, EOFError) as e:
        client.close()
        raise SessionError(f"connection to {host}:{port} failed: {e}") from e

    logger.info("SFTP connection established successfully")
    return RemoteSession(client, sftp, host, username, port)


def stat_isdir(attr: paramiko.SFTPAttributes) -> bool:
    """Return ``True`` when the attribute represents a directory."""
    return bool(attr.st_mode and stat.S_ISDIR(attr.st_mode))


class RemoteFilesystem(Filesystem):
    """:class:`Filesystem` backed by the session's SFTP channel."""

    label = "remote"
    pathmod = posixpath

    def __init__(self, session: RemoteSession) -> None:
        self._session = session

    @property
    def session(self) -> RemoteSession:
        return self._session

    def _sftp(self, path: str) -> paramiko.SFTPClient:
        sftp = self._session.sftp
        if sftp is None:
            raise translate_os_error(EOFError("session closed"), path)
        return sftp

    def normalize(self, path: str) -> str:
        """Expand ~ and relative paths on remote server."""
        sftp = self._sftp(path)
        if path == "~" or path.startswith("~/"):
            try:
                home_path = sftp.normalize(".")
            except IOError:
                home_path = self._guess_home(sftp)
            return home_path if path == "~" else posixpath.join(home_path, path[2:])
        if not path.startswith("/"):
            try:
                return sftp.normalize(path or ".")
            except IOError as exc:
                raise translate_os_error(exc, path) from exc
        return posixpath.normpath(path)

    def _guess_home(self, sftp: paramiko.SFTPClient) -> str:
        username = self._session.username
        for candidate in (f"/home/{username}", f"/Users/{username}", f"/export/home/{username}"):
            try:
                sftp.listdir_attr(candidate)
            except IOError:
                continue
            return candidate
        return f"/home/{username}"

    def list_directory(self, path: str) -> List[FileEntry]:
        sftp = self._sftp(path)
        entries: List[FileEntry] = []
        try:
            attrs = sftp.listdir_attr(path)
        except Exception as exc:
            raise translate_os_error(exc, path) from exc
        for attr in attrs:
            if not attr.filename or attr.filename in (".", ".."):
                continue
            is_dir = stat_isdir(attr)
            if stat.S_ISLNK(attr.st_mode or 0):
                is_dir = self._link_is_dir(sftp, posixpath.join(path, attr.filename))
            entries.append(FileEntry(
                name=attr.filename,
                is_dir=is_dir,
                size=attr.st_size or 0,
                modified=attr.st_mtime or 0.0,
            ))
        logger.debug(f"Listed {len(entries)} remote entries in {path}")
        return entries

    @staticmethod
    def _link_is_dir(sftp: paramiko.SFTPClient, path: str) -> bool:
        try:
            return stat_isdir(sftp.stat(path))
        except IOError:
            return False

    def open_read(self, path: str) -> ByteSource:
        sftp = self._sftp(path)
        try:
            handle = sftp.open(path, "rb")
        except Exception as exc:
            raise translate_os_error(exc, path) from exc
        try:
            size = handle.stat().st_size or 0
            handle.prefetch(size)
        except Exception as exc:
            handle.close()
            raise translate_os_error(exc, path) from exc
        return ByteSource(handle, size, path)

    def open_write(self, path: str) -> ByteSink:
        sftp = self._sftp(path)
        try:
            handle = sftp.open(path, "wb")
        except Exception as exc:
            raise translate_os_error(exc, path) from exc
        handle.set_pipelined(True)
        return ByteSink(handle, path)

    def make_directory(self, path: str) -> bool:
        sftp = self._sftp(path)
        try:
            sftp.mkdir(path)
        except IOError as exc:
            # SFTP servers report "already exists" as a generic failure.
            try:
                attr = sftp.stat(path)
            except IOError:
                raise translate_os_error(exc, path) from exc
            if stat_isdir(attr):
                return False
            raise AlreadyExistsAsFileError(path) from exc
        except Exception as exc:
            raise translate_os_error(exc, path) from exc
        logger.info(f"Created remote directory: {path}")
        return True
