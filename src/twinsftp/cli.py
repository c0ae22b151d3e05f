"""Command line entry point."""

from __future__ import annotations

import argparse
import getpass
import logging
import os
import sys
from typing import List, Optional

from . import __version__
from .connection import RemoteFilesystem, open_session, parse_destination
from .controller import Controller
from .errors import SessionError
from .fileops import LocalFilesystem
from .settings import SettingsManager
from .ui import run_curses

logger = logging.getLogger(__name__)


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """Setup logging configuration for the client.

    Only a file handler is installed: the terminal belongs to curses while
    the browser is running.
    """
    handlers: List[logging.Handler] = []
    if log_file:
        path = os.path.expanduser(log_file)
        try:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            handlers.append(logging.FileHandler(path))
        except OSError as e:
            print(f"Warning: cannot write log file {path}: {e}", file=sys.stderr)
    if not handlers:
        handlers.append(logging.NullHandler())
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def port_number(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port number: {value!r}") from None
    if not 0 < port < 65536:
        raise argparse.ArgumentTypeError(f"port out of range: {port}")
    return port


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="twinsftp",
        description="Browse a local and a remote directory side by side and copy between them over SFTP.",
    )
    parser.add_argument("destination", help="remote host, as HOST, HOST:PORT or USER@HOST")
    parser.add_argument("-u", "--user", help="remote user name (default: from DESTINATION or the local user)")
    parser.add_argument("-p", "--port", type=port_number, help="SSH port (default: 22)")
    parser.add_argument("--config", help="settings file (default: ~/.config/twinsftp/settings.json)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR (default: from settings)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = SettingsManager(args.config)

    level_name = (args.log_level or settings.get("logging.level") or "INFO").upper()
    setup_logging(getattr(logging, level_name, logging.INFO), settings.get("logging.file"))

    try:
        host, username, port = parse_destination(args.destination, args.user, args.port)
        session = open_session(host, username, port, password_prompt=getpass.getpass)
    except SessionError as e:
        logger.error(f"Session establishment failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    controller = Controller(
        LocalFilesystem(),
        RemoteFilesystem(session),
        settings=settings,
        session=session,
    )
    try:
        exit_code = run_curses(controller, settings.get_int("ui.ticks_per_second"))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        controller.force_quit()
        exit_code = 130
    finally:
        session.close()

    if controller.banner:
        print(f"Error: {controller.banner}", file=sys.stderr)
    return exit_code
