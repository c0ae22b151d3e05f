"""Public interface for the twinsftp package."""

__version__ = "0.3.0"

from .connection import RemoteFilesystem, RemoteSession, open_session
from .controller import AppSnapshot, Controller, KeyEvent, Lifecycle
from .engine import TransferEngine
from .fileops import FileEntry, Filesystem, LocalFilesystem, load_local_directory, normalize_local_path
from .pane import Pane
from .planner import TransferPlan, TransferPlanner
from .transfers import Direction, Side, TransferEvent, TransferState, TransferTask

__all__ = [
    "AppSnapshot",
    "Controller",
    "Direction",
    "FileEntry",
    "Filesystem",
    "KeyEvent",
    "Lifecycle",
    "LocalFilesystem",
    "Pane",
    "RemoteFilesystem",
    "RemoteSession",
    "Side",
    "TransferEngine",
    "TransferEvent",
    "TransferPlan",
    "TransferPlanner",
    "TransferState",
    "TransferTask",
    "load_local_directory",
    "normalize_local_path",
    "open_session",
]
