"""Transfer task model shared by the planner, the engine and the controller."""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from .fileops import Filesystem


class Side(Enum):
    """Which pane of the browser."""
    LOCAL = "local"
    REMOTE = "remote"

    @property
    def other(self) -> "Side":
        return Side.REMOTE if self is Side.LOCAL else Side.LOCAL


class Direction(Enum):
    """Upload copies local to remote, download copies remote to local."""
    UPLOAD = "upload"
    DOWNLOAD = "download"

    @classmethod
    def for_source(cls, side: Side) -> "Direction":
        return cls.UPLOAD if side is Side.LOCAL else cls.DOWNLOAD

    @property
    def source_side(self) -> Side:
        return Side.LOCAL if self is Direction.UPLOAD else Side.REMOTE

    @property
    def destination_side(self) -> Side:
        return self.source_side.other

    @property
    def verb(self) -> str:
        return "Uploading" if self is Direction.UPLOAD else "Downloading"


class TransferState(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferState.COMPLETED, TransferState.FAILED, TransferState.CANCELLED)


_task_ids = itertools.count(1)
_batch_ids = itertools.count(1)


def new_task_id() -> str:
    return f"t{next(_task_ids)}"


def new_batch_id() -> str:
    return f"b{next(_batch_ids)}"


@dataclass
class TransferTask:
    """One file-level copy. Directories never become tasks."""

    batch_id: str
    direction: Direction
    source_path: str
    destination_path: str
    total_bytes: int = 0
    transferred_bytes: int = 0
    state: TransferState = TransferState.QUEUED
    reason: Optional[str] = None
    destination_opened: bool = False
    connection_lost: bool = False
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = new_task_id()

    def event(self) -> "TransferEvent":
        return TransferEvent(
            task_id=self.id,
            batch_id=self.batch_id,
            transferred_bytes=self.transferred_bytes,
            state=self.state,
            reason=self.reason,
            destination_opened=self.destination_opened,
            connection_lost=self.connection_lost,
        )


@dataclass(frozen=True)
class TransferEvent:
    """Progress or state change of one task, as seen by the controller."""

    task_id: str
    batch_id: str
    transferred_bytes: int
    state: TransferState
    reason: Optional[str] = None
    # The destination file exists from here on.
    destination_opened: bool = False
    connection_lost: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


def bind_endpoints(
    direction: Direction, local: Filesystem, remote: Filesystem
) -> Tuple[Filesystem, Filesystem]:
    """Return ``(source, destination)`` filesystems for ``direction``."""
    if direction is Direction.UPLOAD:
        return local, remote
    return remote, local
