"""Per-batch progress aggregation and transfer rate estimates."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from .fileops import format_size
from .transfers import Direction, Side, TransferEvent, TransferState

# Rates are averaged over this many seconds of history.
HISTORY_MAX_AGE = 5.0


def duration_to_string(seconds: float) -> str:
    """``MM:SS`` below an hour, ``H:MM:SS`` above."""
    seconds = int(seconds)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}:{minutes:02}:{seconds:02}"
    return f"{minutes:02}:{seconds:02}"


def bitrate_to_string(rate: int) -> str:
    if rate < 1_000:
        return f"{rate} bit/s"
    if rate < 1_000_000:
        return f"{rate / 1e3:.1f} Kbit/s"
    if rate < 1_000_000_000:
        return f"{rate / 1e6:.1f} Mbit/s"
    return f"{rate / 1e9:.1f} Gbit/s"


class RateTracker:
    """Sliding window of ``(time, bytes)`` samples."""

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 window: float = HISTORY_MAX_AGE) -> None:
        self._clock = clock
        self._window = window
        self._history: Deque[Tuple[float, int]] = deque([(clock(), 0)])

    def add(self, nbytes: int) -> None:
        now = self._clock()
        self._history.append((now, nbytes))
        oldest_allowed = now - self._window
        while self._history and self._history[0][0] <= oldest_allowed:
            self._history.popleft()

    def clear(self) -> None:
        self._history.clear()

    def bitrate(self) -> int:
        """Bits per second over the retained history; 0 without a time span."""
        if not self._history:
            return 0
        times = [t for t, _ in self._history]
        seconds = max(times) - min(times)
        if seconds <= 0:
            return 0
        bits = 8 * sum(nbytes for _, nbytes in self._history)
        return int(bits / seconds)

    def eta(self, remaining_bytes: int) -> Optional[float]:
        """Seconds until ``remaining_bytes`` are sent at the current rate."""
        if remaining_bytes <= 0:
            return 0.0
        bytes_per_second = self.bitrate() // 8
        if bytes_per_second == 0:
            return None
        return remaining_bytes / bytes_per_second


@dataclass
class BatchProgress:
    """Controller-side aggregate of one batch, built from engine events."""

    batch_id: str
    title: str
    direction: Direction
    destination_base: str
    total_bytes: int = 0
    task_bytes: Dict[str, int] = field(default_factory=dict)
    task_paths: Dict[str, str] = field(default_factory=dict)
    completed: int = 0
    failed: List[Tuple[str, str]] = field(default_factory=list)
    planning_failures: List[Tuple[str, str]] = field(default_factory=list)
    cancelled: int = 0
    partial_files: List[str] = field(default_factory=list)
    opened: Set[str] = field(default_factory=set)
    # Entries a cancelled walk never reached.
    skipped: int = 0
    cancel_requested: bool = False
    rate: RateTracker = field(default_factory=RateTracker)

    @property
    def destination_side(self) -> Side:
        return self.direction.destination_side

    @property
    def task_count(self) -> int:
        return len(self.task_bytes)

    @property
    def done_count(self) -> int:
        return self.completed + len(self.failed) + self.cancelled

    @property
    def transferred_bytes(self) -> int:
        return sum(self.task_bytes.values())

    @property
    def finished(self) -> bool:
        return self.done_count >= self.task_count

    @property
    def has_problems(self) -> bool:
        return bool(self.failed or self.planning_failures or self.cancelled or self.skipped)

    @property
    def ratio(self) -> float:
        if self.total_bytes <= 0:
            return 1.0 if self.finished else 0.0
        return min(self.transferred_bytes / self.total_bytes, 1.0)

    def add_task(self, task_id: str, destination_path: str, total_bytes: int) -> None:
        self.task_bytes[task_id] = 0
        self.task_paths[task_id] = destination_path
        self.total_bytes += total_bytes

    def add_planning_failure(self, path: str, reason: str) -> None:
        self.planning_failures.append((path, reason))

    @property
    def problems(self) -> List[Tuple[str, str]]:
        """Every path that did not make it, with the reason."""
        return self.planning_failures + self.failed

    def apply(self, event: TransferEvent) -> None:
        """Fold one engine event into the aggregate."""
        if event.task_id not in self.task_bytes:
            return
        previous = self.task_bytes[event.task_id]
        if event.transferred_bytes > previous:
            self.rate.add(event.transferred_bytes - previous)
            self.task_bytes[event.task_id] = event.transferred_bytes
        path = self.task_paths[event.task_id]
        if event.destination_opened or event.transferred_bytes > 0:
            self.opened.add(event.task_id)
        if event.state is TransferState.COMPLETED:
            self.completed += 1
        elif event.state is TransferState.FAILED:
            self.failed.append((path, event.reason or "transfer failed"))
        elif event.state is TransferState.CANCELLED:
            self.cancelled += 1
            if event.task_id in self.opened:
                self.partial_files.append(path)
        if self.finished:
            self.rate.clear()

    def info(self) -> str:
        """Right-hand side of the progress line."""
        files = f"{self.done_count}/{self.task_count} files"
        if self.finished:
            return f"{format_size(self.transferred_bytes)}  {files}"
        eta = self.rate.eta(self.total_bytes - self.transferred_bytes)
        eta_text = duration_to_string(eta) if eta is not None else "??:??"
        return (
            f"{format_size(self.transferred_bytes)}/{format_size(self.total_bytes)}  "
            f"{bitrate_to_string(self.rate.bitrate())}  {eta_text} ETA  {files}"
        )
