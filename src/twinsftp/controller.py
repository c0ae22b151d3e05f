"""Application controller: owns both panes, the engine and the event loop."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Dict, Optional, Set, Tuple

from .background import BackgroundRunner
from .engine import TransferEngine
from .errors import ConnectionLostError, NavigationError
from .fileops import FileEntry, Filesystem
from .messages import UserMessage, UserMessages
from .pane import Pane
from .planner import TransferPlan, TransferPlanner
from .progress import BatchProgress, RateTracker
from .settings import SettingsManager
from .transfers import Direction, Side, bind_endpoints, new_batch_id

logger = logging.getLogger(__name__)

PAGE_SIZE = 10


class Lifecycle(Enum):
    RUNNING = auto()
    QUITTING = auto()
    FORCE_QUITTING = auto()
    TERMINATED = auto()


class KeyEvent(Enum):
    """Discrete input events, independent of the terminal library."""
    UP = auto()
    DOWN = auto()
    PAGE_UP = auto()
    PAGE_DOWN = auto()
    HOME = auto()
    END = auto()
    ENTER = auto()
    BACK = auto()
    SWITCH_PANE = auto()
    TRANSFER = auto()
    TOGGLE_HIDDEN = auto()
    REFRESH = auto()
    CANCEL_BATCH = auto()
    DISMISS = auto()
    HELP = auto()
    QUIT = auto()
    FORCE_QUIT = auto()


@dataclass(frozen=True)
class PaneView:
    side: Side
    location: str
    entries: Tuple[FileEntry, ...]
    selected_index: Optional[int]
    show_hidden: bool
    loading: bool
    error: Optional[str]
    active: bool


@dataclass(frozen=True)
class BatchView:
    batch_id: str
    title: str
    ratio: float
    info: str
    finished: bool
    cancel_requested: bool
    problems: Tuple[Tuple[str, str], ...]
    partial_files: Tuple[str, ...]


@dataclass(frozen=True)
class AppSnapshot:
    """Everything the renderer needs for one frame. Read-only."""

    local: PaneView
    remote: PaneView
    active_side: Side
    batches: Tuple[BatchView, ...]
    planning: Tuple[str, ...]
    lifecycle: Lifecycle
    show_help: bool
    messages: Tuple[UserMessage, ...]
    banner: Optional[str]


class Controller:
    """Single writer of all navigation and transfer bookkeeping state.

    Everything here runs on the control loop. Directory listings and
    transfer planning are handed to a :class:`BackgroundRunner`, transfers to
    the :class:`TransferEngine`; both report back through queues that
    :meth:`tick` drains without blocking.
    """

    def __init__(
        self,
        local_fs: Filesystem,
        remote_fs: Filesystem,
        *,
        settings: Optional[SettingsManager] = None,
        local_start: Optional[str] = None,
        remote_start: Optional[str] = None,
        engine: Optional[TransferEngine] = None,
        runner: Optional[BackgroundRunner] = None,
        clock: Callable[[], float] = time.monotonic,
        session=None,
    ) -> None:
        self.settings = settings or SettingsManager(autoload=False)
        self._filesystems: Dict[Side, Filesystem] = {Side.LOCAL: local_fs, Side.REMOTE: remote_fs}
        show_hidden = self.settings.get_bool("ui.show_hidden")
        self.panes: Dict[Side, Pane] = {
            side: Pane(side, show_hidden=show_hidden, pathmod=fs.pathmod)
            for side, fs in self._filesystems.items()
        }
        self._start_locations = {
            Side.LOCAL: local_start or self.settings.get("local.start_path"),
            Side.REMOTE: remote_start or self.settings.get("remote.start_path"),
        }
        self.engine = engine or TransferEngine(
            local_fs,
            remote_fs,
            max_concurrent=self.settings.get_int("transfers.max_concurrent"),
            chunk_size=self.settings.get_int("transfers.chunk_size"),
        )
        self.runner = runner or BackgroundRunner()
        self.messages = UserMessages(clock)
        self._clock = clock
        self._session = session
        self.active_side = Side.LOCAL
        self.lifecycle = Lifecycle.RUNNING
        self.show_help = False
        self.banner: Optional[str] = None
        self.batches: "OrderedDict[str, BatchProgress]" = OrderedDict()
        self._planning: Dict[str, str] = {}
        self._plan_cancels: Dict[str, threading.Event] = {}
        self._announced: Set[str] = set()
        self._started: Dict[str, int] = {}
        self._start_order = itertools.count()
        self._listing_generation: Dict[Side, int] = {Side.LOCAL: 0, Side.REMOTE: 0}
        self._handlers: Dict[KeyEvent, Callable[[], None]] = {
            KeyEvent.UP: lambda: self.active_pane.move_selection(-1),
            KeyEvent.DOWN: lambda: self.active_pane.move_selection(1),
            KeyEvent.PAGE_UP: lambda: self.active_pane.move_selection(-PAGE_SIZE),
            KeyEvent.PAGE_DOWN: lambda: self.active_pane.move_selection(PAGE_SIZE),
            KeyEvent.HOME: lambda: self.active_pane.select_first(),
            KeyEvent.END: lambda: self.active_pane.select_last(),
            KeyEvent.ENTER: self.enter_selected,
            KeyEvent.BACK: self.go_up,
            KeyEvent.SWITCH_PANE: self.switch_pane,
            KeyEvent.TRANSFER: self.start_transfer,
            KeyEvent.TOGGLE_HIDDEN: lambda: self.active_pane.toggle_hidden(),
            KeyEvent.REFRESH: self.refresh_all,
            KeyEvent.CANCEL_BATCH: self.cancel_newest_batch,
            KeyEvent.DISMISS: self.dismiss_finished,
            KeyEvent.HELP: self.toggle_help,
            KeyEvent.QUIT: self.quit,
            KeyEvent.FORCE_QUIT: self.force_quit,
        }

    # -- accessors -----------------------------------------------------------

    @property
    def active_pane(self) -> Pane:
        return self.panes[self.active_side]

    @property
    def inactive_pane(self) -> Pane:
        return self.panes[self.active_side.other]

    @property
    def is_terminated(self) -> bool:
        return self.lifecycle is Lifecycle.TERMINATED

    @property
    def exit_code(self) -> int:
        return 1 if self.banner else 0

    # -- event loop ----------------------------------------------------------

    def start(self) -> None:
        """Issue the initial listing of both panes."""
        for side, location in self._start_locations.items():
            self.request_refresh(side, location)

    def run(self, ui) -> int:
        """Drive the loop until terminated; ``ui`` reads keys and draws frames."""
        self.start()
        try:
            while not self.is_terminated:
                key = ui.read_key()
                if key is not None:
                    self.handle_key(key)
                self.tick()
                ui.draw(self.snapshot())
        finally:
            self.shutdown()
        return self.exit_code

    def shutdown(self) -> None:
        self.engine.shutdown(wait=False)
        self.runner.shutdown(wait=False)

    def handle_key(self, key: KeyEvent) -> None:
        if self.is_terminated:
            return
        logger.debug(f"Key {key.name} in {self.lifecycle.name}")
        self._handlers[key]()

    def tick(self) -> None:
        """One loop iteration worth of non-blocking bookkeeping."""
        self.runner.drain()
        self._fold_engine_events()
        self._retire_finished()
        if self.lifecycle is Lifecycle.QUITTING and self._nothing_outstanding():
            logger.info("All transfers finished, terminating")
            self.lifecycle = Lifecycle.TERMINATED

    def snapshot(self) -> AppSnapshot:
        return AppSnapshot(
            local=self._pane_view(Side.LOCAL),
            remote=self._pane_view(Side.REMOTE),
            active_side=self.active_side,
            batches=tuple(self._batch_view(batch) for batch in self.batches.values()),
            planning=tuple(self._planning.values()),
            lifecycle=self.lifecycle,
            show_help=self.show_help,
            messages=self.messages.current(),
            banner=self.banner,
        )

    def _pane_view(self, side: Side) -> PaneView:
        pane = self.panes[side]
        return PaneView(
            side=side,
            location=pane.location,
            entries=pane.visible_entries,
            selected_index=pane.selected_index,
            show_hidden=pane.show_hidden,
            loading=pane.loading,
            error=pane.error,
            active=side is self.active_side,
        )

    @staticmethod
    def _batch_view(batch: BatchProgress) -> BatchView:
        return BatchView(
            batch_id=batch.batch_id,
            title=batch.title,
            ratio=batch.ratio,
            info=batch.info(),
            finished=batch.finished,
            cancel_requested=batch.cancel_requested,
            problems=tuple(batch.problems),
            partial_files=tuple(batch.partial_files),
        )

    # -- navigation ----------------------------------------------------------

    def request_refresh(self, side: Side, location: Optional[str] = None) -> None:
        """List ``location`` (default: the current one) in the background."""
        pane = self.panes[side]
        fs = self._filesystems[side]
        target = location or pane.location
        self._listing_generation[side] += 1
        generation = self._listing_generation[side]
        pane.loading = True

        def _load() -> Tuple[str, list]:
            normalized = fs.normalize(target)
            return normalized, fs.list_directory(normalized)

        self.runner.submit(
            _load,
            on_success=lambda result: self._on_listing_loaded(side, generation, *result),
            on_error=lambda exc: self._on_listing_failed(side, generation, target, exc),
        )

    def _on_listing_loaded(self, side: Side, generation: int, location: str, entries) -> None:
        if generation != self._listing_generation[side]:
            return
        self.panes[side].apply_listing(entries, location)

    def _on_listing_failed(self, side: Side, generation: int, target: str, exc: Exception) -> None:
        if generation != self._listing_generation[side]:
            return
        error = NavigationError(f"Cannot open {target}: {exc}")
        self.panes[side].fail_listing(str(error))
        self.messages.error(str(error))
        if side is Side.REMOTE and isinstance(exc, ConnectionLostError):
            self._check_session(exc)

    def _check_session(self, reason) -> None:
        """Turn a lost connection into a fatal banner unless the session is fine."""
        if self.banner is not None:
            return
        if self._session is not None and self._session.is_active():
            return
        self.banner = f"Connection lost: {reason}"
        logger.error(self.banner)
        self.quit()

    def enter_selected(self) -> None:
        pane = self.active_pane
        target = pane.enter_selected()
        if target is not None:
            self.request_refresh(self.active_side, target)
            return
        entry = pane.selected_entry
        if entry is None:
            self.messages.report("No directory selected.")
        else:
            self.messages.warn(f'Cannot enter "{entry.name}" because it is not a directory.')

    def go_up(self) -> None:
        target = self.active_pane.go_up()
        if target is not None:
            self.request_refresh(self.active_side, target)

    def switch_pane(self) -> None:
        self.active_side = self.active_side.other

    def refresh_all(self) -> None:
        for side in Side:
            self.request_refresh(side)

    def toggle_help(self) -> None:
        self.show_help = not self.show_help

    # -- transfers -----------------------------------------------------------

    def start_transfer(self) -> Optional[str]:
        """Plan a transfer of the active pane's selection into the other pane.

        Returns the new batch id, or ``None`` when nothing was started.
        """
        if self.lifecycle is not Lifecycle.RUNNING:
            self.messages.warn("Quitting: new transfers are disabled.")
            return None
        source_pane = self.active_pane
        entry = source_pane.selected_entry
        if entry is None:
            self.messages.report("No file selected.")
            return None

        direction = Direction.for_source(self.active_side)
        source_fs, destination_fs = bind_endpoints(
            direction, self._filesystems[Side.LOCAL], self._filesystems[Side.REMOTE]
        )
        planner = TransferPlanner(source_fs, destination_fs)
        source_dir = source_pane.location
        destination_base = self.inactive_pane.location
        batch_id = new_batch_id()
        title = f'{direction.verb} "{entry.label}"'
        self._planning[batch_id] = title
        self._started[batch_id] = next(self._start_order)
        cancel = self._plan_cancels[batch_id] = threading.Event()
        logger.info(f"{title} from {source_dir} to {destination_base} (batch {batch_id})")

        self.runner.submit(
            lambda: planner.plan(direction, source_dir, entry, destination_base,
                                 batch_id=batch_id, cancel=cancel),
            on_success=lambda plan: self._on_plan_ready(plan, title, destination_base),
            on_error=lambda exc: self._on_plan_failed(batch_id, direction, destination_base, title, exc),
        )
        return batch_id

    def _new_batch(self, batch_id: str, title: str, direction: Direction,
                   destination_base: str) -> BatchProgress:
        batch = BatchProgress(
            batch_id=batch_id,
            title=title,
            direction=direction,
            destination_base=destination_base,
            rate=RateTracker(self._clock),
        )
        self.batches[batch_id] = batch
        return batch

    def _on_plan_ready(self, plan: TransferPlan, title: str, destination_base: str) -> None:
        self._planning.pop(plan.batch_id, None)
        cancel = self._plan_cancels.pop(plan.batch_id, None)
        if self.is_terminated:
            return
        batch = self._new_batch(plan.batch_id, title, plan.direction, destination_base)
        for failure in plan.failures:
            batch.add_planning_failure(failure.path, failure.reason)
        for task in plan.tasks:
            batch.add_task(task.id, task.destination_path, task.total_bytes)
        if plan.cancelled or (cancel is not None and cancel.is_set()):
            batch.cancel_requested = True
            batch.cancelled = batch.task_count
            batch.skipped = len(plan.skipped)
            return
        if plan.tasks:
            self.engine.enqueue(plan.tasks)

    def _on_plan_failed(self, batch_id: str, direction: Direction, destination_base: str,
                        title: str, exc: Exception) -> None:
        self._planning.pop(batch_id, None)
        self._plan_cancels.pop(batch_id, None)
        if self.is_terminated:
            return
        logger.error(f"Planning of batch {batch_id} failed: {exc}", exc_info=exc)
        batch = self._new_batch(batch_id, title, direction, destination_base)
        batch.add_planning_failure(destination_base, str(exc) or type(exc).__name__)

    def _fold_engine_events(self) -> None:
        for event in self.engine.poll_events():
            batch = self.batches.get(event.batch_id)
            if batch is not None:
                batch.apply(event)
            if event.connection_lost:
                self._check_session(event.reason)

    def _retire_finished(self) -> None:
        for batch_id, batch in list(self.batches.items()):
            if not batch.finished or batch_id in self._announced:
                continue
            self._announced.add(batch_id)
            self._announce(batch)
            if not self.is_terminated:
                self.request_refresh(batch.destination_side)
            if not batch.has_problems:
                self._forget(batch_id)

    def _announce(self, batch: BatchProgress) -> None:
        if not batch.has_problems:
            self.messages.report(f"Finished: {batch.title}.")
            return
        parts = []
        if batch.problems:
            parts.append(f"{len(batch.problems)} failed")
        if batch.cancelled or batch.skipped:
            parts.append(f"{batch.cancelled + batch.skipped} cancelled")
        self.messages.error(f"{batch.title}: {', '.join(parts)}.")
        if batch.partial_files:
            self.messages.warn(
                f"Partial files left behind: {', '.join(batch.partial_files)}"
            )

    def cancel_batch(self, batch_id: str) -> None:
        if batch_id in self._planning:
            self._plan_cancels[batch_id].set()
            self.messages.warn(f"Cancelling: {self._planning[batch_id]}")
            return
        batch = self.batches.get(batch_id)
        if batch is None or batch.finished:
            return
        batch.cancel_requested = True
        self.engine.cancel(batch_id)
        self.messages.warn(f"Cancelling: {batch.title}")

    def cancel_newest_batch(self) -> None:
        candidates = [
            batch_id for batch_id in self._planning if not self._plan_cancels[batch_id].is_set()
        ]
        candidates += [
            batch_id for batch_id, batch in self.batches.items()
            if not batch.finished and not batch.cancel_requested
        ]
        if not candidates:
            self.messages.report("No transfer to cancel.")
            return
        self.cancel_batch(max(candidates, key=self._started.__getitem__))

    def dismiss_finished(self) -> None:
        for batch_id, batch in list(self.batches.items()):
            if batch.finished and batch_id in self._announced:
                self._forget(batch_id)

    def _forget(self, batch_id: str) -> None:
        del self.batches[batch_id]
        self._announced.discard(batch_id)
        self._started.pop(batch_id, None)

    # -- lifecycle -----------------------------------------------------------

    def _nothing_outstanding(self) -> bool:
        return self.engine.is_idle and not self._planning

    def quit(self) -> None:
        if self.lifecycle is Lifecycle.RUNNING:
            self.lifecycle = Lifecycle.QUITTING
            logger.info("Quit requested")
        if self.lifecycle is not Lifecycle.QUITTING:
            return
        if self._nothing_outstanding():
            self.lifecycle = Lifecycle.TERMINATED
            return
        outstanding = self.engine.pending_count + self.engine.running_count + len(self._planning)
        self.messages.warn(
            f"Waiting for {outstanding} transfers to finish. Press Q to force quit."
        )

    def force_quit(self) -> None:
        """Cancel everything outstanding and terminate without waiting."""
        logger.info("Force quit requested")
        self.lifecycle = Lifecycle.FORCE_QUITTING
        for batch_id in self.engine.outstanding_batches():
            batch = self.batches.get(batch_id)
            if batch is not None:
                batch.cancel_requested = True
            self.engine.cancel(batch_id)
        for batch_id, cancel in self._plan_cancels.items():
            cancel.set()
            self._started.pop(batch_id, None)
        self._plan_cancels.clear()
        self._planning.clear()
        self._fold_engine_events()
        self.lifecycle = Lifecycle.TERMINATED
