"""Bounded-concurrency execution of transfer tasks."""

from __future__ import annotations

import logging
import queue
import threading
from collections import OrderedDict, deque
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Deque, Dict, Iterable, List, Optional, Set

from .errors import ConnectionLostError, FilesystemError, TransferError
from .fileops import Filesystem
from .transfers import (
    TransferEvent,
    TransferState,
    TransferTask,
    bind_endpoints,
)

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024
DEFAULT_MAX_CONCURRENT = 2


class TransferCancelledException(Exception):
    """Raised inside a worker to unwind a cancelled transfer."""


class TransferEngine:
    """Run queued :class:`TransferTask` objects on worker threads.

    Pending tasks are kept per batch and handed out round-robin across
    batches (FIFO inside a batch), never more than ``max_concurrent`` at a
    time. Workers report through a one-way event queue that the control
    loop drains with :meth:`poll_events` without blocking.

    The queue bookkeeping and every task mutation happen under ``_lock``;
    this is the only state shared between the control loop and workers.
    """

    def __init__(
        self,
        local_fs: Filesystem,
        remote_fs: Filesystem,
        *,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        executor: Optional[Executor] = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self._local_fs = local_fs
        self._remote_fs = remote_fs
        self.max_concurrent = max_concurrent
        self.chunk_size = chunk_size
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_concurrent, thread_name_prefix="transfer"
        )
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._pending: "OrderedDict[str, Deque[TransferTask]]" = OrderedDict()
        self._last_served: Optional[str] = None
        self._running: Dict[str, TransferTask] = {}
        self._tasks: Dict[str, TransferTask] = {}
        self._cancel_requested: Set[str] = set()
        self._events: "queue.Queue[TransferEvent]" = queue.Queue()

    # -- queue state -------------------------------------------------------

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(len(tasks) for tasks in self._pending.values())

    @property
    def running_count(self) -> int:
        with self._lock:
            return len(self._running)

    @property
    def is_idle(self) -> bool:
        with self._lock:
            return not self._pending and not self._running

    def outstanding_batches(self) -> Set[str]:
        """Batches with at least one task that is pending or running."""
        with self._lock:
            batches = set(self._pending)
            batches.update(task.batch_id for task in self._running.values())
            return batches

    def task(self, task_id: str) -> Optional[TransferTask]:
        with self._lock:
            return self._tasks.get(task_id)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is pending or running. Not for the control loop."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._pending and not self._running, timeout)

    # -- public operations ---------------------------------------------------

    def enqueue(self, tasks: Iterable[TransferTask]) -> None:
        """Append tasks to the pending queue; returns immediately."""
        with self._lock:
            for task in tasks:
                task.state = TransferState.QUEUED
                self._tasks[task.id] = task
                if task.batch_id not in self._pending:
                    self._pending[task.batch_id] = deque()
                    if self._last_served in self._pending:
                        # A new batch goes ahead of the one served last.
                        self._pending.move_to_end(self._last_served)
                self._pending[task.batch_id].append(task)
                logger.debug(f"Queued {task.id}: {task.source_path} -> {task.destination_path}")
        self._dispatch()

    def poll_events(self) -> List[TransferEvent]:
        """Drain whatever events accumulated since the last call."""
        events: List[TransferEvent] = []
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                break
            events.append(event)
            if event.is_terminal:
                with self._lock:
                    self._tasks.pop(event.task_id, None)
        return events

    def cancel(self, batch_id: str) -> int:
        """Cancel every unfinished task of ``batch_id``; return how many."""
        cancelled = 0
        with self._lock:
            for task in self._pending.pop(batch_id, ()):
                self._finish(task, TransferState.CANCELLED)
                cancelled += 1
            for task in self._running.values():
                if task.batch_id == batch_id and not task.state.is_terminal:
                    # The worker notices before its next chunk and unwinds.
                    self._cancel_requested.add(task.id)
                    self._finish(task, TransferState.CANCELLED)
                    cancelled += 1
            self._idle.notify_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} tasks of batch {batch_id}")
        return cancelled

    def cancel_all(self) -> int:
        return sum(self.cancel(batch_id) for batch_id in self.outstanding_batches())

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)

    # -- scheduling ------------------------------------------------------------

    def _next_pending(self) -> Optional[TransferTask]:
        while self._pending:
            batch_id, tasks = next(iter(self._pending.items()))
            task = tasks.popleft()
            self._last_served = batch_id
            if tasks:
                self._pending.move_to_end(batch_id)
            else:
                del self._pending[batch_id]
            return task
        return None

    def _dispatch(self) -> None:
        while True:
            with self._lock:
                if len(self._running) >= self.max_concurrent:
                    return
                task = self._next_pending()
                if task is None:
                    self._idle.notify_all()
                    return
                self._running[task.id] = task
                task.state = TransferState.RUNNING
                self._emit(task)
            self._executor.submit(self._run_task, task)

    def _emit(self, task: TransferTask) -> None:
        self._events.put(task.event())

    def _finish(self, task: TransferTask, state: TransferState, reason: Optional[str] = None) -> bool:
        """Move ``task`` to a terminal state exactly once."""
        with self._lock:
            if task.state.is_terminal:
                return False
            task.state = state
            task.reason = reason
            self._emit(task)
            return True

    # -- worker ------------------------------------------------------------------

    def _check_cancelled(self, task: TransferTask) -> None:
        if task.id in self._cancel_requested:
            raise TransferCancelledException(task.id)

    def _run_task(self, task: TransferTask) -> None:
        source_fs, destination_fs = bind_endpoints(task.direction, self._local_fs, self._remote_fs)
        logger.info(f"Starting {task.direction.value}: {task.source_path} -> {task.destination_path}")
        try:
            self._check_cancelled(task)
            with source_fs.open_read(task.source_path) as source:
                with self._lock:
                    task.total_bytes = source.size
                self._check_cancelled(task)
                with destination_fs.open_write(task.destination_path) as sink:
                    self._opened(task)
                    self._copy(task, source, sink)
        except TransferCancelledException:
            logger.info(f"Transfer cancelled: {task.source_path} "
                        f"({task.transferred_bytes}/{task.total_bytes} bytes written)")
        except FilesystemError as e:
            error = TransferError(task.source_path, str(e))
            logger.error(f"Transfer failed: {error}")
            with self._lock:
                task.connection_lost = isinstance(e, ConnectionLostError)
            self._finish(task, TransferState.FAILED, error.reason)
        except Exception as e:
            error = TransferError(task.source_path, str(e) or type(e).__name__)
            logger.error(f"Transfer failed: {error}", exc_info=True)
            self._finish(task, TransferState.FAILED, error.reason)
        else:
            if self._finish(task, TransferState.COMPLETED):
                logger.info(f"Transfer completed: {task.destination_path}")
        finally:
            with self._lock:
                self._running.pop(task.id, None)
                self._cancel_requested.discard(task.id)
                self._idle.notify_all()
            self._dispatch()

    def _opened(self, task: TransferTask) -> None:
        with self._lock:
            task.destination_opened = True
            if not task.state.is_terminal:
                self._emit(task)

    def _copy(self, task: TransferTask, source, sink) -> None:
        while True:
            self._check_cancelled(task)
            chunk = source.read(self.chunk_size)
            if not chunk:
                return
            self._check_cancelled(task)
            sink.write(chunk)
            with self._lock:
                # Progress stops the moment a cancel is recorded.
                self._check_cancelled(task)
                task.transferred_bytes += len(chunk)
                if task.transferred_bytes > task.total_bytes:
                    task.total_bytes = task.transferred_bytes
                self._emit(task)
