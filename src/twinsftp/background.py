"""Run slow filesystem calls off the control loop and hand results back."""

from __future__ import annotations

import logging
import queue
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

_Callback = Tuple[Callable[..., None], tuple]


class BackgroundRunner:
    """Submit work to a thread pool; marshal callbacks to the control loop.

    Callbacks never run on worker threads. They are queued and executed by
    :meth:`drain`, which the control loop calls once per iteration, so the
    loop stays the only writer of pane and controller state.
    """

    def __init__(self, executor: Optional[Executor] = None, max_workers: int = 4) -> None:
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="background"
        )
        self._callbacks: "queue.Queue[_Callback]" = queue.Queue()
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        """Submitted jobs whose callback has not been run yet."""
        return self._in_flight

    def submit(
        self,
        func: Callable[[], Any],
        *,
        on_success: Optional[Callable[[Any], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Future:
        """Submit operation with standardized error handling."""
        self._in_flight += 1
        future = self._executor.submit(func)

        def _handle_completion(fut: Future) -> None:
            try:
                result = fut.result()
            except Exception as exc:
                logger.debug(f"Background operation failed: {exc}")
                self._callbacks.put((on_error or self._log_error, (exc,)))
            else:
                self._callbacks.put((on_success or _ignore, (result,)))

        future.add_done_callback(_handle_completion)
        return future

    def drain(self) -> int:
        """Run every callback that is ready; return how many ran."""
        ran = 0
        while True:
            try:
                callback, args = self._callbacks.get_nowait()
            except queue.Empty:
                return ran
            self._in_flight -= 1
            ran += 1
            callback(*args)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)

    @staticmethod
    def _log_error(exc: Exception) -> None:
        logger.error(f"Operation failed: {exc}", exc_info=exc)


def _ignore(_result: Any) -> None:
    pass
