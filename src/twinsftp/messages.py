"""Short-lived status messages shown under the panes."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Tuple

logger = logging.getLogger(__name__)

MAX_MESSAGES = 5
MAX_MESSAGE_AGE = 10.0


class Level(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class UserMessage:
    created: float
    text: str
    level: Level = Level.INFO


class UserMessages:
    """Bounded queue of messages that expire after :data:`MAX_MESSAGE_AGE`."""

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 max_messages: int = MAX_MESSAGES, max_age: float = MAX_MESSAGE_AGE) -> None:
        self._clock = clock
        self._max_age = max_age
        self._messages: Deque[UserMessage] = deque(maxlen=max_messages)

    def report(self, text: str) -> None:
        self._push(text, Level.INFO)

    def warn(self, text: str) -> None:
        self._push(text, Level.WARNING)

    def error(self, text: str) -> None:
        self._push(text, Level.ERROR)

    def _push(self, text: str, level: Level) -> None:
        log = {Level.INFO: logger.info, Level.WARNING: logger.warning, Level.ERROR: logger.error}
        log[level](f"User message: {text}")
        self._messages.append(UserMessage(self._clock(), text, level))

    def current(self) -> Tuple[UserMessage, ...]:
        """Live messages, oldest first. Expired ones are dropped."""
        oldest_allowed = self._clock() - self._max_age
        while self._messages and self._messages[0].created < oldest_allowed:
            self._messages.popleft()
        return tuple(self._messages)
