"""Typed change-notification channel for one session."""

from __future__ import annotations

import logging as py_logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

logger = py_logging.getLogger(__name__)

DEFAULT_HISTORY = 1024


class EventKind(str, Enum):
    BLOCK_CREATED = "block-created"
    BLOCK_CHANGED = "block-changed"
    FOCUS_CHANGED = "focus-changed"
    HANDOFF_STARTED = "handoff-started"
    HANDOFF_ENDED = "handoff-ended"
    CONNECTION_ERROR = "connection-error"
    SESSION_CLEARED = "session-cleared"
    SESSION_CLOSED = "session-closed"


class BlockField(str, Enum):
    STATUS = "status"
    OUTPUT = "output"
    FOCUS = "focus"


@dataclass(frozen=True)
class SessionEvent:
    session_id: str
    kind: EventKind
    block_id: str | None = None
    field: BlockField | None = None
    message: str = ""


Subscriber = Callable[[SessionEvent], None]


class EventChannel:
    def __init__(self, *, history: int = DEFAULT_HISTORY) -> None:
        self._subscribers: list[Subscriber] = []
        self._history: deque[SessionEvent] = deque(maxlen=history)
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def publish(self, event: SessionEvent) -> None:
        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers)
        logger.debug(
            "session-event session=%s block=%s kind=%s field=%s message=%s",
            event.session_id,
            event.block_id or "-",
            event.kind.value,
            event.field.value if event.field else "-",
            event.message,
        )
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", event.kind.value)

    def list_events(self) -> list[SessionEvent]:
        with self._lock:
            return list(self._history)

    def clear(self) -> None:
        with self._lock:
            self._history.clear()
