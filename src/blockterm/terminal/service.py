"""In-memory orchestration of several block sessions."""

from __future__ import annotations

import logging as py_logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from blockterm.config import SessionConfig
from blockterm.errors import BlockTermError, ExitCode
from blockterm.terminal.classifier import CommandClassifier, build_rules
from blockterm.terminal.connection import Connection, OutputPump, PtyConnection, ShellFlavor, open_connection
from blockterm.terminal.events import EventKind, SessionEvent
from blockterm.terminal.handoff import FullscreenController, TerminalEmulator
from blockterm.terminal.models import ConnectionKind
from blockterm.terminal.session import Session

logger = py_logging.getLogger(__name__)

ConnectionFactory = Callable[[ConnectionKind, SessionConfig], Connection]

_RECORDED_KINDS = frozenset(
    {EventKind.CONNECTION_ERROR, EventKind.HANDOFF_STARTED, EventKind.HANDOFF_ENDED, EventKind.SESSION_CLOSED}
)


@dataclass(frozen=True)
class ServiceEvent:
    session_id: str
    step: str
    message: str


def _default_connection_factory(kind: ConnectionKind, config: SessionConfig) -> PtyConnection:
    return open_connection(
        kind,
        shell=list(config.shell) or None,
        remote_host=config.remote_host,
        remote_port=config.remote_port,
        remote_user=config.remote_user,
        cols=config.cols,
        rows=config.rows,
    )


class SessionService:
    def __init__(
        self,
        *,
        config: SessionConfig | None = None,
        max_sessions: int | None = None,
        connection_factory: ConnectionFactory | None = None,
        classifier: CommandClassifier | None = None,
        emulator: TerminalEmulator | None = None,
        pump: bool = True,
    ) -> None:
        self.config = config or SessionConfig()
        limit = self.config.max_sessions if max_sessions is None else max_sessions
        if limit < 1 or limit > 64:
            raise BlockTermError(
                f"Invalid max session count: {limit}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use a value between 1 and 64.",
            )
        self.max_sessions = limit
        self.classifier = classifier or CommandClassifier(build_rules(self.config.classifier_overrides()))
        self._connection_factory = connection_factory or _default_connection_factory
        self._emulator = emulator
        self._pump_enabled = pump
        self._sessions: dict[str, Session] = {}
        self._pumps: dict[str, OutputPump] = {}
        self._events: list[ServiceEvent] = []
        self._next_id = 1
        self._lock = threading.Lock()

    def list_sessions(self) -> list[Session]:
        with self._lock:
            return [self._sessions[key] for key in sorted(self._sessions)]

    def list_events(self) -> list[ServiceEvent]:
        with self._lock:
            return list(self._events)

    def clear_events(self) -> None:
        with self._lock:
            self._events.clear()
        logger.info("session-service-event session=* step=clear-events message=Session events cleared.")

    def open_session(self, kind: ConnectionKind | None = None, *, session_id: str = "") -> Session:
        resolved_kind = kind or ConnectionKind(self.config.default_kind)
        with self._lock:
            if session_id and session_id in self._sessions:
                raise BlockTermError(
                    f"Session already exists: {session_id}",
                    code=ExitCode.VALIDATION_ERROR,
                    hint="Use a unique session id.",
                )
            if len(self._sessions) >= self.max_sessions:
                raise BlockTermError(
                    f"Session limit reached: {self.max_sessions}",
                    code=ExitCode.VALIDATION_ERROR,
                    hint="Close another session before opening a new one.",
                )
            if not session_id:
                session_id = f"s{self._next_id}"
                self._next_id += 1

        connection = self._connection_factory(resolved_kind, self.config)
        session = Session(
            session_id,
            connection,
            kind=resolved_kind,
            classifier=self.classifier,
            fullscreen=FullscreenController(self._emulator),
            encoding=self.config.default_encoding,
            flavor=getattr(connection, "flavor", ShellFlavor.POSIX),
            completion_markers=self.config.completion_markers,
            suppress_echo=self.config.suppress_echo,
        )
        session.subscribe(self._on_session_event)
        with self._lock:
            self._sessions[session_id] = session
        if self._pump_enabled and isinstance(connection, PtyConnection):
            pump = OutputPump(connection, session)
            self._pumps[session_id] = pump
            pump.start()
        self._record(session_id, "open", f"Opened {resolved_kind.value} session.")
        return session

    def get(self, session_id: str) -> Session:
        return self._must_get(session_id)

    def close_session(self, session_id: str) -> None:
        session = self._must_get(session_id)
        session.close()
        pump = self._pumps.pop(session_id, None)
        if pump is not None:
            pump.stop()
        with self._lock:
            self._sessions.pop(session_id, None)
        self._record(session_id, "close", "Session closed.")

    def close_all(self) -> None:
        for session in self.list_sessions():
            self.close_session(session.session_id)

    def _on_session_event(self, event: SessionEvent) -> None:
        if event.kind in _RECORDED_KINDS:
            self._record(event.session_id, event.kind.value, event.message)

    def _must_get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise BlockTermError(
                f"Session not found: {session_id}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Select an existing session.",
            )
        return session

    def _record(self, session_id: str, step: str, message: str) -> None:
        with self._lock:
            self._events.append(ServiceEvent(session_id=session_id, step=step, message=message))
        logger.info("session-service-event session=%s step=%s message=%s", session_id, step, message)
