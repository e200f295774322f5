"""Exclusive connection hand-off for programs that need a real terminal."""

from __future__ import annotations

import logging as py_logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from blockterm.errors import BlockInFlight, BlockTermError, ExitCode
from blockterm.terminal.models import Block, BlockStatus, format_duration, utc_now

logger = py_logging.getLogger(__name__)

InputSink = Callable[[bytes], None]
ExitReporter = Callable[[int | None, bool], None]


class TerminalEmulator(Protocol):
    def begin(self, handoff: FullscreenHandoff, input_sink: InputSink) -> None: ...

    def feed(self, data: bytes) -> None: ...

    def end(self, handoff: FullscreenHandoff) -> None: ...


@dataclass
class FullscreenHandoff:
    session_id: str
    block_id: str
    command: str
    started_at: datetime = field(default_factory=utc_now)
    ended_at: datetime | None = None
    exit_code: int | None = None
    was_graceful: bool = True
    _reporter: ExitReporter | None = field(default=None, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    def report_exit(self, exit_code: int | None, graceful: bool = True) -> None:
        """Called by the emulator when the fullscreen view ends."""
        if self._reporter is not None and self.is_active:
            self._reporter(exit_code, graceful)

    def final_status(self) -> BlockStatus:
        if self.exit_code not in (None, 0):
            return BlockStatus.FAILED
        if not self.was_graceful:
            return BlockStatus.CANCELLED
        return BlockStatus.COMPLETED

    def summary(self) -> str:
        end = self.ended_at or utc_now()
        duration = format_duration(end - self.started_at)
        if not self.was_graceful and self.exit_code in (None, 0):
            return f"{self.command} closed after {duration}"
        if self.exit_code is None:
            return f"{self.command} ended after {duration}"
        return f"{self.command} exited with code {self.exit_code} after {duration}"


class FullscreenController:
    def __init__(self, emulator: TerminalEmulator | None = None) -> None:
        self.emulator = emulator
        self._active: FullscreenHandoff | None = None

    @property
    def active(self) -> FullscreenHandoff | None:
        return self._active

    @property
    def is_active(self) -> bool:
        return self._active is not None

    def begin(
        self,
        *,
        session_id: str,
        block: Block,
        connection_open: bool,
        input_sink: InputSink,
        reporter: ExitReporter,
        now: datetime | None = None,
    ) -> FullscreenHandoff:
        if self._active is not None:
            raise BlockInFlight(
                f"Fullscreen hand-off already active for block {self._active.block_id}.",
                code=ExitCode.SESSION_ERROR,
                hint="Close the current fullscreen program first.",
            )
        if not connection_open:
            raise BlockTermError(
                "Cannot hand off a closed connection.",
                code=ExitCode.CONNECTION_ERROR,
                hint="Reconnect the session and retry.",
            )
        if self.emulator is None:
            raise BlockTermError(
                "No terminal emulator is available for fullscreen programs.",
                code=ExitCode.RUNTIME_ERROR,
                hint="Attach a terminal emulator to run editors, pagers and monitors.",
            )
        handoff = FullscreenHandoff(
            session_id=session_id,
            block_id=block.block_id,
            command=block.command,
            started_at=now or utc_now(),
            _reporter=reporter,
        )
        try:
            self.emulator.begin(handoff, input_sink)
        except BlockTermError:
            raise
        except Exception as exc:
            raise BlockTermError(
                "Terminal emulator failed to start.",
                code=ExitCode.RUNTIME_ERROR,
                hint=str(exc) or "Inspect the emulator logs.",
            ) from exc
        self._active = handoff
        logger.info("Fullscreen hand-off started session=%s block=%s", session_id, block.block_id)
        return handoff

    def forward(self, data: bytes) -> None:
        if self._active is None or self.emulator is None:
            return
        try:
            self.emulator.feed(data)
        except Exception:
            logger.exception("Terminal emulator rejected output for block %s", self._active.block_id)

    def finish(self, exit_code: int | None, *, graceful: bool, now: datetime | None = None) -> FullscreenHandoff | None:
        handoff = self._active
        if handoff is None:
            return None
        self._active = None
        handoff.exit_code = exit_code
        handoff.was_graceful = graceful
        handoff.ended_at = now or utc_now()
        if self.emulator is not None:
            try:
                self.emulator.end(handoff)
            except Exception:
                logger.exception("Terminal emulator failed to close for block %s", handoff.block_id)
        logger.info(
            "Fullscreen hand-off ended session=%s block=%s exit=%s graceful=%s",
            handoff.session_id,
            handoff.block_id,
            exit_code,
            graceful,
        )
        return handoff
