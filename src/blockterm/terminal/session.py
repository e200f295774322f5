"""Block-mode session lifecycle over one connection."""

from __future__ import annotations

import logging as py_logging
import threading
from collections import Counter, deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime

from blockterm.errors import (
    BlockTermError,
    ExitCode,
    NoFocusTarget,
    SessionConnectionError,
    block_in_flight,
    session_closed,
)
from blockterm.logging import session_context
from blockterm.terminal.classifier import CommandClassification, CommandClassifier
from blockterm.terminal.connection import INTERRUPT, Connection, ShellFlavor, format_command_line
from blockterm.terminal.events import BlockField, EventChannel, EventKind, SessionEvent
from blockterm.terminal.focus import FocusArbiter, InputRoute
from blockterm.terminal.handoff import FullscreenController, FullscreenHandoff
from blockterm.terminal.models import Block, BlockStatus, ConnectionKind, utc_now
from blockterm.terminal.output import OutputMode, OutputProcessor, OutputSegment

logger = py_logging.getLogger(__name__)


class Session:
    """Owns one connection, its ordered blocks and the single output stream.

    Commands run one at a time: at most one block is non-terminal. When
    completion markers are enabled, every written command line is queued in
    ``_inflight`` by block index and its marker carries that index. A marker
    settles its own entry and drops older ones whose markers never came, which
    is what a shell does after SIGINT abandons the rest of a command list.
    Output goes to the non-terminal queued block; output that arrives while
    only cancelled entries are queued is discarded.
    All public methods serialize on one re-entrant lock; output delivery from
    the reader thread and input from the caller take the same lock. Records
    logged while it is held carry the session id.
    """

    def __init__(
        self,
        session_id: str,
        connection: Connection,
        *,
        kind: ConnectionKind = ConnectionKind.LOCAL,
        classifier: CommandClassifier | None = None,
        arbiter: FocusArbiter | None = None,
        fullscreen: FullscreenController | None = None,
        encoding: str | None = None,
        flavor: ShellFlavor = ShellFlavor.POSIX,
        completion_markers: bool = True,
        suppress_echo: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_id = session_id
        self.kind = kind
        self.classifier = classifier or CommandClassifier()
        self.events = EventChannel()
        self._connection = connection
        self._arbiter = arbiter or FocusArbiter()
        self._fullscreen = fullscreen or FullscreenController()
        self._processor = OutputProcessor(encoding)
        self._flavor = flavor
        self._completion_markers = completion_markers
        self._suppress_echo = suppress_echo
        self._clock = clock
        self._lock = threading.RLock()
        self._blocks: dict[str, Block] = {}
        self._next_index = 0
        self._active_block_id: str | None = None
        self._inflight: deque[tuple[int, str]] = deque()
        self._echo_pending: set[str] = set()
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed and self._connection.is_open

    @property
    def blocks(self) -> list[Block]:
        with self._guard():
            return list(self._blocks.values())

    @property
    def latest_block(self) -> Block | None:
        with self._guard():
            if not self._blocks:
                return None
            return next(reversed(self._blocks.values()))

    @property
    def focused_block_id(self) -> str | None:
        return self._arbiter.focused_block_id

    @property
    def handoff(self) -> FullscreenHandoff | None:
        return self._fullscreen.active

    def get_block(self, block_id: str) -> Block | None:
        with self._guard():
            return self._blocks.get(block_id)

    def subscribe(self, subscriber: Callable[[SessionEvent], None]) -> Callable[[], None]:
        return self.events.subscribe(subscriber)

    def submit(self, command_text: str) -> str:
        with self._guard():
            self._ensure_open()
            handoff = self._fullscreen.active
            if handoff is not None:
                raise block_in_flight(handoff.block_id)
            current = self._current_block()
            if current is not None:
                raise block_in_flight(current.block_id)
            command = command_text.strip()
            if not command:
                raise BlockTermError(
                    "Command cannot be empty.",
                    code=ExitCode.VALIDATION_ERROR,
                    hint="Type a command before submitting.",
                )

            result = self.classifier.classify(command)
            block = self._create_block(command, result)
            if result.fullscreen_required:
                self._begin_handoff(block)
            else:
                self._launch(block)
            return block.block_id

    def dispatch_input(self, data: bytes | str) -> InputRoute:
        """Route one input event; returns COMMAND_LINE when it belongs to the next command."""
        with self._guard():
            self._ensure_open()
            route = self._arbiter.route(latest=self.latest_block, lookup=self._blocks.get)
            if route in (InputRoute.FULLSCREEN, InputRoute.FOCUSED_BLOCK):
                self.send_raw_input(data)
            return route

    def send_raw_input(self, data: bytes | str) -> None:
        with self._guard():
            self._ensure_open()
            payload = data.encode(self._processor.encoding, errors="replace") if isinstance(data, str) else data
            if self._fullscreen.is_active:
                self._write(payload)
                return
            block = self._arbiter.focused_block(self._blocks.get)
            if block is None:
                raise NoFocusTarget(
                    "No focused block accepts input.",
                    code=ExitCode.SESSION_ERROR,
                    hint="Focus a running continuous or interactive block first.",
                )
            self._write(payload)
            if block.enter_interactive():
                self._emit(EventKind.BLOCK_CHANGED, block.block_id, BlockField.STATUS, block.status.value)

    def cancel_focused(self) -> str:
        with self._guard():
            self._ensure_open()
            handoff = self._fullscreen.active
            if handoff is not None:
                self.cancel(handoff.block_id)
                return handoff.block_id
            block = self._arbiter.focused_block(self._blocks.get)
            if block is None:
                raise NoFocusTarget(
                    "No focused block to cancel.",
                    code=ExitCode.SESSION_ERROR,
                    hint="Focus a running block before cancelling.",
                )
            self.cancel(block.block_id)
            return block.block_id

    def cancel(self, block_id: str) -> bool:
        with self._guard():
            block = self._must_get(block_id)
            if block.is_terminal:
                return False
            self._send_interrupt()
            handoff = self._fullscreen.active
            if handoff is not None and handoff.block_id == block_id:
                self._end_handoff(None, graceful=False)
                return True
            block.cancel(self._clock())
            self._after_terminal(block)
            return True

    def request_focus(self, block_id: str) -> None:
        with self._guard():
            self._ensure_open()
            handoff = self._fullscreen.active
            if handoff is not None:
                raise block_in_flight(handoff.block_id)
            block = self._must_get(block_id)
            previous = self._arbiter.request_focus(block)
            if previous is not None:
                self._emit(EventKind.FOCUS_CHANGED, previous, BlockField.FOCUS, "Focus lost.")
            self._emit(EventKind.FOCUS_CHANGED, block_id, BlockField.FOCUS, "Focus gained.")

    def clear_focus(self) -> None:
        with self._guard():
            previous = self._arbiter.clear_focus()
            if previous is not None:
                self._emit(EventKind.FOCUS_CHANGED, previous, BlockField.FOCUS, "Focus cleared.")

    def resize(self, cols: int, rows: int) -> None:
        with self._guard():
            if not self.is_open:
                return
            try:
                self._connection.resize(cols, rows)
            except SessionConnectionError as exc:
                logger.warning("Resize failed for session %s: %s", self.session_id, exc)
                self._emit(EventKind.CONNECTION_ERROR, message=str(exc))

    def clear_all(self) -> None:
        with self._guard():
            self._ensure_open()
            handoff = self._fullscreen.active
            if handoff is not None:
                raise block_in_flight(handoff.block_id)
            current = self._current_block()
            if current is not None:
                self.cancel(current.block_id)
            self._inflight.clear()
            self._blocks.clear()
            self._echo_pending.clear()
            self._active_block_id = None
            self._arbiter.clear_focus()
            self._processor.reset()
            self._emit(EventKind.SESSION_CLEARED, message="All blocks cleared.")

    def close(self) -> None:
        with self._guard():
            if self._closed:
                return
            if self._fullscreen.is_active:
                self._end_handoff(None, graceful=False)
            try:
                self._connection.close()
            except Exception as exc:
                logger.warning("Connection close failed for session %s: %s", self.session_id, exc)
            self._terminate("Session closed.")
            self._blocks.clear()
            self._inflight.clear()
            self._echo_pending.clear()
            self._active_block_id = None

    def stats(self) -> dict[str, object]:
        with self._guard():
            by_status = Counter(block.status.value for block in self._blocks.values())
            by_classification = Counter(block.classification.value for block in self._blocks.values())
            return {
                "session_id": self.session_id,
                "kind": self.kind.value,
                "is_open": self.is_open,
                "total_blocks": len(self._blocks),
                "by_status": dict(by_status),
                "by_classification": dict(by_classification),
                "focused_block_id": self._arbiter.focused_block_id,
                "handoff_active": self._fullscreen.is_active,
                "malformed_output": self._processor.malformed_count,
            }

    # Connection-side entry points, called by the output pump.

    def feed_output(self, data: bytes) -> None:
        with self._guard():
            if self._closed:
                return
            handoff = self._fullscreen.active
            if handoff is not None:
                self._fullscreen.forward(data)
                for segment in self._processor.feed(data):
                    # Late markers of earlier commands only settle their own entries.
                    if segment.has_marker and self._pop_inflight(segment.block_index) == handoff.block_id:
                        self._end_handoff(segment.exit_code, graceful=True)
                        break
                return
            for segment in self._processor.feed(data):
                self._deliver(segment)

    def handle_exit(self, exit_code: int | None) -> None:
        with self._guard():
            if self._closed:
                return
            if self._fullscreen.is_active:
                self._end_handoff(exit_code, graceful=True)
            else:
                for segment in self._processor.flush():
                    self._deliver(segment)
            current = self._current_block()
            if current is not None:
                current.finish(exit_code, self._clock())
                self._after_terminal(current)
            self._terminate(f"Connection exited with code {exit_code}.")

    def handle_connection_error(self, error: SessionConnectionError) -> None:
        with self._guard():
            if self._closed:
                return
            self._record_connection_error(error)
            if not self._connection.is_open:
                self._terminate("Connection lost.")

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with self._lock, session_context(self.session_id):
            yield

    # Internals. Callers hold the lock.

    def _create_block(self, command: str, result: CommandClassification) -> Block:
        index = self._next_index
        self._next_index += 1
        block = Block(
            block_id=f"{self.session_id}:{index}",
            index=index,
            command=command,
            classification=result.classification,
            fullscreen_required=result.fullscreen_required,
            created_at=self._clock(),
            metadata={"rule": result.rule, "process_kind": result.process_kind.value},
        )
        self._blocks[block.block_id] = block
        self._emit(EventKind.BLOCK_CREATED, block.block_id, message=block.command)
        return block

    def _launch(self, block: Block) -> None:
        self._active_block_id = block.block_id
        try:
            self._write_command(block)
        except SessionConnectionError as exc:
            block.fail(reason=exc.message, now=self._clock())
            self._after_terminal(block)
            self._emit(EventKind.CONNECTION_ERROR, block.block_id, message=str(exc))
            return
        block.start(self._clock())
        self._track(block)
        self._emit(EventKind.BLOCK_CHANGED, block.block_id, BlockField.STATUS, block.status.value)
        if self._arbiter.auto_focus(block):
            self._emit(EventKind.FOCUS_CHANGED, block.block_id, BlockField.FOCUS, "Focus gained.")

    def _begin_handoff(self, block: Block) -> None:
        self._active_block_id = block.block_id
        now = self._clock()
        try:
            self._fullscreen.begin(
                session_id=self.session_id,
                block=block,
                connection_open=self._connection.is_open,
                input_sink=self._write_fullscreen_input,
                reporter=self._report_handoff_exit,
                now=now,
            )
        except BlockTermError as exc:
            logger.warning("Fullscreen hand-off failed for %s: %s", block.block_id, exc)
            block.fail(reason=exc.message, now=now)
            self._after_terminal(block)
            return
        try:
            self._write_command(block)
        except SessionConnectionError as exc:
            self._fullscreen.finish(None, graceful=False, now=self._clock())
            block.fail(reason=exc.message, now=self._clock())
            self._after_terminal(block)
            self._emit(EventKind.CONNECTION_ERROR, block.block_id, message=str(exc))
            return
        block.start(now)
        block.enter_interactive()
        self._track(block, echo=False)
        self._arbiter.suspend()
        self._processor.set_mode(OutputMode.FULLSCREEN)
        self._emit(EventKind.BLOCK_CHANGED, block.block_id, BlockField.STATUS, block.status.value)
        self._emit(EventKind.HANDOFF_STARTED, block.block_id, message=block.command)

    def _end_handoff(self, exit_code: int | None, *, graceful: bool, error: str = "") -> None:
        handoff = self._fullscreen.finish(exit_code, graceful=graceful, now=self._clock())
        if handoff is None:
            return
        self._processor.set_mode(OutputMode.BLOCK)
        self._arbiter.resume()
        summary = handoff.summary()
        block = self._blocks.get(handoff.block_id)
        if block is not None and not block.is_terminal:
            now = self._clock()
            block.summary = summary
            block.metadata["synthesized"] = "true"
            if block.append(summary):
                self._emit(EventKind.BLOCK_CHANGED, block.block_id, BlockField.OUTPUT)
            status = BlockStatus.FAILED if error else handoff.final_status()
            if status == BlockStatus.COMPLETED:
                block.complete(0, now)
            elif status == BlockStatus.FAILED:
                block.fail(exit_code, reason=error, now=now)
            else:
                block.cancel(now)
            self._after_terminal(block)
        self._emit(EventKind.HANDOFF_ENDED, handoff.block_id, message=summary)

    def _report_handoff_exit(self, exit_code: int | None, graceful: bool) -> None:
        with self._guard():
            self._end_handoff(exit_code, graceful=graceful)

    def _write_fullscreen_input(self, data: bytes) -> None:
        with self._guard():
            if self._closed or not self._fullscreen.is_active:
                return
            try:
                self._write(data)
            except SessionConnectionError:
                logger.warning("Fullscreen input dropped for session %s", self.session_id)

    def _deliver(self, segment: OutputSegment) -> None:
        target = self._output_target()
        if segment.text:
            if target is None:
                logger.debug("Discarded %s chars of unowned output", len(segment.text))
            else:
                text = self._strip_echo(target, segment.text)
                if text and target.append(text):
                    self._emit(EventKind.BLOCK_CHANGED, target.block_id, BlockField.OUTPUT)
        if segment.has_marker:
            block_id = self._pop_inflight(segment.block_index)
            block = self._blocks.get(block_id) if block_id else None
            if block is not None and not block.is_terminal:
                block.finish(segment.exit_code, self._clock())
                self._after_terminal(block)

    def _output_target(self) -> Block | None:
        if self._completion_markers:
            candidates = [block_id for _, block_id in self._inflight]
        else:
            candidates = [self._active_block_id] if self._active_block_id else []
        for block_id in candidates:
            block = self._blocks.get(block_id)
            if block is not None and not block.is_terminal:
                return block
        return None

    def _strip_echo(self, block: Block, text: str) -> str:
        if block.block_id not in self._echo_pending:
            return text
        newline = text.find("\n")
        if newline < 0:
            return ""
        self._echo_pending.discard(block.block_id)
        return text[newline + 1 :]

    def _track(self, block: Block, *, echo: bool = True) -> None:
        if self._completion_markers:
            self._inflight.append((block.index, block.block_id))
        if echo and self._suppress_echo:
            self._echo_pending.add(block.block_id)

    def _pop_inflight(self, block_index: int | None) -> str | None:
        """Settle the queue entry a marker belongs to and return its block id."""
        if block_index is None:
            return self._inflight.popleft()[1] if self._inflight else None
        while self._inflight and self._inflight[0][0] < block_index:
            index, block_id = self._inflight.popleft()
            logger.debug("No completion marker arrived for %s (index %s)", block_id, index)
        if self._inflight and self._inflight[0][0] == block_index:
            return self._inflight.popleft()[1]
        return None

    def _after_terminal(self, block: Block) -> None:
        self._echo_pending.discard(block.block_id)
        self._emit(EventKind.BLOCK_CHANGED, block.block_id, BlockField.STATUS, block.status.value)
        if self._arbiter.release(block.block_id):
            self._emit(EventKind.FOCUS_CHANGED, block.block_id, BlockField.FOCUS, "Focus cleared.")

    def _record_connection_error(self, error: SessionConnectionError) -> None:
        if self._fullscreen.is_active:
            self._end_handoff(None, graceful=False, error=error.message)
        current = self._current_block()
        if current is not None:
            current.fail(reason=error.message, now=self._clock())
            self._after_terminal(current)
        self._emit(EventKind.CONNECTION_ERROR, current.block_id if current else None, message=str(error))

    def _write_command(self, block: Block) -> None:
        line = format_command_line(
            block.command,
            flavor=self._flavor,
            with_marker=self._completion_markers,
            block_index=block.index,
        )
        self._connection.write(line.encode(self._processor.encoding, errors="replace"))

    def _write(self, payload: bytes) -> None:
        try:
            self._connection.write(payload)
        except SessionConnectionError as exc:
            self._record_connection_error(exc)
            raise

    def _send_interrupt(self) -> None:
        try:
            self._connection.write(INTERRUPT)
        except SessionConnectionError as exc:
            logger.warning("Interrupt not delivered for session %s: %s", self.session_id, exc)

    def _current_block(self) -> Block | None:
        if self._active_block_id is None:
            return None
        block = self._blocks.get(self._active_block_id)
        if block is None or block.is_terminal:
            return None
        return block

    def _must_get(self, block_id: str) -> Block:
        block = self._blocks.get(block_id)
        if block is None:
            raise BlockTermError(
                f"Block not found: {block_id}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Select an existing block.",
            )
        return block

    def _ensure_open(self) -> None:
        if not self.is_open:
            raise session_closed(self.session_id)

    def _terminate(self, reason: str) -> None:
        self._closed = True
        if self._fullscreen.is_active:
            self._end_handoff(None, graceful=False)
        for block in self._blocks.values():
            if block.cancel(self._clock()):
                self._emit(EventKind.BLOCK_CHANGED, block.block_id, BlockField.STATUS, block.status.value)
        previous = self._arbiter.clear_focus()
        if previous is not None:
            self._emit(EventKind.FOCUS_CHANGED, previous, BlockField.FOCUS, "Focus cleared.")
        self._emit(EventKind.SESSION_CLOSED, message=reason)
        logger.info("Session %s closed: %s", self.session_id, reason)

    def _emit(
        self,
        kind: EventKind,
        block_id: str | None = None,
        field: BlockField | None = None,
        message: str = "",
    ) -> None:
        self.events.publish(
            SessionEvent(session_id=self.session_id, kind=kind, block_id=block_id, field=field, message=message)
        )
