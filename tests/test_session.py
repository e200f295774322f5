from __future__ import annotations

from datetime import datetime, timezone

import pytest

from blockterm.errors import (
    BlockInFlight,
    BlockTermError,
    ExitCode,
    NoFocusTarget,
    SessionClosed,
    SessionConnectionError,
)
from blockterm.terminal.connection import INTERRUPT, format_command_line
from blockterm.terminal.events import BlockField, EventKind, SessionEvent
from blockterm.terminal.focus import InputRoute
from blockterm.terminal.handoff import FullscreenController, FullscreenHandoff
from blockterm.terminal.models import BlockStatus, Classification
from blockterm.terminal.output import completion_marker
from blockterm.terminal.session import Session

_T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class _FakeConnection:
    def __init__(self) -> None:
        self.is_open = True
        self.fail_writes = False
        self.writes: list[bytes] = []
        self.sizes: list[tuple[int, int]] = []

    def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise SessionConnectionError("Failed to write to connection.", code=ExitCode.CONNECTION_ERROR)
        self.writes.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.sizes.append((cols, rows))

    def close(self) -> None:
        self.is_open = False


class _FakeEmulator:
    def __init__(self) -> None:
        self.fed: list[bytes] = []
        self.ended: list[FullscreenHandoff] = []
        self.input_sink = None

    def begin(self, handoff: FullscreenHandoff, input_sink) -> None:
        self.input_sink = input_sink

    def feed(self, data: bytes) -> None:
        self.fed.append(data)

    def end(self, handoff: FullscreenHandoff) -> None:
        self.ended.append(handoff)


def _session(connection: _FakeConnection | None = None, *, emulator: _FakeEmulator | None = None, **kwargs) -> Session:
    return Session(
        "s1",
        connection or _FakeConnection(),
        fullscreen=FullscreenController(emulator),
        clock=lambda: _T0,
        **kwargs,
    )


def _marker(code: int, block_index: int) -> bytes:
    return completion_marker(code, block_index).encode()


def _kinds(session: Session) -> list[EventKind]:
    return [event.kind for event in session.events.list_events()]


def test_oneshot_block_collects_output_until_marker() -> None:
    connection = _FakeConnection()
    session = _session(connection)

    block_id = session.submit("ls")
    block = session.get_block(block_id)
    assert block is not None
    assert block.classification == Classification.ONE_SHOT
    assert block.status == BlockStatus.RUNNING
    assert connection.writes == [format_command_line("ls", block_index=0).encode()]

    session.feed_output(b"ls\r\nfile1\r\nfile2\r\n" + _marker(0, 0) + b"$ ")

    assert block.status == BlockStatus.COMPLETED
    assert block.exit_code == 0
    assert block.text == "file1\nfile2\n"
    assert session.focused_block_id is None


def test_nonzero_marker_fails_block() -> None:
    session = _session()
    block_id = session.submit("false")

    session.feed_output(b"false\r\n" + _marker(1, 0))

    block = session.get_block(block_id)
    assert block is not None
    assert block.status == BlockStatus.FAILED
    assert block.exit_code == 1


def test_output_split_across_chunks_is_routed_to_one_block() -> None:
    session = _session()
    block_id = session.submit("echo héllo")
    raw = "echo héllo\r\nhéllo\r\n".encode() + _marker(0, 0)

    for offset in range(len(raw)):
        session.feed_output(raw[offset : offset + 1])

    block = session.get_block(block_id)
    assert block is not None
    assert block.text == "héllo\n"
    assert block.status == BlockStatus.COMPLETED


def test_continuous_block_is_auto_focused_and_takes_input() -> None:
    connection = _FakeConnection()
    session = _session(connection)

    block_id = session.submit("top")
    assert session.focused_block_id == block_id

    route = session.dispatch_input(b"q")
    block = session.get_block(block_id)

    assert route == InputRoute.FOCUSED_BLOCK
    assert connection.writes[-1] == b"q"
    assert block is not None
    assert block.status == BlockStatus.INTERACTIVE

    session.feed_output(b"top\r\nload average\r\n" + _marker(0, 0))

    assert block.status == BlockStatus.COMPLETED
    assert session.focused_block_id is None
    assert session.dispatch_input(b"l") == InputRoute.COMMAND_LINE


def test_oneshot_block_is_never_focused() -> None:
    session = _session()
    block_id = session.submit("sleep 5")

    assert session.focused_block_id is None
    assert session.dispatch_input(b"x") == InputRoute.BUSY
    with pytest.raises(NoFocusTarget):
        session.request_focus(block_id)
    with pytest.raises(NoFocusTarget):
        session.send_raw_input(b"x")


def test_cancelled_block_discards_late_output() -> None:
    connection = _FakeConnection()
    session = _session(connection)
    ping_id = session.submit("ping example.com")
    session.feed_output(b"ping example.com\r\n64 bytes\r\n")

    assert session.cancel_focused() == ping_id
    assert connection.writes[-1] == INTERRUPT
    ping = session.get_block(ping_id)
    assert ping is not None
    assert ping.status == BlockStatus.CANCELLED
    assert session.focused_block_id is None

    session.feed_output(b"64 bytes late\r\n^C\r\n--- statistics ---\r\n" + _marker(130, 0) + b"$ ")
    ls_id = session.submit("ls")
    session.feed_output(b"ls\r\na.txt\r\n" + _marker(0, 1))

    ls_block = session.get_block(ls_id)
    assert ping.text == "64 bytes\n"
    assert ping.status == BlockStatus.CANCELLED
    assert ls_block is not None
    assert ls_block.text == "a.txt\n"
    assert ls_block.status == BlockStatus.COMPLETED


def test_next_command_completes_when_interrupted_command_never_reports() -> None:
    # SIGINT makes the shell abandon the rest of the line, so no marker follows.
    session = _session()
    sleep_id = session.submit("sleep 30")
    session.cancel(sleep_id)
    session.feed_output(b"sleep 30\r\n^C\r\n$ ")

    echo_id = session.submit("echo after-cancel")
    session.feed_output(b"echo after-cancel\r\nafter-cancel\r\n" + _marker(0, 1) + b"$ ")

    echo_block = session.get_block(echo_id)
    assert echo_block is not None
    assert echo_block.status == BlockStatus.COMPLETED
    assert echo_block.text == "after-cancel\n"

    ls_id = session.submit("ls")
    session.feed_output(_marker(0, 1))
    ls_block = session.get_block(ls_id)
    assert ls_block is not None
    assert ls_block.status == BlockStatus.RUNNING

    session.feed_output(b"ls\r\nnotes.txt\r\n" + _marker(0, 2))
    assert ls_block.status == BlockStatus.COMPLETED
    assert ls_block.text == "notes.txt\n"


def test_late_marker_of_cancelled_command_keeps_fullscreen_handoff() -> None:
    emulator = _FakeEmulator()
    session = _session(emulator=emulator)
    ping_id = session.submit("ping example.com")
    session.cancel(ping_id)

    vim_id = session.submit("vim notes.txt")
    session.feed_output(b"^C\r\n--- statistics ---\r\n" + _marker(130, 0))

    vim = session.get_block(vim_id)
    assert vim is not None
    assert session.handoff is not None
    assert vim.status == BlockStatus.INTERACTIVE

    session.feed_output(b"\x1b[?1049l" + _marker(0, 1))

    assert session.handoff is None
    assert vim.status == BlockStatus.COMPLETED
    assert vim.exit_code == 0


def test_cancel_of_terminal_block_is_a_no_op() -> None:
    connection = _FakeConnection()
    session = _session(connection)
    block_id = session.submit("ls")
    session.feed_output(b"ls\r\n" + _marker(0, 0))
    writes = list(connection.writes)

    assert session.cancel(block_id) is False
    assert connection.writes == writes


def test_cancel_focused_without_focus_raises() -> None:
    session = _session()
    session.submit("sleep 5")

    with pytest.raises(NoFocusTarget):
        session.cancel_focused()


def test_submit_rejects_second_command_while_in_flight() -> None:
    session = _session()
    first = session.submit("sleep 5")

    with pytest.raises(BlockInFlight) as exc:
        session.submit("ls")

    assert first in exc.value.message
    assert len(session.blocks) == 1


def test_submit_rejects_empty_command() -> None:
    with pytest.raises(BlockTermError) as exc:
        _session().submit("   ")

    assert exc.value.code == ExitCode.VALIDATION_ERROR


def test_submit_on_closed_connection_raises_session_closed() -> None:
    connection = _FakeConnection()
    session = _session(connection)
    connection.is_open = False

    with pytest.raises(SessionClosed):
        session.submit("ls")


def test_write_failure_fails_block_and_reports_connection_error() -> None:
    connection = _FakeConnection()
    connection.fail_writes = True
    session = _session(connection)

    block_id = session.submit("ls")

    block = session.get_block(block_id)
    assert block is not None
    assert block.status == BlockStatus.FAILED
    assert block.metadata["failure_reason"] == "Failed to write to connection."
    assert EventKind.CONNECTION_ERROR in _kinds(session)


def test_fullscreen_handoff_round_trip() -> None:
    connection = _FakeConnection()
    emulator = _FakeEmulator()
    session = _session(connection, emulator=emulator)

    block_id = session.submit("vi notes.txt")
    block = session.get_block(block_id)
    assert block is not None
    assert block.status == BlockStatus.INTERACTIVE
    assert session.handoff is not None
    assert EventKind.HANDOFF_STARTED in _kinds(session)

    assert session.dispatch_input(b":wq\r") == InputRoute.FULLSCREEN
    assert connection.writes[-1] == b":wq\r"
    session.feed_output(b"\x1b[?1049h\x1b[2J~\r\n")
    assert emulator.fed == [b"\x1b[?1049h\x1b[2J~\r\n"]
    assert block.text == ""

    with pytest.raises(BlockInFlight):
        session.submit("ls")

    session.feed_output(b"\x1b[?1049l" + _marker(0, 0))

    assert session.handoff is None
    assert len(emulator.ended) == 1
    assert block.status == BlockStatus.COMPLETED
    assert block.summary == "vi notes.txt exited with code 0 after 0s"
    assert block.text == block.summary
    assert block.metadata["synthesized"] == "true"
    assert _kinds(session)[-1] == EventKind.HANDOFF_ENDED

    next_id = session.submit("ls")
    session.feed_output(b"ls\r\nnotes.txt\r\n" + _marker(0, 1))
    next_block = session.get_block(next_id)
    assert next_block is not None
    assert next_block.text == "notes.txt\n"


def test_fullscreen_program_reporting_exit_through_emulator() -> None:
    session = _session(emulator=_FakeEmulator())
    block_id = session.submit("htop")
    handoff = session.handoff
    assert handoff is not None

    handoff.report_exit(None, graceful=False)

    block = session.get_block(block_id)
    assert block is not None
    assert block.status == BlockStatus.CANCELLED
    assert block.summary == "htop closed after 0s"
    assert session.handoff is None

    # The marker still owed by the shell is swallowed.
    session.feed_output(_marker(0, 0) + b"$ ")
    assert block.status == BlockStatus.CANCELLED


def test_emulator_input_sink_writes_to_connection() -> None:
    connection = _FakeConnection()
    emulator = _FakeEmulator()
    session = _session(connection, emulator=emulator)
    session.submit("less README")

    emulator.input_sink(b"q")

    assert connection.writes[-1] == b"q"


def test_fullscreen_without_emulator_fails_block_without_view() -> None:
    connection = _FakeConnection()
    session = _session(connection)

    block_id = session.submit("htop")

    block = session.get_block(block_id)
    assert block is not None
    assert block.status == BlockStatus.FAILED
    assert "emulator" in block.metadata["failure_reason"]
    assert connection.writes == []
    assert EventKind.HANDOFF_STARTED not in _kinds(session)
    session.submit("ls")


def test_cancel_during_handoff_ends_it_ungracefully() -> None:
    connection = _FakeConnection()
    session = _session(connection, emulator=_FakeEmulator())
    block_id = session.submit("vim")

    assert session.cancel_focused() == block_id

    block = session.get_block(block_id)
    assert block is not None
    assert block.status == BlockStatus.CANCELLED
    assert INTERRUPT in connection.writes
    assert session.handoff is None


def test_focus_and_clear_rejected_during_handoff() -> None:
    session = _session(emulator=_FakeEmulator())
    block_id = session.submit("vim")

    with pytest.raises(BlockInFlight):
        session.request_focus(block_id)
    with pytest.raises(BlockInFlight):
        session.clear_all()


def test_request_focus_emits_focus_events() -> None:
    session = _session()
    block_id = session.submit("python")
    session.clear_focus()
    assert session.focused_block_id is None

    session.request_focus(block_id)

    focus_events = [event for event in session.events.list_events() if event.kind == EventKind.FOCUS_CHANGED]
    assert focus_events[-1].block_id == block_id
    assert focus_events[-1].field == BlockField.FOCUS
    assert session.focused_block_id == block_id


def test_clear_all_discards_blocks_and_owed_output() -> None:
    connection = _FakeConnection()
    session = _session(connection)
    session.submit("sleep 100")

    session.clear_all()

    assert session.blocks == []
    assert connection.writes[-1] == INTERRUPT
    assert _kinds(session)[-1] == EventKind.SESSION_CLEARED

    session.feed_output(b"^C\r\n" + _marker(130, 0))
    next_id = session.submit("echo hi")
    session.feed_output(b"echo hi\r\nhi\r\n" + _marker(0, 1))

    block = session.get_block(next_id)
    assert block is not None
    assert block.index == 1
    assert block.text == "hi\n"
    assert block.status == BlockStatus.COMPLETED


def test_without_markers_output_goes_to_active_block_until_exit() -> None:
    connection = _FakeConnection()
    session = _session(connection, completion_markers=False)

    block_id = session.submit("ls")
    session.feed_output(b"ls\r\nfile\r\n")

    block = session.get_block(block_id)
    assert connection.writes == [b"ls\r"]
    assert block is not None
    assert block.status == BlockStatus.RUNNING
    assert block.text == "file\n"

    session.handle_exit(0)

    assert block.status == BlockStatus.COMPLETED
    assert session.is_open is False


def test_echo_kept_when_suppression_disabled() -> None:
    session = _session(suppress_echo=False)
    block_id = session.submit("ls")

    session.feed_output(b"ls\r\nfile\r\n" + _marker(0, 0))

    block = session.get_block(block_id)
    assert block is not None
    assert block.text == "ls\nfile\n"


def test_connection_exit_finishes_active_block_and_closes_session() -> None:
    session = _session()
    block_id = session.submit("python")

    session.handle_exit(1)

    block = session.get_block(block_id)
    assert block is not None
    assert block.status == BlockStatus.FAILED
    assert block.exit_code == 1
    assert session.is_open is False
    assert _kinds(session)[-1] == EventKind.SESSION_CLOSED
    with pytest.raises(SessionClosed):
        session.submit("ls")


def test_connection_error_fails_active_block() -> None:
    connection = _FakeConnection()
    session = _session(connection)
    block_id = session.submit("tail -f app.log")
    connection.is_open = False

    session.handle_connection_error(
        SessionConnectionError("Failed to read from connection.", code=ExitCode.CONNECTION_ERROR)
    )

    block = session.get_block(block_id)
    assert block is not None
    assert block.status == BlockStatus.FAILED
    assert block.metadata["failure_reason"] == "Failed to read from connection."
    assert EventKind.CONNECTION_ERROR in _kinds(session)
    assert session.focused_block_id is None
    assert session.is_open is False


def test_raw_input_write_failure_is_reported_and_raised() -> None:
    connection = _FakeConnection()
    session = _session(connection)
    block_id = session.submit("python")
    connection.fail_writes = True

    with pytest.raises(SessionConnectionError):
        session.send_raw_input("print(1)\r")

    block = session.get_block(block_id)
    assert block is not None
    assert block.status == BlockStatus.FAILED


def test_close_cancels_running_block_and_releases_blocks() -> None:
    connection = _FakeConnection()
    session = _session(connection)
    seen: list[SessionEvent] = []
    session.subscribe(seen.append)
    block_id = session.submit("npm run dev")
    block = session.get_block(block_id)

    session.close()
    session.close()

    assert block is not None
    assert block.status == BlockStatus.CANCELLED
    assert connection.is_open is False
    assert session.blocks == []
    assert [event.kind for event in seen].count(EventKind.SESSION_CLOSED) == 1


def test_resize_forwards_to_open_connection_only() -> None:
    connection = _FakeConnection()
    session = _session(connection)

    session.resize(120, 40)
    session.close()
    session.resize(100, 30)

    assert connection.sizes == [(120, 40)]


def test_events_follow_block_lifecycle() -> None:
    session = _session()
    seen: list[SessionEvent] = []
    unsubscribe = session.subscribe(seen.append)

    block_id = session.submit("ls")
    session.feed_output(b"ls\r\nx\r\n" + _marker(0, 0))
    unsubscribe()
    session.submit("pwd")

    assert [(event.kind, event.field) for event in seen] == [
        (EventKind.BLOCK_CREATED, None),
        (EventKind.BLOCK_CHANGED, BlockField.STATUS),
        (EventKind.BLOCK_CHANGED, BlockField.OUTPUT),
        (EventKind.BLOCK_CHANGED, BlockField.STATUS),
    ]
    assert all(event.block_id == block_id for event in seen)


def test_stats_summarize_blocks() -> None:
    session = _session()
    session.submit("ls")
    session.feed_output(b"ls\r\n" + _marker(0, 0))
    session.submit("tail -f log")

    stats = session.stats()

    assert stats["total_blocks"] == 2
    assert stats["by_status"] == {"completed": 1, "running": 1}
    assert stats["by_classification"] == {"oneshot": 1, "continuous": 1}
    assert stats["focused_block_id"] == "s1:1"
    assert stats["handoff_active"] is False
    assert stats["is_open"] is True
