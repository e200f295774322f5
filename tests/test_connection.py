from __future__ import annotations

import sys
import threading

import pytest

from blockterm.errors import BlockTermError, SessionConnectionError
from blockterm.terminal.connection import (
    INTERRUPT,
    OutputPump,
    PtyConnection,
    ShellFlavor,
    build_shell_command,
    format_command_line,
    open_connection,
    shell_flavor,
)
from blockterm.terminal.models import ConnectionKind


class _FakePty:
    def __init__(self, chunks: list[bytes] | None = None, *, sticky_alive: bool = False) -> None:
        self.chunks = list(chunks or [])
        self.writes: list[bytes] = []
        self.size: tuple[int, int] | None = None
        self.closed = False
        self.terminated = False
        self.sticky_alive = sticky_alive
        self.exitstatus: int | None = None
        self.fail_reads = False

    def write(self, payload: bytes) -> None:
        if self.closed:
            raise OSError("pty closed")
        self.writes.append(payload)

    def read(self, _size: int = 4096) -> bytes:
        if self.fail_reads:
            raise OSError("read failed")
        if self.chunks:
            return self.chunks.pop(0)
        return b""

    def set_size(self, cols: int, rows: int) -> None:
        self.size = (cols, rows)

    def close(self) -> None:
        self.closed = True

    def terminate(self) -> None:
        self.terminated = True

    def isalive(self) -> bool:
        if self.sticky_alive:
            return not self.terminated
        alive = bool(self.chunks) and not self.closed
        if not alive and self.exitstatus is None:
            self.exitstatus = 0
        return alive


class _RecordingSink:
    def __init__(self) -> None:
        self.chunks: list[bytes] = []
        self.exits: list[int | None] = []
        self.errors: list[SessionConnectionError] = []
        self.done = threading.Event()

    def feed_output(self, data: bytes) -> None:
        self.chunks.append(data)

    def handle_exit(self, exit_code: int | None) -> None:
        self.exits.append(exit_code)
        self.done.set()

    def handle_connection_error(self, error: SessionConnectionError) -> None:
        self.errors.append(error)
        self.done.set()


def _connection(pty: _FakePty) -> PtyConnection:
    return PtyConnection(pty, kind=ConnectionKind.LOCAL, command=["/bin/sh"])


def test_format_command_line_appends_completion_marker() -> None:
    line = format_command_line("ls -la")

    assert line == "ls -la; printf '\\033]133;D;%s;blockterm\\007' \"$?\"\r"


def test_format_command_line_tags_marker_with_block_index() -> None:
    posix = format_command_line("sleep 30", block_index=4)
    powershell = format_command_line("Get-Date", flavor=ShellFlavor.POWERSHELL, block_index=4)

    assert posix == "sleep 30; printf '\\033]133;D;%s;blockterm;4\\007' \"$?\"\r"
    assert ";blockterm;4$([char]7)" in powershell


@pytest.mark.parametrize(
    ("command", "prefix"),
    [
        ("sleep 5 &", "sleep 5 & printf"),
        ("cd /tmp;", "cd /tmp; printf"),
        ("make && make test", "make && make test; printf"),
    ],
)
def test_format_command_line_separator(command: str, prefix: str) -> None:
    assert format_command_line(command).startswith(prefix)


def test_format_command_line_without_marker_and_for_powershell() -> None:
    assert format_command_line("  ls  ", with_marker=False) == "ls\r"
    powershell = format_command_line("Get-Date", flavor=ShellFlavor.POWERSHELL)
    assert powershell.startswith("Get-Date; Write-Host")
    assert "133;D;" in powershell


def test_shell_flavor_detects_powershell() -> None:
    assert shell_flavor(["pwsh"]) == ShellFlavor.POWERSHELL
    assert shell_flavor([r"C:\Windows\powershell.exe", "-NoLogo"]) == ShellFlavor.POWERSHELL
    assert shell_flavor(["/bin/bash"]) == ShellFlavor.POSIX
    assert shell_flavor([]) == ShellFlavor.POSIX


def test_build_shell_command_for_local_and_remote(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(sys, "platform", "linux")
    monkeypatch.setenv("SHELL", "/bin/zsh")

    assert build_shell_command(ConnectionKind.LOCAL) == ["/bin/zsh"]
    assert build_shell_command(ConnectionKind.LOCAL, shell=["bash", "-l"]) == ["bash", "-l"]
    assert build_shell_command(ConnectionKind.REMOTE, remote_host="build") == ["ssh", "-tt", "build"]
    assert build_shell_command(
        ConnectionKind.REMOTE, remote_host="build", remote_port=2222, remote_user="ci"
    ) == ["ssh", "-tt", "-p", "2222", "ci@build"]


def test_build_shell_command_requires_remote_host() -> None:
    with pytest.raises(BlockTermError):
        build_shell_command(ConnectionKind.REMOTE, remote_host="  ")


def test_open_connection_spawns_and_sizes() -> None:
    seen: list[list[str]] = []
    pty = _FakePty()

    def spawn(command: list[str], _cwd: str | None, _env: dict[str, str] | None) -> _FakePty:
        seen.append(command)
        return pty

    connection = open_connection(ConnectionKind.LOCAL, shell=["bash"], cols=100, rows=30, spawn=spawn)

    assert seen == [["bash"]]
    assert pty.size == (100, 30)
    assert connection.is_open is True
    assert connection.flavor == ShellFlavor.POSIX


def test_open_connection_wraps_spawn_failures() -> None:
    def spawn(_command: list[str], _cwd: str | None, _env: dict[str, str] | None) -> _FakePty:
        raise FileNotFoundError("no such shell")

    with pytest.raises(SessionConnectionError) as exc:
        open_connection(ConnectionKind.LOCAL, shell=["nope"], spawn=spawn)

    assert exc.value.hint == "no such shell"


def test_connection_write_read_resize_and_interrupt() -> None:
    pty = _FakePty(chunks=[b"hello"])
    connection = _connection(pty)

    connection.write(b"echo test\r")
    connection.interrupt()
    connection.resize(120, 40)

    assert connection.read() == b"hello"
    assert connection.read() == b""
    assert pty.writes == [b"echo test\r", INTERRUPT]
    assert pty.size == (120, 40)


def test_connection_validates_resize_values() -> None:
    with pytest.raises(BlockTermError):
        _connection(_FakePty()).resize(0, 20)


def test_write_after_close_raises_connection_error() -> None:
    pty = _FakePty(sticky_alive=True)
    connection = _connection(pty)

    connection.close()
    connection.close()

    assert pty.closed is True
    assert pty.terminated is True
    assert connection.read() == b""
    with pytest.raises(SessionConnectionError):
        connection.write(b"ls\r")


def test_backend_failures_become_connection_errors() -> None:
    pty = _FakePty()
    pty.fail_reads = True
    connection = _connection(pty)

    with pytest.raises(SessionConnectionError):
        connection.read()

    pty.closed = True
    with pytest.raises(SessionConnectionError) as exc:
        connection.write(b"x")
    assert exc.value.hint == "pty closed"


def test_pump_delivers_chunks_then_exit() -> None:
    pty = _FakePty(chunks=[b"one", b"two"])
    sink = _RecordingSink()

    OutputPump(_connection(pty), sink)._run()

    assert sink.chunks == [b"one", b"two"]
    assert sink.exits == [0]


def test_pump_reports_read_errors() -> None:
    pty = _FakePty(sticky_alive=True)
    pty.fail_reads = True
    sink = _RecordingSink()

    OutputPump(_connection(pty), sink)._run()

    assert len(sink.errors) == 1
    assert sink.exits == []


def test_pump_thread_runs_in_background() -> None:
    pty = _FakePty(chunks=[b"data"])
    sink = _RecordingSink()
    pump = OutputPump(_connection(pty), sink)

    pump.start()
    assert sink.done.wait(2.0)
    pump.stop()

    assert sink.chunks == [b"data"]
    assert pump.is_running is False
