"""PTY-backed connections for local and remote shells."""

from __future__ import annotations

import errno
import logging as py_logging
import os
import subprocess
import sys
import threading
from collections.abc import Callable
from contextlib import suppress
from enum import Enum
from typing import Protocol

from blockterm.errors import BlockTermError, ExitCode, SessionConnectionError
from blockterm.terminal.models import ConnectionKind
from blockterm.terminal.output import MARKER_TAG

logger = py_logging.getLogger(__name__)

READ_TIMEOUT_SECONDS = 0.1
INTERRUPT = b"\x03"


class ShellFlavor(str, Enum):
    POSIX = "posix"
    POWERSHELL = "powershell"


class Connection(Protocol):
    @property
    def is_open(self) -> bool: ...

    def write(self, data: bytes) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def close(self) -> None: ...


class OutputSink(Protocol):
    def feed_output(self, data: bytes) -> None: ...

    def handle_exit(self, exit_code: int | None) -> None: ...

    def handle_connection_error(self, error: SessionConnectionError) -> None: ...


PtySpawn = Callable[[list[str], str | None, dict[str, str] | None], object]


def shell_flavor(command: list[str] | tuple[str, ...]) -> ShellFlavor:
    if not command:
        return ShellFlavor.POSIX
    name = os.path.basename(command[0].replace("\\", "/")).lower()
    if name in {"powershell", "powershell.exe", "pwsh", "pwsh.exe"}:
        return ShellFlavor.POWERSHELL
    return ShellFlavor.POSIX


def format_command_line(
    command: str,
    *,
    flavor: ShellFlavor = ShellFlavor.POSIX,
    with_marker: bool = True,
    block_index: int | None = None,
) -> str:
    """Build the keystrokes for one command, optionally reporting its exit status afterwards.

    The marker carries ``block_index`` so a marker that arrives late, or never,
    cannot be credited to a different command.
    """
    line = command.strip()
    if with_marker:
        separator = " " if line.endswith((";", "&")) and not line.endswith("&&") else "; "
        tag = MARKER_TAG if block_index is None else f"{MARKER_TAG};{block_index}"
        if flavor == ShellFlavor.POWERSHELL:
            suffix = f'Write-Host -NoNewline "$([char]27)]133;D;$([int](-not $?));{tag}$([char]7)"'
        else:
            suffix = f"printf '\\033]133;D;%s;{tag}\\007' \"$?\""
        line = f"{line}{separator}{suffix}"
    return line + "\r"


def build_shell_command(
    kind: ConnectionKind,
    *,
    shell: list[str] | None = None,
    remote_host: str = "",
    remote_port: int | None = None,
    remote_user: str = "",
) -> list[str]:
    if kind == ConnectionKind.LOCAL:
        if shell:
            return list(shell)
        if sys.platform == "win32":
            return ["powershell.exe", "-NoLogo", "-NoProfile"]
        return [os.environ.get("SHELL") or "/bin/sh"]
    if kind == ConnectionKind.REMOTE:
        host = remote_host.strip()
        if not host:
            raise BlockTermError(
                "Remote host is required.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Set remote_host in the config or BLOCKTERM_REMOTE_HOST.",
            )
        command = ["ssh", "-tt"]
        if remote_port:
            command.extend(["-p", str(remote_port)])
        user = remote_user.strip()
        command.append(f"{user}@{host}" if user else host)
        return command
    raise BlockTermError(
        f"Unsupported connection kind: {kind}",
        code=ExitCode.VALIDATION_ERROR,
        hint="Use local or remote.",
    )


class _PosixPtyProcess:
    def __init__(self, pid: int, fd: int) -> None:
        self.pid = pid
        self.fd = fd
        self.exitstatus: int | None = None
        self._closed = False

    def read(self, size: int = 4096) -> bytes:
        import select

        if self._closed:
            return b""
        ready, _, _ = select.select([self.fd], [], [], READ_TIMEOUT_SECONDS)
        if not ready:
            return b""
        try:
            return os.read(self.fd, size)
        except OSError as exc:
            # Linux reports EIO once the child side of the PTY is gone.
            if exc.errno == errno.EIO:
                return b""
            raise

    def write(self, payload: bytes) -> None:
        view = memoryview(payload)
        while view:
            written = os.write(self.fd, view)
            view = view[written:]

    def set_size(self, cols: int, rows: int) -> None:
        import fcntl
        import struct
        import termios

        fcntl.ioctl(self.fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))

    def isalive(self) -> bool:
        if self.exitstatus is not None:
            return False
        try:
            pid, status = os.waitpid(self.pid, os.WNOHANG)
        except ChildProcessError:
            self.exitstatus = -1
            return False
        if pid == 0:
            return True
        self.exitstatus = os.waitstatus_to_exitcode(status)
        return False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        os.close(self.fd)

    def terminate(self) -> None:
        import signal

        with suppress(ProcessLookupError):
            os.kill(self.pid, signal.SIGHUP)


class _WinptyProcess:
    def __init__(self, process: object) -> None:
        self._process = process

    @property
    def exitstatus(self) -> int | None:
        return getattr(self._process, "exitstatus", None)

    def read(self, size: int = 4096) -> bytes:
        chunk = self._process.read(size)
        if isinstance(chunk, bytes):
            return chunk
        return str(chunk or "").encode("utf-8")

    def write(self, payload: bytes) -> None:
        self._process.write(payload.decode("utf-8", errors="replace"))

    def set_size(self, cols: int, rows: int) -> None:
        self._process.setwinsize(rows, cols)

    def isalive(self) -> bool:
        return bool(self._process.isalive())

    def close(self) -> None:
        self._process.close(True)

    def terminate(self) -> None:
        self._process.terminate(True)


def _spawn_with_pywinpty(command: list[str], cwd: str | None, env: dict[str, str] | None) -> object:
    try:
        from winpty import PtyProcess
    except Exception as exc:
        raise BlockTermError(
            "pywinpty backend is unavailable.",
            code=ExitCode.RUNTIME_ERROR,
            hint="Install the windows extra: pip install blockterm[windows].",
        ) from exc

    kwargs: dict[str, object] = {}
    if cwd:
        kwargs["cwd"] = cwd
    if env:
        kwargs["env"] = env
    return _WinptyProcess(PtyProcess.spawn(subprocess.list2cmdline(command), **kwargs))


def _spawn_with_posix_pty(command: list[str], cwd: str | None, env: dict[str, str] | None) -> object:
    import pty

    pid, fd = pty.fork()
    if pid == 0:
        try:
            if cwd:
                os.chdir(cwd)
            if env is None:
                os.execvp(command[0], command)
            else:
                os.execvpe(command[0], command, env)
        finally:
            os._exit(127)
    return _PosixPtyProcess(pid, fd)


def default_spawn() -> PtySpawn:
    if sys.platform == "win32":
        return _spawn_with_pywinpty
    return _spawn_with_posix_pty


class PtyConnection:
    def __init__(self, process: object, *, kind: ConnectionKind, command: list[str]) -> None:
        self.kind = kind
        self.command = tuple(command)
        self.flavor = shell_flavor(command)
        self._process = process
        self._closed = False
        self._write_lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def exit_status(self) -> int | None:
        value = getattr(self._process, "exitstatus", None)
        return int(value) if value is not None else None

    def write(self, data: bytes) -> None:
        if self._closed:
            raise SessionConnectionError(
                "Connection is closed.",
                code=ExitCode.CONNECTION_ERROR,
                hint="Open a new session.",
            )
        try:
            with self._write_lock:
                self._process.write(data)
        except Exception as exc:
            raise SessionConnectionError(
                "Failed to write to connection.",
                code=ExitCode.CONNECTION_ERROR,
                hint=str(exc) or "Verify the shell process is alive.",
            ) from exc

    def read(self, max_bytes: int = 4096) -> bytes:
        if self._closed:
            return b""
        try:
            chunk = self._process.read(max_bytes)
        except Exception as exc:
            raise SessionConnectionError(
                "Failed to read from connection.",
                code=ExitCode.CONNECTION_ERROR,
                hint=str(exc) or "Verify PTY stream state.",
            ) from exc
        if chunk is None:
            return b""
        if isinstance(chunk, str):
            return chunk.encode("utf-8")
        return bytes(chunk)

    def resize(self, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0:
            raise BlockTermError(
                f"Invalid PTY size: {cols}x{rows}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use positive terminal row/column values.",
            )
        if self._closed:
            return
        try:
            self._process.set_size(cols, rows)
        except Exception as exc:
            raise SessionConnectionError(
                "Failed to resize connection.",
                code=ExitCode.CONNECTION_ERROR,
                hint=str(exc) or "Verify PTY backend supports resizing.",
            ) from exc

    def interrupt(self) -> None:
        self.write(INTERRUPT)

    def is_alive(self) -> bool:
        if hasattr(self._process, "isalive"):
            try:
                return bool(self._process.isalive())
            except Exception:
                return True
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        alive = self.is_alive()
        if hasattr(self._process, "close"):
            try:
                self._process.close()
            except Exception as exc:
                logger.debug("Connection close failed: %s", exc)
        if alive and self.is_alive() and hasattr(self._process, "terminate"):
            with suppress(Exception):
                self._process.terminate()


def open_connection(
    kind: ConnectionKind,
    *,
    shell: list[str] | None = None,
    remote_host: str = "",
    remote_port: int | None = None,
    remote_user: str = "",
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    cols: int = 80,
    rows: int = 24,
    spawn: PtySpawn | None = None,
) -> PtyConnection:
    command = build_shell_command(
        kind,
        shell=shell,
        remote_host=remote_host,
        remote_port=remote_port,
        remote_user=remote_user,
    )
    spawner = spawn or default_spawn()
    try:
        process = spawner(command, cwd, env)
    except BlockTermError:
        raise
    except Exception as exc:
        raise SessionConnectionError(
            "Failed to start shell process.",
            code=ExitCode.CONNECTION_ERROR,
            hint=str(exc) or "Check shell installation.",
        ) from exc
    connection = PtyConnection(process, kind=kind, command=command)
    with suppress(BlockTermError):
        connection.resize(cols, rows)
    logger.info("Opened %s connection: %s", kind.value, " ".join(command))
    return connection


class OutputPump:
    """Reader thread delivering connection output, exit and errors to a sink in order."""

    def __init__(self, connection: PtyConnection, sink: OutputSink, *, max_bytes: int = 4096) -> None:
        self._connection = connection
        self._sink = sink
        self._max_bytes = max_bytes
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="blockterm-output", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.is_set() and self._connection.is_open:
            try:
                chunk = self._connection.read(self._max_bytes)
            except SessionConnectionError as exc:
                if self._connection.is_open:
                    self._sink.handle_connection_error(exc)
                return
            if chunk:
                self._sink.feed_output(chunk)
                continue
            if not self._connection.is_alive():
                self._sink.handle_exit(self._connection.exit_status)
                return
