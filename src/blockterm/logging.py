"""Logging setup for blockterm: level names, session-tagged records and a rotating debug log."""

from __future__ import annotations

import contextvars
import logging as py_logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TextIO

LOGGER_NAME = "blockterm"
LEVEL_NAMES = ("DEBUG", "INFO", "WARN", "ERROR")
LOG_LEVELS = {
    "DEBUG": py_logging.DEBUG,
    "INFO": py_logging.INFO,
    "WARN": py_logging.WARNING,
    "ERROR": py_logging.ERROR,
}
DEFAULT_LOG_PATH = Path("~/.config/blockterm/logs/blockterm.log")
LOG_FILE_MAX_BYTES = 1_000_000
LOG_FILE_BACKUPS = 3
NO_SESSION = "-"
_FORMAT = "%(asctime)s %(levelname)s %(name)s:%(lineno)d [%(session_id)s] %(message)s"

_current_session: contextvars.ContextVar[str] = contextvars.ContextVar("blockterm_session", default=NO_SESSION)


def parse_level(value: str) -> str | None:
    """Normalize a level name; ``WARNING`` is accepted as ``WARN``. Unknown names give None."""
    normalized = value.strip().upper()
    if normalized == "WARNING":
        normalized = "WARN"
    return normalized if normalized in LOG_LEVELS else None


@contextmanager
def session_context(session_id: str) -> Iterator[None]:
    """Tag every record logged inside the block, on this thread, with ``session_id``."""
    token = _current_session.set(session_id)
    try:
        yield
    finally:
        _current_session.reset(token)


class SessionContextFilter(py_logging.Filter):
    def filter(self, record: py_logging.LogRecord) -> bool:
        if not hasattr(record, "session_id"):
            record.session_id = _current_session.get()
        return True


def default_log_path() -> Path:
    try:
        return DEFAULT_LOG_PATH.expanduser().resolve()
    except RuntimeError:
        # No resolvable home directory.
        return (Path.cwd() / ".blockterm" / "logs" / "blockterm.log").resolve()


def _open_log_file(log_file: str | Path) -> py_logging.Handler | None:
    path = Path(log_file)
    try:
        path = path.expanduser()
    except RuntimeError:
        pass
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return RotatingFileHandler(
            path.resolve(),
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
    except OSError:
        return None


def configure_logging(
    level: str = "INFO",
    stream: TextIO | None = None,
    *,
    log_file: str | Path | None = None,
) -> py_logging.Logger:
    """Route the ``blockterm`` logger tree to ``stream`` at ``level`` and, optionally, a DEBUG file.

    Calling it again replaces the previous handlers. The file keeps every
    session event even when the console only shows warnings.
    """
    resolved = LOG_LEVELS[parse_level(level) or "INFO"]
    logger = py_logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    formatter = py_logging.Formatter(_FORMAT)
    context = SessionContextFilter()

    console = py_logging.StreamHandler(stream or sys.stderr)
    console.setLevel(resolved)
    console.setFormatter(formatter)
    console.addFilter(context)
    logger.addHandler(console)

    file_handler = _open_log_file(log_file) if log_file else None
    if file_handler is not None:
        file_handler.setLevel(py_logging.DEBUG)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(context)
        logger.addHandler(file_handler)

    logger.setLevel(py_logging.DEBUG if file_handler is not None else resolved)
    logger.propagate = False
    return logger
