"""Deterministic error model and exit code contract."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    INVALID_ARGS = 2
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4
    CONNECTION_ERROR = 5
    SESSION_ERROR = 6
    VALIDATION_ERROR = 7


@dataclass
class BlockTermError(Exception):
    message: str
    code: ExitCode = ExitCode.RUNTIME_ERROR
    hint: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message


class SessionClosed(BlockTermError):
    """Operation attempted on a session whose connection is gone."""


class BlockInFlight(BlockTermError):
    """Another block or a fullscreen hand-off still owns the connection."""


class NoFocusTarget(BlockTermError):
    """Raw input or cancellation without a block able to receive it."""


class InvalidTransition(BlockTermError):
    """Illegal block status change."""


class SessionConnectionError(BlockTermError):
    """Failure reported by the connection provider."""


class ClassificationAmbiguous(BlockTermError):
    """Command text that the classifier cannot tokenize. Never leaves the classifier."""


class MalformedOutput(BlockTermError):
    """Undecodable or unsupported output. Never leaves the output processor."""


def session_closed(session_id: str) -> SessionClosed:
    return SessionClosed(
        f"Session is closed: {session_id}",
        code=ExitCode.SESSION_ERROR,
        hint="Open a new session before submitting commands.",
    )


def block_in_flight(block_id: str) -> BlockInFlight:
    return BlockInFlight(
        f"Block still in flight: {block_id}",
        code=ExitCode.SESSION_ERROR,
        hint="Wait for the running command to finish or cancel it.",
    )


def user_facing_error(message: str, *, hint: str = "") -> str:
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."
