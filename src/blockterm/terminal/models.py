"""Block and session domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from blockterm.errors import ExitCode, InvalidTransition


class ConnectionKind(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class Classification(str, Enum):
    ONE_SHOT = "oneshot"
    CONTINUOUS = "continuous"
    INTERACTIVE = "interactive"


class ProcessKind(str, Enum):
    ONESHOT = "oneshot"
    WATCHER = "watcher"
    DEV_SERVER = "dev_server"
    BUILD_TOOL = "build_tool"
    PERSISTENT = "persistent"
    REPL = "repl"
    INTERACTIVE = "interactive"
    FULLSCREEN = "fullscreen"


class BlockStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    INTERACTIVE = "interactive"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({BlockStatus.COMPLETED, BlockStatus.FAILED, BlockStatus.CANCELLED})
_ALLOWED_TRANSITIONS: dict[BlockStatus, frozenset[BlockStatus]] = {
    BlockStatus.PENDING: frozenset({BlockStatus.RUNNING, BlockStatus.FAILED, BlockStatus.CANCELLED}),
    BlockStatus.RUNNING: frozenset(
        {BlockStatus.INTERACTIVE, BlockStatus.COMPLETED, BlockStatus.FAILED, BlockStatus.CANCELLED}
    ),
    BlockStatus.INTERACTIVE: frozenset({BlockStatus.COMPLETED, BlockStatus.FAILED, BlockStatus.CANCELLED}),
    BlockStatus.COMPLETED: frozenset(),
    BlockStatus.FAILED: frozenset(),
    BlockStatus.CANCELLED: frozenset(),
}
_INPUT_CLASSIFICATIONS = frozenset({Classification.CONTINUOUS, Classification.INTERACTIVE})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_duration(value: timedelta) -> str:
    total = max(int(value.total_seconds()), 0)
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


@dataclass
class Block:
    """One command execution and the processed output it produced.

    Status only moves forward: ``PENDING -> RUNNING [-> INTERACTIVE] -> terminal``.
    Once terminal, the block rejects output and further transitions.
    """

    block_id: str
    index: int
    command: str
    classification: Classification
    fullscreen_required: bool = False
    status: BlockStatus = BlockStatus.PENDING
    output: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    exit_code: int | None = None
    summary: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def accepts_input(self) -> bool:
        # INTERACTIVE is the input-taking refinement of RUNNING.
        return self.classification in _INPUT_CLASSIFICATIONS and self.status in (
            BlockStatus.RUNNING,
            BlockStatus.INTERACTIVE,
        )

    @property
    def text(self) -> str:
        return "".join(self.output)

    @property
    def duration(self) -> timedelta | None:
        if self.started_at is None:
            return None
        end = self.completed_at or utc_now()
        return end - self.started_at

    def append(self, chunk: str) -> bool:
        if self.is_terminal:
            return False
        if chunk:
            self.output.append(chunk)
        return True

    def start(self, now: datetime | None = None) -> None:
        self._move(BlockStatus.RUNNING)
        self.started_at = now or utc_now()

    def enter_interactive(self) -> bool:
        if self.status != BlockStatus.RUNNING:
            return False
        self._move(BlockStatus.INTERACTIVE)
        return True

    def complete(self, exit_code: int = 0, now: datetime | None = None) -> None:
        self._move(BlockStatus.COMPLETED)
        self.exit_code = exit_code
        self.completed_at = now or utc_now()

    def fail(self, exit_code: int | None = None, *, reason: str = "", now: datetime | None = None) -> None:
        self._move(BlockStatus.FAILED)
        self.exit_code = exit_code
        self.completed_at = now or utc_now()
        if reason:
            self.metadata["failure_reason"] = reason

    def finish(self, exit_code: int | None, now: datetime | None = None) -> None:
        if exit_code == 0:
            self.complete(0, now)
        else:
            self.fail(exit_code, now=now)

    def cancel(self, now: datetime | None = None) -> bool:
        if self.is_terminal:
            return False
        self._move(BlockStatus.CANCELLED)
        self.completed_at = now or utc_now()
        return True

    def _move(self, target: BlockStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Block {self.block_id} cannot move from {self.status.value} to {target.value}.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Terminal blocks are immutable.",
            )
        self.status = target
