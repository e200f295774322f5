"""Keyboard focus arbitration between blocks of one session."""

from __future__ import annotations

import logging as py_logging
from collections.abc import Callable
from enum import Enum

from blockterm.errors import ExitCode, NoFocusTarget
from blockterm.terminal.models import Block, Classification

logger = py_logging.getLogger(__name__)

BlockLookup = Callable[[str], "Block | None"]

_AUTO_FOCUS_CLASSIFICATIONS = frozenset({Classification.CONTINUOUS, Classification.INTERACTIVE})


class InputRoute(str, Enum):
    # Raw keystrokes for the focused block.
    FOCUSED_BLOCK = "focused-block"
    # Keystrokes compose the next command line.
    COMMAND_LINE = "command-line"
    # Exclusive pass-through while a fullscreen program runs.
    FULLSCREEN = "fullscreen"
    # A block is in flight but nobody holds focus.
    BUSY = "busy"


class FocusArbiter:
    """Holds the weak focus reference and decides where input goes.

    Focus only ever points at a block whose ``accepts_input`` is true. The
    owning session serializes every call, so the arbiter keeps no lock.
    """

    def __init__(self) -> None:
        self._focused_block_id: str | None = None
        self._suspended = False

    @property
    def focused_block_id(self) -> str | None:
        return self._focused_block_id

    @property
    def is_suspended(self) -> bool:
        return self._suspended

    def request_focus(self, block: Block) -> str | None:
        """Focus block, returning the id that lost focus (if any)."""
        if not block.accepts_input:
            raise NoFocusTarget(
                f"Block cannot take focus: {block.block_id}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Only running continuous or interactive blocks accept input.",
            )
        previous = self._focused_block_id
        self._focused_block_id = block.block_id
        logger.debug("Focus moved from %s to %s", previous, block.block_id)
        return previous if previous != block.block_id else None

    def clear_focus(self) -> str | None:
        previous = self._focused_block_id
        self._focused_block_id = None
        return previous

    def auto_focus(self, block: Block) -> bool:
        if self._focused_block_id is not None or self._suspended:
            return False
        if block.classification not in _AUTO_FOCUS_CLASSIFICATIONS or not block.accepts_input:
            return False
        self._focused_block_id = block.block_id
        return True

    def release(self, block_id: str) -> bool:
        if self._focused_block_id != block_id:
            return False
        self._focused_block_id = None
        return True

    def suspend(self) -> None:
        self._suspended = True

    def resume(self) -> None:
        self._suspended = False

    def focused_block(self, lookup: BlockLookup) -> Block | None:
        if self._focused_block_id is None:
            return None
        block = lookup(self._focused_block_id)
        if block is None or not block.accepts_input:
            return None
        return block

    def route(self, *, latest: Block | None, lookup: BlockLookup) -> InputRoute:
        if self._suspended:
            return InputRoute.FULLSCREEN
        if self.focused_block(lookup) is not None:
            return InputRoute.FOCUSED_BLOCK
        if latest is None or latest.is_terminal:
            return InputRoute.COMMAND_LINE
        return InputRoute.BUSY
