"""Block-oriented terminal session domain package."""

from .classifier import CommandClassification, CommandClassifier, build_rules, classify
from .connection import OutputPump, PtyConnection, build_shell_command, open_connection
from .events import BlockField, EventChannel, EventKind, SessionEvent
from .focus import FocusArbiter, InputRoute
from .handoff import FullscreenController, FullscreenHandoff, TerminalEmulator
from .models import Block, BlockStatus, Classification, ConnectionKind, ProcessKind
from .output import OutputMode, OutputProcessor, OutputSegment
from .service import ServiceEvent, SessionService
from .session import Session

__all__ = [
    "Block",
    "BlockField",
    "BlockStatus",
    "build_rules",
    "build_shell_command",
    "classify",
    "Classification",
    "CommandClassification",
    "CommandClassifier",
    "ConnectionKind",
    "EventChannel",
    "EventKind",
    "FocusArbiter",
    "FullscreenController",
    "FullscreenHandoff",
    "InputRoute",
    "open_connection",
    "OutputMode",
    "OutputProcessor",
    "OutputPump",
    "OutputSegment",
    "ProcessKind",
    "PtyConnection",
    "ServiceEvent",
    "Session",
    "SessionEvent",
    "SessionService",
    "TerminalEmulator",
]
