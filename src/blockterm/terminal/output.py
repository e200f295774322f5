"""Incremental decoding and control-sequence filtering for one output stream."""

from __future__ import annotations

import codecs
import logging as py_logging
import re
from dataclasses import dataclass
from enum import Enum

from blockterm.errors import ExitCode, MalformedOutput

logger = py_logging.getLogger(__name__)

DEFAULT_ENCODING = "utf-8"
PLACEHOLDER = "�"
MARKER_TAG = "blockterm"
MAX_SEQUENCE_LENGTH = 4096

_ESC = "\x1b"
_BEL = "\x07"
_KEPT_CONTROLS = frozenset("\t\n")
_STRING_INTRODUCERS = frozenset("]PX^_")
_MARKER_PATTERN = re.compile(r"133;D;(-?\d+);" + MARKER_TAG + r"(?:;(\d+))?")
_PLAIN_RUN = re.compile(r"[^\x00-\x1f\x7f-\x9f]+")
_FULLSCREEN_RUN = re.compile(r"[^\x1b\r]+")


class OutputMode(str, Enum):
    BLOCK = "block"
    FULLSCREEN = "fullscreen"


class _State(Enum):
    GROUND = "ground"
    ESCAPE = "escape"
    ESCAPE_INTERMEDIATE = "escape-intermediate"
    CSI = "csi"
    STRING = "string"
    STRING_ESCAPE = "string-escape"


@dataclass(frozen=True)
class OutputSegment:
    """Processed text, optionally followed by a command completion marker."""

    text: str
    exit_code: int | None = None
    block_index: int | None = None

    @property
    def has_marker(self) -> bool:
        return self.exit_code is not None


def completion_marker(exit_code: int, block_index: int | None = None) -> str:
    tag = MARKER_TAG if block_index is None else f"{MARKER_TAG};{block_index}"
    return f"{_ESC}]133;D;{exit_code};{tag}{_BEL}"


def resolve_encoding(name: str | None) -> str:
    candidate = (name or DEFAULT_ENCODING).strip() or DEFAULT_ENCODING
    try:
        return codecs.lookup(candidate).name
    except LookupError as exc:
        raise MalformedOutput(
            f"Unknown output encoding: {candidate}",
            code=ExitCode.VALIDATION_ERROR,
            hint=f"Falling back to {DEFAULT_ENCODING}.",
        ) from exc


class OutputProcessor:
    """Turns raw connection bytes into renderable text.

    Decoder state and any half-received escape sequence survive between calls,
    so input split at arbitrary byte offsets produces the same text as the
    unsplit input. Block mode keeps SGR (color/style) sequences and drops
    cursor, screen and OSC sequences; fullscreen mode leaves text untouched.
    Completion markers are reported in both modes.
    """

    def __init__(self, encoding: str | None = None, *, mode: OutputMode = OutputMode.BLOCK) -> None:
        self.mode = mode
        self.malformed_count = 0
        self.encoding = self._safe_encoding(encoding)
        self._decoder = self._new_decoder(self.encoding)
        self._state = _State.GROUND
        self._sequence = ""
        self._pending_cr = False

    def reset(self) -> None:
        self._decoder = self._new_decoder(self.encoding)
        self._state = _State.GROUND
        self._sequence = ""
        self._pending_cr = False

    def set_mode(self, mode: OutputMode) -> None:
        if mode == self.mode:
            return
        self.mode = mode
        self._state = _State.GROUND
        self._sequence = ""
        self._pending_cr = False

    def process(self, raw: bytes, encoding_hint: str | None = None) -> str:
        return "".join(segment.text for segment in self.feed(raw, encoding_hint))

    def feed(self, raw: bytes, encoding_hint: str | None = None) -> list[OutputSegment]:
        prefix = ""
        if encoding_hint is not None:
            encoding = self._safe_encoding(encoding_hint)
            if encoding != self.encoding:
                prefix = self._decoder.decode(b"", final=True)
                self.encoding = encoding
                self._decoder = self._new_decoder(encoding)
        text = prefix + self._decoder.decode(raw)
        return self._scan(text)

    def flush(self) -> list[OutputSegment]:
        """Emit everything still buffered, treating unfinished input as complete."""
        text = self._decoder.decode(b"", final=True)
        segments = self._scan(text)
        tail = ""
        if self._state != _State.GROUND:
            tail = PLACEHOLDER if self.mode == OutputMode.BLOCK else self._sequence
            self._register_malformed("unterminated control sequence at end of stream")
            self._state = _State.GROUND
            self._sequence = ""
        if self._pending_cr:
            tail += "\r"
            self._pending_cr = False
        if tail:
            segments.append(OutputSegment(text=tail))
        return [segment for segment in segments if segment.text or segment.has_marker]

    def _scan(self, text: str) -> list[OutputSegment]:
        segments: list[OutputSegment] = []
        out: list[str] = []
        plain = _FULLSCREEN_RUN if self.mode == OutputMode.FULLSCREEN else _PLAIN_RUN
        index = 0
        while index < len(text):
            char = text[index]
            state = self._state

            if state == _State.GROUND:
                if self._pending_cr:
                    self._pending_cr = False
                    if char != "\n":
                        out.append("\r")
                run = plain.match(text, index)
                if run is not None:
                    out.append(run.group())
                    index = run.end()
                    continue
                if char == _ESC:
                    self._state = _State.ESCAPE
                    self._sequence = char
                elif char == "\r":
                    if self.mode == OutputMode.FULLSCREEN:
                        out.append(char)
                    elif index + 1 == len(text):
                        self._pending_cr = True
                    elif text[index + 1] != "\n":
                        out.append(char)
                elif self.mode == OutputMode.FULLSCREEN or char in _KEPT_CONTROLS:
                    out.append(char)

            elif state == _State.ESCAPE:
                if char == "[":
                    self._sequence += char
                    self._state = _State.CSI
                elif char in _STRING_INTRODUCERS:
                    self._sequence += char
                    self._state = _State.STRING
                elif "\x20" <= char <= "\x2f":
                    self._sequence += char
                    self._state = _State.ESCAPE_INTERMEDIATE
                elif "\x30" <= char <= "\x7e":
                    self._sequence += char
                    self._finish_sequence(out, keep=False)
                else:
                    index = self._abort_sequence(out, index)

            elif state == _State.ESCAPE_INTERMEDIATE:
                if "\x20" <= char <= "\x2f":
                    self._sequence += char
                elif "\x30" <= char <= "\x7e":
                    self._sequence += char
                    self._finish_sequence(out, keep=False)
                else:
                    index = self._abort_sequence(out, index)

            elif state == _State.CSI:
                if "\x40" <= char <= "\x7e":
                    self._sequence += char
                    self._finish_sequence(out, keep=char == "m")
                elif "\x20" <= char <= "\x3f":
                    self._sequence += char
                    if len(self._sequence) > MAX_SEQUENCE_LENGTH:
                        self._drop_oversized(out)
                else:
                    index = self._abort_sequence(out, index)

            elif state == _State.STRING:
                if char == _BEL:
                    self._sequence += char
                    marker = self._finish_string(out)
                    if marker is not None:
                        segments.append(OutputSegment(text="".join(out), exit_code=marker[0], block_index=marker[1]))
                        out = []
                elif char == _ESC:
                    self._state = _State.STRING_ESCAPE
                else:
                    self._sequence += char
                    if len(self._sequence) > MAX_SEQUENCE_LENGTH:
                        self._drop_oversized(out)

            elif state == _State.STRING_ESCAPE:
                if char == "\\":
                    self._sequence += _ESC + char
                    marker = self._finish_string(out)
                    if marker is not None:
                        segments.append(OutputSegment(text="".join(out), exit_code=marker[0], block_index=marker[1]))
                        out = []
                else:
                    # ESC without ST cuts the string short and starts a new sequence.
                    index = self._abort_sequence(out, index)
                    self._state = _State.ESCAPE
                    self._sequence = _ESC

            index += 1

        if out or not segments:
            segments.append(OutputSegment(text="".join(out)))
        return segments

    def _finish_sequence(self, out: list[str], *, keep: bool) -> None:
        if keep or self.mode == OutputMode.FULLSCREEN:
            out.append(self._sequence)
        self._state = _State.GROUND
        self._sequence = ""

    def _finish_string(self, out: list[str]) -> tuple[int, int | None] | None:
        """Close an OSC/DCS string; returns (exit code, block index) for a completion marker."""
        sequence = self._sequence
        if self.mode == OutputMode.FULLSCREEN:
            out.append(sequence)
        self._state = _State.GROUND
        self._sequence = ""
        if not sequence.startswith(_ESC + "]"):
            return None
        payload = sequence[2:].rstrip(_BEL)
        if payload.endswith(_ESC + "\\"):
            payload = payload[:-2]
        match = _MARKER_PATTERN.fullmatch(payload)
        if match is None:
            return None
        block_index = match.group(2)
        return int(match.group(1)), int(block_index) if block_index is not None else None

    def _abort_sequence(self, out: list[str], index: int) -> int:
        """Replace a broken sequence with the placeholder; the char at index is rescanned."""
        self._register_malformed(f"broken control sequence {self._sequence!r}")
        if self.mode == OutputMode.FULLSCREEN:
            out.append(self._sequence)
        else:
            out.append(PLACEHOLDER)
        self._state = _State.GROUND
        self._sequence = ""
        return index - 1

    def _drop_oversized(self, out: list[str]) -> None:
        self._register_malformed("control sequence exceeds length limit")
        if self.mode == OutputMode.FULLSCREEN:
            out.append(self._sequence)
        else:
            out.append(PLACEHOLDER)
        self._state = _State.GROUND
        self._sequence = ""

    def _register_malformed(self, detail: str) -> None:
        self.malformed_count += 1
        logger.debug("Recovered malformed output: %s", detail)

    def _safe_encoding(self, name: str | None) -> str:
        try:
            return resolve_encoding(name)
        except MalformedOutput as exc:
            self.malformed_count += 1
            logger.warning("%s", exc)
            return resolve_encoding(DEFAULT_ENCODING)

    @staticmethod
    def _new_decoder(encoding: str) -> codecs.IncrementalDecoder:
        return codecs.getincrementaldecoder(encoding)(errors="replace")


def strip_styles(text: str) -> str:
    return re.sub(r"\x1b\[[0-9;:]*m", "", text)
