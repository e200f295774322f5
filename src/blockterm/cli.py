"""Public CLI contract and entrypoint."""

from __future__ import annotations

import argparse
import json
import logging as py_logging
import sys
import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TextIO

from .config import SessionConfig, load_config
from .errors import BlockTermError, ExitCode, user_facing_error
from .logging import LEVEL_NAMES, configure_logging, default_log_path, parse_level
from .terminal.classifier import CommandClassifier, build_rules
from .terminal.events import EventKind, SessionEvent
from .terminal.models import Block, BlockStatus, ConnectionKind
from .terminal.service import SessionService
from .terminal.session import Session

DEFAULT_TIMEOUT_SECONDS = 30.0
RUN_DESCRIPTION = (
    "Run each command in a local shell session and print its block. "
    "No terminal emulator is attached, so fullscreen programs such as "
    "vim, less, man or git log fail instead of taking over the terminal."
)
FULLSCREEN_HINT = "%s needs a terminal emulator; start fullscreen programs from a regular terminal."

ServiceFactory = Callable[[SessionConfig], SessionService]


def _log_level_type(value: str) -> str:
    normalized = parse_level(value)
    if normalized is None:
        accepted = ", ".join(LEVEL_NAMES)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def _timeout_type(value: str) -> float:
    try:
        timeout = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("--timeout must be a number") from exc
    if timeout <= 0:
        raise argparse.ArgumentTypeError("--timeout must be positive")
    return timeout


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="blockterm")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--log-level", type=_log_level_type, default="WARN")
    parser.add_argument("--log-file", type=Path, default=None)
    commands = parser.add_subparsers(dest="command", required=True)

    classify_parser = commands.add_parser("classify", help="Show how a command line would run")
    classify_parser.add_argument("--json", action="store_true", dest="as_json")
    classify_parser.add_argument("words", nargs=argparse.REMAINDER)

    run_parser = commands.add_parser(
        "run",
        help="Run commands one at a time in a local session (no fullscreen programs)",
        description=RUN_DESCRIPTION,
    )
    run_parser.add_argument("commands", nargs="+")
    run_parser.add_argument("--shell", default=None, help="Shell executable for the session")
    run_parser.add_argument("--timeout", type=_timeout_type, default=DEFAULT_TIMEOUT_SECONDS)
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def run_classify(namespace: argparse.Namespace, config: SessionConfig, out: TextIO) -> int:
    command = " ".join(namespace.words).strip()
    if not command:
        raise BlockTermError(
            "A command to classify is required.",
            code=ExitCode.INVALID_ARGS,
            hint="Pass the command line after classify, e.g. blockterm classify tail -f app.log.",
        )
    classifier = CommandClassifier(build_rules(config.classifier_overrides()))
    result = classifier.classify(command)
    if namespace.as_json:
        print(json.dumps(result.to_dict(), sort_keys=True), file=out)
        return int(ExitCode.SUCCESS)
    print(f"classification: {result.classification.value}", file=out)
    print(f"process kind:   {result.process_kind.value}", file=out)
    print(f"fullscreen:     {'yes' if result.fullscreen_required else 'no'}", file=out)
    print(f"rule:           {result.rule}", file=out)
    print(f"display:        {result.display_name}", file=out)
    return int(ExitCode.SUCCESS)


def wait_for_block(session: Session, block_id: str, timeout: float) -> Block | None:
    done = threading.Event()

    def _on_event(event: SessionEvent) -> None:
        if event.kind == EventKind.SESSION_CLOSED:
            done.set()
        elif event.block_id == block_id and event.kind == EventKind.BLOCK_CHANGED:
            block = session.get_block(block_id)
            if block is None or block.is_terminal:
                done.set()

    unsubscribe = session.subscribe(_on_event)
    try:
        block = session.get_block(block_id)
        if block is None or block.is_terminal:
            return block
        done.wait(timeout)
        return session.get_block(block_id)
    finally:
        unsubscribe()


def format_block(block: Block) -> str:
    exit_text = "-" if block.exit_code is None else str(block.exit_code)
    header = f"[{block.status.value}] {block.command} (exit {exit_text})"
    reason = block.metadata.get("failure_reason", "")
    if reason:
        header += f" {reason}"
    text = block.text.rstrip("\n")
    return f"{header}\n{text}" if text else header


def run_commands(session: Session, commands: Sequence[str], timeout: float, out: TextIO) -> int:
    logger = py_logging.getLogger("blockterm.cli")
    status = ExitCode.SUCCESS
    for command in commands:
        block_id = session.submit(command)
        block = wait_for_block(session, block_id, timeout)
        if block is not None and not block.is_terminal:
            logger.warning("Command timed out after %ss: %s", timeout, command)
            session.cancel(block_id)
        if block is None:
            raise BlockTermError(
                "Session closed while a command was running.",
                code=ExitCode.SESSION_ERROR,
                hint="Inspect the shell startup files for errors.",
            )
        print(format_block(block), file=out)
        if block.status != BlockStatus.COMPLETED:
            status = ExitCode.RUNTIME_ERROR
            if block.fullscreen_required:
                logger.warning(FULLSCREEN_HINT, command)
        if not session.is_open:
            break
    return int(status)


def run_session_flow(
    namespace: argparse.Namespace,
    config: SessionConfig,
    out: TextIO,
    *,
    service_factory: ServiceFactory | None = None,
) -> int:
    if namespace.shell:
        config.shell = [namespace.shell]
    factory = service_factory or (lambda cfg: SessionService(config=cfg, max_sessions=1))
    service = factory(config)
    try:
        session = service.open_session(ConnectionKind.LOCAL)
        return run_commands(session, namespace.commands, namespace.timeout, out)
    finally:
        service.close_all()


def main(
    argv: Sequence[str] | None = None,
    *,
    service_factory: ServiceFactory | None = None,
    out: TextIO | None = None,
) -> int:
    log_path = default_log_path()
    logger = configure_logging(level="WARN", log_file=log_path)
    parser = build_parser()
    try:
        namespace = parser.parse_args(argv)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            logger.warning("Argument parsing failed with exit code %s", exc.code)
        return int(exc.code or 0)

    if namespace.log_file is not None:
        log_path = namespace.log_file.expanduser()
    logger = configure_logging(level=namespace.log_level, log_file=log_path)
    stream = out or sys.stdout

    try:
        config = load_config(namespace.config)
        if namespace.command == "classify":
            logger.debug("Starting classify flow")
            return run_classify(namespace, config, stream)
        logger.debug("Starting run flow")
        return run_session_flow(namespace, config, stream, service_factory=service_factory)
    except BlockTermError as exc:
        logger.error(
            "Handled BlockTermError (code=%s): %s",
            int(exc.code),
            exc.message,
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.code)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        hint = f"Inspect logs: {log_path}"
        print(user_facing_error("Unexpected runtime failure", hint=hint), file=sys.stderr)
        return int(ExitCode.RUNTIME_ERROR)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
