"""Static rule-table command classifier."""

from __future__ import annotations

import logging as py_logging
import ntpath
import posixpath
import shlex
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from blockterm.errors import ClassificationAmbiguous, ExitCode
from blockterm.terminal.models import Classification, ProcessKind

logger = py_logging.getLogger(__name__)

CACHE_LIMIT = 512

_OPERATOR_CHARS = frozenset("();<>|&")
_WRAPPERS: dict[str, frozenset[str]] = {
    "sudo": frozenset({"-u", "-g", "-h", "-p", "-C", "-U", "-r", "-t"}),
    "doas": frozenset({"-u", "-C"}),
    "env": frozenset({"-u", "-C", "-S"}),
    "nice": frozenset({"-n"}),
    "time": frozenset(),
    "nohup": frozenset(),
    "command": frozenset(),
    "exec": frozenset(),
    "builtin": frozenset(),
}
_SSH_VALUE_FLAGS = frozenset(
    {"-b", "-c", "-D", "-E", "-e", "-F", "-I", "-i", "-J", "-L", "-l", "-m", "-O", "-o", "-p", "-Q", "-R", "-S", "-W", "-w"}
)
_KIND_CLASSIFICATION = {
    ProcessKind.ONESHOT: Classification.ONE_SHOT,
    ProcessKind.WATCHER: Classification.CONTINUOUS,
    ProcessKind.DEV_SERVER: Classification.CONTINUOUS,
    ProcessKind.BUILD_TOOL: Classification.CONTINUOUS,
    ProcessKind.PERSISTENT: Classification.CONTINUOUS,
    ProcessKind.REPL: Classification.INTERACTIVE,
    ProcessKind.INTERACTIVE: Classification.INTERACTIVE,
    ProcessKind.FULLSCREEN: Classification.INTERACTIVE,
}
_DISPLAY_NAMES = {
    Classification.ONE_SHOT: "One Shot",
    Classification.CONTINUOUS: "Continuous",
    Classification.INTERACTIVE: "Interactive",
}
_DESCRIPTIONS = {
    ProcessKind.ONESHOT: "Quick command that completes immediately",
    ProcessKind.WATCHER: "File watcher or monitoring command",
    ProcessKind.DEV_SERVER: "Development server",
    ProcessKind.BUILD_TOOL: "Build tool with watch mode",
    ProcessKind.PERSISTENT: "Long-running process",
    ProcessKind.REPL: "Read-Eval-Print Loop",
    ProcessKind.INTERACTIVE: "Interactive command requiring input",
    ProcessKind.FULLSCREEN: "Program that takes over the terminal",
}


@dataclass(frozen=True)
class CommandLine:
    raw: str
    executable: str
    arguments: tuple[str, ...] = ()

    @property
    def positionals(self) -> tuple[str, ...]:
        return tuple(item for item in self.arguments if not item.startswith("-"))


def _has_flag(arguments: Iterable[str], flags: Iterable[str]) -> bool:
    wanted = tuple(flags)
    for token in arguments:
        if token == "--":
            return False
        for flag in wanted:
            if token == flag:
                return True
            if flag.startswith("--"):
                if token.startswith(flag + "="):
                    return True
                continue
            # Short flags may be bundled ("-qc", "-fn") or carry a value ("-c5").
            if token.startswith("-") and not token.startswith("--") and len(flag) == 2:
                letters = ""
                for char in token[1:]:
                    if not char.isalpha():
                        break
                    letters += char
                if flag[1] in letters:
                    return True
    return False


def _is_remote_login(line: CommandLine) -> bool:
    positionals: list[str] = []
    skip_next = False
    for token in line.arguments:
        if skip_next:
            skip_next = False
            continue
        if token in _SSH_VALUE_FLAGS:
            skip_next = True
            continue
        if token.startswith("-"):
            continue
        positionals.append(token)
    return len(positionals) == 1


@dataclass(frozen=True)
class ClassificationRule:
    """One (matcher, category) row of the classifier table.

    A rule matches when every configured matcher agrees: executable membership,
    a leading subcommand prefix, presence of any listed flag, an empty argument
    list, or a custom predicate. Unset matchers are ignored.
    """

    name: str
    process_kind: ProcessKind
    executables: frozenset[str] = frozenset()
    subcommands: tuple[tuple[str, ...], ...] = ()
    flags: tuple[str, ...] = ()
    requires_no_arguments: bool = False
    predicate: Callable[[CommandLine], bool] | None = field(default=None, compare=False)

    @property
    def classification(self) -> Classification:
        return _KIND_CLASSIFICATION[self.process_kind]

    @property
    def fullscreen_required(self) -> bool:
        return self.process_kind == ProcessKind.FULLSCREEN

    def matches(self, line: CommandLine) -> bool:
        if self.executables and line.executable not in self.executables:
            return False
        if self.requires_no_arguments and line.arguments:
            return False
        if self.subcommands and not any(
            line.arguments[: len(prefix)] == prefix for prefix in self.subcommands
        ):
            return False
        if self.flags and not _has_flag(line.arguments, self.flags):
            return False
        if self.predicate is not None and not self.predicate(line):
            return False
        return True


def _rule(
    name: str,
    kind: ProcessKind,
    executables: Iterable[str] = (),
    *,
    subcommands: Iterable[tuple[str, ...]] = (),
    flags: Iterable[str] = (),
    requires_no_arguments: bool = False,
    predicate: Callable[[CommandLine], bool] | None = None,
) -> ClassificationRule:
    return ClassificationRule(
        name=name,
        process_kind=kind,
        executables=frozenset(executables),
        subcommands=tuple(subcommands),
        flags=tuple(flags),
        requires_no_arguments=requires_no_arguments,
        predicate=predicate,
    )


_FOLLOW_FLAGS = ("-f", "-F", "--follow")
_SERVE_SUBCOMMANDS = (("dev",), ("start",), ("serve",), ("run", "dev"), ("run", "start"), ("run", "serve"))

DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    # Bounded invocations of otherwise long-running programs.
    _rule("bounded-ping", ProcessKind.ONESHOT, ("ping", "ping6"), flags=("-c", "--count")),
    _rule("bounded-top", ProcessKind.ONESHOT, ("top",), flags=("-n", "--iterations")),
    _rule("bounded-psql", ProcessKind.ONESHOT, ("psql",), flags=("-c", "--command", "-f", "--file", "-l", "--list")),
    _rule("bounded-mysql", ProcessKind.ONESHOT, ("mysql",), flags=("-e", "--execute")),
    # Followers and watchers.
    _rule("follow-tail", ProcessKind.WATCHER, ("tail",), flags=_FOLLOW_FLAGS),
    _rule("follow-logs", ProcessKind.WATCHER, ("docker", "podman", "kubectl"), subcommands=(("logs",),), flags=_FOLLOW_FLAGS),
    _rule("follow-journal", ProcessKind.WATCHER, ("journalctl",), flags=("-f", "--follow")),
    _rule("follow-dmesg", ProcessKind.WATCHER, ("dmesg",), flags=("-w", "--follow")),
    _rule("watch-flag", ProcessKind.BUILD_TOOL, flags=("--watch", "--continuous")),
    _rule("watch-subcommand", ProcessKind.BUILD_TOOL, ("make", "cargo"), subcommands=(("watch",),)),
    _rule("watchers", ProcessKind.WATCHER, ("watch", "nodemon", "entr")),
    # Development servers.
    _rule("package-dev-server", ProcessKind.DEV_SERVER, ("npm", "pnpm", "yarn", "bun"), subcommands=_SERVE_SUBCOMMANDS),
    _rule(
        "dev-server",
        ProcessKind.DEV_SERVER,
        ("next", "vite", "parcel", "webpack-dev-server", "uvicorn", "fastapi", "gunicorn", "hypercorn"),
    ),
    _rule("rails-server", ProcessKind.DEV_SERVER, ("rails",), subcommands=(("server",), ("s",))),
    _rule("django-server", ProcessKind.DEV_SERVER, ("python", "python3", "django-admin"), predicate=lambda line: "runserver" in line.arguments),
    _rule("flask-server", ProcessKind.DEV_SERVER, ("flask",), subcommands=(("run",),)),
    _rule("site-server", ProcessKind.DEV_SERVER, ("hugo", "jekyll"), subcommands=(("serve",), ("server",))),
    _rule("frontend-server", ProcessKind.DEV_SERVER, ("gatsby", "nuxt"), subcommands=(("dev",), ("develop",))),
    _rule("mobile-server", ProcessKind.DEV_SERVER, ("flutter",), subcommands=(("run",),)),
    _rule("bundler-server", ProcessKind.DEV_SERVER, ("expo", "react-native"), subcommands=(("start",),)),
    # Programs that take over the terminal.
    _rule("editor", ProcessKind.FULLSCREEN, ("vi", "vim", "nvim", "neovim", "emacs", "nano", "pico", "micro", "joe", "hx")),
    _rule("monitor", ProcessKind.FULLSCREEN, ("htop", "btop", "atop", "iotop", "iftop", "nethogs", "glances", "nvtop")),
    _rule("pager", ProcessKind.FULLSCREEN, ("less", "more", "most", "man")),
    _rule("multiplexer", ProcessKind.FULLSCREEN, ("tmux", "screen", "byobu", "zellij")),
    _rule("file-manager", ProcessKind.FULLSCREEN, ("mc", "ranger", "nnn", "lf", "vifm")),
    _rule("tui-client", ProcessKind.FULLSCREEN, ("mycli", "pgcli", "mutt", "neomutt", "alpine", "irssi", "weechat")),
    _rule("remote-login", ProcessKind.FULLSCREEN, ("ssh",), predicate=_is_remote_login),
    _rule("remote-shell", ProcessKind.FULLSCREEN, ("telnet", "mosh", "ftp", "sftp")),
    _rule("git-pager", ProcessKind.FULLSCREEN, ("git",), subcommands=(("log",), ("diff",), ("show",), ("blame",))),
    # Interactive prompts kept inside the block.
    _rule("bare-repl", ProcessKind.REPL, ("python", "python3", "node", "nodejs", "lua", "php"), requires_no_arguments=True),
    _rule("inspect-repl", ProcessKind.REPL, ("python", "python3", "node", "nodejs"), flags=("-i", "--interactive")),
    _rule(
        "repl",
        ProcessKind.REPL,
        (
            "irb", "julia", "r", "scala", "clojure", "clj", "ghci", "erl", "iex", "psql", "mysql",
            "sqlite3", "redis-cli", "mongosh", "mongo", "bc", "ipython", "bpython", "ptpython", "claude",
        ),
    ),
    # Long-running monitors rendered as streaming blocks.
    _rule("stream-monitor", ProcessKind.PERSISTENT, ("top", "ping", "ping6", "tcpdump", "yes", "vmstat", "iostat")),
)


@dataclass(frozen=True)
class CommandClassification:
    command: str
    classification: Classification
    process_kind: ProcessKind
    fullscreen_required: bool = False
    executable: str = ""
    arguments: tuple[str, ...] = ()
    rule: str = "default"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self.classification]

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self.process_kind]

    @property
    def requires_input(self) -> bool:
        return self.process_kind in (ProcessKind.REPL, ProcessKind.INTERACTIVE, ProcessKind.FULLSCREEN)

    @property
    def is_persistent(self) -> bool:
        return self.process_kind != ProcessKind.ONESHOT

    @property
    def shows_activity(self) -> bool:
        if self.classification == Classification.CONTINUOUS:
            return True
        if self.classification == Classification.INTERACTIVE:
            return self.is_persistent
        return False

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "classification": self.classification.value,
            "process_kind": self.process_kind.value,
            "fullscreen_required": self.fullscreen_required,
            "executable": self.executable,
            "arguments": list(self.arguments),
            "rule": self.rule,
            "display_name": self.display_name,
            "description": self.description,
            "shows_activity": self.shows_activity,
        }


def _head_tokens(command_text: str) -> list[str]:
    lexer = shlex.shlex(command_text, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    lexer.commenters = ""
    tokens: list[str] = []
    try:
        for token in lexer:
            # Pipelines, chains and redirections end the head segment.
            if token and set(token) <= _OPERATOR_CHARS:
                break
            tokens.append(token)
    except ValueError as exc:
        raise ClassificationAmbiguous(
            f"Cannot tokenize command: {command_text!r}",
            code=ExitCode.VALIDATION_ERROR,
            hint=str(exc),
        ) from exc
    return tokens


def _normalize_executable(token: str) -> str:
    name = posixpath.basename(ntpath.basename(token)).lower()
    if name.endswith(".exe"):
        name = name[: -len(".exe")]
    return name


def _strip_wrappers(tokens: list[str]) -> list[str]:
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if "=" in token and not token.startswith(("-", "=")) and token.split("=", 1)[0].isidentifier():
            index += 1
            continue
        wrapper = _normalize_executable(token)
        value_flags = _WRAPPERS.get(wrapper)
        if value_flags is None:
            break
        index += 1
        while index < len(tokens):
            current = tokens[index]
            if current in value_flags:
                index += 2
            elif current.startswith("-"):
                index += 1
            elif wrapper == "env" and "=" in current:
                index += 1
            else:
                break
    return tokens[index:]


def parse_command_line(command_text: str) -> CommandLine:
    tokens = _strip_wrappers(_head_tokens(command_text))
    if not tokens:
        raise ClassificationAmbiguous(
            "Command has no executable.",
            code=ExitCode.VALIDATION_ERROR,
            hint="Provide a command to classify.",
        )
    return CommandLine(raw=command_text, executable=_normalize_executable(tokens[0]), arguments=tuple(tokens[1:]))


def build_rules(overrides: Mapping[str, Iterable[str]] | None = None) -> tuple[ClassificationRule, ...]:
    """Prepend user override rows (category name -> executables) to the static table."""
    if not overrides:
        return DEFAULT_RULES
    kinds = {
        "oneshot": ProcessKind.ONESHOT,
        "continuous": ProcessKind.PERSISTENT,
        "interactive": ProcessKind.INTERACTIVE,
        "fullscreen": ProcessKind.FULLSCREEN,
    }
    extra: list[ClassificationRule] = []
    for category, kind in kinds.items():
        executables = {item.strip().lower() for item in overrides.get(category, ()) if item.strip()}
        if executables:
            extra.append(_rule(f"config-{category}", kind, executables))
    return tuple(extra) + DEFAULT_RULES


class CommandClassifier:
    def __init__(
        self,
        rules: Iterable[ClassificationRule] | None = None,
        *,
        cache_limit: int = CACHE_LIMIT,
    ) -> None:
        self.rules = tuple(rules) if rules is not None else DEFAULT_RULES
        self.cache_limit = max(cache_limit, 0)
        self._cache: OrderedDict[str, CommandClassification] = OrderedDict()

    def classify(self, command_text: str) -> CommandClassification:
        cached = self._cache.get(command_text)
        if cached is not None:
            self._cache.move_to_end(command_text)
            return cached
        result = self._classify(command_text)
        if self.cache_limit:
            self._cache[command_text] = result
            # Least recently used entries go first.
            while len(self._cache) > self.cache_limit:
                self._cache.popitem(last=False)
        return result

    def _classify(self, command_text: str) -> CommandClassification:
        try:
            line = parse_command_line(command_text)
        except ClassificationAmbiguous as exc:
            logger.debug("Classification fell back to oneshot: %s", exc)
            return CommandClassification(
                command=command_text,
                classification=Classification.ONE_SHOT,
                process_kind=ProcessKind.ONESHOT,
            )

        for rule in self.rules:
            if rule.matches(line):
                return CommandClassification(
                    command=command_text,
                    classification=rule.classification,
                    process_kind=rule.process_kind,
                    fullscreen_required=rule.fullscreen_required,
                    executable=line.executable,
                    arguments=line.arguments,
                    rule=rule.name,
                )
        return CommandClassification(
            command=command_text,
            classification=Classification.ONE_SHOT,
            process_kind=ProcessKind.ONESHOT,
            executable=line.executable,
            arguments=line.arguments,
        )

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.debug("Classifier cache cleared")

    def cache_stats(self) -> dict[str, object]:
        distribution: dict[str, int] = {}
        for item in self._cache.values():
            key = item.classification.value
            distribution[key] = distribution.get(key, 0) + 1
        return {"size": len(self._cache), "distribution": distribution}


def classify(command_text: str) -> CommandClassification:
    return CommandClassifier().classify(command_text)
