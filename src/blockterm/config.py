"""XDG config loading/saving."""

from __future__ import annotations

import codecs
import os
import sys
from contextlib import suppress
from pathlib import Path
from typing import Literal, cast

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing_extensions import TypedDict

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

DEFAULT_CONFIG_PATH = Path("~/.config/blockterm/config.toml").expanduser()
DEFAULT_KIND: Literal["local", "remote"] = "local"
DEFAULT_ENCODING = "utf-8"
DEFAULT_COLS = 80
DEFAULT_ROWS = 24
DEFAULT_MAX_SESSIONS = 16
REMOTE_HOST_ENV = "BLOCKTERM_REMOTE_HOST"

_VALID_KINDS = {"local", "remote"}
_OVERRIDE_CATEGORIES = ("oneshot", "continuous", "interactive", "fullscreen")


class ClassifierOverrides(TypedDict, total=False):
    oneshot: list[str]
    continuous: list[str]
    interactive: list[str]
    fullscreen: list[str]


class SessionConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    default_kind: Literal["local", "remote"] = DEFAULT_KIND
    shell: list[str] = Field(default_factory=list)
    remote_host: str = ""
    remote_port: int | None = Field(default=None, ge=1, le=65535)
    remote_user: str = ""
    default_encoding: str = DEFAULT_ENCODING
    cols: int = Field(default=DEFAULT_COLS, ge=1, le=1000)
    rows: int = Field(default=DEFAULT_ROWS, ge=1, le=1000)
    completion_markers: bool = True
    suppress_echo: bool = True
    max_sessions: int = Field(default=DEFAULT_MAX_SESSIONS, ge=1, le=64)
    classifier: ClassifierOverrides = Field(default_factory=dict)  # type: ignore[arg-type]

    @field_validator("default_kind")
    @classmethod
    def _validate_kind(cls, value: str) -> str:
        if value not in _VALID_KINDS:
            raise ValueError(f"Invalid connection kind: {value}")
        return value

    @field_validator("default_encoding")
    @classmethod
    def _validate_encoding(cls, value: str) -> str:
        if not _is_known_encoding(value):
            raise ValueError(f"Unknown encoding: {value}")
        return value

    def classifier_overrides(self) -> dict[str, list[str]]:
        return {key: list(values) for key, values in self.classifier.items() if values}


def _is_known_encoding(value: str) -> bool:
    try:
        codecs.lookup(value)
    except LookupError:
        return False
    return True


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _toml_scalar(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return f'"{_escape(value)}"'
    if isinstance(value, list):
        return "[" + ", ".join(_toml_scalar(item) for item in value) + "]"
    raise TypeError(f"Unsupported TOML scalar type: {type(value)!r}")


def _string_list(value: object) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _bounded_int(value: object, low: int, high: int) -> int | None:
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    if low <= value <= high:
        return value
    return None


def _normalize_overrides(value: object) -> ClassifierOverrides:
    normalized = ClassifierOverrides()
    if not isinstance(value, dict):
        return normalized
    for category in _OVERRIDE_CATEGORIES:
        items = _string_list(value.get(category))
        if items:
            normalized[category] = items  # type: ignore[literal-required]
    return normalized


def _sanitize(raw: dict[str, object]) -> SessionConfig:
    cfg = SessionConfig()

    default_kind = raw.get("default_kind", cfg.default_kind)
    if isinstance(default_kind, str) and default_kind in _VALID_KINDS:
        cfg.default_kind = cast(Literal["local", "remote"], default_kind)

    shell = _string_list(raw.get("shell"))
    if shell:
        cfg.shell = shell

    remote_host = raw.get("remote_host", cfg.remote_host)
    if isinstance(remote_host, str):
        cfg.remote_host = remote_host.strip()
    env_host = os.getenv(REMOTE_HOST_ENV, "").strip()
    if env_host:
        cfg.remote_host = env_host

    remote_port = _bounded_int(raw.get("remote_port"), 1, 65535)
    if remote_port is not None:
        cfg.remote_port = remote_port

    remote_user = raw.get("remote_user", cfg.remote_user)
    if isinstance(remote_user, str):
        cfg.remote_user = remote_user.strip()

    default_encoding = raw.get("default_encoding", cfg.default_encoding)
    if isinstance(default_encoding, str) and _is_known_encoding(default_encoding):
        cfg.default_encoding = default_encoding

    cols = _bounded_int(raw.get("cols"), 1, 1000)
    if cols is not None:
        cfg.cols = cols

    rows = _bounded_int(raw.get("rows"), 1, 1000)
    if rows is not None:
        cfg.rows = rows

    completion_markers = raw.get("completion_markers", cfg.completion_markers)
    if isinstance(completion_markers, bool):
        cfg.completion_markers = completion_markers

    suppress_echo = raw.get("suppress_echo", cfg.suppress_echo)
    if isinstance(suppress_echo, bool):
        cfg.suppress_echo = suppress_echo

    max_sessions = _bounded_int(raw.get("max_sessions"), 1, 64)
    if max_sessions is not None:
        cfg.max_sessions = max_sessions

    cfg.classifier = _normalize_overrides(raw.get("classifier", {}))
    return cfg


def load_config(path: str | Path | None = None) -> SessionConfig:
    resolved = get_config_path(path)
    if not resolved.exists():
        return _sanitize({})
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError):
        return _sanitize({})
    if not isinstance(raw, dict):
        return _sanitize({})
    return _sanitize(raw)


def save_config(config: SessionConfig, path: str | Path | None = None) -> Path:
    resolved = get_config_path(path)
    resolved.parent.mkdir(parents=True, exist_ok=True)

    lines = [
        f"default_kind = {_toml_scalar(config.default_kind)}",
        f"shell = {_toml_scalar(list(config.shell))}",
        f"remote_host = {_toml_scalar(config.remote_host)}",
        f"remote_user = {_toml_scalar(config.remote_user)}",
        f"default_encoding = {_toml_scalar(config.default_encoding)}",
        f"cols = {_toml_scalar(config.cols)}",
        f"rows = {_toml_scalar(config.rows)}",
        f"completion_markers = {_toml_scalar(config.completion_markers)}",
        f"suppress_echo = {_toml_scalar(config.suppress_echo)}",
        f"max_sessions = {_toml_scalar(config.max_sessions)}",
    ]
    if config.remote_port is not None:
        lines.append(f"remote_port = {_toml_scalar(config.remote_port)}")

    overrides = config.classifier_overrides()
    if overrides:
        lines.append("")
        lines.append("[classifier]")
        for category in _OVERRIDE_CATEGORIES:
            if category in overrides:
                lines.append(f"{category} = {_toml_scalar(overrides[category])}")

    resolved.write_text("\n".join(lines) + "\n", encoding="utf-8")
    with suppress(OSError):
        resolved.chmod(0o600)
    return resolved
