from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib

STATE_DIR_NAME = ".beadle"
STATE_DIR_ENV_VAR = "BEADLE_DIR"
CONFIG_FILE_NAME = "config.toml"

_PREFIX_RE = re.compile(r"^[a-z][a-z0-9]*$")
_FILE_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass(frozen=True)
class TagPolicyConfig:
    vocabulary: tuple[str, ...] = ()
    strict: bool = False


@dataclass(frozen=True)
class BeadleConfig:
    id_prefix: str = "bd"
    auto_import: bool = True
    log_file: str = "issues.jsonl"
    cache_file: str = "cache.sqlite3"
    tags: TagPolicyConfig = field(default_factory=TagPolicyConfig)


@dataclass(frozen=True)
class BeadleFileConfig:
    state_dir: Path
    path: Path
    config: BeadleConfig = field(default_factory=BeadleConfig)
    error: str | None = None


class ConfigValidationError(ValueError):
    pass


def _as_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    if not stripped:
        return None
    return stripped


def _as_bool(value: object, *, field: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigValidationError(f"{field} must be true or false")
    return value


def _as_str_tuple(value: object, *, field: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigValidationError(f"{field} must be an array of strings")

    out: list[str] = []
    for idx, item in enumerate(value):
        text = _as_str(item)
        if text is None:
            raise ConfigValidationError(f"{field}[{idx}] must be a non-empty string")
        out.append(text)
    return tuple(out)


def _as_file_name(value: object, *, field: str, default: str) -> str:
    if value is None:
        return default
    text = _as_str(value)
    if text is None or not _FILE_NAME_RE.match(text):
        raise ConfigValidationError(f"{field} must be a plain file name")
    return text


def _parse_tags(raw: object) -> TagPolicyConfig:
    if raw is None:
        return TagPolicyConfig()
    if not isinstance(raw, dict):
        raise ConfigValidationError("[tags] must be a table")
    vocabulary = _as_str_tuple(raw.get("vocabulary"), field="[tags].vocabulary")
    strict = raw.get("strict", False)
    return TagPolicyConfig(
        vocabulary=tuple(sorted({item.lower() for item in vocabulary})),
        strict=_as_bool(strict, field="[tags].strict"),
    )


def _parse_config(raw: dict[str, Any]) -> BeadleConfig:
    section = raw.get("beadle")
    if section is None:
        section = {}
    if not isinstance(section, dict):
        raise ConfigValidationError("[beadle] must be a table")

    defaults = BeadleConfig()
    prefix = section.get("id_prefix", defaults.id_prefix)
    prefix_text = _as_str(prefix)
    if prefix_text is None or not _PREFIX_RE.match(prefix_text):
        raise ConfigValidationError(
            "[beadle].id_prefix must match [a-z][a-z0-9]*"
        )

    log_file = _as_file_name(
        section.get("log_file"), field="[beadle].log_file", default=defaults.log_file
    )
    cache_file = _as_file_name(
        section.get("cache_file"),
        field="[beadle].cache_file",
        default=defaults.cache_file,
    )
    if log_file == cache_file:
        raise ConfigValidationError("[beadle].log_file and cache_file must differ")

    return BeadleConfig(
        id_prefix=prefix_text,
        auto_import=_as_bool(
            section.get("auto_import", defaults.auto_import),
            field="[beadle].auto_import",
        ),
        log_file=log_file,
        cache_file=cache_file,
        tags=_parse_tags(raw.get("tags")),
    )


def find_state_dir(start: Path) -> Path | None:
    for base in (start, *start.parents):
        candidate = base / STATE_DIR_NAME
        if candidate.is_dir():
            return candidate
    return None


def resolve_state_dir(
    cwd: Path | None = None,
    *,
    create: bool = True,
    env: Mapping[str, str] | None = None,
) -> Path:
    """Locate the directory holding the log, cache and ``config.toml``.

    ``$BEADLE_DIR`` wins when set. Otherwise the nearest ``.beadle`` at or
    above ``cwd`` is used, falling back to ``<cwd>/.beadle``.
    """
    environ = os.environ if env is None else env
    override = _as_str(environ.get(STATE_DIR_ENV_VAR))
    if override is not None:
        state_dir = Path(override).expanduser().resolve()
    else:
        start = (cwd or Path.cwd()).resolve()
        state_dir = find_state_dir(start) or start / STATE_DIR_NAME

    if create:
        state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


def load_config(state_dir: Path) -> BeadleFileConfig:
    """Read ``<state_dir>/config.toml``; a missing file means defaults."""
    path = state_dir / CONFIG_FILE_NAME
    if not path.exists():
        return BeadleFileConfig(state_dir=state_dir, path=path)

    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        return BeadleFileConfig(
            state_dir=state_dir,
            path=path,
            error=f"invalid TOML in {path.name}: {exc}",
        )

    try:
        config = _parse_config(raw)
    except ConfigValidationError as exc:
        return BeadleFileConfig(
            state_dir=state_dir,
            path=path,
            error=f"{path.name}: {exc}",
        )

    return BeadleFileConfig(state_dir=state_dir, path=path, config=config)
