from __future__ import annotations

from pathlib import Path

import pytest

from beadle.config import (
    STATE_DIR_ENV_VAR,
    BeadleConfig,
    ConfigValidationError,
    load_config,
    resolve_state_dir,
)
from beadle.tracker import Tracker


def _write_config(state_dir: Path, body: str) -> None:
    state_dir.mkdir(parents=True, exist_ok=True)
    (state_dir / "config.toml").write_text(body.strip() + "\n", encoding="utf-8")


def test_missing_config_uses_defaults(tmp_path: Path) -> None:
    cfg = load_config(tmp_path)
    assert cfg.error is None
    assert cfg.config == BeadleConfig()
    assert cfg.path == tmp_path / "config.toml"


def test_config_values_are_parsed(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        """
[beadle]
id_prefix = "web"
auto_import = false
log_file = "log.jsonl"

[tags]
vocabulary = ["Priority", "area", "area"]
strict = true
""",
    )

    cfg = load_config(tmp_path)
    assert cfg.error is None
    assert cfg.config.id_prefix == "web"
    assert cfg.config.auto_import is False
    assert cfg.config.log_file == "log.jsonl"
    assert cfg.config.cache_file == "cache.sqlite3"
    assert cfg.config.tags.vocabulary == ("area", "priority")
    assert cfg.config.tags.strict is True


def test_invalid_toml_is_reported(tmp_path: Path) -> None:
    _write_config(tmp_path, "[beadle\nid_prefix = 1")

    cfg = load_config(tmp_path)
    assert cfg.config == BeadleConfig()
    assert cfg.error is not None
    assert cfg.error.startswith("invalid TOML in config.toml")


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ('[beadle]\nid_prefix = "Bad-Prefix"', "[beadle].id_prefix must match"),
        ('[beadle]\nauto_import = "yes"', "[beadle].auto_import must be true or false"),
        ('[beadle]\nlog_file = "../escape.jsonl"', "[beadle].log_file must be a plain file name"),
        ('[beadle]\nlog_file = "same"\ncache_file = "same"', "must differ"),
        ('[tags]\nvocabulary = "area"', "[tags].vocabulary must be an array"),
        ('[tags]\nvocabulary = ["area", ""]', "[tags].vocabulary[1]"),
        ('beadle = 3', "[beadle] must be a table"),
    ],
)
def test_invalid_values_are_reported(tmp_path: Path, body: str, message: str) -> None:
    _write_config(tmp_path, body)

    cfg = load_config(tmp_path)
    assert cfg.error is not None
    assert cfg.error.startswith("config.toml: ")
    assert message in cfg.error


def test_from_workdir_raises_on_bad_config(tmp_path: Path) -> None:
    _write_config(tmp_path / ".beadle", '[beadle]\nid_prefix = "9x"')

    with pytest.raises(ConfigValidationError, match="id_prefix"):
        Tracker.from_workdir(tmp_path)


def test_from_workdir_uses_configured_prefix_and_files(tmp_path: Path) -> None:
    _write_config(
        tmp_path / ".beadle",
        '[beadle]\nid_prefix = "web"\nlog_file = "history.jsonl"\ncache_file = "q.db"',
    )
    tracker = Tracker.from_workdir(tmp_path)

    issue = tracker.create("task")

    assert issue["id"].startswith("web-")
    assert (tmp_path / ".beadle" / "history.jsonl").exists()
    assert (tmp_path / ".beadle" / "q.db").exists()
    tracker.cache.close()


def test_state_dir_prefers_env_then_nearest_parent(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    nested = tmp_path / "repo" / "src" / "pkg"
    nested.mkdir(parents=True)
    (tmp_path / "repo" / ".beadle").mkdir()

    assert resolve_state_dir(nested, create=False) == (tmp_path / "repo" / ".beadle").resolve()

    override = tmp_path / "elsewhere"
    monkeypatch.setenv(STATE_DIR_ENV_VAR, str(override))
    assert resolve_state_dir(nested) == override.resolve()
    assert override.is_dir()


def test_state_dir_without_create_has_no_side_effects(tmp_path: Path) -> None:
    state_dir = resolve_state_dir(tmp_path, create=False)

    assert state_dir == tmp_path.resolve() / ".beadle"
    assert not state_dir.exists()


def test_state_dir_reads_override_from_given_environment(tmp_path: Path) -> None:
    override = tmp_path / "shared" / "state"

    resolved = resolve_state_dir(tmp_path, env={STATE_DIR_ENV_VAR: f"  {override}  "})
    assert resolved == override.resolve()
    assert override.is_dir()

    blank = resolve_state_dir(tmp_path, create=False, env={STATE_DIR_ENV_VAR: "   "})
    assert blank == tmp_path.resolve() / ".beadle"
