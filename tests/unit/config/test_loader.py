"""
nixpkgs-history - unit tests for config loader

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Env var path mapping and type coercion, including argv-style commands.
- Path normalization relative to the config file.
- Redacted effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from nixpkgs_history.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    env_name_for_path,
    load_config,
    resolve_github_token,
)


def _write_config(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text.strip() + "\n", encoding="utf-8")
    return path


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "nixpkgs-history.toml",
        """
[pipeline]
concurrency = 2
max_consecutive_sink_failures = 7

[github]
per_page = 50
""",
    )

    config = load_config(
        config_path,
        cli_overrides={"pipeline.concurrency": 16, "paths.database": None},
        environ={"NIXHIST_PIPELINE__CONCURRENCY": "8", "NIXHIST_GITHUB__PER_PAGE": "25"},
    )

    assert config["pipeline"]["concurrency"] == 16
    assert config["pipeline"]["max_consecutive_sink_failures"] == 7
    assert config["github"]["per_page"] == 25
    assert config["github"]["owner"] == "NixOS"


def test_env_overrides_are_coerced_by_default_type(tmp_path: Path) -> None:
    config = load_config(
        _write_config(tmp_path / "cfg.toml", ""),
        environ={
            "NIXHIST_RESOLVER__COMMAND": "/opt/nix/bin/nix-env -qa --json -f",
            "NIXHIST_RESOLVER__TIMEOUT_SECONDS": "90",
            "NIXHIST_OBSERVABILITY__LOG_TO_CONSOLE": "yes",
            "NIXHIST_GITHUB__TOKEN_ENV": "NIXPKGS_TOKEN",
        },
    )

    assert config["resolver"]["command"] == ["/opt/nix/bin/nix-env", "-qa", "--json", "-f"]
    assert config["resolver"]["timeout_seconds"] == 90.0
    assert config["observability"]["log_to_console"] is True
    assert config["github"]["token_env"] == "NIXPKGS_TOKEN"


@pytest.mark.parametrize(
    ("env_name", "value", "message"),
    [
        ("NIXHIST_PIPELINE__CONCURRENCY", "many", "must be an integer"),
        ("NIXHIST_OBSERVABILITY__JSON_LOGS", "maybe", "must be a boolean"),
        ("NIXHIST_RESOLVER__TIMEOUT_SECONDS", "soon", "must be a number"),
        ("NIXHIST_RESOLVER__COMMAND", "nix-env 'unterminated", "not a valid command line"),
    ],
)
def test_bad_env_values_raise_load_errors(
    tmp_path: Path, env_name: str, value: str, message: str
) -> None:
    with pytest.raises(ConfigLoadError, match=message):
        load_config(_write_config(tmp_path / "cfg.toml", ""), environ={env_name: value})


def test_paths_are_normalized_relative_to_config_file(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "conf" / "nixpkgs-history.toml",
        """
[paths]
database = "data/packages.sqlite3"
log_dir = "/var/log/nixpkgs-history"
""",
    )

    config = load_config(config_path, environ={})

    expected_db = tmp_path / "conf" / "data" / "packages.sqlite3"
    assert config["paths"]["database"] == expected_db.as_posix()
    assert config["paths"]["log_dir"] == "/var/log/nixpkgs-history"
    assert config["paths"]["sql_dump"] == (tmp_path / "conf" / "dump.sql").as_posix()


def test_missing_explicit_config_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="not found"):
        load_config(tmp_path / "missing.toml", environ={})


def test_invalid_toml_and_invalid_values_are_reported(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(_write_config(tmp_path / "broken.toml", "[pipeline\n"), environ={})

    bad = _write_config(tmp_path / "bad.toml", "[pipeline]\nconcurrency = 0\n")
    with pytest.raises(ConfigValidationError, match="pipeline.concurrency"):
        load_config(bad, environ={})


def test_dump_effective_config_is_sorted_json(tmp_path: Path) -> None:
    config = load_config(_write_config(tmp_path / "cfg.toml", ""), environ={})

    rendered = dump_effective_config(config)

    parsed = json.loads(rendered)
    assert list(parsed) == sorted(parsed)
    assert parsed["github"]["token_env"] == "GITHUB_TOKEN"


def test_resolve_github_token_reads_the_named_variable(tmp_path: Path) -> None:
    config = load_config(_write_config(tmp_path / "cfg.toml", ""), environ={})

    assert resolve_github_token(config, {"GITHUB_TOKEN": "ghp_abc"}) == "ghp_abc"
    assert resolve_github_token(config, {"GITHUB_TOKEN": "   "}) is None
    assert resolve_github_token(config, {}) is None


def test_env_name_for_path() -> None:
    assert env_name_for_path(("pipeline", "concurrency")) == "NIXHIST_PIPELINE__CONCURRENCY"
