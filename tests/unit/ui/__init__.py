"""Shared helpers for in-process CLI tests."""

from __future__ import annotations

import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[3]
FAKE_NIX_ENV = PROJECT_ROOT / "samples" / "fake_nix_env.py"


def write_config(root: Path, **paths: str) -> Path:
    """Config that resolves commits with the scripted nix-env and keeps state under ``root``."""

    command = json.dumps([sys.executable, str(FAKE_NIX_ENV)])
    sections = {
        "database": "packages.sqlite3",
        "sql_dump": "dump.sql",
        "jsonl_output": "commits.jsonl",
        "log_dir": "logs",
        **paths,
    }
    path_lines = "\n".join(f"{key} = {json.dumps(value)}" for key, value in sections.items())
    config_path = root / "nixpkgs-history.toml"
    config_path.write_text(
        f"[resolver]\ncommand = {command}\ntimeout_seconds = 60\n\n[paths]\n{path_lines}\n",
        encoding="utf-8",
    )
    return config_path
