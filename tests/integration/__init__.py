"""Subprocess-level CLI tests; helpers run ``python -m nixpkgs_history`` against ``src``."""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"
FAKE_NIX_ENV = PROJECT_ROOT / "samples" / "fake_nix_env.py"


def run_cli(cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    existing_pythonpath = env.get("PYTHONPATH")
    src_pythonpath = str(SRC_PATH)
    env["PYTHONPATH"] = (
        src_pythonpath
        if not existing_pythonpath
        else f"{src_pythonpath}{os.pathsep}{existing_pythonpath}"
    )
    for name in [key for key in env if key.startswith("NIXHIST_") or key == "GITHUB_TOKEN"]:
        env.pop(name)
    return subprocess.run(
        [sys.executable, "-m", "nixpkgs_history", *args],
        cwd=cwd,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )


def write_project_config(root: Path) -> Path:
    """``nixpkgs-history.toml`` in ``root`` wired to the scripted nix-env."""

    command = json.dumps([sys.executable, str(FAKE_NIX_ENV)])
    config_path = root / "nixpkgs-history.toml"
    config_path.write_text(
        "[resolver]\n"
        f"command = {command}\n"
        "\n"
        "[pipeline]\n"
        "concurrency = 2\n"
        "\n"
        "[paths]\n"
        'database = "state/packages.sqlite3"\n'
        'log_dir = "logs"\n',
        encoding="utf-8",
    )
    return config_path
