"""Module entrypoint for ``python -m nixpkgs_history``."""

from __future__ import annotations

from nixpkgs_history.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
