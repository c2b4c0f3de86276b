"""Command-line surface: argparse commands and plain-text rendering."""

from nixpkgs_history.ui.cli import CLIError, build_parser, run_cli
from nixpkgs_history.ui.render import CLIRenderer, create_renderer

__all__ = ["CLIError", "CLIRenderer", "build_parser", "create_renderer", "run_cli"]
