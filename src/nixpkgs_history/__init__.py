"""
nixpkgs-history

Purpose
- Historical inventory of the packages available in nixpkgs at each commit,
  with full-text search over the collected names and versions.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
