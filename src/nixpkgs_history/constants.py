"""Stable constants shared across the extraction pipeline and its collaborators."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Upstream repository.
UPSTREAM_OWNER: Final[str] = "NixOS"
UPSTREAM_REPO: Final[str] = "nixpkgs"
GITHUB_API_URL: Final[str] = "https://api.github.com"
RELEASE_BRANCH_PREFIX: Final[str] = "release-"
DEFAULT_TOKEN_ENV: Final[str] = "GITHUB_TOKEN"
DEFAULT_GITHUB_PER_PAGE: Final[int] = 100
DEFAULT_GITHUB_TIMEOUT_SECONDS: Final[float] = 30.0

# Resolver invocation.
DEFAULT_RESOLVER_COMMAND: Final[tuple[str, ...]] = ("nix-env", "-qa", "--json", "-f")
DEFAULT_ARCHIVE_URL_TEMPLATE: Final[str] = "https://github.com/NixOS/nixpkgs/archive/{sha}.tar.gz"
PACKAGE_ATTRIBUTE_PREFIX: Final[str] = "nixpkgs."
UNKNOWN_VERSION: Final[str] = "unknown"
# Evaluating a full snapshot routinely takes minutes.
DEFAULT_RESOLVER_TIMEOUT_SECONDS: Final[float] = 1800.0

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
PACKAGE_DB_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file directory unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
DEFAULT_DATABASE_PATH: Final[PurePosixPath] = STATE_DIR / "nixpkgs.sqlite3"
DEFAULT_SQL_DUMP_PATH: Final[PurePosixPath] = PurePosixPath("dump.sql")
DEFAULT_JSONL_PATH: Final[PurePosixPath] = PurePosixPath("commits.jsonl")
DEFAULT_LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Pipeline defaults.
DEFAULT_CONCURRENCY: Final[int] = 4
DEFAULT_MAX_CONSECUTIVE_SINK_FAILURES: Final[int] = 5
DEFAULT_SEARCH_LIMIT: Final[int] = 10

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_ARCHIVE_URL_TEMPLATE",
    "DEFAULT_CONCURRENCY",
    "DEFAULT_DATABASE_PATH",
    "DEFAULT_GITHUB_PER_PAGE",
    "DEFAULT_GITHUB_TIMEOUT_SECONDS",
    "DEFAULT_JSONL_PATH",
    "DEFAULT_LOG_DIR",
    "DEFAULT_MAX_CONSECUTIVE_SINK_FAILURES",
    "DEFAULT_RESOLVER_COMMAND",
    "DEFAULT_RESOLVER_TIMEOUT_SECONDS",
    "DEFAULT_SEARCH_LIMIT",
    "DEFAULT_SQL_DUMP_PATH",
    "DEFAULT_TOKEN_ENV",
    "GITHUB_API_URL",
    "PACKAGE_ATTRIBUTE_PREFIX",
    "PACKAGE_DB_SCHEMA_VERSION",
    "RELEASE_BRANCH_PREFIX",
    "STATE_DIR",
    "UNKNOWN_VERSION",
    "UPSTREAM_OWNER",
    "UPSTREAM_REPO",
]
