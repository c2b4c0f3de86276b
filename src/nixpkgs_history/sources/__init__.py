"""Commit sources: where the list of snapshots to extract comes from."""

from nixpkgs_history.sources.github import (
    CommitSourceError,
    GitHubCommitSource,
    release_branch,
    token_from_env,
)
from nixpkgs_history.sources.static import StaticCommitSource

__all__ = [
    "CommitSourceError",
    "GitHubCommitSource",
    "StaticCommitSource",
    "release_branch",
    "token_from_env",
]
