"""Commit source for explicitly named commits."""

from __future__ import annotations

from collections.abc import Iterable

from nixpkgs_history.domain.models import CommitRef


class StaticCommitSource:
    """Wrap caller-supplied SHAs; order is preserved and duplicates are dropped."""

    def __init__(self, shas: Iterable[str]) -> None:
        seen: set[str] = set()
        commits: list[CommitRef] = []
        for sha in shas:
            commit = CommitRef(sha=sha)
            if commit.sha in seen:
                continue
            seen.add(commit.sha)
            commits.append(commit)
        self._commits = tuple(commits)

    def commits(self) -> list[CommitRef]:
        return list(self._commits)

    def __len__(self) -> int:
        return len(self._commits)


__all__ = ["StaticCommitSource"]
