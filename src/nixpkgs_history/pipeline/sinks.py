"""Destinations for one commit's extracted packages.

A sink's ``write`` is called by the pipeline while it holds the sink lock, so
implementations need no locking of their own. ``write`` may block; the
pipeline runs it in a worker thread.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol, TextIO, runtime_checkable

from nixpkgs_history.domain.models import CommitData, CommitRef, PackageRecord
from nixpkgs_history.export.dump import write_commit_data

if TYPE_CHECKING:
    from nixpkgs_history.persistence.package_store import PackageStore


@runtime_checkable
class PackageSink(Protocol):
    def write(self, commit: CommitRef, packages: Sequence[PackageRecord]) -> int:
        """Persist one commit's packages atomically and return the rows written."""
        ...


class StoreSink:
    """Insert each commit as one transactional batch keyed by its SHA."""

    def __init__(self, store: PackageStore) -> None:
        self._store = store

    @property
    def store(self) -> PackageStore:
        return self._store

    def write(self, commit: CommitRef, packages: Sequence[PackageRecord]) -> int:
        return len(self._store.insert_batch(commit.sha, packages))


class JsonLinesSink:
    """Append one ``CommitData`` JSON object per commit to a text stream.

    Each line is written in a single call and flushed, so a reader never sees
    a partial record for a completed commit.
    """

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._records_written = 0

    @property
    def records_written(self) -> int:
        return self._records_written

    def write(self, commit: CommitRef, packages: Sequence[PackageRecord]) -> int:
        write_commit_data(self._stream, CommitData.from_extraction(commit, packages))
        self._records_written += 1
        return len(packages)


__all__ = [
    "JsonLinesSink",
    "PackageSink",
    "StoreSink",
]
