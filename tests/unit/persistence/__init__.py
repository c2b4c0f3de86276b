"""Shared builders for persistence tests."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

from nixpkgs_history.domain.models import PackageRecord, StoredPackageRow
from nixpkgs_history.persistence import PackageStore, SearchIndex

if TYPE_CHECKING:
    from pathlib import Path


class FailingSearchIndex(SearchIndex):
    """Index that raises on the ``fail_on``-th ``add`` call of its lifetime."""

    def __init__(self, fail_on: int) -> None:
        self.fail_on = fail_on
        self.calls = 0

    def add(self, conn: sqlite3.Connection, row: StoredPackageRow) -> None:
        self.calls += 1
        if self.calls == self.fail_on:
            raise sqlite3.OperationalError("simulated index failure")
        super().add(conn, row)


def make_store(tmp_path: Path, *, index: SearchIndex | None = None) -> PackageStore:
    store = PackageStore(tmp_path / "state" / "packages.sqlite3", index=index)
    store.initialize_schema()
    return store


def records(*pairs: tuple[str, str]) -> list[PackageRecord]:
    return [PackageRecord(name=name, version=version) for name, version in pairs]
