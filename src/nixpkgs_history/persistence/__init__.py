"""
nixpkgs-history persistence package.

Purpose
- SQLite package store, schema migrations, and the FTS5 search index.

Functional requirements
- Every committed package row is findable through search; every index entry
  refers to a committed row.
- One commit's rows become visible atomically or not at all.

Non-functional requirements
- SQLite-first; readers never block behind an ingesting writer (WAL).
"""

from nixpkgs_history.persistence.package_store import (
    IndexConsistency,
    MigrationRecord,
    PackageNotFoundError,
    PackageStore,
    PackageStoreBusyError,
    PackageStoreCorruptionError,
    PackageStoreError,
    PackageStoreMigrationError,
)
from nixpkgs_history.persistence.search_index import (
    SearchIndex,
    SearchQueryError,
    to_match_expression,
)

__all__ = [
    "IndexConsistency",
    "MigrationRecord",
    "PackageNotFoundError",
    "PackageStore",
    "PackageStoreBusyError",
    "PackageStoreCorruptionError",
    "PackageStoreError",
    "PackageStoreMigrationError",
    "SearchIndex",
    "SearchQueryError",
    "to_match_expression",
]
