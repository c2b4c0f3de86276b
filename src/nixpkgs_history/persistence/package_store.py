"""
SQLite package store: schema migrations, transactional batch inserts, and the
synchronized full-text index.

Every mutating method writes the primary ``packages`` table and the
``packages_fts`` index on one connection inside one transaction. No triggers
are involved; the invariant "index content == stored rows" is owned here.

Connections are short-lived (one per call) and run in WAL mode with a busy
timeout, so readers (search, dump) never block on an ingesting writer.
"""

from __future__ import annotations

import hashlib
import sqlite3
import time
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

from nixpkgs_history.constants import PACKAGE_DB_SCHEMA_VERSION
from nixpkgs_history.domain.models import PackageRecord, SearchHit, StoredPackageRow
from nixpkgs_history.persistence.search_index import (
    SCHEMA_STATEMENTS as _INDEX_SCHEMA_STATEMENTS,
)
from nixpkgs_history.persistence.search_index import (
    SearchIndex,
    unindexable_ids,
)

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS packages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        version TEXT NOT NULL
    )
    """,
    *_INDEX_SCHEMA_STATEMENTS,
)

_INSERT_PACKAGE_SQL: Final[str] = "INSERT INTO packages (name, version) VALUES (?, ?)"
_SELECT_PACKAGE_SQL: Final[str] = "SELECT id, name, version FROM packages WHERE id = ?"


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


@dataclass(frozen=True, slots=True)
class IndexConsistency:
    """Comparison between primary-table ids and ids present in the FTS index."""

    row_count: int
    indexed_count: int
    missing_from_index: tuple[int, ...]
    orphaned_in_index: tuple[int, ...]
    integrity_error: str | None = None

    @property
    def consistent(self) -> bool:
        return (
            not self.missing_from_index
            and not self.orphaned_in_index
            and self.integrity_error is None
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "consistent": self.consistent,
            "row_count": self.row_count,
            "indexed_count": self.indexed_count,
            "missing_from_index": list(self.missing_from_index),
            "orphaned_in_index": list(self.orphaned_in_index),
            "integrity_error": self.integrity_error,
        }


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="packages_with_fts_index",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "packages_with_fts_index", _MIGRATION_0001_STATEMENTS),
    ),
)

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


class PackageStoreError(RuntimeError):
    """Base class for package store errors."""


class PackageStoreBusyError(PackageStoreError):
    """Raised when bounded busy retries are exhausted."""


class PackageStoreMigrationError(PackageStoreError):
    """Raised when migrations cannot be applied safely."""


class PackageStoreCorruptionError(PackageStoreError):
    """Raised when SQLite reports possible corruption."""


class PackageNotFoundError(PackageStoreError, LookupError):
    """Raised when an update or delete targets a missing row id."""


class PackageStore:
    """Durable record of package rows with a synchronously maintained search index."""

    def __init__(
        self,
        path: str | Path,
        *,
        index: SearchIndex | None = None,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")

        self._path = Path(path).expanduser()
        self._index = index if index is not None else SearchIndex()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._logger = structlog.get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def index(self) -> SearchIndex:
        return self._index

    # ------------------------------------------------------------------
    # Connections and transactions
    # ------------------------------------------------------------------

    def connect(self) -> sqlite3.Connection:
        """Open a configured SQLite connection for the package database."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        self._configure_connection(conn)
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Run statements inside one atomic transaction; roll back on any exception."""

        if conn is None:
            with self.connection() as owned_conn:
                with self.transaction(conn=owned_conn, immediate=immediate) as txn_conn:
                    yield txn_conn
                return

        if conn.in_transaction:
            raise PackageStoreError("nested transactions are not supported")

        begin_sql = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        self._execute_with_retry(conn, begin_sql, (), operation="begin transaction")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        else:
            self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def initialize_schema(self) -> int:
        """Apply migrations idempotently and return the current schema version."""

        self._validate_migration_chain(PACKAGE_DB_SCHEMA_VERSION)
        with self.connection() as conn:
            self._execute_with_retry(
                conn,
                _SCHEMA_VERSIONS_TABLE_SQL,
                (),
                operation="create schema_versions table",
            )
            applied = self._load_applied_migrations(conn)
            current_version = max(applied, default=0)
            if current_version > PACKAGE_DB_SCHEMA_VERSION:
                raise PackageStoreMigrationError(
                    "database schema is newer than supported by this build "
                    f"(db={current_version}, code={PACKAGE_DB_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                if migration.version > PACKAGE_DB_SCHEMA_VERSION:
                    continue
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise PackageStoreMigrationError(
                            "migration checksum mismatch for version "
                            f"{migration.version}: db={record.checksum} code={migration.checksum}"
                        )
                    continue

                applied_at = _utc_now_iso()
                with self.transaction(conn=conn, immediate=True) as tx:
                    for statement in migration.statements:
                        self._execute_with_retry(
                            tx,
                            statement,
                            (),
                            operation=f"apply migration {migration.version}",
                        )
                    self._execute_with_retry(
                        tx,
                        """
                        INSERT INTO schema_versions (version, name, checksum, applied_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (migration.version, migration.name, migration.checksum, applied_at),
                        operation=f"record migration {migration.version}",
                    )
                applied[migration.version] = MigrationRecord(
                    version=migration.version,
                    name=migration.name,
                    checksum=migration.checksum,
                    applied_at=applied_at,
                )
                self._logger.info(
                    "schema_migration_applied",
                    version=migration.version,
                    migration=migration.name,
                    database=str(self._path),
                )

            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        if conn is None:
            with self.connection() as owned_conn:
                return self.schema_version(conn=owned_conn)
        row = self._execute_with_retry(
            conn,
            "SELECT COALESCE(MAX(version), 0) FROM schema_versions",
            (),
            operation="read schema version",
        ).fetchone()
        if row is None:
            return 0
        value = row[0]
        if not isinstance(value, int):
            raise PackageStoreMigrationError("schema_versions.version must be an integer")
        return value

    def schema_history(self) -> list[MigrationRecord]:
        with self.connection() as conn:
            return sorted(self._load_applied_migrations(conn).values(), key=lambda r: r.version)

    # ------------------------------------------------------------------
    # Mutations (primary table + index in one transaction)
    # ------------------------------------------------------------------

    def insert_batch(self, batch_key: str, records: Iterable[PackageRecord]) -> list[int]:
        """Insert one commit's records atomically and return the assigned ids.

        Either every record (and its index entry) becomes visible or none do.
        Any failure rolls the transaction back and is raised as
        ``PackageStoreError`` naming ``batch_key``.
        """

        row_ids: list[int] = []
        try:
            with self.transaction(immediate=True) as tx:
                for record in records:
                    cursor = self._execute_with_retry(
                        tx,
                        _INSERT_PACKAGE_SQL,
                        (record.name, record.version),
                        operation=f"insert package for batch {batch_key}",
                    )
                    row_id = cursor.lastrowid
                    if row_id is None:
                        raise PackageStoreError(f"no row id assigned in batch {batch_key}")
                    self._index.add(
                        tx,
                        StoredPackageRow(id=row_id, name=record.name, version=record.version),
                    )
                    row_ids.append(row_id)
        except PackageStoreError:
            raise
        except Exception as exc:
            raise PackageStoreError(f"insert batch {batch_key} failed: {exc}") from exc

        self._logger.debug("batch_inserted", batch_key=batch_key, row_count=len(row_ids))
        return row_ids

    def update_package(self, row_id: int, *, name: str, version: str) -> StoredPackageRow:
        """Replace a row's text and re-index it atomically."""

        updated = StoredPackageRow(id=row_id, name=name, version=version)
        with self.transaction(immediate=True) as tx:
            existing = self._require_row(tx, row_id)
            self._index.remove(tx, existing)
            self._execute_with_retry(
                tx,
                "UPDATE packages SET name = ?, version = ? WHERE id = ?",
                (name, version, row_id),
                operation=f"update package {row_id}",
            )
            self._index.add(tx, updated)
        return updated

    def delete_package(self, row_id: int) -> StoredPackageRow:
        """Delete a row and its index entry atomically; return the removed row."""

        with self.transaction(immediate=True) as tx:
            existing = self._require_row(tx, row_id)
            self._index.remove(tx, existing)
            self._execute_with_retry(
                tx,
                "DELETE FROM packages WHERE id = ?",
                (row_id,),
                operation=f"delete package {row_id}",
            )
        return existing

    def rebuild_index(self) -> int:
        """Rebuild the FTS index from the primary table; returns the row count."""

        with self.transaction(immediate=True) as tx:
            self._index.rebuild(tx)
            row = tx.execute("SELECT COUNT(*) FROM packages").fetchone()
        count = 0 if row is None else int(row[0])
        self._logger.info("search_index_rebuilt", row_count=count)
        return count

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_all(self) -> list[StoredPackageRow]:
        """Full scan of stored rows ordered by surrogate key."""

        return list(self.iter_rows())

    def iter_rows(self) -> Iterator[StoredPackageRow]:
        with self.connection() as conn:
            cursor = self._execute_with_retry(
                conn,
                "SELECT id, name, version FROM packages ORDER BY id",
                (),
                operation="read packages",
            )
            for row in cursor:
                yield _row_to_package(row)

    def get(self, row_id: int) -> StoredPackageRow | None:
        with self.connection() as conn:
            row = self._execute_with_retry(
                conn, _SELECT_PACKAGE_SQL, (row_id,), operation=f"read package {row_id}"
            ).fetchone()
        return None if row is None else _row_to_package(row)

    def count(self) -> int:
        with self.connection() as conn:
            row = self._execute_with_retry(
                conn, "SELECT COUNT(*) FROM packages", (), operation="count packages"
            ).fetchone()
        return 0 if row is None else int(row[0])

    def search(self, query_text: str, limit: int, *, raw: bool = False) -> list[SearchHit]:
        """Ranked full-text lookup; see ``SearchIndex.search`` for argument rules."""

        with self.connection() as conn:
            return self._index.search(conn, query_text, limit, raw=raw)

    def index_consistency(self) -> IndexConsistency:
        """Compare primary-table ids with the ids actually present in the index.

        Rows whose name and version contain no letters or digits produce no
        index tokens, so they are not counted as missing.
        """

        with self.connection() as conn:
            rows = [
                _row_to_package(row)
                for row in conn.execute("SELECT id, name, version FROM packages").fetchall()
            ]
            indexed = self._index.indexed_ids(conn)
            integrity_error = self._index.integrity_error(conn)

        stored_ids = {row.id for row in rows}
        expected = stored_ids - unindexable_ids(rows)
        return IndexConsistency(
            row_count=len(stored_ids),
            indexed_count=len(indexed),
            missing_from_index=tuple(sorted(expected - indexed)),
            orphaned_in_index=tuple(sorted(indexed - stored_ids)),
            integrity_error=integrity_error,
        )

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return integrity-check errors; empty tuple means OK."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        with self.connection() as conn:
            rows = conn.execute(f"PRAGMA integrity_check({max_errors})").fetchall()
        messages = tuple(str(row[0]) for row in rows)
        if messages == ("ok",):
            return ()
        return messages

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_row(self, conn: sqlite3.Connection, row_id: int) -> StoredPackageRow:
        row = self._execute_with_retry(
            conn, _SELECT_PACKAGE_SQL, (row_id,), operation=f"read package {row_id}"
        ).fetchone()
        if row is None:
            raise PackageNotFoundError(f"package row {row_id} does not exist")
        return _row_to_package(row)

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if journal_row is None:
            raise PackageStoreError("failed to configure journal_mode")
        journal_mode = str(journal_row[0]).lower()
        if journal_mode != "wal":
            raise PackageStoreError(f"journal_mode must be WAL, got {journal_mode!r}")

    def _load_applied_migrations(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        cursor = self._execute_with_retry(
            conn,
            """
            SELECT version, name, checksum, applied_at
            FROM schema_versions
            ORDER BY version ASC
            """,
            (),
            operation="load schema_versions",
        )
        out: dict[int, MigrationRecord] = {}
        for row in cursor.fetchall():
            if not isinstance(row["version"], int):
                raise PackageStoreMigrationError("schema_versions.version must be integer")
            out[row["version"]] = MigrationRecord(
                version=row["version"],
                name=str(row["name"]),
                checksum=str(row["checksum"]),
                applied_at=str(row["applied_at"]),
            )
        return out

    def _validate_migration_chain(self, target_version: int) -> None:
        if target_version < 0:
            raise PackageStoreMigrationError("target schema version must be >= 0")
        migration_versions = {migration.version for migration in _MIGRATIONS}
        if target_version > max(migration_versions, default=0):
            raise PackageStoreMigrationError(
                "schema target exceeds known migrations "
                f"(target={target_version}, known={max(migration_versions, default=0)})"
            )
        for version in range(1, target_version + 1):
            if version not in migration_versions:
                raise PackageStoreMigrationError(f"missing migration for schema version {version}")

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError as exc:
                raise PackageStoreError(f"{operation} violated a constraint: {exc}") from exc
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise PackageStoreBusyError(f"{operation} exhausted retries unexpectedly")

    def _is_busy_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _is_corruption_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> None:
        if self._is_corruption_error(exc):
            raise PackageStoreCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run `PackageStore.integrity_check()` and rebuild the database if needed."
            ) from exc
        if self._is_busy_error(exc):
            raise PackageStoreBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise PackageStoreError(f"{operation} failed for {self._path}: {exc}") from exc


def _row_to_package(row: sqlite3.Row | tuple[object, ...]) -> StoredPackageRow:
    return StoredPackageRow(id=int(row[0]), name=str(row[1]), version=str(row[2]))


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "IndexConsistency",
    "MigrationRecord",
    "PackageNotFoundError",
    "PackageStore",
    "PackageStoreBusyError",
    "PackageStoreCorruptionError",
    "PackageStoreError",
    "PackageStoreMigrationError",
]
