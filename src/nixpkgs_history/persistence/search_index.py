"""
Full-text search index over stored package rows.

The index is an FTS5 external-content table keyed by ``packages.id``. It has
no lifecycle of its own: ``PackageStore`` calls ``add``/``remove`` on the same
connection, inside the same transaction, as every primary-table mutation, so a
reader that can see a committed row can also find it through ``search``.
"""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, Final

from nixpkgs_history.domain.models import SearchHit, StoredPackageRow

if TYPE_CHECKING:
    from collections.abc import Iterable

FTS_TABLE: Final[str] = "packages_fts"
VOCAB_TABLE: Final[str] = "packages_fts_vocab"

SCHEMA_STATEMENTS: Final[tuple[str, ...]] = (
    f"""
    CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE} USING fts5(
        name,
        version,
        content='packages',
        content_rowid='id'
    )
    """,
    # Instance-level view of the index itself (not the content table); used to
    # verify that index membership mirrors the primary table.
    f"""
    CREATE VIRTUAL TABLE IF NOT EXISTS {VOCAB_TABLE} USING fts5vocab({FTS_TABLE}, 'instance')
    """,
)

_INSERT_SQL: Final[str] = f"INSERT INTO {FTS_TABLE}(rowid, name, version) VALUES (?, ?, ?)"
_DELETE_SQL: Final[str] = (
    f"INSERT INTO {FTS_TABLE}({FTS_TABLE}, rowid, name, version) VALUES ('delete', ?, ?, ?)"
)
_REBUILD_SQL: Final[str] = f"INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES ('rebuild')"
_INDEXED_IDS_SQL: Final[str] = f"SELECT DISTINCT doc FROM {VOCAB_TABLE} ORDER BY doc"
# rank=1 makes FTS5 also compare the index against the content table.
_INTEGRITY_CHECK_SQL: Final[str] = (
    f"INSERT INTO {FTS_TABLE}({FTS_TABLE}, rank) VALUES ('integrity-check', 1)"
)
_SEARCH_SQL: Final[str] = f"""
SELECT
    p.id AS id,
    p.name AS name,
    p.version AS version,
    {FTS_TABLE}.rank AS rank
FROM {FTS_TABLE}
JOIN packages AS p ON p.id = {FTS_TABLE}.rowid
WHERE {FTS_TABLE} MATCH ?
ORDER BY {FTS_TABLE}.rank
LIMIT ?
"""


class SearchQueryError(ValueError):
    """Raised for empty queries, non-positive limits, and invalid FTS5 syntax."""


class SearchIndex:
    """Statements that keep ``packages_fts`` in step with ``packages``."""

    def add(self, conn: sqlite3.Connection, row: StoredPackageRow) -> None:
        conn.execute(_INSERT_SQL, (row.id, row.name, row.version))

    def remove(self, conn: sqlite3.Connection, row: StoredPackageRow) -> None:
        # External-content deletes must replay the exact text that was indexed.
        conn.execute(_DELETE_SQL, (row.id, row.name, row.version))

    def rebuild(self, conn: sqlite3.Connection) -> None:
        conn.execute(_REBUILD_SQL)

    def indexed_ids(self, conn: sqlite3.Connection) -> set[int]:
        return {int(row[0]) for row in conn.execute(_INDEXED_IDS_SQL).fetchall()}

    def integrity_error(self, conn: sqlite3.Connection) -> str | None:
        """Run the FTS5 integrity check; ``None`` means the index matches its content."""

        try:
            conn.execute(_INTEGRITY_CHECK_SQL)
        except sqlite3.DatabaseError as exc:
            return str(exc)
        return None

    def search(
        self,
        conn: sqlite3.Connection,
        query_text: str,
        limit: int,
        *,
        raw: bool = False,
    ) -> list[SearchHit]:
        """Return up to ``limit`` hits ordered by relevance (lowest rank first).

        ``limit`` must be >= 1; zero or negative limits are rejected rather than
        coerced. Unless ``raw`` is set, the query is tokenized and each token is
        quoted as a prefix term so package names containing FTS5 operators
        (``-``, ``.``, ``+``) search literally.
        """

        if isinstance(limit, bool) or not isinstance(limit, int):
            raise SearchQueryError(f"limit must be an integer, got {type(limit).__name__}")
        if limit <= 0:
            raise SearchQueryError(f"limit must be >= 1, got {limit}")
        if not isinstance(query_text, str) or not query_text.strip():
            raise SearchQueryError("search query must not be empty")

        expression = query_text.strip() if raw else to_match_expression(query_text)
        if expression is None:
            return []

        try:
            rows = conn.execute(_SEARCH_SQL, (expression, limit)).fetchall()
        except sqlite3.OperationalError as exc:
            # A missing table is a store problem; "no such column" is a bad column filter.
            if "no such table" in str(exc).lower():
                raise
            raise SearchQueryError(f"invalid search query {query_text!r}: {exc}") from exc
        return [
            SearchHit(
                id=int(row[0]),
                name=str(row[1]),
                version=str(row[2]),
                rank=float(row[3]),
            )
            for row in rows
        ]


def to_match_expression(query_text: str) -> str | None:
    """Translate free text into an FTS5 expression of quoted prefix terms.

    Tokens without any letter or digit cannot match the unicode61 tokenizer and
    are dropped; ``None`` means nothing searchable remains.
    """

    terms = [_quote_term(token) for token in query_text.split() if has_index_tokens(token)]
    if not terms:
        return None
    return " ".join(terms)


def has_index_tokens(text: str) -> bool:
    return any(char.isalnum() for char in text)


def unindexable_ids(rows: Iterable[StoredPackageRow]) -> set[int]:
    """Ids of rows whose text produces no index tokens at all."""

    return {
        row.id
        for row in rows
        if not has_index_tokens(row.name) and not has_index_tokens(row.version)
    }


def _quote_term(token: str) -> str:
    escaped = token.replace('"', '""')
    return f'"{escaped}"*'


__all__ = [
    "FTS_TABLE",
    "SCHEMA_STATEMENTS",
    "SearchIndex",
    "SearchQueryError",
    "VOCAB_TABLE",
    "has_index_tokens",
    "to_match_expression",
    "unindexable_ids",
]
