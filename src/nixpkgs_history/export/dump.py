"""Serialize stored packages as SQL statements or JSON lines.

SQL output is a replayable script: one ``INSERT`` per stored row, in id
order, with every value rendered through ``sql_literal``. File targets are
written atomically; a failed export never leaves a truncated file behind.
"""

from __future__ import annotations

import json
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Final, TextIO

from nixpkgs_history.domain.models import CommitData, StoredPackageRow
from nixpkgs_history.utils.fs import atomic_text_writer

if TYPE_CHECKING:
    from nixpkgs_history.persistence.package_store import PackageStore

DumpTarget = str | os.PathLike[str] | TextIO

SQL_SCHEMA_STATEMENT: Final[str] = (
    "CREATE TABLE IF NOT EXISTS packages (name TEXT NOT NULL, version TEXT NOT NULL);"
)


class ExportError(ValueError):
    """Raised when a stored value cannot be represented in the export format."""


def sql_literal(value: str) -> str:
    """Render ``value`` as a single-quoted SQL string literal.

    Embedded single quotes are doubled. NUL cannot appear inside a SQL text
    literal portably, so it is rejected instead of silently dropped.
    """

    if not isinstance(value, str):
        raise ExportError(f"expected string value, got {type(value).__name__}")
    if "\x00" in value:
        raise ExportError("value contains a NUL character and cannot be exported as SQL")
    return "'" + value.replace("'", "''") + "'"


def insert_statement(row: StoredPackageRow) -> str:
    return (
        "INSERT INTO packages (name, version) VALUES "
        f"({sql_literal(row.name)}, {sql_literal(row.version)});"
    )


def write_sql_dump(
    store: PackageStore,
    target: DumpTarget,
    *,
    include_schema: bool = False,
) -> int:
    """Write one ``INSERT`` statement per stored row; returns the ``INSERT`` count."""

    count = 0
    with _open_target(target) as stream:
        if include_schema:
            stream.write(SQL_SCHEMA_STATEMENT + "\n")
        for row in store.iter_rows():
            stream.write(insert_statement(row) + "\n")
            count += 1
    return count


def write_rows_jsonl(store: PackageStore, target: DumpTarget) -> int:
    """Write stored rows as ``{"id", "name", "version"}`` JSON lines."""

    count = 0
    with _open_target(target) as stream:
        for row in store.iter_rows():
            stream.write(json.dumps(row.to_dict(), separators=(",", ":"), ensure_ascii=False))
            stream.write("\n")
            count += 1
    return count


def write_commit_data(stream: TextIO, commit_data: CommitData) -> None:
    """Append one commit as a single JSON line and flush it."""

    stream.write(commit_data.to_json() + "\n")
    stream.flush()


@contextmanager
def _open_target(target: DumpTarget) -> Iterator[TextIO]:
    if isinstance(target, (str, os.PathLike)):
        with atomic_text_writer(target) as handle:
            yield handle
        return
    yield target
    target.flush()


__all__ = [
    "DumpTarget",
    "ExportError",
    "SQL_SCHEMA_STATEMENT",
    "insert_statement",
    "sql_literal",
    "write_commit_data",
    "write_rows_jsonl",
    "write_sql_dump",
]
