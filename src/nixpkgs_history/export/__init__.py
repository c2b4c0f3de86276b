"""Exporters for stored packages and per-commit extraction results."""

from nixpkgs_history.export.dump import (
    ExportError,
    sql_literal,
    write_commit_data,
    write_rows_jsonl,
    write_sql_dump,
)

__all__ = [
    "ExportError",
    "sql_literal",
    "write_commit_data",
    "write_rows_jsonl",
    "write_sql_dump",
]
