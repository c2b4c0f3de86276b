"""SQL dump and JSON-lines export of stored rows."""

from __future__ import annotations

import io
import json
import sqlite3
from typing import TYPE_CHECKING

import pytest

from nixpkgs_history.domain.models import PackageRecord
from nixpkgs_history.export import ExportError, sql_literal, write_rows_jsonl, write_sql_dump
from nixpkgs_history.export.dump import SQL_SCHEMA_STATEMENT
from nixpkgs_history.persistence import PackageStore

if TYPE_CHECKING:
    from pathlib import Path


def _store(tmp_path: Path, *pairs: tuple[str, str]) -> PackageStore:
    store = PackageStore(tmp_path / "packages.sqlite3")
    store.initialize_schema()
    store.insert_batch(
        "aaa111", [PackageRecord(name=name, version=version) for name, version in pairs]
    )
    return store


def test_sql_literal_doubles_quotes_and_rejects_nul() -> None:
    assert sql_literal("plain") == "'plain'"
    assert sql_literal("it's") == "'it''s'"
    assert sql_literal("'; DROP TABLE packages; --") == "'''; DROP TABLE packages; --'"
    with pytest.raises(ExportError, match="NUL"):
        sql_literal("a\x00b")


def test_sql_dump_emits_one_insert_per_row_in_id_order(tmp_path: Path) -> None:
    store = _store(tmp_path, ("foo", "1.0"), ("bar", "unknown"))
    stream = io.StringIO()

    assert write_sql_dump(store, stream) == 2
    assert stream.getvalue().splitlines() == [
        "INSERT INTO packages (name, version) VALUES ('foo', '1.0');",
        "INSERT INTO packages (name, version) VALUES ('bar', 'unknown');",
    ]


def test_sql_dump_replays_hostile_values_verbatim(tmp_path: Path) -> None:
    hostile = ("o'reilly'); DELETE FROM packages; --", "1.0'")
    store = _store(tmp_path, hostile, ("newline\nname", "2"))
    target = tmp_path / "dump.sql"

    write_sql_dump(store, target, include_schema=True)

    script = target.read_text(encoding="utf-8")
    assert script.splitlines()[0] == SQL_SCHEMA_STATEMENT
    replay = sqlite3.connect(":memory:")
    replay.executescript(script)
    assert replay.execute("SELECT name, version FROM packages ORDER BY rowid").fetchall() == [
        hostile,
        ("newline\nname", "2"),
    ]


def test_failed_sql_dump_leaves_no_partial_file(tmp_path: Path) -> None:
    store = _store(tmp_path, ("good", "1"), ("bad\x00name", "2"))
    target = tmp_path / "dump.sql"

    with pytest.raises(ExportError):
        write_sql_dump(store, target)

    assert not target.exists()
    assert not any(path.name.startswith(".dump.sql.") for path in tmp_path.iterdir())


def test_rows_jsonl_export(tmp_path: Path) -> None:
    store = _store(tmp_path, ("foo", "1.0"), ("bar", "2.0"))
    target = tmp_path / "rows.jsonl"

    assert write_rows_jsonl(store, target) == 2

    rows = [json.loads(line) for line in target.read_text(encoding="utf-8").splitlines()]
    assert [(row["name"], row["version"]) for row in rows] == [("foo", "1.0"), ("bar", "2.0")]
    assert rows[0]["id"] < rows[1]["id"]
