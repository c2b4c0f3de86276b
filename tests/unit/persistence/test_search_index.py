"""Search query translation, ranking order, and argument validation."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from nixpkgs_history.persistence import SearchQueryError, to_match_expression
from nixpkgs_history.persistence.search_index import has_index_tokens

from . import make_store, records

if TYPE_CHECKING:
    from pathlib import Path


def test_to_match_expression_quotes_each_token_as_prefix() -> None:
    assert to_match_expression("foo") == '"foo"*'
    assert to_match_expression("  python3 numpy ") == '"python3"* "numpy"*'
    assert to_match_expression('say "hi"') == '"say"* """hi"""*'
    assert to_match_expression("-- ..") is None


def test_has_index_tokens() -> None:
    assert has_index_tokens("a")
    assert has_index_tokens("1.0")
    assert not has_index_tokens("-.+")


def test_search_finds_names_with_fts_operator_characters(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    store.insert_batch(
        "aaa111",
        records(("gtk+3", "3.24"), ("python3.11-requests", "2.31"), ("c++-utils", "unknown")),
    )

    assert [hit.name for hit in store.search("gtk+3", 10)] == ["gtk+3"]
    assert [hit.name for hit in store.search("python3.11-requests", 10)] == [
        "python3.11-requests"
    ]
    assert [hit.name for hit in store.search("c++-utils", 10)] == ["c++-utils"]


def test_search_matches_versions_and_prefixes(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    store.insert_batch("aaa111", records(("firefox", "121.0"), ("thunderbird", "115.6")))

    assert [hit.name for hit in store.search("fire", 10)] == ["firefox"]
    assert [hit.name for hit in store.search("115", 10)] == ["thunderbird"]


def test_search_orders_by_rank_and_honours_limit(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    store.insert_batch(
        "aaa111",
        records(
            ("foo", "1.0"),
            ("foo-extras-with-many-other-words", "1.0"),
            ("foo-bar", "1.0"),
            ("unrelated", "1.0"),
        ),
    )

    hits = store.search("foo", 10)
    assert len(hits) == 3
    assert [hit.rank for hit in hits] == sorted(hit.rank for hit in hits)
    assert hits[0].name == "foo"
    assert len(store.search("foo", 2)) == 2


def test_search_returns_empty_for_unsearchable_text(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    store.insert_batch("aaa111", records(("foo", "1.0")))

    assert store.search("...", 10) == []
    assert store.search("nothing-like-this", 10) == []


@pytest.mark.parametrize("limit", [0, -1])
def test_search_rejects_non_positive_limits(tmp_path: Path, limit: int) -> None:
    store = make_store(tmp_path)
    with pytest.raises(SearchQueryError, match="limit must be >= 1"):
        store.search("foo", limit)


@pytest.mark.parametrize("query", ["", "   "])
def test_search_rejects_empty_query(tmp_path: Path, query: str) -> None:
    store = make_store(tmp_path)
    with pytest.raises(SearchQueryError, match="must not be empty"):
        store.search(query, 10)


def test_raw_search_passes_fts_syntax_and_reports_invalid_queries(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    store.insert_batch("aaa111", records(("foo", "1.0"), ("bar", "2.0")))

    assert [hit.name for hit in store.search("name:foo OR name:bar", 10, raw=True)] in (
        ["foo", "bar"],
        ["bar", "foo"],
    )
    with pytest.raises(SearchQueryError, match="invalid search query"):
        store.search('"unterminated', 10, raw=True)


def test_raw_search_reports_unknown_column_filters(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    store.insert_batch("aaa111", records(("foo", "1.0")))

    with pytest.raises(SearchQueryError, match="no such column"):
        store.search("nosuchcol:foo", 10, raw=True)
