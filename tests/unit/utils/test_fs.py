"""Atomic export writer."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from nixpkgs_history.utils import atomic_text_writer

if TYPE_CHECKING:
    from pathlib import Path


def test_atomic_text_writer_replaces_target(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "dump.sql"

    with atomic_text_writer(target) as handle:
        handle.write("first\n")
    with atomic_text_writer(target) as handle:
        handle.write("second\n")

    assert target.read_text(encoding="utf-8") == "second\n"
    assert [path.name for path in target.parent.iterdir()] == ["dump.sql"]


def test_atomic_text_writer_keeps_previous_content_on_failure(tmp_path: Path) -> None:
    target = tmp_path / "dump.sql"
    target.write_text("previous\n", encoding="utf-8")

    with pytest.raises(RuntimeError, match="midway"), atomic_text_writer(target) as handle:
        handle.write("partial")
        raise RuntimeError("midway")

    assert target.read_text(encoding="utf-8") == "previous\n"
    assert [path.name for path in tmp_path.iterdir()] == ["dump.sql"]
