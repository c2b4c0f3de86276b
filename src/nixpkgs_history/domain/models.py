"""Dataclass domain models for commits, package records, and pipeline outcomes."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import NoReturn

from nixpkgs_history.constants import UNKNOWN_VERSION

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class OutcomeStatus(StrEnum):
    STORED = "stored"
    RESOLVE_FAILED = "resolve_failed"
    PERSIST_FAILED = "persist_failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class CommitRef:
    """Immutable reference to one snapshot of the upstream tree."""

    sha: str
    date: datetime | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.sha, str) or not self.sha.strip():
            _fail("CommitRef.sha", "must be a non-empty string")
        if self.sha != self.sha.strip():
            object.__setattr__(self, "sha", self.sha.strip())
        if self.date is not None:
            if not isinstance(self.date, datetime):
                _fail("CommitRef.date", f"expected datetime, got {type(self.date).__name__}")
            object.__setattr__(self, "date", _as_utc(self.date))

    def to_dict(self) -> dict[str, JSONValue]:
        return {"sha": self.sha, "date": format_timestamp(self.date)}


@dataclass(frozen=True, slots=True)
class PackageRecord:
    name: str
    version: str = UNKNOWN_VERSION

    def __post_init__(self) -> None:
        if not isinstance(self.name, str):
            _fail("PackageRecord.name", f"expected string, got {type(self.name).__name__}")
        if not isinstance(self.version, str):
            _fail("PackageRecord.version", f"expected string, got {type(self.version).__name__}")

    def to_dict(self) -> dict[str, JSONValue]:
        return {"name": self.name, "version": self.version}


@dataclass(frozen=True, slots=True)
class StoredPackageRow:
    id: int
    name: str
    version: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {"id": self.id, "name": self.name, "version": self.version}


@dataclass(frozen=True, slots=True)
class SearchHit:
    """Ranked search result; lower ``rank`` means more relevant."""

    id: int
    name: str
    version: str
    rank: float

    def to_dict(self) -> dict[str, JSONValue]:
        return {"id": self.id, "name": self.name, "version": self.version, "rank": self.rank}


@dataclass(frozen=True, slots=True)
class CommitData:
    """Export-only unit: one commit and the packages extracted from it."""

    sha: str
    date: datetime | None
    packages: tuple[PackageRecord, ...] = ()

    @classmethod
    def from_extraction(cls, commit: CommitRef, packages: Sequence[PackageRecord]) -> CommitData:
        return cls(sha=commit.sha, date=commit.date, packages=tuple(packages))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "sha": self.sha,
            "date": format_timestamp(self.date),
            "packages": [package.to_dict() for package in self.packages],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CommitData:
        sha = data.get("sha")
        if not isinstance(sha, str):
            _fail("CommitData.sha", "must be a string")
        raw_date = data.get("date")
        if raw_date is not None and not isinstance(raw_date, str):
            _fail("CommitData.date", "must be an ISO-8601 string or null")
        raw_packages = data.get("packages", [])
        if not isinstance(raw_packages, list):
            _fail("CommitData.packages", "must be a list")
        packages: list[PackageRecord] = []
        for index, item in enumerate(raw_packages):
            if not isinstance(item, Mapping):
                _fail(f"CommitData.packages[{index}]", "must be an object")
            name = item.get("name")
            version = item.get("version", UNKNOWN_VERSION)
            if not isinstance(name, str) or not isinstance(version, str):
                _fail(f"CommitData.packages[{index}]", "name and version must be strings")
            packages.append(PackageRecord(name=name, version=version))
        return cls(
            sha=sha,
            date=None if raw_date is None else parse_timestamp(raw_date),
            packages=tuple(packages),
        )


@dataclass(frozen=True, slots=True)
class CommitOutcome:
    commit: CommitRef
    status: OutcomeStatus
    package_count: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.STORED

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "sha": self.commit.sha,
            "status": self.status.value,
            "package_count": self.package_count,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class PipelineReport:
    """Aggregated outcome of one pipeline run, in completion order."""

    outcomes: tuple[CommitOutcome, ...] = field(default_factory=tuple)

    @property
    def submitted(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.ok)

    @property
    def failed(self) -> int:
        return self.submitted - self.succeeded

    @property
    def rows_written(self) -> int:
        return sum(outcome.package_count for outcome in self.outcomes if outcome.ok)

    @property
    def failed_commits(self) -> tuple[str, ...]:
        return tuple(outcome.commit.sha for outcome in self.outcomes if not outcome.ok)

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "submitted": self.submitted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "rows_written": self.rows_written,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _as_utc(value).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_timestamp(raw: str) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix accepted) into aware UTC."""

    text = raw.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"invalid ISO-8601 timestamp: {raw!r}") from exc
    return _as_utc(parsed)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


__all__ = [
    "CommitData",
    "CommitOutcome",
    "CommitRef",
    "JSONScalar",
    "JSONValue",
    "OutcomeStatus",
    "PackageRecord",
    "PipelineReport",
    "SearchHit",
    "StoredPackageRow",
    "format_timestamp",
    "parse_timestamp",
]
