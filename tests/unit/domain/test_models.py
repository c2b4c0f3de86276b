"""Domain model validation, timestamp handling, and report aggregation."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta, timezone

import pytest

from nixpkgs_history.domain.models import (
    CommitData,
    CommitOutcome,
    CommitRef,
    OutcomeStatus,
    PackageRecord,
    PipelineReport,
    format_timestamp,
    parse_timestamp,
)


def test_commit_ref_strips_sha_and_normalizes_date_to_utc() -> None:
    plus_two = timezone(timedelta(hours=2))
    commit = CommitRef(sha="  abc123  ", date=datetime(2024, 1, 1, 12, 0, tzinfo=plus_two))

    assert commit.sha == "abc123"
    assert commit.date == datetime(2024, 1, 1, 10, 0, tzinfo=UTC)
    assert commit.to_dict() == {"sha": "abc123", "date": "2024-01-01T10:00:00Z"}


@pytest.mark.parametrize("sha", ["", "   "])
def test_commit_ref_rejects_blank_sha(sha: str) -> None:
    with pytest.raises(ValueError, match="CommitRef.sha"):
        CommitRef(sha=sha)


def test_package_record_defaults_version_to_unknown() -> None:
    assert PackageRecord(name="hello").version == "unknown"


def test_package_record_rejects_non_string_fields() -> None:
    with pytest.raises(ValueError, match="PackageRecord.version"):
        PackageRecord(name="hello", version=1.0)  # type: ignore[arg-type]


def test_commit_data_json_is_a_single_line_and_parses_back() -> None:
    commit = CommitRef(sha="aaa111", date=datetime(2024, 3, 4, 5, 6, 7, tzinfo=UTC))
    data = CommitData.from_extraction(
        commit,
        [PackageRecord(name="foo", version="1.0"), PackageRecord(name="bar\nbaz")],
    )

    line = data.to_json()

    assert "\n" not in line
    assert json.loads(line) == {
        "sha": "aaa111",
        "date": "2024-03-04T05:06:07Z",
        "packages": [
            {"name": "foo", "version": "1.0"},
            {"name": "bar\nbaz", "version": "unknown"},
        ],
    }
    assert CommitData.from_dict(json.loads(line)) == data


def test_commit_data_from_dict_reports_the_offending_package() -> None:
    with pytest.raises(ValueError, match=r"packages\[1\]"):
        CommitData.from_dict({"sha": "x", "packages": [{"name": "a"}, {"name": 3}]})


def test_timestamp_helpers_accept_z_suffix_and_naive_values() -> None:
    assert parse_timestamp("2024-01-02T03:04:05Z") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)
    assert parse_timestamp("2024-01-02") == datetime(2024, 1, 2, tzinfo=UTC)
    assert format_timestamp(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05Z"
    assert format_timestamp(None) is None
    with pytest.raises(ValueError, match="invalid ISO-8601"):
        parse_timestamp("yesterday")


def test_pipeline_report_counts_only_stored_rows() -> None:
    report = PipelineReport(
        outcomes=(
            CommitOutcome(commit=CommitRef("a"), status=OutcomeStatus.STORED, package_count=3),
            CommitOutcome(
                commit=CommitRef("b"), status=OutcomeStatus.RESOLVE_FAILED, error="network"
            ),
            CommitOutcome(commit=CommitRef("c"), status=OutcomeStatus.PERSIST_FAILED),
            CommitOutcome(commit=CommitRef("d"), status=OutcomeStatus.STORED, package_count=2),
        )
    )

    assert report.submitted == 4
    assert report.succeeded == 2
    assert report.failed == 2
    assert report.rows_written == 5
    assert report.failed_commits == ("b", "c")
    assert report.count(OutcomeStatus.RESOLVE_FAILED) == 1
    assert report.to_dict()["outcomes"][1] == {
        "sha": "b",
        "status": "resolve_failed",
        "package_count": 0,
        "error": "network",
    }
