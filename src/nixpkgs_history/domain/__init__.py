"""Domain types shared across the pipeline: commits, package records, outcomes.

The domain layer is free of IO side effects.
"""

from nixpkgs_history.domain.models import (
    CommitData,
    CommitOutcome,
    CommitRef,
    OutcomeStatus,
    PackageRecord,
    PipelineReport,
    SearchHit,
    StoredPackageRow,
    format_timestamp,
    parse_timestamp,
)

__all__ = [
    "CommitData",
    "CommitOutcome",
    "CommitRef",
    "OutcomeStatus",
    "PackageRecord",
    "PipelineReport",
    "SearchHit",
    "StoredPackageRow",
    "format_timestamp",
    "parse_timestamp",
]
