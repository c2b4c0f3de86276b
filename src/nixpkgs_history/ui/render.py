"""Plain-text rendering for nixpkgs-history CLI output.

Output goes to stdout and is deterministic. Logs never go through this
module; they go to the structured log sinks.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from nixpkgs_history.domain.models import PipelineReport, SearchHit
    from nixpkgs_history.persistence.package_store import IndexConsistency


class CLIRenderer:
    """Thin CLI output renderer."""

    def __init__(self, *, verbose: bool = False) -> None:
        self.verbose = verbose

    def heading(self, text: str) -> None:
        print(text)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line)

    def section(self, title: str) -> None:
        print(f"\n{title}")

    def warning(self, text: str) -> None:
        print(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            print(f"  {prefix}{entry}")

    def ok(self, label: str) -> None:
        print(f"  OK  {label}")

    def fail(self, label: str) -> None:
        print(f"  FAIL  {label}")

    def search_results(self, hits: Sequence[SearchHit]) -> None:
        """Numbered hit listing with the rank to two decimals."""

        lines = [f"Found {len(hits)} results:", ""]
        for position, hit in enumerate(hits, start=1):
            lines.append(f"{position}. {hit.name} (version {hit.version})")
            lines.append(f"   Rank: {hit.rank:.2f}")
            lines.append("")
        print("\n".join(lines))

    def pipeline_report(self, report: PipelineReport) -> None:
        self.heading("Extraction finished")
        self.kv("Commits submitted", report.submitted)
        self.kv("Commits stored", report.succeeded)
        self.kv("Commits failed", report.failed)
        self.kv("Rows written", report.rows_written)
        failures = [outcome for outcome in report.outcomes if not outcome.ok]
        if not failures:
            return
        self.section("Failed commits:")
        shown = failures if self.verbose else failures[:20]
        self.items(
            [
                f"{item.commit.sha} [{item.status.value}] {item.error or ''}".rstrip()
                for item in shown
            ]
        )
        if len(shown) < len(failures):
            self.text(f"  ... {len(failures) - len(shown)} more (use --verbose)")

    def index_consistency(self, consistency: IndexConsistency) -> None:
        self.heading("Search index check")
        self.kv("Stored rows", consistency.row_count)
        self.kv("Indexed rows", consistency.indexed_count)
        if consistency.missing_from_index:
            self.fail(f"{len(consistency.missing_from_index)} row(s) missing from the index")
        else:
            self.ok("every stored row is indexed")
        if consistency.orphaned_in_index:
            self.fail(f"{len(consistency.orphaned_in_index)} index entr(ies) without a stored row")
        else:
            self.ok("no orphaned index entries")
        if consistency.integrity_error is not None:
            self.fail(f"FTS5 integrity check: {consistency.integrity_error}")
        else:
            self.ok("FTS5 integrity check passed")


def create_renderer(*, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
