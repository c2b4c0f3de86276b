"""
Bounded-concurrency extraction pipeline.

Purpose
- Run the resolver for many commits with at most ``concurrency`` invocations
  in flight, and hand each successful result to a single sink.

Behavior
- Admission is semaphore-gated and continuous: a new commit starts as soon as
  any permit is released.
- The sink is guarded by one pipeline-owned lock; writes land in completion
  order, never interleaved.
- A commit that fails to resolve or to persist is logged with its SHA and
  recorded as an outcome. It never stops the other commits.
- After ``max_consecutive_sink_failures`` failed sink writes in a row the
  pipeline stops admitting work and raises ``PipelineAbortedError``.
- ``run`` returns only after every submitted commit has an outcome.

Dependencies
- `structlog` for per-commit event logs
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Iterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from functools import partial
from typing import Any

import structlog

from nixpkgs_history.constants import DEFAULT_MAX_CONSECUTIVE_SINK_FAILURES
from nixpkgs_history.domain.models import (
    CommitOutcome,
    CommitRef,
    OutcomeStatus,
    PackageRecord,
    PipelineReport,
)
from nixpkgs_history.observability.logging import correlation_scope
from nixpkgs_history.pipeline.sinks import PackageSink
from nixpkgs_history.resolver.nix_env import Resolver, ResolverCancelledError
from nixpkgs_history.utils.concurrency import CancellationToken, WorkerPool


class PipelineAbortedError(RuntimeError):
    """Raised when the sink keeps failing; carries the partial report."""

    def __init__(self, message: str, *, report: PipelineReport) -> None:
        super().__init__(message)
        self.report = report


@dataclass(slots=True)
class _RunState:
    admission: CancellationToken
    outcomes: list[CommitOutcome] = field(default_factory=list)
    in_flight: list[CommitRef] = field(default_factory=list)
    consecutive_sink_failures: int = 0
    breaker_open: bool = False


class ExtractionPipeline:
    """Fan commits out to the resolver and funnel results into one sink."""

    def __init__(
        self,
        resolver: Resolver,
        sink: PackageSink,
        *,
        concurrency: int,
        cancel_token: CancellationToken | None = None,
        max_consecutive_sink_failures: int = DEFAULT_MAX_CONSECUTIVE_SINK_FAILURES,
        logger: Any | None = None,
    ) -> None:
        if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
            raise ValueError("concurrency must be an integer >= 1")
        if max_consecutive_sink_failures < 1:
            raise ValueError("max_consecutive_sink_failures must be >= 1")
        self._resolver = resolver
        self._sink = sink
        self._concurrency = concurrency
        self._cancel_token = cancel_token
        self._max_consecutive_sink_failures = max_consecutive_sink_failures
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._sink_lock = asyncio.Lock()
        self._peak_in_flight = 0

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def peak_in_flight(self) -> int:
        """Highest number of concurrently running units seen by the last ``run``."""

        return self._peak_in_flight

    async def run(self, commits: Iterable[CommitRef]) -> PipelineReport:
        state = _RunState(admission=CancellationToken())
        pool: WorkerPool[CommitRef, CommitOutcome] = WorkerPool(
            max_concurrency=self._concurrency,
            cancel_token=state.admission,
        )
        pending: Iterator[CommitRef] = iter(commits)
        watcher = self._watch_external_cancel(state.admission)

        self._logger.info("pipeline_started", concurrency=self._concurrency)
        try:
            async with aclosing(pool.run(pending, partial(self._process, state))) as results:
                async for _ in results:
                    if state.breaker_open:
                        break
        finally:
            self._peak_in_flight = pool.peak_in_flight
            if watcher is not None:
                watcher.cancel()

        not_started = [*state.in_flight, *pool.skipped, *pending]
        for commit in not_started:
            state.outcomes.append(
                CommitOutcome(
                    commit=commit,
                    status=OutcomeStatus.CANCELLED,
                    error="pipeline aborted" if state.breaker_open else "cancelled",
                )
            )

        report = PipelineReport(outcomes=tuple(state.outcomes))
        self._logger.info(
            "pipeline_finished",
            submitted=report.submitted,
            succeeded=report.succeeded,
            failed=report.failed,
            rows_written=report.rows_written,
            peak_in_flight=self._peak_in_flight,
            aborted=state.breaker_open,
        )
        if state.breaker_open:
            raise PipelineAbortedError(
                f"aborted after {state.consecutive_sink_failures} consecutive sink failures",
                report=report,
            )
        return report

    def _watch_external_cancel(self, admission: CancellationToken) -> asyncio.Task[None] | None:
        if self._cancel_token is None:
            return None
        external = self._cancel_token

        async def _forward() -> None:
            await external.wait()
            admission.cancel()

        return asyncio.create_task(_forward())

    async def _process(self, state: _RunState, commit: CommitRef) -> CommitOutcome:
        state.in_flight.append(commit)
        with correlation_scope(commit_sha=commit.sha):
            outcome = await self._extract_and_store(state, commit)
        # Outcome recording and in-flight removal happen without an await between them.
        state.in_flight.remove(commit)
        state.outcomes.append(outcome)
        return outcome

    async def _extract_and_store(self, state: _RunState, commit: CommitRef) -> CommitOutcome:
        if self._cancel_token is not None and self._cancel_token.is_cancelled:
            return CommitOutcome(commit=commit, status=OutcomeStatus.CANCELLED, error="cancelled")

        try:
            packages: Sequence[PackageRecord] = await self._resolver.resolve(commit)
        except ResolverCancelledError as exc:
            self._logger.info("commit_cancelled", commit_sha=commit.sha)
            return CommitOutcome(commit=commit, status=OutcomeStatus.CANCELLED, error=str(exc))
        except Exception as exc:
            self._logger.warning(
                "commit_resolve_failed",
                commit_sha=commit.sha,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return CommitOutcome(
                commit=commit, status=OutcomeStatus.RESOLVE_FAILED, error=str(exc)
            )

        async with self._sink_lock:
            if state.breaker_open:
                return CommitOutcome(
                    commit=commit, status=OutcomeStatus.CANCELLED, error="pipeline aborted"
                )
            try:
                written = await asyncio.to_thread(self._sink.write, commit, packages)
            except Exception as exc:
                state.consecutive_sink_failures += 1
                if state.consecutive_sink_failures >= self._max_consecutive_sink_failures:
                    state.breaker_open = True
                    state.admission.cancel()
                self._logger.error(
                    "commit_persist_failed",
                    commit_sha=commit.sha,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_failures=state.consecutive_sink_failures,
                )
                return CommitOutcome(
                    commit=commit, status=OutcomeStatus.PERSIST_FAILED, error=str(exc)
                )
            state.consecutive_sink_failures = 0

        self._logger.info("commit_stored", commit_sha=commit.sha, package_count=written)
        return CommitOutcome(commit=commit, status=OutcomeStatus.STORED, package_count=written)


__all__ = [
    "ExtractionPipeline",
    "PipelineAbortedError",
]
