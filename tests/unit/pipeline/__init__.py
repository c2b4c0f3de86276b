"""Fake resolvers and sinks for pipeline tests."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Mapping, Sequence

from nixpkgs_history.domain.models import CommitRef, PackageRecord
from nixpkgs_history.resolver import ResolverCancelledError, ResolverInvocationError
from nixpkgs_history.utils import CancellationToken


class ScriptedResolver:
    """Returns canned listings; SHAs without an entry fail like a network error."""

    def __init__(
        self,
        listings: Mapping[str, Sequence[PackageRecord]],
        *,
        delay: Callable[[str], float] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.listings = dict(listings)
        self.delay = delay or (lambda sha: 0.0)
        self.cancel_token = cancel_token
        self.active = 0
        self.peak_active = 0
        self.started: list[str] = []

    async def resolve(self, commit: CommitRef) -> list[PackageRecord]:
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        self.started.append(commit.sha)
        try:
            await asyncio.sleep(self.delay(commit.sha))
            if self.cancel_token is not None and self.cancel_token.is_cancelled:
                raise ResolverCancelledError("cancelled", commit_sha=commit.sha)
            if commit.sha not in self.listings:
                raise ResolverInvocationError(
                    f"network unreachable for {commit.sha}", commit_sha=commit.sha, exit_code=1
                )
            return list(self.listings[commit.sha])
        finally:
            self.active -= 1


class RecordingSink:
    """In-memory sink that detects overlapping writes and can be told to fail."""

    def __init__(self, *, fail_for: set[str] | None = None, always_fail: bool = False) -> None:
        self.fail_for = fail_for or set()
        self.always_fail = always_fail
        self.writes: list[tuple[str, tuple[PackageRecord, ...]]] = []
        self.overlaps = 0
        self._busy = threading.Lock()

    def write(self, commit: CommitRef, packages: Sequence[PackageRecord]) -> int:
        if not self._busy.acquire(blocking=False):
            self.overlaps += 1
            self._busy.acquire()
        try:
            if self.always_fail or commit.sha in self.fail_for:
                raise RuntimeError(f"disk full while writing {commit.sha}")
            self.writes.append((commit.sha, tuple(packages)))
            return len(packages)
        finally:
            self._busy.release()


def commits(*shas: str) -> list[CommitRef]:
    return [CommitRef(sha=sha) for sha in shas]


def listing(*names: str) -> list[PackageRecord]:
    return [PackageRecord(name=name, version="1.0") for name in names]
