"""
Resolver adapter around ``nix-env -qa --json -f <archive-url>``.

The resolver is an opaque external process: given a commit it evaluates the
snapshot archive and prints a JSON object keyed by attribute path. This
module turns that output into ``PackageRecord`` values and maps every way the
invocation can go wrong onto the ``ResolverError`` taxonomy. It never retries.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Mapping, Sequence
from contextlib import suppress
from typing import Final, Protocol, runtime_checkable

import structlog

from nixpkgs_history.constants import (
    DEFAULT_ARCHIVE_URL_TEMPLATE,
    DEFAULT_RESOLVER_COMMAND,
    DEFAULT_RESOLVER_TIMEOUT_SECONDS,
    PACKAGE_ATTRIBUTE_PREFIX,
    UNKNOWN_VERSION,
)
from nixpkgs_history.domain.models import CommitRef, PackageRecord
from nixpkgs_history.utils.concurrency import CancellationToken, run_with_timeout

_MAX_STDERR_CHARS: Final[int] = 2_000


class ResolverError(RuntimeError):
    """Base class for resolver failures; always scoped to one commit."""

    def __init__(self, message: str, *, commit_sha: str | None = None) -> None:
        super().__init__(message)
        self.commit_sha = commit_sha


class ResolverInvocationError(ResolverError):
    """The resolver could not be run to completion (missing, crashed, timed out)."""

    def __init__(
        self,
        message: str,
        *,
        commit_sha: str | None = None,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message, commit_sha=commit_sha)
        self.exit_code = exit_code
        self.stderr = stderr


class ResolverOutputError(ResolverError):
    """The resolver exited cleanly but its output is not a package listing."""


class ResolverCancelledError(ResolverError):
    """The cancel token fired while the resolver was running."""


@runtime_checkable
class Resolver(Protocol):
    async def resolve(self, commit: CommitRef) -> Sequence[PackageRecord]: ...


def archive_url(sha: str, template: str = DEFAULT_ARCHIVE_URL_TEMPLATE) -> str:
    """Snapshot archive URL for ``sha``; ``template`` carries a ``{sha}`` field."""

    if not sha.strip():
        raise ValueError("sha must be a non-empty string")
    return template.format(sha=sha.strip())


def parse_package_listing(
    raw: bytes | str,
    *,
    strip_prefix: str = PACKAGE_ATTRIBUTE_PREFIX,
) -> list[PackageRecord]:
    """Parse resolver JSON into records in the resolver's key order.

    A missing or non-string ``version`` becomes ``"unknown"``; an attribute
    whose value is not an object is kept with the same fallback. Only a
    top-level value that is not an object rejects the whole listing.
    """

    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ResolverOutputError(f"resolver output is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ResolverOutputError(
            f"resolver output must be a JSON object, got {type(payload).__name__}"
        )

    records: list[PackageRecord] = []
    for attribute, attrs in payload.items():
        name = attribute.removeprefix(strip_prefix)
        version = UNKNOWN_VERSION
        if isinstance(attrs, Mapping):
            candidate = attrs.get("version")
            if isinstance(candidate, str):
                version = candidate
        records.append(PackageRecord(name=name, version=version))
    return records


class NixEnvResolver:
    """Run the configured resolver command once per commit."""

    def __init__(
        self,
        *,
        command: Sequence[str] = DEFAULT_RESOLVER_COMMAND,
        archive_url_template: str = DEFAULT_ARCHIVE_URL_TEMPLATE,
        strip_prefix: str = PACKAGE_ATTRIBUTE_PREFIX,
        timeout_seconds: float = DEFAULT_RESOLVER_TIMEOUT_SECONDS,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        if not command:
            raise ValueError("command must contain at least the executable")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if "{sha}" not in archive_url_template:
            raise ValueError("archive_url_template must contain '{sha}'")
        self._command = tuple(command)
        self._archive_url_template = archive_url_template
        self._strip_prefix = strip_prefix
        self._timeout_seconds = timeout_seconds
        self._cancel_token = cancel_token
        self._logger = structlog.get_logger(__name__)

    @property
    def command(self) -> tuple[str, ...]:
        return self._command

    def argv_for(self, commit: CommitRef) -> tuple[str, ...]:
        return (*self._command, archive_url(commit.sha, self._archive_url_template))

    async def resolve(self, commit: CommitRef) -> list[PackageRecord]:
        argv = self.argv_for(commit)
        started = time.monotonic()
        stdout, stderr, exit_code = await self._invoke(commit, argv)

        if exit_code != 0:
            detail = _tail(stderr)
            message = f"resolver exited with status {exit_code} for commit {commit.sha}"
            raise ResolverInvocationError(
                f"{message}: {detail}" if detail else message,
                commit_sha=commit.sha,
                exit_code=exit_code,
                stderr=detail,
            )
        try:
            records = parse_package_listing(stdout, strip_prefix=self._strip_prefix)
        except ResolverOutputError as exc:
            raise ResolverOutputError(
                f"commit {commit.sha}: {exc}", commit_sha=commit.sha
            ) from exc

        self._logger.debug(
            "resolver_completed",
            commit_sha=commit.sha,
            package_count=len(records),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return records

    async def _invoke(self, commit: CommitRef, argv: tuple[str, ...]) -> tuple[bytes, str, int]:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ResolverInvocationError(
                f"could not start resolver {argv[0]!r} for commit {commit.sha}: {exc}",
                commit_sha=commit.sha,
            ) from exc

        try:
            stdout, stderr = await run_with_timeout(
                process.communicate(),
                self._timeout_seconds,
                self._cancel_token,
            )
        except TimeoutError as exc:
            await _kill(process)
            raise ResolverInvocationError(
                f"resolver timed out after {self._timeout_seconds}s for commit {commit.sha}",
                commit_sha=commit.sha,
            ) from exc
        except asyncio.CancelledError:
            await _kill(process)
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            raise ResolverCancelledError(
                f"resolver cancelled for commit {commit.sha}", commit_sha=commit.sha
            ) from None

        exit_code = process.returncode if process.returncode is not None else -1
        return stdout, stderr.decode("utf-8", errors="replace"), exit_code


async def _kill(process: asyncio.subprocess.Process) -> None:
    with suppress(ProcessLookupError):
        process.kill()
    await process.wait()


def _tail(text: str) -> str:
    stripped = text.strip()
    if len(stripped) <= _MAX_STDERR_CHARS:
        return stripped
    return stripped[-_MAX_STDERR_CHARS:]


__all__ = [
    "NixEnvResolver",
    "Resolver",
    "ResolverCancelledError",
    "ResolverError",
    "ResolverInvocationError",
    "ResolverOutputError",
    "archive_url",
    "parse_package_listing",
]
