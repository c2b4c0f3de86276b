"""Resolver adapter: output parsing, invocation failures, timeouts, and cancellation."""

from __future__ import annotations

import asyncio
import json
import sys
import textwrap
from typing import TYPE_CHECKING

import pytest

from nixpkgs_history.domain.models import CommitRef, PackageRecord
from nixpkgs_history.resolver import (
    NixEnvResolver,
    Resolver,
    ResolverCancelledError,
    ResolverInvocationError,
    ResolverOutputError,
    archive_url,
    parse_package_listing,
)
from nixpkgs_history.utils import CancellationToken

if TYPE_CHECKING:
    from pathlib import Path

_FAKE_NIX_ENV = textwrap.dedent(
    """
    import json
    import sys
    import time

    url = sys.argv[-1]
    if "aaa111" in url:
        print(json.dumps({"nixpkgs.foo": {"version": "1.0"}, "nixpkgs.bar": {}}))
    elif "garbage" in url:
        print("this is not json")
    elif "sleepy" in url:
        time.sleep(30)
    else:
        sys.stderr.write("error: unable to download " + url + ": network unreachable\\n")
        sys.exit(1)
    """
)


def _resolver(tmp_path: Path, **kwargs: object) -> NixEnvResolver:
    script = tmp_path / "fake_nix_env.py"
    script.write_text(_FAKE_NIX_ENV, encoding="utf-8")
    return NixEnvResolver(command=[sys.executable, str(script)], **kwargs)  # type: ignore[arg-type]


def test_parse_package_listing_strips_prefix_and_falls_back_to_unknown() -> None:
    raw = json.dumps(
        {
            "nixpkgs.foo": {"version": "1.0", "name": "foo-1.0"},
            "nixpkgs.noversion": {"name": "x"},
            "nixpkgs.numeric": {"version": 2},
            "nixpkgs.scalar": "not-an-object",
            "other.attr": {"version": "3"},
        }
    )

    assert parse_package_listing(raw) == [
        PackageRecord(name="foo", version="1.0"),
        PackageRecord(name="noversion", version="unknown"),
        PackageRecord(name="numeric", version="unknown"),
        PackageRecord(name="scalar", version="unknown"),
        PackageRecord(name="other.attr", version="3"),
    ]


def test_parse_package_listing_only_strips_a_leading_prefix() -> None:
    records = parse_package_listing(b'{"pkgs.nixpkgs.foo": {"version": "1"}}')
    assert records == [PackageRecord(name="pkgs.nixpkgs.foo", version="1")]


@pytest.mark.parametrize("raw", ["not json", "[]", '"string"', "42"])
def test_parse_package_listing_rejects_non_object_output(raw: str) -> None:
    with pytest.raises(ResolverOutputError):
        parse_package_listing(raw)


def test_archive_url_and_argv() -> None:
    assert archive_url("abc") == "https://github.com/NixOS/nixpkgs/archive/abc.tar.gz"
    resolver = NixEnvResolver()
    assert resolver.argv_for(CommitRef("abc")) == (
        "nix-env",
        "-qa",
        "--json",
        "-f",
        "https://github.com/NixOS/nixpkgs/archive/abc.tar.gz",
    )
    assert isinstance(resolver, Resolver)


def test_constructor_validates_arguments() -> None:
    with pytest.raises(ValueError):
        NixEnvResolver(command=[])
    with pytest.raises(ValueError):
        NixEnvResolver(timeout_seconds=0)
    with pytest.raises(ValueError, match="sha"):
        NixEnvResolver(archive_url_template="https://example.invalid/archive.tar.gz")


@pytest.mark.asyncio
async def test_resolve_returns_records_from_the_subprocess(tmp_path: Path) -> None:
    records = await _resolver(tmp_path).resolve(CommitRef("aaa111"))

    assert records == [
        PackageRecord(name="foo", version="1.0"),
        PackageRecord(name="bar", version="unknown"),
    ]


@pytest.mark.asyncio
async def test_non_zero_exit_raises_invocation_error_with_stderr(tmp_path: Path) -> None:
    with pytest.raises(ResolverInvocationError) as excinfo:
        await _resolver(tmp_path).resolve(CommitRef("bbb222"))

    error = excinfo.value
    assert error.commit_sha == "bbb222"
    assert error.exit_code == 1
    assert "network unreachable" in error.stderr
    assert str(error).startswith("resolver exited with status 1 for commit bbb222: error:")
    assert "network unreachable" in str(error)


@pytest.mark.asyncio
async def test_missing_executable_raises_invocation_error(tmp_path: Path) -> None:
    resolver = NixEnvResolver(command=[str(tmp_path / "does-not-exist")])

    with pytest.raises(ResolverInvocationError, match="could not start resolver"):
        await resolver.resolve(CommitRef("aaa111"))


@pytest.mark.asyncio
async def test_malformed_output_raises_output_error_naming_commit(tmp_path: Path) -> None:
    with pytest.raises(ResolverOutputError, match="garbage"):
        await _resolver(tmp_path).resolve(CommitRef("garbage"))


@pytest.mark.asyncio
async def test_timeout_kills_the_process(tmp_path: Path) -> None:
    resolver = _resolver(tmp_path, timeout_seconds=0.2)

    with pytest.raises(ResolverInvocationError, match="timed out"):
        await resolver.resolve(CommitRef("sleepy"))


@pytest.mark.asyncio
async def test_cancel_token_stops_a_running_resolver(tmp_path: Path) -> None:
    token = CancellationToken()
    resolver = _resolver(tmp_path, cancel_token=token)

    async def cancel_soon() -> None:
        await asyncio.sleep(0.2)
        token.cancel()

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(ResolverCancelledError) as excinfo:
        await resolver.resolve(CommitRef("sleepy"))
    await canceller
    assert excinfo.value.commit_sha == "sleepy"
