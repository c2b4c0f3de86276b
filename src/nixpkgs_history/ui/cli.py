"""Command-line interface router for nixpkgs-history."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Final, TextIO

import structlog

from nixpkgs_history.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
    resolve_github_token,
)
from nixpkgs_history.constants import DEFAULT_SEARCH_LIMIT
from nixpkgs_history.domain.models import (
    CommitRef,
    OutcomeStatus,
    PipelineReport,
    parse_timestamp,
)
from nixpkgs_history.export import ExportError, write_rows_jsonl, write_sql_dump
from nixpkgs_history.main import ExitCode
from nixpkgs_history.observability import configure_structlog, correlation_scope, setup_logging
from nixpkgs_history.persistence import PackageStore, PackageStoreError, SearchQueryError
from nixpkgs_history.pipeline import (
    ExtractionPipeline,
    JsonLinesSink,
    PackageSink,
    PipelineAbortedError,
    StoreSink,
)
from nixpkgs_history.resolver import NixEnvResolver
from nixpkgs_history.sources import (
    CommitSourceError,
    GitHubCommitSource,
    StaticCommitSource,
    release_branch,
)
from nixpkgs_history.ui.render import CLIRenderer, create_renderer
from nixpkgs_history.utils import CancellationToken

_STDOUT_TARGET: Final[str] = "-"
# Marker for ``--sql-dump`` given without a path: use ``[paths].sql_dump``.
_CONFIGURED_DUMP_PATH: Final[str] = "\0configured"

_logger = structlog.get_logger(__name__)


class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    def __init__(self, message: str, exit_code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="nixpkgs-history",
        description=(
            "nixpkgs-history: which package versions existed at which nixpkgs commit.\n\n"
            "Common workflows:\n"
            "  nixpkgs-history init-db                    Create the package database\n"
            "  nixpkgs-history collect --channel 23.11    Extract the tip of a release channel\n"
            "  nixpkgs-history search firefox             Full-text search stored packages\n"
            "  nixpkgs-history dump --format sql          Print stored rows as SQL\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./nixpkgs-history.toml if present).",
    )
    common.add_argument(
        "--db",
        dest="database",
        default=None,
        help="Package database path (overrides [paths].database).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # init-db -------------------------------------------------------------
    init_parser = subparsers.add_parser(
        "init-db",
        parents=[common],
        help="Create or migrate the package database",
    )
    init_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    init_parser.set_defaults(handler=_cmd_init_db)

    # collect -------------------------------------------------------------
    collect_parser = subparsers.add_parser(
        "collect",
        parents=[common],
        help="Extract package listings for a set of commits",
        description=(
            "Resolve the packages available at each selected commit and store them.\n\n"
            "Examples:\n"
            "  nixpkgs-history collect --commit 1a2b3c --commit 4d5e6f\n"
            "  nixpkgs-history collect --channel 23.11\n"
            "  nixpkgs-history collect --since 2024-01-01 --until 2024-01-07 --branch master\n"
            "  nixpkgs-history collect --channel 23.11 --output jsonl --jsonl-path -\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    selection = collect_parser.add_mutually_exclusive_group()
    selection.add_argument(
        "--commit",
        dest="commits",
        action="append",
        default=None,
        metavar="SHA",
        help="Explicit commit SHA (repeatable)",
    )
    selection.add_argument("--channel", default=None, help="Release channel, e.g. 23.11")
    selection.add_argument(
        "--since",
        default=None,
        help="ISO date or timestamp; selects every commit from here up to --until",
    )
    collect_parser.add_argument(
        "--until",
        default=None,
        help="End of the --since window (default: now)",
    )
    collect_parser.add_argument(
        "--branch",
        default=None,
        help="Branch whose latest commit is extracted, or which narrows a --since window",
    )
    collect_parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Commits resolved at once (overrides [pipeline].concurrency)",
    )
    collect_parser.add_argument(
        "--output",
        choices=("db", "jsonl"),
        default="db",
        help="Store rows in the database or stream one JSON line per commit",
    )
    collect_parser.add_argument(
        "--jsonl-path",
        default=None,
        help="JSON-lines destination, '-' for stdout (overrides [paths].jsonl_output)",
    )
    collect_parser.add_argument(
        "--sql-dump",
        nargs="?",
        const=_CONFIGURED_DUMP_PATH,
        default=None,
        metavar="PATH",
        help="Write a SQL dump after a database run (default path: [paths].sql_dump)",
    )
    collect_parser.add_argument(
        "--json", action="store_true", help="Emit deterministic JSON output"
    )
    collect_parser.set_defaults(handler=_cmd_collect)

    # search --------------------------------------------------------------
    search_parser = subparsers.add_parser(
        "search",
        parents=[common],
        help="Full-text search over stored package names and versions",
    )
    search_parser.add_argument("query", nargs="?", default="", help="Search terms")
    search_parser.add_argument(
        "--limit",
        type=int,
        default=DEFAULT_SEARCH_LIMIT,
        help=f"Maximum number of results (default: {DEFAULT_SEARCH_LIMIT})",
    )
    search_parser.add_argument(
        "--raw",
        action="store_true",
        help="Pass the query to FTS5 unmodified (operators, column filters)",
    )
    search_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    search_parser.set_defaults(handler=_cmd_search)

    # dump ----------------------------------------------------------------
    dump_parser = subparsers.add_parser(
        "dump",
        parents=[common],
        help="Export stored rows as SQL statements or JSON lines",
    )
    dump_parser.add_argument("--format", choices=("sql", "jsonl"), default="sql")
    dump_parser.add_argument(
        "--output",
        default=_STDOUT_TARGET,
        help="Destination file (default: stdout)",
    )
    dump_parser.add_argument(
        "--schema",
        action="store_true",
        help="Prefix SQL output with a CREATE TABLE statement",
    )
    dump_parser.set_defaults(handler=_cmd_dump)

    # check ---------------------------------------------------------------
    check_parser = subparsers.add_parser(
        "check",
        parents=[common],
        help="Verify that the search index matches the stored rows",
    )
    check_parser.add_argument(
        "--rebuild",
        action="store_true",
        help="Rebuild the search index from stored rows before checking",
    )
    check_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    check_parser.set_defaults(handler=_cmd_check)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the effective configuration (secrets redacted)",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_init_db(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    configure_structlog()
    store = PackageStore(config["paths"]["database"])
    try:
        version = store.initialize_schema()
    except PackageStoreError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.INTERNAL_ERROR)) from exc

    if args.json:
        _emit_json({"database": store.path.as_posix(), "schema_version": version})
        return int(ExitCode.SUCCESS)
    renderer = _renderer(args)
    renderer.heading("Database ready")
    renderer.kv("Path", store.path.as_posix())
    renderer.kv("Schema version", version)
    return int(ExitCode.SUCCESS)


def _cmd_collect(args: argparse.Namespace) -> int:
    if args.concurrency is not None and args.concurrency < 1:
        raise CLIError("--concurrency must be >= 1", exit_code=int(ExitCode.CONFIG_ERROR))
    if args.until is not None and args.since is None:
        raise CLIError("--until requires --since", exit_code=int(ExitCode.CONFIG_ERROR))
    if args.branch is not None and (args.commits or args.channel is not None):
        raise CLIError(
            "--branch cannot be combined with --commit or --channel",
            exit_code=int(ExitCode.CONFIG_ERROR),
        )
    if not (args.commits or args.channel or args.since or args.branch):
        raise CLIError(
            "select commits with --commit, --branch, --channel or --since",
            exit_code=int(ExitCode.CONFIG_ERROR),
        )
    if args.sql_dump is not None and args.output != "db":
        raise CLIError("--sql-dump requires --output db", exit_code=int(ExitCode.CONFIG_ERROR))
    window = _parse_window(args.since, args.until)

    config = _load_effective_config(
        args,
        overrides={
            "pipeline.concurrency": args.concurrency,
            "paths.jsonl_output": (
                None if args.jsonl_path in (None, _STDOUT_TARGET) else args.jsonl_path
            ),
        },
    )
    jsonl_target = (
        _STDOUT_TARGET if args.jsonl_path == _STDOUT_TARGET else config["paths"]["jsonl_output"]
    )

    run_id = _new_run_id()
    handle = setup_logging(
        config["observability"], run_id=run_id, log_dir=config["paths"]["log_dir"]
    )
    try:
        with correlation_scope(run_id=run_id, branch=args.branch, channel=args.channel):
            commits = asyncio.run(_select_commits(args, config, window))
            _logger.info("commits_selected", commit_count=len(commits))

            store: PackageStore | None = None
            if args.output == "db":
                store = PackageStore(config["paths"]["database"])
                try:
                    store.initialize_schema()
                except PackageStoreError as exc:
                    raise CLIError(str(exc), exit_code=int(ExitCode.INTERNAL_ERROR)) from exc

            # Streaming to stdout leaves stdout to the records; the summary goes to stderr.
            streams_to_stdout = args.output == "jsonl" and jsonl_target == _STDOUT_TARGET
            summary_stream = sys.stderr if streams_to_stdout else sys.stdout
            with _sink_for(args.output, store, jsonl_target) as sink:
                report = _run_pipeline(args, config, sink, commits, summary_stream)

            if store is not None and args.sql_dump is not None:
                dump_path = (
                    config["paths"]["sql_dump"]
                    if args.sql_dump == _CONFIGURED_DUMP_PATH
                    else args.sql_dump
                )
                statements = write_sql_dump(store, dump_path)
                _logger.info("sql_dump_written", path=str(dump_path), statement_count=statements)
    finally:
        handle.shutdown()

    with contextlib.redirect_stdout(summary_stream):
        if args.json:
            _emit_json(report.to_dict())
        else:
            renderer = _renderer(args)
            renderer.pipeline_report(report)
            if store is not None and args.sql_dump is not None:
                renderer.kv("SQL dump", dump_path)
    return _collect_exit_code(report)


def _cmd_search(args: argparse.Namespace) -> int:
    query = (args.query or "").strip()
    if not query:
        raise CLIError("search query must not be empty", exit_code=int(ExitCode.CONFIG_ERROR))
    if args.limit < 1:
        raise CLIError("--limit must be >= 1", exit_code=int(ExitCode.CONFIG_ERROR))

    config = _load_effective_config(args)
    configure_structlog()
    store = _open_existing_store(config)
    try:
        hits = store.search(query, args.limit, raw=args.raw)
    except SearchQueryError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc

    if args.json:
        _emit_json({"query": query, "results": [hit.to_dict() for hit in hits]})
        return int(ExitCode.SUCCESS)
    _renderer(args).search_results(hits)
    return int(ExitCode.SUCCESS)


def _cmd_dump(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    configure_structlog()
    store = _open_existing_store(config)
    target: str | TextIO = sys.stdout if args.output == _STDOUT_TARGET else args.output
    try:
        if args.format == "sql":
            count = write_sql_dump(store, target, include_schema=args.schema)
        else:
            count = write_rows_jsonl(store, target)
    except ExportError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.INTERNAL_ERROR)) from exc

    if args.output != _STDOUT_TARGET:
        _renderer(args).kv(f"Wrote {args.format} rows", f"{count} -> {args.output}")
    return int(ExitCode.SUCCESS)


def _cmd_check(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    configure_structlog()
    store = _open_existing_store(config)
    rebuilt: int | None = None
    if args.rebuild:
        rebuilt = store.rebuild_index()
    consistency = store.index_consistency()

    if args.json:
        payload: dict[str, Any] = consistency.to_dict()
        if rebuilt is not None:
            payload["rebuilt_rows"] = rebuilt
        _emit_json(payload)
    else:
        renderer = _renderer(args)
        if rebuilt is not None:
            renderer.kv("Rebuilt index rows", rebuilt)
        renderer.index_consistency(consistency)
    return int(ExitCode.SUCCESS if consistency.consistent else ExitCode.RUN_FAILED)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    print(dump_effective_config(config))
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_pipeline(
    args: argparse.Namespace,
    config: Mapping[str, Any],
    sink: PackageSink,
    commits: Sequence[CommitRef],
    summary_stream: TextIO,
) -> PipelineReport:
    resolver_cfg = config["resolver"]
    pipeline_cfg = config["pipeline"]
    cancel_token = CancellationToken()
    resolver = NixEnvResolver(
        command=resolver_cfg["command"],
        archive_url_template=resolver_cfg["archive_url_template"],
        strip_prefix=resolver_cfg["strip_prefix"],
        timeout_seconds=resolver_cfg["timeout_seconds"],
        cancel_token=cancel_token,
    )
    pipeline = ExtractionPipeline(
        resolver,
        sink,
        concurrency=pipeline_cfg["concurrency"],
        cancel_token=cancel_token,
        max_consecutive_sink_failures=pipeline_cfg["max_consecutive_sink_failures"],
    )
    try:
        return asyncio.run(_run_until_signalled(pipeline, commits, cancel_token))
    except PipelineAbortedError as exc:
        with contextlib.redirect_stdout(summary_stream):
            _renderer(args).pipeline_report(exc.report)
        raise CLIError(str(exc), exit_code=int(ExitCode.RUN_FAILED)) from exc


def _collect_exit_code(report: PipelineReport) -> int:
    """Interrupted runs leave cancelled commits behind and exit non-zero."""

    if report.count(OutcomeStatus.CANCELLED):
        return int(ExitCode.RUN_FAILED)
    return int(ExitCode.SUCCESS)


async def _run_until_signalled(
    pipeline: ExtractionPipeline,
    commits: Sequence[CommitRef],
    cancel_token: CancellationToken,
) -> PipelineReport:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    if sys.platform != "win32":
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, cancel_token.cancel)
            installed.append(signum)
    try:
        return await pipeline.run(commits)
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


async def _select_commits(
    args: argparse.Namespace,
    config: Mapping[str, Any],
    window: tuple[datetime, datetime] | None,
) -> list[CommitRef]:
    if args.commits:
        try:
            return StaticCommitSource(args.commits).commits()
        except ValueError as exc:
            raise CLIError(
                f"--commit expects a non-empty SHA: {exc}", exit_code=int(ExitCode.CONFIG_ERROR)
            ) from exc

    github_cfg = config["github"]
    token = resolve_github_token(config)
    if token is None:
        raise CLIError(
            f"GitHub token missing: set {github_cfg['token_env']} to list commits remotely",
            exit_code=int(ExitCode.CONFIG_ERROR),
        )
    try:
        async with GitHubCommitSource(
            owner=github_cfg["owner"],
            repo=github_cfg["repo"],
            api_url=github_cfg["api_url"],
            token=token,
            per_page=github_cfg["per_page"],
            timeout_seconds=github_cfg["timeout_seconds"],
        ) as source:
            if args.channel is not None:
                _logger.info("resolving_channel", branch=release_branch(args.channel))
                return [await source.channel_tip(args.channel)]
            if window is None:
                return [await source.branch_tip(args.branch)]
            since, until = window
            return await source.commits_between(since, until, branch=args.branch)
    except CommitSourceError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.UPSTREAM_ERROR)) from exc
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc


def _parse_window(since: str | None, until: str | None) -> tuple[datetime, datetime] | None:
    if since is None:
        return None
    start = _parse_date_argument("--since", since)
    end = datetime.now(UTC) if until is None else _parse_date_argument("--until", until)
    if until is not None and len(until.strip()) == 10:
        # A bare --until date includes that whole day.
        end += timedelta(days=1) - timedelta(seconds=1)
    if start > end:
        raise CLIError("--since must not be after --until", exit_code=int(ExitCode.CONFIG_ERROR))
    return start, end


def _parse_date_argument(flag: str, raw: str) -> datetime:
    try:
        return parse_timestamp(raw)
    except ValueError as exc:
        raise CLIError(
            f"{flag} expects an ISO date or timestamp, got {raw!r}",
            exit_code=int(ExitCode.CONFIG_ERROR),
        ) from exc


@contextlib.contextmanager
def _sink_for(output: str, store: PackageStore | None, jsonl_target: str) -> Iterator[PackageSink]:
    if output == "db":
        if store is None:
            raise CLIError(
                "database output requested without an open store",
                exit_code=int(ExitCode.INTERNAL_ERROR),
            )
        yield StoreSink(store)
        return
    if jsonl_target == _STDOUT_TARGET:
        yield JsonLinesSink(sys.stdout)
        return
    path = Path(jsonl_target)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as stream:
        yield JsonLinesSink(stream)


def _open_existing_store(config: Mapping[str, Any]) -> PackageStore:
    store = PackageStore(config["paths"]["database"])
    if not store.path.exists():
        raise CLIError(
            f"database not found: {store.path.as_posix()} (run 'nixpkgs-history init-db')",
            exit_code=int(ExitCode.CONFIG_ERROR),
        )
    try:
        version = store.schema_version()
    except PackageStoreError:
        version = 0
    if version < 1:
        raise CLIError(
            f"database {store.path.as_posix()} has no schema (run 'nixpkgs-history init-db')",
            exit_code=int(ExitCode.CONFIG_ERROR),
        )
    return store


def _load_effective_config(
    args: argparse.Namespace,
    *,
    overrides: Mapping[str, object] | None = None,
) -> dict[str, Any]:
    cli_overrides: dict[str, object] = {"paths.database": getattr(args, "database", None)}
    cli_overrides.update(overrides or {})
    try:
        return load_config(getattr(args, "config_path", None), cli_overrides=cli_overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc


def _new_run_id() -> str:
    return f"{time.strftime('%Y%m%dT%H%M%SZ', time.gmtime())}-{uuid.uuid4().hex[:8]}"


def _renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(verbose=bool(getattr(args, "verbose", False)))


def _emit_json(payload: object) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


__all__ = ["CLIError", "build_parser", "run_cli"]
