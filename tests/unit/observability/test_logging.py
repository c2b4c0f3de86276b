"""
nixpkgs-history - unit tests for observability logging

Purpose
- Validate structured JSON logging with redaction, commit correlation, and queue-backed reliability.

What this test file should cover
- JSON line validity and redaction of tokens and secret-named fields.
- Correlation field propagation, including structlog events bound to a commit.
- Multi-threaded logging stability.
- Queue drain/shutdown behavior.
"""

from __future__ import annotations

import asyncio
import json
import logging
import logging.handlers
import threading
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from nixpkgs_history.observability.logging import (
    LoggingConfig,
    correlation_scope,
    get_correlation_context,
    redact_text,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

_FAKE_GITHUB_TOKEN = "ghp_" + "A1b2C3d4E5f6G7h8I9j0K1l2"


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _logger_name() -> str:
    return f"nixpkgs_history.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_json_logging_redacts_secrets_and_preserves_correlation_fields(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-redaction", base_log_dir=tmp_path, logger_name=logger_name)
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(commit_sha="aaa111", branch="release-23.11"):
        logger.info(
            f"payload token=tok-FAKE sent as Bearer abc.def with {_FAKE_GITHUB_TOKEN}",
            extra={"nested": {"password": "hunter2", "safe": "ok"}, "token_env": "GITHUB_TOKEN"},
        )

    shutdown_logging(handle)

    assert handle.log_path == tmp_path / "run-redaction" / "nixpkgs-history.jsonl"
    parsed = _read_json_lines(handle.log_path)
    assert len(parsed) == 1
    first = parsed[0]
    assert first["run_id"] == "run-redaction"
    assert first["commit_sha"] == "aaa111"
    assert first["branch"] == "release-23.11"
    assert first["level"] == "INFO"
    assert first["fields"] == {
        "nested": {"password": "***REDACTED***", "safe": "ok"},
        "token_env": "GITHUB_TOKEN",
    }

    line = handle.log_path.read_text(encoding="utf-8")
    assert "tok-FAKE" not in line
    assert "abc.def" not in line
    assert _FAKE_GITHUB_TOKEN not in line
    assert "hunter2" not in line


def test_structlog_events_land_with_fields_and_commit_correlation(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-structlog", base_log_dir=tmp_path, logger_name=logger_name)
    )
    logger = structlog.get_logger(f"{logger_name}.pipeline")

    with correlation_scope(commit_sha="bbb222"):
        logger.warning("commit_resolve_failed", error="network unreachable", attempt=1)
    logger.debug("below_threshold")
    logger.info("explicit_commit", commit_sha="ccc333")

    shutdown_logging(handle)

    events = _read_json_lines(handle.log_path)
    assert [event["message"] for event in events] == ["commit_resolve_failed", "explicit_commit"]
    assert events[0]["commit_sha"] == "bbb222"
    assert events[0]["level"] == "WARNING"
    assert events[0]["logger"] == f"{logger_name}.pipeline"
    assert events[0]["fields"] == {"error": "network unreachable", "attempt": 1}
    assert events[1]["commit_sha"] == "ccc333"
    assert "fields" not in events[1]


def test_setup_logging_wrapper_uses_observability_config(tmp_path: Path) -> None:
    handle = setup_logging(
        {"log_level": "WARNING", "log_to_console": False, "json_logs": True},
        run_id="run-wrapper",
        log_dir=tmp_path,
    )
    logger = logging.getLogger("nixpkgs_history.tests.wrapper")

    logger.info("dropped by level")
    logger.warning("kept", extra={"github_token": "t-123"})
    shutdown_logging()

    assert handle.log_path.parent == tmp_path / "run-wrapper"
    content = handle.log_path.read_text(encoding="utf-8")
    assert "dropped by level" not in content
    assert "kept" in content
    assert "t-123" not in content


@pytest.mark.asyncio
async def test_correlation_scope_is_isolated_between_tasks() -> None:
    seen: dict[str, str | None] = {}

    async def work(sha: str) -> None:
        with correlation_scope(commit_sha=sha):
            await asyncio.sleep(0)
            seen[sha] = get_correlation_context().get("commit_sha")

    await asyncio.gather(work("aaa111"), work("bbb222"))

    assert seen == {"aaa111": "aaa111", "bbb222": "bbb222"}
    assert get_correlation_context() == {}


def test_redact_text_handles_assignments_and_tokens() -> None:
    assert redact_text("password: hunter2 done") == "password:***REDACTED*** done"
    assert _FAKE_GITHUB_TOKEN not in redact_text(f"cloning with {_FAKE_GITHUB_TOKEN}")
    assert redact_text("nothing to hide") == "nothing to hide"


def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            run_id="run-threaded",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            queue_size=4096,
        )
    )
    logger = logging.getLogger(logger_name)

    total_threads = 8
    per_thread = 40

    def worker(thread_idx: int) -> None:
        with correlation_scope(commit_sha=f"sha-{thread_idx}"):
            for i in range(per_thread):
                logger.info(
                    f"thread={thread_idx} index={i} token=tok-secret-{thread_idx}-{i}",
                    extra={"secret": f"s-FAKE-{thread_idx}-{i}"},
                )

    threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(total_threads)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == total_threads * per_thread
    for line in lines:
        parsed = json.loads(line)
        assert isinstance(parsed, dict)
        assert str(parsed["message"]).startswith(f"thread={str(parsed['commit_sha'])[4:]} ")
        assert "tok-secret" not in line
        assert "s-FAKE" not in line


def test_queue_handler_non_blocking_and_shutdown_flushes(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            run_id="run-flush",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            queue_size=10_000,
        )
    )
    logger = logging.getLogger(logger_name)

    queue_handlers = [h for h in logger.handlers if isinstance(h, logging.handlers.QueueHandler)]
    assert queue_handlers, "expected queue-backed non-blocking logging"

    expected = 300
    for i in range(expected):
        logger.info("message %s", i)

    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert handle.dropped_records == 0
    assert len(lines) == expected
    assert handle.is_shutdown
    shutdown_logging(handle)


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"run_id": "  "}, "run_id"),
        ({"log_filename": "nested/file.jsonl"}, "path separators"),
        ({"queue_size": 0}, "queue_size"),
        ({"level": "LOUD"}, "unsupported logging level"),
    ],
)
def test_invalid_logging_config_is_rejected(
    tmp_path: Path, overrides: dict[str, object], message: str
) -> None:
    settings: dict[str, object] = {"run_id": "run-invalid", "base_log_dir": tmp_path}
    settings.update(overrides)

    with pytest.raises(ValueError, match=message):
        setup_structured_logging(LoggingConfig(**settings))  # type: ignore[arg-type]
