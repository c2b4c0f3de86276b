"""
nixpkgs-history configuration schema and validation.

Purpose
- Define authoritative configuration defaults and strict validation rules.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject unknown keys; reject embedded secrets (only env var *names* are stored).

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from nixpkgs_history.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_ARCHIVE_URL_TEMPLATE,
    DEFAULT_CONCURRENCY,
    DEFAULT_DATABASE_PATH,
    DEFAULT_GITHUB_PER_PAGE,
    DEFAULT_GITHUB_TIMEOUT_SECONDS,
    DEFAULT_JSONL_PATH,
    DEFAULT_LOG_DIR,
    DEFAULT_MAX_CONSECUTIVE_SINK_FAILURES,
    DEFAULT_RESOLVER_COMMAND,
    DEFAULT_RESOLVER_TIMEOUT_SECONDS,
    DEFAULT_SQL_DUMP_PATH,
    DEFAULT_TOKEN_ENV,
    GITHUB_API_URL,
    PACKAGE_ATTRIBUTE_PREFIX,
    UPSTREAM_OWNER,
    UPSTREAM_REPO,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "credential", "credentials", "auth"}
)

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "database"),
    ("paths", "sql_dump"),
    ("paths", "jsonl_output"),
    ("paths", "log_dir"),
)

_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")


class MetaConfig(TypedDict):
    schema_version: int


class GitHubConfig(TypedDict):
    owner: str
    repo: str
    api_url: str
    token_env: str
    per_page: int
    timeout_seconds: float


class ResolverConfig(TypedDict):
    command: list[str]
    archive_url_template: str
    strip_prefix: str
    timeout_seconds: float


class PipelineConfig(TypedDict):
    concurrency: int
    max_consecutive_sink_failures: int


class PathsConfig(TypedDict):
    database: str
    sql_dump: str
    jsonl_output: str
    log_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_to_console: bool
    json_logs: bool


class NixpkgsHistoryConfig(TypedDict):
    meta: MetaConfig
    github: GitHubConfig
    resolver: ResolverConfig
    pipeline: PipelineConfig
    paths: PathsConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[NixpkgsHistoryConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "github": {
        "owner": UPSTREAM_OWNER,
        "repo": UPSTREAM_REPO,
        "api_url": GITHUB_API_URL,
        "token_env": DEFAULT_TOKEN_ENV,
        "per_page": DEFAULT_GITHUB_PER_PAGE,
        "timeout_seconds": DEFAULT_GITHUB_TIMEOUT_SECONDS,
    },
    "resolver": {
        "command": list(DEFAULT_RESOLVER_COMMAND),
        "archive_url_template": DEFAULT_ARCHIVE_URL_TEMPLATE,
        "strip_prefix": PACKAGE_ATTRIBUTE_PREFIX,
        "timeout_seconds": DEFAULT_RESOLVER_TIMEOUT_SECONDS,
    },
    "pipeline": {
        "concurrency": DEFAULT_CONCURRENCY,
        "max_consecutive_sink_failures": DEFAULT_MAX_CONSECUTIVE_SINK_FAILURES,
    },
    "paths": {
        "database": str(DEFAULT_DATABASE_PATH),
        "sql_dump": str(DEFAULT_SQL_DUMP_PATH),
        "jsonl_output": str(DEFAULT_JSONL_PATH),
        "log_dir": str(DEFAULT_LOG_DIR),
    },
    "observability": {
        "log_level": "INFO",
        "log_to_console": False,
        "json_logs": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


_SectionValidator = Callable[[Mapping[str, object], str, _IssueCollector], dict[str, Any]]


def default_config() -> NixpkgsHistoryConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade nixpkgs-history.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade nixpkgs-history"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate a fully merged config and return issues with dotted paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    _reject_unknown_keys(root, set(_SECTION_VALIDATORS), "", issues)
    _require_keys(root, set(_SECTION_VALIDATORS), "", issues)

    normalized: dict[str, Any] = {}
    for key, validator in _SECTION_VALIDATORS.items():
        raw = root.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is not None:
            normalized[key] = validator(section, key, issues)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Deterministic redacted copy for ``config`` output and logs."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_github(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"owner", "repo", "api_url", "token_env", "per_page", "timeout_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in ("owner", "repo"):
        if key in payload:
            _store(out, key, _as_str(payload[key], _join(path, key), issues))
    if "api_url" in payload:
        url = _as_str(payload["api_url"], _join(path, "api_url"), issues)
        if url is not None and not url.startswith(("https://", "http://")):
            issues.add(_join(path, "api_url"), "must be an http(s) URL")
            url = None
        _store(out, "api_url", url)
    if "token_env" in payload:
        token_env = _as_env_name(payload["token_env"], _join(path, "token_env"), issues)
        _store(out, "token_env", token_env)
    if "per_page" in payload:
        per_page = _as_int(payload["per_page"], _join(path, "per_page"), issues, minimum=1)
        if per_page is not None and per_page > 100:
            issues.add(_join(path, "per_page"), "must be <= 100")
            per_page = None
        _store(out, "per_page", per_page)
    if "timeout_seconds" in payload:
        _store(
            out,
            "timeout_seconds",
            _as_positive_float(payload["timeout_seconds"], _join(path, "timeout_seconds"), issues),
        )
    return out


def _validate_resolver(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"command", "archive_url_template", "strip_prefix", "timeout_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "command" in payload:
        raw = payload["command"]
        command_path = _join(path, "command")
        if not isinstance(raw, (list, tuple)) or not raw:
            issues.add(command_path, "expected non-empty array of strings")
        else:
            parts = [_as_str(item, f"{command_path}[{i}]", issues) for i, item in enumerate(raw)]
            if all(part is not None for part in parts):
                out["command"] = parts
    if "archive_url_template" in payload:
        template_path = _join(path, "archive_url_template")
        template = _as_str(payload["archive_url_template"], template_path, issues)
        if template is not None and "{sha}" not in template:
            issues.add(template_path, "must contain the '{sha}' placeholder")
            template = None
        _store(out, "archive_url_template", template)
    if "strip_prefix" in payload:
        prefix = payload["strip_prefix"]
        if isinstance(prefix, str):
            out["strip_prefix"] = prefix
        else:
            issues.add(_join(path, "strip_prefix"), f"expected string, got {type(prefix).__name__}")
    if "timeout_seconds" in payload:
        _store(
            out,
            "timeout_seconds",
            _as_positive_float(payload["timeout_seconds"], _join(path, "timeout_seconds"), issues),
        )
    return out


def _validate_pipeline(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"concurrency", "max_consecutive_sink_failures"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            _store(out, key, _as_int(payload[key], _join(path, key), issues, minimum=1))
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"database", "sql_dump", "jsonl_output", "log_dir"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            _store(out, key, _as_path_text(payload[key], _join(path, key), issues))
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_to_console", "json_logs"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "log_level" in payload:
        raw_level = payload["log_level"]
        level = raw_level.upper() if isinstance(raw_level, str) else raw_level
        _store(
            out,
            "log_level",
            _as_enum(level, _join(path, "log_level"), issues, allowed_values=_LOG_LEVELS),
        )
    for key in ("log_to_console", "json_logs"):
        if key in payload:
            _store(out, key, _as_bool(payload[key], _join(path, key), issues))
    return out


_SECTION_VALIDATORS: Final[dict[str, _SectionValidator]] = {
    "meta": _validate_meta,
    "github": _validate_github,
    "resolver": _validate_resolver,
    "pipeline": _validate_pipeline,
    "paths": _validate_paths,
    "observability": _validate_observability,
}


def _store(out: dict[str, Any], key: str, value: object) -> None:
    if value is not None:
        out[key] = value


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: GITHUB_TOKEN)")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_positive_float(value: object, path: str, issues: _IssueCollector) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed) or parsed <= 0:
        issues.add(path, "must be a finite number > 0")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use github.token_env with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            _merge_into(existing, value)
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            if _looks_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(value[key], key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "NixpkgsHistoryConfig",
    "PATH_FIELDS",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
