"""
GitHub REST client that yields the commits to extract.

Only the read endpoints needed to pick snapshots are used: branch lookup,
single-commit lookup, and the paginated commit listing. Pagination follows
``Link: <...>; rel="next"`` headers until the listing is drained.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any, Final

import httpx
import structlog

from nixpkgs_history.constants import (
    DEFAULT_GITHUB_PER_PAGE,
    DEFAULT_GITHUB_TIMEOUT_SECONDS,
    DEFAULT_TOKEN_ENV,
    GITHUB_API_URL,
    RELEASE_BRANCH_PREFIX,
    UPSTREAM_OWNER,
    UPSTREAM_REPO,
)
from nixpkgs_history.domain.models import CommitRef, format_timestamp, parse_timestamp

if TYPE_CHECKING:
    from types import TracebackType

_MAX_PER_PAGE: Final[int] = 100
_ACCEPT_HEADER: Final[str] = "application/vnd.github+json"
_API_VERSION: Final[str] = "2022-11-28"


class CommitSourceError(RuntimeError):
    """Raised when the commit listing cannot be obtained; fatal before the pipeline runs."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def token_from_env(
    env_name: str = DEFAULT_TOKEN_ENV,
    environ: Mapping[str, str] | None = None,
) -> str | None:
    """Read the API token from ``env_name``; blank values count as unset."""

    source = os.environ if environ is None else environ
    value = source.get(env_name, "").strip()
    return value or None


def release_branch(channel: str) -> str:
    """Branch that backs a release channel, e.g. ``23.11`` -> ``release-23.11``."""

    cleaned = channel.strip()
    if not cleaned:
        raise ValueError("channel must be a non-empty string")
    if cleaned.startswith(RELEASE_BRANCH_PREFIX):
        return cleaned
    return f"{RELEASE_BRANCH_PREFIX}{cleaned}"


class GitHubCommitSource:
    """Async client for commit identifiers of one repository.

    Use as an async context manager; a caller-provided ``client`` is not
    closed on exit.
    """

    def __init__(
        self,
        *,
        owner: str = UPSTREAM_OWNER,
        repo: str = UPSTREAM_REPO,
        api_url: str = GITHUB_API_URL,
        token: str | None = None,
        per_page: int = DEFAULT_GITHUB_PER_PAGE,
        timeout_seconds: float = DEFAULT_GITHUB_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not 1 <= per_page <= _MAX_PER_PAGE:
            raise ValueError(f"per_page must be within 1..{_MAX_PER_PAGE}")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._owner = owner
        self._repo = repo
        self._per_page = per_page
        self._logger = structlog.get_logger(__name__)

        headers = {"Accept": _ACCEPT_HEADER, "X-GitHub-Api-Version": _API_VERSION}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> GitHubCommitSource:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def repo_path(self) -> str:
        return f"/repos/{self._owner}/{self._repo}"

    async def branch_tip(self, branch: str) -> CommitRef:
        """Latest commit on ``branch``."""

        if not branch.strip():
            raise ValueError("branch must be a non-empty string")
        payload = await self._get_json(f"{self.repo_path}/branches/{branch.strip()}")
        commit = _require_mapping(payload, "commit", context=f"branch {branch}")
        return _commit_from_payload(commit, context=f"branch {branch}")

    async def channel_tip(self, channel: str) -> CommitRef:
        """Latest commit of a release channel's backing branch."""

        return await self.branch_tip(release_branch(channel))

    async def get_commit(self, sha: str) -> CommitRef:
        if not sha.strip():
            raise ValueError("sha must be a non-empty string")
        payload = await self._get_json(f"{self.repo_path}/commits/{sha.strip()}")
        return _commit_from_payload(payload, context=f"commit {sha}")

    async def commits_between(
        self,
        since: datetime,
        until: datetime,
        *,
        branch: str | None = None,
    ) -> list[CommitRef]:
        """Every commit in ``[since, until]`` in API order (newest first)."""

        if since > until:
            raise ValueError("since must not be after until")
        params: dict[str, str | int] = {
            "since": format_timestamp(since) or "",
            "until": format_timestamp(until) or "",
            "per_page": self._per_page,
        }
        if branch:
            params["sha"] = branch

        commits: list[CommitRef] = []
        url: str | None = f"{self.repo_path}/commits"
        page = 0
        while url is not None:
            page += 1
            response = await self._request(url, params=params if page == 1 else None)
            payload = _decode_json(response, context=f"commit listing page {page}")
            if not isinstance(payload, list):
                raise CommitSourceError(
                    f"commit listing page {page} is not a JSON array",
                    status_code=response.status_code,
                )
            for item in payload:
                commits.append(_commit_from_payload(item, context=f"commit listing page {page}"))
            url = _next_link(response)

        self._logger.info(
            "commit_listing_fetched",
            since=params["since"],
            until=params["until"],
            branch=branch,
            pages=page,
            commit_count=len(commits),
        )
        return commits

    async def _get_json(self, path: str) -> Any:
        response = await self._request(path)
        return _decode_json(response, context=path)

    async def _request(
        self,
        url: str,
        *,
        params: Mapping[str, str | int] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.get(url, params=params)
        except httpx.HTTPError as exc:
            raise CommitSourceError(f"GitHub request {url} failed: {exc}") from exc

        if response.status_code >= 400:
            detail = _error_detail(response)
            self._logger.warning(
                "github_request_failed",
                url=str(response.request.url),
                status_code=response.status_code,
                detail=detail,
            )
            raise CommitSourceError(
                f"GitHub returned {response.status_code} for {url}: {detail}",
                status_code=response.status_code,
            )
        return response


def _next_link(response: httpx.Response) -> str | None:
    next_link = response.links.get("next")
    if not next_link:
        return None
    url = next_link.get("url")
    return url or None


def _decode_json(response: httpx.Response, *, context: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise CommitSourceError(
            f"{context}: response is not valid JSON", status_code=response.status_code
        ) from exc


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, Mapping) and isinstance(payload.get("message"), str):
        return str(payload["message"])
    return response.text[:200]


def _require_mapping(payload: Any, key: str, *, context: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping) or not isinstance(payload.get(key), Mapping):
        raise CommitSourceError(f"{context}: missing object field {key!r}")
    return payload[key]


def _commit_from_payload(payload: Any, *, context: str) -> CommitRef:
    if not isinstance(payload, Mapping):
        raise CommitSourceError(f"{context}: commit entry is not an object")
    sha = payload.get("sha")
    if not isinstance(sha, str) or not sha.strip():
        raise CommitSourceError(f"{context}: commit entry has no sha")

    date: datetime | None = None
    details = payload.get("commit")
    if isinstance(details, Mapping):
        for role in ("committer", "author"):
            person = details.get(role)
            raw_date = person.get("date") if isinstance(person, Mapping) else None
            if isinstance(raw_date, str):
                try:
                    date = parse_timestamp(raw_date)
                except ValueError as exc:
                    raise CommitSourceError(f"{context}: {exc}") from exc
                break
    return CommitRef(sha=sha, date=date)


__all__ = [
    "CommitSourceError",
    "GitHubCommitSource",
    "release_branch",
    "token_from_env",
]
