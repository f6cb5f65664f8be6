"""Issue tracker contract and its GitHub REST implementation."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

import httpx

from issue_autopilot.orchestrator.errors import TrackerError
from issue_autopilot.orchestrator.models import IssueReply, IssueUnit

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
MAX_BACKOFF_SECONDS = 60.0
_RETRYABLE_STATUS = frozenset({403, 429, 500, 502, 503, 504})
_PAGE_SIZE = 100


class IssueTracker(Protocol):
    """Operations the orchestrator consumes from the issue tracker."""

    def fetch_unit(self, owner: str, repo: str, number: int) -> IssueUnit: ...

    def fetch_replies(self, owner: str, repo: str, number: int) -> list[IssueReply]: ...

    def post_comment(self, owner: str, repo: str, number: int, body: str) -> None: ...

    def add_reaction(self, owner: str, repo: str, comment_id: int, reaction: str) -> None: ...

    def close_unit(self, owner: str, repo: str, number: int) -> None: ...

    def open_pull_request(  # noqa: PLR0913
        self,
        owner: str,
        repo: str,
        *,
        head: str,
        base: str,
        title: str,
        body: str,
    ) -> str: ...

    def default_branch(self, owner: str, repo: str) -> str: ...


class GitHubTracker:
    """GitHub REST client with backoff honouring rate-limit headers."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        token: str,
        api_url: str = DEFAULT_API_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._max_retries = max_retries
        self._sleep = sleep
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "issue-autopilot",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=1),
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubTracker:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def fetch_unit(self, owner: str, repo: str, number: int) -> IssueUnit:
        data = self._request("GET", f"/repos/{owner}/{repo}/issues/{number}").json()
        labels = tuple(
            str(label.get("name", "")) if isinstance(label, dict) else str(label)
            for label in data.get("labels") or []
        )
        return IssueUnit(
            number=int(data.get("number", number)),
            title=str(data.get("title") or ""),
            body=str(data.get("body") or ""),
            labels=labels,
            state=str(data.get("state") or "open"),
            author=str((data.get("user") or {}).get("login") or ""),
            url=str(data.get("html_url") or ""),
        )

    def fetch_replies(self, owner: str, repo: str, number: int) -> list[IssueReply]:
        replies: list[IssueReply] = []
        page = 1
        while True:
            response = self._request(
                "GET",
                f"/repos/{owner}/{repo}/issues/{number}/comments",
                params={"per_page": _PAGE_SIZE, "page": page},
            )
            items = response.json()
            for item in items:
                replies.append(
                    IssueReply(
                        author=str((item.get("user") or {}).get("login") or ""),
                        body=str(item.get("body") or ""),
                        created_at=str(item.get("created_at") or ""),
                    ),
                )
            if "next" not in response.links or len(items) < _PAGE_SIZE:
                return replies
            page += 1

    def post_comment(self, owner: str, repo: str, number: int, body: str) -> None:
        self._request("POST", f"/repos/{owner}/{repo}/issues/{number}/comments", json={"body": body})

    def add_reaction(self, owner: str, repo: str, comment_id: int, reaction: str) -> None:
        self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/comments/{comment_id}/reactions",
            json={"content": reaction},
        )

    def close_unit(self, owner: str, repo: str, number: int) -> None:
        self._request("PATCH", f"/repos/{owner}/{repo}/issues/{number}", json={"state": "closed"})

    def open_pull_request(  # noqa: PLR0913
        self,
        owner: str,
        repo: str,
        *,
        head: str,
        base: str,
        title: str,
        body: str,
    ) -> str:
        data = self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        ).json()
        return str(data["html_url"])

    def default_branch(self, owner: str, repo: str) -> str:
        data = self._request("GET", f"/repos/{owner}/{repo}").json()
        return str(data.get("default_branch") or "main")

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        attempt = 0
        while True:
            try:
                response = self._client.request(method, path, json=json, params=params)
            except httpx.TransportError as exc:
                if attempt >= self._max_retries:
                    raise TrackerError(f"{method} {path} failed: {exc}") from exc
                delay = _backoff(attempt)
                logger.warning("%s %s transport error (%s), retrying in %.1fs", method, path, exc, delay)
            else:
                if response.is_success:
                    return response
                if response.status_code not in _RETRYABLE_STATUS or attempt >= self._max_retries:
                    raise TrackerError(
                        f"{method} {path} returned HTTP {response.status_code}: "
                        f"{response.text[:300]}",
                        status_code=response.status_code,
                    )
                delay = retry_delay(response, attempt)
                logger.warning(
                    "%s %s returned HTTP %d, retrying in %.1fs",
                    method,
                    path,
                    response.status_code,
                    delay,
                )
            self._sleep(delay)
            attempt += 1


def retry_delay(response: httpx.Response, attempt: int, *, now: float | None = None) -> float:
    """Delay before retrying: Retry-After, then x-ratelimit-reset, then exponential."""

    retry_after = response.headers.get("retry-after")
    if retry_after is not None:
        try:
            return min(MAX_BACKOFF_SECONDS, max(0.0, float(retry_after)))
        except ValueError:
            pass

    reset = response.headers.get("x-ratelimit-reset")
    remaining = response.headers.get("x-ratelimit-remaining")
    if reset is not None and remaining == "0":
        try:
            wait = float(reset) - (now if now is not None else time.time())
        except ValueError:
            wait = None
        if wait is not None:
            return min(MAX_BACKOFF_SECONDS, max(0.0, wait))

    return _backoff(attempt)


def _backoff(attempt: int) -> float:
    return min(MAX_BACKOFF_SECONDS, float(2**attempt))
