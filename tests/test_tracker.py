from __future__ import annotations

import json

import allure
import httpx
import pytest

from issue_autopilot.orchestrator.errors import TrackerError
from issue_autopilot.orchestrator.tracker import MAX_BACKOFF_SECONDS, GitHubTracker, retry_delay

pytestmark = [
    allure.epic("Issue Tracker"),
    allure.feature("GitHub REST Client"),
]


class _Recorder:
    """MockTransport handler replaying canned responses in order."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _tracker(recorder: _Recorder, sleeps: list[float], **options: int) -> GitHubTracker:
    return GitHubTracker(
        token="ghp_test",
        api_url="https://api.github.test/",
        transport=httpx.MockTransport(recorder),
        sleep=sleeps.append,
        **options,
    )


def test_fetch_unit_maps_issue_fields() -> None:
    recorder = _Recorder(
        httpx.Response(
            200,
            json={
                "number": 42,
                "title": "Widget renders upside down",
                "body": None,
                "labels": [{"name": "bug"}, "ui"],
                "state": "open",
                "user": {"login": "octocat"},
                "html_url": "https://github.com/acme/widget/issues/42",
            },
        ),
    )

    with _tracker(recorder, []) as tracker:
        unit = tracker.fetch_unit("acme", "widget", 42)

    request = recorder.requests[0]
    assert request.url == "https://api.github.test/repos/acme/widget/issues/42"
    assert request.headers["Authorization"] == "Bearer ghp_test"
    assert request.headers["Accept"] == "application/vnd.github+json"
    assert unit.title == "Widget renders upside down"
    assert unit.body == ""
    assert unit.labels == ("bug", "ui")
    assert unit.author == "octocat"


def test_fetch_replies_follows_pagination() -> None:
    first_page = [
        {"user": {"login": f"user{n}"}, "body": f"comment {n}", "created_at": "2026-10-15T10:00:00Z"}
        for n in range(100)
    ]
    recorder = _Recorder(
        httpx.Response(
            200,
            json=first_page,
            headers={"link": '<https://api.github.test/x?page=2>; rel="next"'},
        ),
        httpx.Response(200, json=[{"user": None, "body": "last", "created_at": ""}]),
    )

    with _tracker(recorder, []) as tracker:
        replies = tracker.fetch_replies("acme", "widget", 42)

    assert len(replies) == 101
    assert replies[-1].author == ""
    assert replies[-1].body == "last"
    assert [request.url.params["page"] for request in recorder.requests] == ["1", "2"]


def test_write_operations_send_expected_payloads() -> None:
    recorder = _Recorder(
        httpx.Response(201, json={}),
        httpx.Response(201, json={}),
        httpx.Response(200, json={}),
        httpx.Response(201, json={"html_url": "https://github.com/acme/widget/pull/7"}),
        httpx.Response(200, json={"default_branch": "develop"}),
    )

    with _tracker(recorder, []) as tracker:
        tracker.post_comment("acme", "widget", 42, "On it")
        tracker.add_reaction("acme", "widget", 555, "eyes")
        tracker.close_unit("acme", "widget", 42)
        pr_url = tracker.open_pull_request(
            "acme",
            "widget",
            head="autopilot/issue-42",
            base="develop",
            title="Fix #42",
            body="Fixes #42",
        )
        branch = tracker.default_branch("acme", "widget")

    calls = [(request.method, request.url.path, json.loads(request.content or b"null")) for request in recorder.requests]
    assert calls == [
        ("POST", "/repos/acme/widget/issues/42/comments", {"body": "On it"}),
        ("POST", "/repos/acme/widget/issues/comments/555/reactions", {"content": "eyes"}),
        ("PATCH", "/repos/acme/widget/issues/42", {"state": "closed"}),
        (
            "POST",
            "/repos/acme/widget/pulls",
            {"title": "Fix #42", "body": "Fixes #42", "head": "autopilot/issue-42", "base": "develop"},
        ),
        ("GET", "/repos/acme/widget", None),
    ]
    assert pr_url == "https://github.com/acme/widget/pull/7"
    assert branch == "develop"


def test_rate_limited_requests_are_retried_with_server_delay() -> None:
    recorder = _Recorder(
        httpx.Response(429, headers={"retry-after": "7"}),
        httpx.Response(502),
        httpx.Response(200, json={"default_branch": "main"}),
    )
    sleeps: list[float] = []

    with _tracker(recorder, sleeps) as tracker:
        assert tracker.default_branch("acme", "widget") == "main"

    assert sleeps == [7.0, 2.0]


def test_transport_errors_are_retried_then_raised() -> None:
    recorder = _Recorder(
        httpx.ConnectError("connection refused"),
        httpx.ConnectError("connection refused"),
    )
    sleeps: list[float] = []

    with _tracker(recorder, sleeps, max_retries=1) as tracker, pytest.raises(TrackerError, match="failed"):
        tracker.default_branch("acme", "widget")

    assert sleeps == [1.0]


def test_client_errors_are_not_retried() -> None:
    recorder = _Recorder(httpx.Response(404, json={"message": "Not Found"}))
    sleeps: list[float] = []

    with _tracker(recorder, sleeps) as tracker, pytest.raises(TrackerError) as caught:
        tracker.fetch_unit("acme", "widget", 404)

    assert caught.value.status_code == 404
    assert sleeps == []


def test_retry_delay_prefers_headers_then_backoff() -> None:
    request = httpx.Request("GET", "https://api.github.test/")

    assert retry_delay(httpx.Response(429, headers={"retry-after": "3"}, request=request), 0) == 3.0
    assert retry_delay(httpx.Response(429, headers={"retry-after": "999"}, request=request), 0) == MAX_BACKOFF_SECONDS
    exhausted = httpx.Response(
        403,
        headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": "1010"},
        request=request,
    )
    assert retry_delay(exhausted, 0, now=1000.0) == 10.0
    assert retry_delay(httpx.Response(500, request=request), 3) == 8.0
    assert retry_delay(httpx.Response(500, request=request), 10) == MAX_BACKOFF_SECONDS
