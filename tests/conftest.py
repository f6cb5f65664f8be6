"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import pytest

from issue_autopilot.orchestrator.backend import scripted_agent
from issue_autopilot.orchestrator.errors import GitCommandError, TrackerError
from issue_autopilot.orchestrator.models import (
    IssueReply,
    IssueUnit,
    JobRecord,
    JobStatus,
    make_job_id,
)
from issue_autopilot.orchestrator.repository import JobRepository
from issue_autopilot.storage.common import utc_now

SCRIPTED_AGENT_PATH = Path(scripted_agent.__file__)


def _agent_argv(scenario: str, *extra: str) -> list[str]:
    return [sys.executable, str(SCRIPTED_AGENT_PATH), "--scenario", scenario, *extra]


def _agent_command(scenario: str, *extra: str) -> str:
    return shlex.join(_agent_argv(scenario, *extra))


def _make_job(
    owner: str = "acme",
    repo: str = "widget",
    issue_number: int = 42,
    *,
    status: JobStatus = JobStatus.QUEUED,
    age: timedelta = timedelta(0),
    **values: object,
) -> JobRecord:
    stamp = utc_now() - age
    if status is not JobStatus.QUEUED:
        values.setdefault("started_at", stamp)
    return JobRecord(
        job_id=make_job_id(owner, repo, issue_number),
        owner=owner,
        repo=repo,
        issue_number=issue_number,
        status=status,
        created_at=stamp,
        updated_at=stamp,
        **values,
    )


@pytest.fixture()
def make_job() -> Callable[..., JobRecord]:
    """Factory for job records; `age` backdates created_at, updated_at and, once run, started_at."""

    return _make_job


@pytest.fixture()
def agent_argv() -> Callable[..., list[str]]:
    """argv of the scripted stream-json agent for a scenario."""

    return _agent_argv


@pytest.fixture()
def agent_command() -> Callable[..., str]:
    """Shell-quoted command line of the scripted agent for a scenario."""

    return _agent_command


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "autopilot.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@dataclass
class FakeTracker:
    """In-memory issue tracker recording every side effect."""

    units: dict[tuple[str, str, int], IssueUnit] = field(default_factory=dict)
    replies: list[IssueReply] = field(default_factory=list)
    comments: list[tuple[str, int, str]] = field(default_factory=list)
    reactions: list[tuple[int, str]] = field(default_factory=list)
    closed: list[tuple[str, int]] = field(default_factory=list)
    pull_requests: list[dict[str, str]] = field(default_factory=list)
    branch: str = "main"
    fetch_error: Exception | None = None
    default_branch_error: Exception | None = None
    comment_error: Exception | None = None

    def add_unit(self, owner: str, repo: str, number: int, **values: object) -> IssueUnit:
        unit = IssueUnit(
            number=number,
            title=str(values.get("title", f"Issue {number}")),
            body=str(values.get("body", "Widget renders upside down.")),
            labels=tuple(values.get("labels", ("bug",))),  # type: ignore[arg-type]
            state=str(values.get("state", "open")),
        )
        self.units[(owner, repo, number)] = unit
        return unit

    def fetch_unit(self, owner: str, repo: str, number: int) -> IssueUnit:
        if self.fetch_error is not None:
            raise self.fetch_error
        unit = self.units.get((owner, repo, number))
        if unit is None:
            raise TrackerError(f"{owner}/{repo}#{number} not found", status_code=404)
        return unit

    def fetch_replies(self, owner: str, repo: str, number: int) -> list[IssueReply]:
        return list(self.replies)

    def post_comment(self, owner: str, repo: str, number: int, body: str) -> None:
        if self.comment_error is not None:
            raise self.comment_error
        self.comments.append((f"{owner}/{repo}", number, body))

    def add_reaction(self, owner: str, repo: str, comment_id: int, reaction: str) -> None:
        self.reactions.append((comment_id, reaction))

    def close_unit(self, owner: str, repo: str, number: int) -> None:
        self.closed.append((f"{owner}/{repo}", number))

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
        self.pull_requests.append({"head": head, "base": base, "title": title, "body": body})
        return f"https://github.com/{owner}/{repo}/pull/{len(self.pull_requests)}"

    def default_branch(self, owner: str, repo: str) -> str:
        if self.default_branch_error is not None:
            raise self.default_branch_error
        return self.branch


@dataclass
class FakeWorkspace:
    """Git workspace stand-in: real directories, no git."""

    root: Path
    prepare_error: Exception | None = None
    history: str = ""
    prepared: list[str] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)
    pushed: list[str] = field(default_factory=list)
    cleaned: list[str] = field(default_factory=list)

    def prepare(self, owner: str, repo: str, issue_number: int, *, branch: str) -> Path:
        if self.prepare_error is not None:
            raise self.prepare_error
        path = self.root / f"{owner}-{repo}-{issue_number}" / "repo"
        path.mkdir(parents=True, exist_ok=True)
        self.prepared.append(branch)
        return path

    def retain(self, owner: str, repo: str, issue_number: int) -> None:
        self.retained.append(make_job_id(owner, repo, issue_number))

    def push(self, repo_path: Path, branch: str) -> None:
        self.pushed.append(branch)

    def log_since(self, repo_path: Path, base: str) -> str:
        if base != "main":
            raise GitCommandError(["git", "log", base], 128, "unknown revision")
        return self.history

    def cleanup(self, owner: str, repo: str, issue_number: int) -> None:
        self.cleaned.append(make_job_id(owner, repo, issue_number))


@pytest.fixture()
def tracker() -> FakeTracker:
    fake = FakeTracker()
    fake.add_unit("acme", "widget", 42, title="Widget renders upside down")
    return fake


@pytest.fixture()
def workspace(tmp_path: Path) -> FakeWorkspace:
    return FakeWorkspace(root=tmp_path / "jobs")
