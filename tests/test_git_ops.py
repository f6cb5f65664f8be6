from __future__ import annotations

import base64
import os
import shutil
import subprocess
from pathlib import Path

import allure
import pytest

from issue_autopilot.orchestrator.errors import GitCommandError
from issue_autopilot.orchestrator.git_ops import RETAINED_MARKER, GitWorkspace

pytestmark = [
    allure.epic("Agent Runs"),
    allure.feature("Git Workspace"),
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]

_IDENTITY = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@example.com",
}


def _git(*args: str, cwd: Path) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env={**os.environ, **_IDENTITY},
        capture_output=True,
        text=True,
        check=True,
    )
    return completed.stdout


def _commit(repo_path: Path, name: str) -> None:
    (repo_path / name).write_text(name, "utf-8")
    _git("add", name, cwd=repo_path)
    _git("commit", "-m", f"Add {name}", cwd=repo_path)


@pytest.fixture()
def origin(tmp_path: Path) -> Path:
    """Bare `acme/widget.git` remote with one commit on main."""

    remotes = tmp_path / "remotes" / "acme"
    remotes.mkdir(parents=True)
    bare = remotes / "widget.git"
    _git("init", "--bare", "-b", "main", str(bare), cwd=tmp_path)

    seed = tmp_path / "seed"
    seed.mkdir()
    _git("init", "-b", "main", cwd=seed)
    _commit(seed, "README.md")
    _git("push", str(bare), "main", cwd=seed)
    return bare


@pytest.fixture()
def git_workspace(tmp_path: Path, origin: Path) -> GitWorkspace:
    return GitWorkspace(work_dir=tmp_path / "jobs", git_host=f"file://{tmp_path / 'remotes'}")


def test_prepare_clones_onto_a_fresh_branch(git_workspace: GitWorkspace) -> None:
    repo_path = git_workspace.prepare("acme", "widget", 42, branch="autopilot/issue-42")

    assert repo_path == git_workspace.job_dir("acme", "widget", 42) / "widget"
    assert (repo_path / "README.md").exists()
    assert _git("branch", "--show-current", cwd=repo_path).strip() == "autopilot/issue-42"


def test_log_since_lists_new_commits_and_rejects_unknown_base(git_workspace: GitWorkspace) -> None:
    repo_path = git_workspace.prepare("acme", "widget", 42, branch="autopilot/issue-42")

    assert git_workspace.log_since(repo_path, "origin/main") == ""
    _commit(repo_path, "fix.py")

    assert "Add fix.py" in git_workspace.log_since(repo_path, "origin/main")
    with pytest.raises(GitCommandError):
        git_workspace.log_since(repo_path, "origin/develop")


def test_push_publishes_the_branch(git_workspace: GitWorkspace, origin: Path) -> None:
    repo_path = git_workspace.prepare("acme", "widget", 42, branch="autopilot/issue-42")
    _commit(repo_path, "fix.py")

    git_workspace.push(repo_path, "autopilot/issue-42")

    assert "autopilot/issue-42" in _git("branch", "--list", cwd=origin)


def test_retained_checkout_is_reused_once(git_workspace: GitWorkspace) -> None:
    repo_path = git_workspace.prepare("acme", "widget", 42, branch="autopilot/issue-42")
    _commit(repo_path, "work-in-progress.py")
    git_workspace.retain("acme", "widget", 42)
    marker = git_workspace.job_dir("acme", "widget", 42) / RETAINED_MARKER
    assert marker.exists()

    reused = git_workspace.prepare("acme", "widget", 42, branch="autopilot/issue-42")

    assert reused == repo_path
    assert (reused / "work-in-progress.py").exists()
    assert not marker.exists()

    fresh = git_workspace.prepare("acme", "widget", 42, branch="autopilot/issue-42")
    assert not (fresh / "work-in-progress.py").exists()


def test_clone_failure_is_reported_as_clone_error(tmp_path: Path) -> None:
    workspace = GitWorkspace(work_dir=tmp_path / "jobs", git_host=f"file://{tmp_path / 'missing'}")

    with pytest.raises(GitCommandError, match="git clone failed"):
        workspace.prepare("acme", "widget", 1, branch="autopilot/issue-1")


def test_cleanup_removes_the_job_directory(git_workspace: GitWorkspace) -> None:
    git_workspace.prepare("acme", "widget", 42, branch="autopilot/issue-42")

    git_workspace.cleanup("acme", "widget", 42)
    git_workspace.cleanup("acme", "widget", 42)

    assert not git_workspace.job_dir("acme", "widget", 42).exists()


def test_token_travels_as_config_header_not_in_url(tmp_path: Path) -> None:
    workspace = GitWorkspace(work_dir=tmp_path, token="s3cret")

    env = workspace._auth_env()

    expected = base64.b64encode(b"x-access-token:s3cret").decode()
    assert env["GIT_CONFIG_KEY_0"] == "http.https://github.com/.extraheader"
    assert env["GIT_CONFIG_VALUE_0"] == f"Authorization: basic {expected}"
    assert env["GIT_TERMINAL_PROMPT"] == "0"
    assert "GIT_CONFIG_COUNT" not in GitWorkspace(work_dir=tmp_path)._auth_env()
