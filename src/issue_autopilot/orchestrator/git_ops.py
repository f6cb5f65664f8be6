"""Per-job git checkout handling through the `git` CLI."""

from __future__ import annotations

import base64
import logging
import os
import shutil
import subprocess
from collections.abc import Mapping
from pathlib import Path

from issue_autopilot.orchestrator.errors import GitCommandError

logger = logging.getLogger(__name__)

RETAINED_MARKER = ".autopilot-retained"
CLONE_DEPTH = 50
_GIT_TIMEOUT_SECONDS = 600


class GitWorkspace:
    """Working directories and git operations for job checkouts.

    Credentials travel as an ``http.<host>/.extraheader`` injected through
    ``GIT_CONFIG_COUNT``/``GIT_CONFIG_KEY_n``/``GIT_CONFIG_VALUE_n`` in the
    child environment, so a token never appears in a URL or argv.
    """

    def __init__(
        self,
        *,
        work_dir: Path,
        token: str = "",
        git_host: str = "https://github.com",
        clone_url_template: str = "{host}/{owner}/{repo}.git",
    ) -> None:
        self.work_dir = work_dir
        self.token = token
        self.git_host = git_host.rstrip("/")
        self.clone_url_template = clone_url_template

    def job_dir(self, owner: str, repo: str, issue_number: int) -> Path:
        return self.work_dir / f"{owner}-{repo}-{issue_number}"

    def repo_path(self, owner: str, repo: str, issue_number: int) -> Path:
        return self.job_dir(owner, repo, issue_number) / repo

    def prepare(self, owner: str, repo: str, issue_number: int, *, branch: str) -> Path:
        """Return a checkout on `branch`, reusing a retained one when present."""

        job_dir = self.job_dir(owner, repo, issue_number)
        repo_path = job_dir / repo
        if (job_dir / RETAINED_MARKER).exists() and (repo_path / ".git").exists():
            logger.info("Reusing retained checkout %s", repo_path)
            (job_dir / RETAINED_MARKER).unlink()
            self._run(["git", "checkout", branch], cwd=repo_path)
            return repo_path

        if job_dir.exists():
            logger.info("Removing stale checkout %s", job_dir)
            shutil.rmtree(job_dir, ignore_errors=True)
        job_dir.mkdir(parents=True, exist_ok=True)

        url = self.clone_url_template.format(host=self.git_host, owner=owner, repo=repo)
        logger.info("Cloning %s/%s into %s", owner, repo, job_dir)
        try:
            self._run(
                ["git", "clone", f"--depth={CLONE_DEPTH}", url, repo],
                cwd=job_dir,
                env=self._auth_env(),
            )
        except GitCommandError as error:
            raise GitCommandError(
                ["git", "clone", "failed"],
                error.returncode,
                error.stderr,
            ) from error
        self._run(["git", "checkout", "-b", branch], cwd=repo_path)
        return repo_path

    def retain(self, owner: str, repo: str, issue_number: int) -> None:
        """Keep the checkout for the next run of this job."""

        job_dir = self.job_dir(owner, repo, issue_number)
        if job_dir.exists():
            (job_dir / RETAINED_MARKER).write_text("", "utf-8")

    def push(self, repo_path: Path, branch: str) -> None:
        self._run(["git", "push", "origin", branch], cwd=repo_path, env=self._auth_env())

    def log_since(self, repo_path: Path, base: str) -> str:
        """`git log --oneline base..HEAD`; raises GitCommandError when base is unknown."""

        return self._run(["git", "log", "--oneline", f"{base}..HEAD"], cwd=repo_path)

    def cleanup(self, owner: str, repo: str, issue_number: int) -> None:
        shutil.rmtree(self.job_dir(owner, repo, issue_number), ignore_errors=True)

    def _auth_env(self) -> dict[str, str]:
        env = {
            "PATH": os.environ.get("PATH", ""),
            "HOME": os.environ.get("HOME", ""),
            "GIT_TERMINAL_PROMPT": "0",
        }
        if self.token:
            credentials = base64.b64encode(f"x-access-token:{self.token}".encode()).decode()
            env.update(
                {
                    "GIT_CONFIG_COUNT": "1",
                    "GIT_CONFIG_KEY_0": f"http.{self.git_host}/.extraheader",
                    "GIT_CONFIG_VALUE_0": f"Authorization: basic {credentials}",
                },
            )
        return env

    def _run(
        self,
        args: list[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
    ) -> str:
        try:
            completed = subprocess.run(  # noqa: S603
                args,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                capture_output=True,
                text=True,
                timeout=_GIT_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            raise GitCommandError(args, -1, str(error)) from error
        if completed.returncode != 0:
            raise GitCommandError(args, completed.returncode, completed.stderr)
        return completed.stdout
