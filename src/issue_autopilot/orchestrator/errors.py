"""Exception hierarchy for the orchestration core."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestrator errors."""


class DuplicateJobError(OrchestratorError):
    """A job for the same (owner, repo, issue) identity already exists."""


class JobNotFoundError(OrchestratorError):
    """No job exists for the given id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(OrchestratorError):
    """Command is not allowed from the job's current status."""


class AgentSpawnError(OrchestratorError):
    """Agent subprocess could not be started."""


class GitCommandError(OrchestratorError):
    """A git subprocess exited non-zero."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        command = " ".join(args[:3])
        super().__init__(f"git error: `{command}` exited {returncode}: {stderr.strip()[:300]}")
        self.returncode = returncode
        self.stderr = stderr


class TrackerError(OrchestratorError):
    """Issue tracker API call failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
