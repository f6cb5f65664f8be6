"""CLI entrypoint for issue-autopilot."""

from collections.abc import Callable, Iterable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from issue_autopilot import __version__
from issue_autopilot.orchestrator.controllers import (
    AutopilotCliController,
    CreditsCommand,
    EnqueueCommand,
    GrantCreditsCommand,
    JobCommand,
    ListJobsCommand,
    LogsCommand,
    MergeCommand,
    MessageCommand,
    PurgeCommand,
    StoreCommand,
)
from issue_autopilot.orchestrator.errors import OrchestratorError
from issue_autopilot.orchestrator.models import JobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AutopilotCliController()

T = TypeVar("T")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
job_id_argument = click.argument("job_id")


@click.group()
@click.version_option(version=__version__, prog_name="issue-autopilot")
def issue_autopilot() -> None:
    """Turn queued GitHub issues into agent-produced pull requests."""


@issue_autopilot.command("serve")
@db_path_option
def serve(db_path: Path | None) -> None:
    """Run the scheduler loop until SIGINT/SIGTERM.

    Reconciles active jobs with the tracker at startup, then claims and runs
    jobs up to `AUTOPILOT_MAX_CONCURRENT_JOBS` at a time.
    """

    _emit_lines(_call(CONTROLLER.serve, StoreCommand(db_path=db_path)))


@issue_autopilot.command("enqueue")
@db_path_option
@click.argument("repository", metavar="OWNER/REPO")
@click.argument("issue_number", type=click.IntRange(min=1))
@click.option("--user-id", default=None, help="Billing owner of the job.")
@click.option(
    "--trigger-id",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Comment id that triggered the job; 0 for system-initiated.",
)
def enqueue(
    db_path: Path | None,
    repository: str,
    issue_number: int,
    user_id: str | None,
    trigger_id: int,
) -> None:
    """Queue an issue, or requeue its idle job."""

    owner, _, repo = repository.partition("/")
    if not owner or not repo or "/" in repo:
        raise click.BadParameter("expected OWNER/REPO", param_hint="REPOSITORY")
    _emit_lines(
        _call(
            CONTROLLER.enqueue,
            EnqueueCommand(
                db_path=db_path,
                owner=owner,
                repo=repo,
                issue_number=issue_number,
                user_id=user_id,
                trigger_id=trigger_id,
            ),
        ),
    )


@issue_autopilot.command("jobs")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs(db_path: Path | None, status: str | None, limit: int) -> None:
    """List jobs, most recently updated first."""

    _emit_lines(
        _call(CONTROLLER.list_jobs, ListJobsCommand(db_path=db_path, status=status, limit=limit)),
    )


@issue_autopilot.command("status")
@db_path_option
@job_id_argument
def status(db_path: Path | None, job_id: str) -> None:
    """Show one job."""

    _emit_lines(_call(CONTROLLER.status, JobCommand(db_path=db_path, job_id=job_id)))


@issue_autopilot.command("stop")
@db_path_option
@job_id_argument
def stop(db_path: Path | None, job_id: str) -> None:
    """Stop a job and kill its agent if it runs in this process."""

    _emit_lines(_call(CONTROLLER.stop, JobCommand(db_path=db_path, job_id=job_id)))


@issue_autopilot.command("start")
@db_path_option
@job_id_argument
def start(db_path: Path | None, job_id: str) -> None:
    """Re-queue a stopped job."""

    _emit_lines(_call(CONTROLLER.start, JobCommand(db_path=db_path, job_id=job_id)))


@issue_autopilot.command("close")
@db_path_option
@job_id_argument
def close(db_path: Path | None, job_id: str) -> None:
    """Close the issue on the tracker and mark the job closed."""

    _emit_lines(_call(CONTROLLER.close, JobCommand(db_path=db_path, job_id=job_id)))


@issue_autopilot.command("message")
@db_path_option
@job_id_argument
@click.argument("text")
def message(db_path: Path | None, job_id: str, text: str) -> None:
    """Send an operator message to a job.

    A running agent is interrupted and receives the message in its session;
    otherwise the message is kept for the next run and the job is requeued.
    """

    _emit_lines(
        _call(CONTROLLER.message, MessageCommand(db_path=db_path, job_id=job_id, text=text)),
    )


@issue_autopilot.command("logs")
@db_path_option
@job_id_argument
@click.option(
    "--follow/--no-follow",
    default=False,
    show_default=True,
    help="Keep streaming until the job stops producing output.",
)
@click.option(
    "--after-seq",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Replay only lines after this sequence number.",
)
def logs(db_path: Path | None, job_id: str, follow: bool, after_seq: int) -> None:
    """Print a job's output log."""

    _emit_lines(
        _call(
            CONTROLLER.logs,
            LogsCommand(db_path=db_path, job_id=job_id, follow=follow, after_seq=after_seq),
        ),
    )


@issue_autopilot.command("merged")
@db_path_option
@click.argument("pr_url")
def merged(db_path: Path | None, pr_url: str) -> None:
    """Record that a pull request opened by a job was merged."""

    _emit_lines(_call(CONTROLLER.merged, MergeCommand(db_path=db_path, pr_url=pr_url)))


@issue_autopilot.command("budget")
@db_path_option
def budget(db_path: Path | None) -> None:
    """Show hourly and daily token budget usage."""

    _emit_lines(_call(CONTROLLER.budget, StoreCommand(db_path=db_path)))


@issue_autopilot.command("stats")
@db_path_option
def stats(db_path: Path | None) -> None:
    """Show job totals by status and repository."""

    _emit_lines(_call(CONTROLLER.stats, StoreCommand(db_path=db_path)))


@issue_autopilot.group()
def credits() -> None:
    """Credit balance commands (billing mode)."""


@credits.command("show")
@db_path_option
@click.argument("user_id")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max transactions to print.",
)
def credits_show(db_path: Path | None, user_id: str, limit: int) -> None:
    """Show a user's balance and recent transactions."""

    _emit_lines(
        _call(CONTROLLER.credits, CreditsCommand(db_path=db_path, user_id=user_id, limit=limit)),
    )


@credits.command("grant")
@db_path_option
@click.argument("user_id")
@click.argument("amount", type=click.IntRange(min=1))
@click.option("--description", default="", help="Ledger note.")
def credits_grant(db_path: Path | None, user_id: str, amount: int, description: str) -> None:
    """Grant credits to a user."""

    _emit_lines(
        _call(
            CONTROLLER.grant_credits,
            GrantCreditsCommand(
                db_path=db_path,
                user_id=user_id,
                amount=amount,
                description=description,
            ),
        ),
    )


@issue_autopilot.command("purge")
@db_path_option
@click.option(
    "--older-than-days",
    type=click.IntRange(min=1),
    default=30,
    show_default=True,
    help="Delete final jobs last updated before this many days ago.",
)
def purge(db_path: Path | None, older_than_days: int) -> None:
    """Delete old completed/failed/closed/stopped jobs and their logs."""

    _emit_lines(
        _call(CONTROLLER.purge, PurgeCommand(db_path=db_path, older_than_days=older_than_days)),
    )


def _call(handler: Callable[[T], Iterable[str]], command: T) -> Iterable[str]:
    try:
        yield from handler(command)
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: Iterable[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    issue_autopilot()
