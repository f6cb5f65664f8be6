"""Controllers for the operator CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from issue_autopilot.config import Settings
from issue_autopilot.orchestrator.log_tail import EndOfStream
from issue_autopilot.orchestrator.models import (
    BudgetSnapshot,
    JobRecord,
    JobStatus,
    LogEntry,
    UnitOfWork,
)
from issue_autopilot.orchestrator.services import Orchestrator, build_orchestrator
from issue_autopilot.storage.common import utc_now

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class StoreCommand:
    """CLI input for commands that only need the job store."""

    db_path: Path | None


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for enqueueing an issue."""

    db_path: Path | None
    owner: str
    repo: str
    issue_number: int
    user_id: str | None = None
    trigger_id: int = 0


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobCommand:
    """CLI input for commands that act on one job."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class MessageCommand:
    """CLI input for operator chat messages."""

    db_path: Path | None
    job_id: str
    text: str


@dataclass(slots=True)
class LogsCommand:
    """CLI input for log replay and follow."""

    db_path: Path | None
    job_id: str
    follow: bool
    after_seq: int = 0


@dataclass(slots=True)
class MergeCommand:
    """CLI input for recording a merged pull request."""

    db_path: Path | None
    pr_url: str


@dataclass(slots=True)
class GrantCreditsCommand:
    """CLI input for granting credits."""

    db_path: Path | None
    user_id: str
    amount: int
    description: str


@dataclass(slots=True)
class CreditsCommand:
    """CLI input for a user's balance and ledger."""

    db_path: Path | None
    user_id: str
    limit: int


@dataclass(slots=True)
class PurgeCommand:
    """CLI input for purging old final jobs."""

    db_path: Path | None
    older_than_days: int


class AutopilotCliController:
    """Coordinates worker, job command and inspection CLI operations."""

    def serve(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
        with _orchestrator(settings) as orchestrator:
            orchestrator.scheduler.run_forever()
            drained = orchestrator.scheduler.running == 0
        return ["Worker stopped." if drained else "Worker stopped with jobs still running."]

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job = orchestrator.service.enqueue(
                UnitOfWork(
                    owner=command.owner,
                    repo=command.repo,
                    issue_number=command.issue_number,
                    trigger_id=command.trigger_id,
                    user_id=command.user_id,
                ),
            )
        return [f"Job enqueued: job_id={job.job_id} status={job.status.value}"]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _orchestrator(settings) as orchestrator:
            jobs = orchestrator.service.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} status={job.status.value} retries={job.retry_count} "
                f"tokens={job.token_usage.total} updated={job.updated_at.isoformat()}",
            )
        return lines

    def status(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job = orchestrator.service.get_status(command.job_id)
        return _render_job(job)

    def stop(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job = orchestrator.service.stop(command.job_id)
        return [f"Job stopped: {job.job_id}"]

    def start(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job = orchestrator.service.start(command.job_id)
        return [f"Job re-queued: {job.job_id}"]

    def close(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job = orchestrator.service.close(command.job_id)
        return [f"Job closed: {job.job_id}"]

    def message(self, command: MessageCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            delivered = orchestrator.service.send_message(command.job_id, command.text)
            job = orchestrator.service.get_status(command.job_id)
        if delivered:
            return [f"Message delivered to the running agent for {job.job_id}."]
        if job.status is JobStatus.WORKING:
            return [f"Message recorded; the worker running {job.job_id} will pass it to the agent."]
        return [f"Message recorded for the next run; job {job.job_id} is {job.status.value}."]

    def logs(self, command: LogsCommand) -> Iterator[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            service = orchestrator.service
            if not command.follow:
                service.get_status(command.job_id)
                for entry in orchestrator.repository.get_logs(
                    command.job_id,
                    after_seq=command.after_seq,
                ):
                    yield _render_entry(entry)
                return
            for item in service.stream_log(command.job_id, after_seq=command.after_seq):
                if isinstance(item, EndOfStream):
                    job = service.get_status(command.job_id)
                    yield f"--- end of stream ({job.status.value}) ---"
                    return
                yield _render_entry(item)

    def merged(self, command: MergeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job = orchestrator.service.record_merge(command.pr_url)
        if job is None:
            return [f"No job opened {command.pr_url}"]
        return [f"Job {job.job_id} is {job.status.value}"]

    def budget(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            snapshot = orchestrator.service.budget_status()
        return _render_budget(snapshot)

    def stats(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            stats = orchestrator.repository.stats()

        lines = [
            f"Jobs: {stats.total_jobs}",
            f"Tokens: input={stats.token_usage.input_tokens:,} "
            f"output={stats.token_usage.output_tokens:,}",
            "By status:",
        ]
        lines.extend(f"  {status}: {count}" for status, count in sorted(stats.by_status.items()))
        lines.append("By repository:")
        lines.extend(f"  {repo}: {count}" for repo, count in sorted(stats.by_repo.items()))
        return lines

    def grant_credits(self, command: GrantCreditsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            balance = orchestrator.repository.add_credits(
                command.user_id,
                command.amount,
                description=command.description,
            )
        return [f"Granted {command.amount} credits to {balance.user_id}; balance={balance.credits}"]

    def credits(self, command: CreditsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            balance = orchestrator.repository.get_credit_balance(command.user_id)
            transactions = orchestrator.repository.list_credit_transactions(
                command.user_id,
                limit=command.limit,
            )
        if balance is None:
            return [f"No credit balance for {command.user_id}"]

        lines = [
            f"User: {balance.user_id}",
            f"Credits: {balance.credits} (purchased={balance.lifetime_purchased} "
            f"used={balance.lifetime_used})",
            f"Transactions: {len(transactions)}",
        ]
        for transaction in transactions:
            lines.append(
                f"  {transaction.created_at.isoformat()} {transaction.kind} "
                f"amount={transaction.amount:+d} balance={transaction.balance_after} "
                f"job={transaction.job_id or '-'}",
            )
        return lines

    def purge(self, command: PurgeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        cutoff = utc_now() - timedelta(days=command.older_than_days)
        with _orchestrator(settings) as orchestrator:
            deleted = orchestrator.repository.purge_jobs(older_than=cutoff)
        return [f"Purged jobs: {deleted} (final and last updated before {cutoff.isoformat()})"]


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _render_job(job: JobRecord) -> list[str]:
    return [
        f"Job: {job.job_id}",
        f"Status: {job.status.value}",
        f"Title: {job.issue_title or '-'}",
        f"Branch: {job.branch or '-'}",
        f"Retries: {job.retry_count}",
        f"Tokens: input={job.token_usage.input_tokens:,} output={job.token_usage.output_tokens:,}",
        f"PR: {job.pr_url or '-'}",
        f"Failure: {job.failure_reason or '-'}",
        f"User: {job.user_id or '-'}",
        f"Created: {job.created_at.isoformat()}",
        f"Started: {job.started_at.isoformat() if job.started_at else '-'}",
        f"Updated: {job.updated_at.isoformat()}",
    ]


def _render_entry(entry: LogEntry) -> str:
    line = entry.line
    return f"[{entry.seq}] {line.timestamp.isoformat()} {line.kind.value}: {line.content}"


def _render_budget(snapshot: BudgetSnapshot) -> list[str]:
    def _limit(value: int) -> str:
        return f"{value:,}" if value > 0 else "unlimited"

    return [
        f"Hourly: {snapshot.hourly_used:,} / {_limit(snapshot.hourly_limit)}",
        f"Daily: {snapshot.daily_used:,} / {_limit(snapshot.daily_limit)}",
        f"Paused: {'yes' if snapshot.paused else 'no'}",
        f"Resumes at: {snapshot.resumes_at.isoformat() if snapshot.resumes_at else '-'}",
    ]


@contextmanager
def _orchestrator(settings: Settings) -> Iterator[Orchestrator]:
    orchestrator = build_orchestrator(settings)
    try:
        yield orchestrator
    finally:
        orchestrator.close()
