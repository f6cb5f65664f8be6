"""Operator-facing commands over the job store, plus runtime wiring."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import timedelta

from issue_autopilot.config import Settings
from issue_autopilot.orchestrator.billing import CreditLedger
from issue_autopilot.orchestrator.budget import TokenBudget
from issue_autopilot.orchestrator.errors import (
    DuplicateJobError,
    InvalidTransitionError,
    JobNotFoundError,
)
from issue_autopilot.orchestrator.git_ops import GitWorkspace
from issue_autopilot.orchestrator.log_tail import EndOfStream, JobLogTail
from issue_autopilot.orchestrator.models import (
    FINAL_STATUSES,
    IDLE_STATUSES,
    BudgetSnapshot,
    JobRecord,
    JobStatus,
    LogEntry,
    OutputKind,
    OutputLine,
    UnitOfWork,
    make_job_id,
)
from issue_autopilot.orchestrator.output_store import OutputStore
from issue_autopilot.orchestrator.process_registry import ProcessRegistry
from issue_autopilot.orchestrator.reconciliation import Reconciler
from issue_autopilot.orchestrator.repository import JobRepository
from issue_autopilot.orchestrator.runner import JobRunner, Workspace
from issue_autopilot.orchestrator.scheduler import Scheduler
from issue_autopilot.orchestrator.tracker import GitHubTracker, IssueTracker
from issue_autopilot.storage.common import utc_now

logger = logging.getLogger(__name__)

# An enqueue for a job in one of these leaves it untouched.
_ENQUEUE_NOOP_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.WORKING, JobStatus.STOPPED})


class OrchestratorService:
    """Commands an ingress layer or operator issues against jobs.

    Every command is a conditional transition or a log append in the job
    store, so it is safe to call from any process. ``stop`` and
    ``send_message`` also signal a live agent running in this process; a
    runner in another process sees the same store changes on its next
    control poll.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        tracker: IssueTracker,
        registry: ProcessRegistry,
        output_store: OutputStore,
        budget: TokenBudget,
        log_poll_interval_seconds: float = 2.0,
    ) -> None:
        self.repository = repository
        self.tracker = tracker
        self.registry = registry
        self.output_store = output_store
        self.budget = budget
        self.log_tail = JobLogTail(
            repository,
            output_store,
            poll_interval_seconds=log_poll_interval_seconds,
        )

    def enqueue(self, unit: UnitOfWork) -> JobRecord:
        """Create the job for a unit of work, or requeue an idle one.

        A job already queued, working or stopped by an operator is returned
        unchanged.
        """

        job_id = make_job_id(unit.owner, unit.repo, unit.issue_number)
        for _ in range(3):
            existing = self.repository.get_by_id(job_id)
            if existing is None:
                now = utc_now()
                job = JobRecord(
                    job_id=job_id,
                    owner=unit.owner,
                    repo=unit.repo,
                    issue_number=unit.issue_number,
                    status=JobStatus.QUEUED,
                    created_at=now,
                    updated_at=now,
                    trigger_id=unit.trigger_id,
                    issue_title=unit.issue_title,
                    user_id=unit.user_id,
                )
                try:
                    self.repository.create(job)
                except DuplicateJobError:
                    continue
                logger.info("Enqueued new job %s", job_id)
                return job

            if existing.status in _ENQUEUE_NOOP_STATUSES:
                logger.info("Job %s already %s; enqueue ignored", job_id, existing.status.value)
                return existing

            if self.repository.transition(
                job_id,
                JobStatus.QUEUED,
                expected=(existing.status,),
                trigger_id=unit.trigger_id,
                retry_count=0,
                failure_reason=None,
                issue_title=unit.issue_title or existing.issue_title,
            ):
                logger.info("Requeued job %s from %s", job_id, existing.status.value)
                return self._require(job_id)
        raise InvalidTransitionError(f"Job {job_id} kept changing state during enqueue")

    def stop(self, job_id: str) -> JobRecord:
        """Stop a job; a live agent in this process is killed after the write.

        An agent owned by another worker process is killed by its runner once
        the runner sees the ``stopped`` status.
        """

        job = self._require(job_id)
        if job.status in FINAL_STATUSES:
            raise InvalidTransitionError(f"Cannot stop job {job_id} in status {job.status.value}")
        active = [status for status in JobStatus if status not in FINAL_STATUSES]
        if not self.repository.transition(job_id, JobStatus.STOPPED, expected=active):
            raise InvalidTransitionError(f"Job {job_id} changed state before it could be stopped")
        if self.registry.kill(job_id):
            logger.info("Killed live agent for job %s", job_id)
        logger.info("Stopped job %s", job_id)
        return self._require(job_id)

    def start(self, job_id: str) -> JobRecord:
        job = self._require(job_id)
        if job.status is not JobStatus.STOPPED:
            raise InvalidTransitionError(
                f"Only stopped jobs can be started; {job_id} is {job.status.value}",
            )
        if not self.repository.transition(
            job_id,
            JobStatus.QUEUED,
            expected=(JobStatus.STOPPED,),
            retry_count=0,
            failure_reason=None,
        ):
            raise InvalidTransitionError(f"Job {job_id} changed state before it could be started")
        logger.info("Started job %s", job_id)
        return self._require(job_id)

    def send_message(self, job_id: str, text: str) -> bool:
        """Deliver an operator message.

        Returns True when the message was piped into a live session in this
        process. Otherwise it is recorded in the job log: a working job's
        runner picks it up from there, and an idle job is requeued so the next
        run sees it.
        """

        text = text.strip()
        if not text:
            raise ValueError("Message must not be empty.")
        job = self._require(job_id)
        if job.status is JobStatus.CLOSED:
            raise InvalidTransitionError(f"Job {job_id} is closed")

        line = OutputLine(utc_now(), OutputKind.USER, text)
        seq = self.repository.append_log(job_id, line)

        if job.status is JobStatus.WORKING:
            self.output_store.push(job_id, line)
            if self.registry.interrupt_and_send(job_id, text, seq=seq):
                logger.info("Job %s: message delivered to live session", job_id)
                return True
            logger.info("Job %s: message recorded for the worker that owns the run", job_id)
            return False

        if job.status is JobStatus.QUEUED:
            return False
        if self.repository.transition(job_id, JobStatus.QUEUED, expected=IDLE_STATUSES):
            logger.info("Job %s: requeued by operator message", job_id)
        return False

    def stream_log(self, job_id: str, *, after_seq: int = 0) -> Iterator[LogEntry | EndOfStream]:
        self._require(job_id)
        return self.log_tail.stream(job_id, after_seq=after_seq)

    def get_status(self, job_id: str) -> JobRecord:
        return self._require(job_id)

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobRecord]:
        return self.repository.list_jobs(status=status, limit=limit)

    def budget_status(self) -> BudgetSnapshot:
        return self.budget.status()

    def close(self, job_id: str) -> JobRecord:
        """Close the issue on the tracker and mark the job closed."""

        job = self._require(job_id)
        if job.status in FINAL_STATUSES:
            raise InvalidTransitionError(f"Cannot close job {job_id} in status {job.status.value}")
        self.tracker.close_unit(job.owner, job.repo, job.issue_number)
        self.registry.kill(job_id)
        self.repository.transition(job_id, JobStatus.CLOSED, expected=(job.status,))
        logger.info("Closed job %s", job_id)
        return self._require(job_id)

    def record_merge(self, pr_url: str) -> JobRecord | None:
        """Mark the job that opened `pr_url` completed; None if no job matches."""

        job = self.repository.get_by_pr_url(pr_url)
        if job is None:
            logger.info("Merged PR %s does not belong to any job", pr_url)
            return None
        if self.repository.transition(
            job.job_id,
            JobStatus.COMPLETED,
            expected=(JobStatus.PR_OPENED,),
        ):
            logger.info("Job %s completed: PR merged", job.job_id)
        return self._require(job.job_id)

    def _require(self, job_id: str) -> JobRecord:
        job = self.repository.get_by_id(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job


@dataclass(slots=True)
class Orchestrator:
    """Fully wired components of one worker process."""

    settings: Settings
    repository: JobRepository
    tracker: IssueTracker
    registry: ProcessRegistry
    output_store: OutputStore
    budget: TokenBudget
    ledger: CreditLedger
    runner: JobRunner
    reconciler: Reconciler
    scheduler: Scheduler
    service: OrchestratorService

    def close(self) -> None:
        close_tracker = getattr(self.tracker, "close", None)
        if callable(close_tracker):
            close_tracker()
        self.repository.close()


def build_orchestrator(
    settings: Settings,
    *,
    tracker: IssueTracker | None = None,
    workspace: Workspace | None = None,
    init_schema: bool = True,
) -> Orchestrator:
    """Wire every component from settings; collaborators may be injected."""

    repository = JobRepository(settings.db_path)
    if init_schema:
        repository.init_schema()
    if tracker is None:
        tracker = GitHubTracker(
            token=settings.github.token,
            api_url=settings.github.api_url,
            max_retries=settings.github.max_retries,
            timeout_seconds=settings.github.request_timeout_seconds,
        )
    if workspace is None:
        workspace = GitWorkspace(
            work_dir=settings.scheduler.work_dir,
            token=settings.github.token,
            git_host=settings.github.git_host,
        )

    registry = ProcessRegistry()
    output_store = OutputStore()
    budget = TokenBudget(
        repository,
        hourly_limit=settings.budget.hourly_token_budget,
        daily_limit=settings.budget.daily_token_budget,
    )
    ledger = CreditLedger(repository, enabled=settings.billing.enabled)
    runner = JobRunner(
        repository=repository,
        tracker=tracker,
        workspace=workspace,
        output_store=output_store,
        registry=registry,
        ledger=ledger,
        agent=settings.agent,
        max_retries=settings.scheduler.max_retries,
        bot_username=settings.github.bot_username,
    )
    reconciler = Reconciler(
        repository=repository,
        tracker=tracker,
        stale_after=timedelta(seconds=settings.stale_after_seconds),
    )
    scheduler = Scheduler(
        repository=repository,
        run_job=runner.run,
        budget=budget,
        tracker=tracker,
        ledger=ledger,
        reconciler=reconciler,
        max_concurrent_jobs=settings.scheduler.max_concurrent_jobs,
        poll_interval_seconds=settings.scheduler.poll_interval_seconds,
        stale_sweep_interval_seconds=settings.scheduler.stale_sweep_interval_seconds,
        shutdown_timeout_seconds=settings.scheduler.shutdown_timeout_seconds,
    )
    service = OrchestratorService(
        repository=repository,
        tracker=tracker,
        registry=registry,
        output_store=output_store,
        budget=budget,
        log_poll_interval_seconds=settings.scheduler.log_poll_interval_seconds,
    )
    return Orchestrator(
        settings=settings,
        repository=repository,
        tracker=tracker,
        registry=registry,
        output_store=output_store,
        budget=budget,
        ledger=ledger,
        runner=runner,
        reconciler=reconciler,
        scheduler=scheduler,
        service=service,
    )
