"""Repair job state after crashes and external changes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from issue_autopilot.orchestrator.models import JobStatus
from issue_autopilot.orchestrator.repository import JobRepository
from issue_autopilot.orchestrator.tracker import IssueTracker
from issue_autopilot.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReconcileSummary:
    checked: int = 0
    closed: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)
    errors: int = 0


class Reconciler:
    """Cross-check active jobs with the tracker and requeue orphaned runs.

    A working job whose ``updated_at`` is older than the agent timeout plus a
    grace margin is presumed orphaned by a dead process. Requeueing it is not
    a retry, so ``retry_count`` stays as it was.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        tracker: IssueTracker,
        stale_after: timedelta,
    ) -> None:
        self.repository = repository
        self.tracker = tracker
        self.stale_after = stale_after

    def sync_with_tracker(self, now: datetime | None = None) -> ReconcileSummary:
        """Startup pass over every active job."""

        now = now or utc_now()
        stale_before = now - self.stale_after
        summary = ReconcileSummary()
        for job in self.repository.list_active():
            summary.checked += 1
            try:
                unit = self.tracker.fetch_unit(job.owner, job.repo, job.issue_number)
            except Exception as error:  # noqa: BLE001
                summary.errors += 1
                logger.warning("Reconciliation skipped %s: %s", job.job_id, error)
                continue

            if unit.state == "closed":
                if self.repository.transition(job.job_id, JobStatus.CLOSED, expected=(job.status,)):
                    logger.info("Job %s: issue closed externally", job.job_id)
                    summary.closed.append(job.job_id)
                continue

            if job.status is JobStatus.WORKING and self.repository.requeue_stale(
                job.job_id,
                stale_before=stale_before,
            ):
                logger.info("Job %s: requeued orphaned working job", job.job_id)
                summary.requeued.append(job.job_id)

        logger.info(
            "Reconciliation done: checked=%d closed=%d requeued=%d errors=%d",
            summary.checked,
            len(summary.closed),
            len(summary.requeued),
            summary.errors,
        )
        return summary

    def sweep_stale(self, now: datetime | None = None) -> list[str]:
        """Periodic pass: requeue stale working jobs without asking the tracker."""

        now = now or utc_now()
        requeued = self.repository.recover_stale_jobs(stale_before=now - self.stale_after)
        for job_id in requeued:
            logger.warning("Job %s: stale in working, requeued", job_id)
        return requeued
