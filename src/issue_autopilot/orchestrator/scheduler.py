"""Concurrency-limited poll loop that claims jobs and dispatches runners."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from issue_autopilot.orchestrator.billing import INSUFFICIENT_CREDITS, CreditLedger
from issue_autopilot.orchestrator.budget import TokenBudget
from issue_autopilot.orchestrator.models import JobRecord, JobStatus, RunRequest, truncate
from issue_autopilot.orchestrator.reconciliation import Reconciler
from issue_autopilot.orchestrator.repository import JobRepository
from issue_autopilot.orchestrator.runner import FAILURE_REASON_CHARS, run_request_for
from issue_autopilot.orchestrator.tracker import IssueTracker

logger = logging.getLogger(__name__)

INSUFFICIENT_CREDITS_COMMENT = (
    "I can't start on this issue: the account that requested it has no credits left. "
    "Top up the balance and mention me again."
)


class Scheduler:
    """Claim at most one job per tick and run each claimed job on its own thread."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        run_job: Callable[[RunRequest], None],
        budget: TokenBudget,
        tracker: IssueTracker,
        ledger: CreditLedger,
        reconciler: Reconciler,
        max_concurrent_jobs: int = 2,
        poll_interval_seconds: float = 2.0,
        stale_sweep_interval_seconds: float = 300.0,
        shutdown_timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.run_job = run_job
        self.budget = budget
        self.tracker = tracker
        self.ledger = ledger
        self.reconciler = reconciler
        self.max_concurrent_jobs = max_concurrent_jobs
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_sweep_interval_seconds = stale_sweep_interval_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.clock = clock
        self._stop = threading.Event()
        self._idle = threading.Condition()
        self._threads: dict[str, threading.Thread] = {}

    @property
    def running(self) -> int:
        with self._idle:
            return len(self._threads)

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def tick(self) -> str | None:
        """Attempt one claim; returns the dispatched job id, if any."""

        if self._stop.is_set():
            return None
        if self.running >= self.max_concurrent_jobs:
            return None
        if not self.budget.can_run():
            return None

        job = self.repository.claim_next()
        if job is None:
            return None
        logger.info("Claimed job %s", job.job_id)

        try:
            return self._start_claimed(job)
        except Exception as error:
            logger.exception("Job %s: could not be started after its claim", job.job_id)
            self._fail_claimed(job, f"Failed to start job: {error}")
            return None

    def _start_claimed(self, job: JobRecord) -> str | None:
        if not self.ledger.has_credits(job.user_id):
            self._reject_for_credits(job)
            return None

        try:
            default_branch = self.tracker.default_branch(job.owner, job.repo)
        except Exception as error:  # noqa: BLE001
            self._fail_claimed(job, f"Failed to resolve default branch: {error}")
            return None

        self._dispatch(run_request_for(job, default_branch))
        return job.job_id

    def _fail_claimed(self, job: JobRecord, message: str) -> None:
        reason = truncate(message, FAILURE_REASON_CHARS)
        logger.error("Job %s: %s", job.job_id, reason)
        self.repository.transition(
            job.job_id,
            JobStatus.FAILED,
            expected=(JobStatus.WORKING,),
            failure_reason=reason,
        )

    def run_forever(self) -> None:
        """Poll until a stop is requested, then drain in-flight runs."""

        with self._signal_handlers():
            try:
                self.reconciler.sync_with_tracker()
            except Exception:
                logger.exception("Startup reconciliation failed")

            next_sweep = self.clock() + self.stale_sweep_interval_seconds
            while not self._stop.is_set():
                try:
                    self.tick()
                except Exception:
                    logger.exception("Scheduler tick failed")

                if self.clock() >= next_sweep:
                    next_sweep = self.clock() + self.stale_sweep_interval_seconds
                    try:
                        self.reconciler.sweep_stale()
                    except Exception:
                        logger.exception("Stale-job sweep failed")

                self._stop.wait(self.poll_interval_seconds)

            self.shutdown()

    def request_stop(self) -> None:
        self._stop.set()

    def shutdown(self, timeout_seconds: float | None = None) -> bool:
        """Stop polling and wait for in-flight runs; False if the deadline passed."""

        self._stop.set()
        timeout = self.shutdown_timeout_seconds if timeout_seconds is None else timeout_seconds
        drained = self.wait_idle(timeout)
        if not drained:
            with self._idle:
                remaining = sorted(self._threads)
            logger.warning(
                "Shutdown deadline reached with %d job(s) still running: %s",
                len(remaining),
                ", ".join(remaining),
            )
        return drained

    def wait_idle(self, timeout_seconds: float) -> bool:
        deadline = time.monotonic() + timeout_seconds
        with self._idle:
            while self._threads:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def _dispatch(self, request: RunRequest) -> None:
        thread = threading.Thread(
            target=self._run_and_release,
            args=(request,),
            name=f"job-{request.job_id}",
            daemon=True,
        )
        with self._idle:
            self._threads[request.job_id] = thread
        try:
            thread.start()
        except Exception:
            with self._idle:
                self._threads.pop(request.job_id, None)
                self._idle.notify_all()
            raise

    def _run_and_release(self, request: RunRequest) -> None:
        try:
            self.run_job(request)
        except Exception:
            logger.exception("Runner crashed for job %s", request.job_id)
        finally:
            with self._idle:
                self._threads.pop(request.job_id, None)
                self._idle.notify_all()

    def _reject_for_credits(self, job: JobRecord) -> None:
        logger.info("Job %s: user %s has no credits", job.job_id, job.user_id)
        moved = self.repository.transition(
            job.job_id,
            JobStatus.FAILED,
            expected=(JobStatus.WORKING,),
            failure_reason=INSUFFICIENT_CREDITS,
        )
        if not moved:
            return
        try:
            self.tracker.post_comment(
                job.owner,
                job.repo,
                job.issue_number,
                INSUFFICIENT_CREDITS_COMMENT,
            )
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to post insufficient-credits comment: %s", error)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, shutting down", name)
            self._stop.set()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
