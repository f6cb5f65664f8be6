"""Run one claimed job end to end: checkout, agent session, outcome."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from functools import partial
from pathlib import Path
from typing import Protocol

from issue_autopilot.config import AgentSettings
from issue_autopilot.orchestrator.backend.agent_process import (
    AgentProcess,
    AgentRunResult,
    build_agent_env,
)
from issue_autopilot.orchestrator.backend.agent_protocol import (
    AgentEvent,
    event_to_output_line,
    extract_usage,
)
from issue_autopilot.orchestrator.billing import CreditLedger
from issue_autopilot.orchestrator.failure_classifier import (
    Fatal,
    Transient,
    UserInterrupted,
    UserStopped,
    classify_run_failure,
    should_retry,
)
from issue_autopilot.orchestrator.models import (
    AgentResult,
    AgentResultKind,
    IssueReply,
    IssueUnit,
    JobRecord,
    JobStatus,
    LogEntry,
    OutputKind,
    OutputLine,
    RunRequest,
    TokenUsage,
    make_job_id,
    truncate,
)
from issue_autopilot.orchestrator.output_store import OutputStore
from issue_autopilot.orchestrator.process_registry import ProcessRegistry
from issue_autopilot.orchestrator.prompt import build_followup_prompt, build_solve_prompt
from issue_autopilot.orchestrator.repository import JobRepository
from issue_autopilot.orchestrator.result_parser import parse_agent_output
from issue_autopilot.orchestrator.tracker import IssueTracker
from issue_autopilot.storage.common import utc_now

logger = logging.getLogger(__name__)

FAILURE_REASON_CHARS = 200
ERROR_LINE_CHARS = 300
TIMEOUT_REASON = "timeout"
BRANCH_PREFIX = "autopilot/issue-"


class Workspace(Protocol):
    def prepare(self, owner: str, repo: str, issue_number: int, *, branch: str) -> Path: ...

    def retain(self, owner: str, repo: str, issue_number: int) -> None: ...

    def push(self, repo_path: Path, branch: str) -> None: ...

    def log_since(self, repo_path: Path, base: str) -> str: ...

    def cleanup(self, owner: str, repo: str, issue_number: int) -> None: ...


def branch_name(issue_number: int) -> str:
    return f"{BRANCH_PREFIX}{issue_number}"


class JobRunner:
    """Execute one claimed job; ``run`` never raises.

    Every path ends in a conditional status transition out of ``working``
    plus a best-effort comment, so an external stop that lands first always
    wins over the run's own outcome.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        tracker: IssueTracker,
        workspace: Workspace,
        output_store: OutputStore,
        registry: ProcessRegistry,
        ledger: CreditLedger,
        agent: AgentSettings,
        max_retries: int,
        bot_username: str,
        env_source: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.tracker = tracker
        self.workspace = workspace
        self.output_store = output_store
        self.registry = registry
        self.ledger = ledger
        self.agent = agent
        self.max_retries = max_retries
        self.bot_username = bot_username
        self.env_source = env_source
        self.clock = clock

    def run(self, request: RunRequest) -> None:
        job_id = request.job_id
        try:
            job = self._enter_working(request)
        except Exception:
            logger.exception("Job %s: failed to enter working state", job_id)
            return
        if job is None:
            return

        run_usage = TokenUsage()
        try:
            self._execute(request, job, run_usage)
        except Exception as error:  # noqa: BLE001
            self._handle_error(request, job, error)
        finally:
            self.registry.remove(job_id)
            self.output_store.cleanup(job_id)
            self._settle(job, run_usage)

    # --------------------------------------------------------------- phases

    def _enter_working(self, request: RunRequest) -> JobRecord | None:
        moved = self.repository.transition(
            request.job_id,
            JobStatus.WORKING,
            expected=(JobStatus.WORKING,),
            branch=branch_name(request.issue_number),
            trigger_id=request.trigger_id,
            failure_reason=None,
            started_at=utc_now(),
            input_tokens=0,
            output_tokens=0,
        )
        job = self.repository.get_by_id(request.job_id)
        if job is None:
            logger.warning("Job %s vanished before it started", request.job_id)
            return None
        if not moved:
            logger.info("Job %s is %s, not working; skipping run", request.job_id, job.status.value)
            return None
        return job

    def _execute(self, request: RunRequest, job: JobRecord, run_usage: TokenUsage) -> None:
        if request.trigger_id > 0:
            self._notify(
                "eyes reaction",
                self.tracker.add_reaction,
                request.owner,
                request.repo,
                request.trigger_id,
                "eyes",
            )

        self._log(job.job_id, OutputKind.STATUS, "Cloning repository")
        repo_path = self.workspace.prepare(
            request.owner,
            request.repo,
            request.issue_number,
            branch=job.branch,
        )

        self._log(job.job_id, OutputKind.STATUS, "Fetching issue & comments")
        issue = self.tracker.fetch_unit(request.owner, request.repo, request.issue_number)
        replies = self.tracker.fetch_replies(request.owner, request.repo, request.issue_number)
        job.issue_title = issue.title

        entries = self.repository.get_logs(job.job_id)
        prompt = self._build_prompt(job, issue, replies, repo_path, entries)
        current = self.repository.get_by_id(job.job_id)
        if current is None or current.status is not JobStatus.WORKING:
            logger.info("Job %s left working before the agent started", job.job_id)
            return

        self._log(job.job_id, OutputKind.STATUS, "Running agent")
        result = self._run_agent(
            job,
            prompt,
            repo_path,
            run_usage,
            seen_seq=entries[-1].seq if entries else 0,
        )
        self._persist_usage(job, run_usage)

        if result.timed_out:
            self._finish_timeout(request, job)
            return

        current = self.repository.get_by_id(job.job_id)
        if current is None or current.status is not JobStatus.WORKING:
            logger.info(
                "Job %s was moved to %s externally; skipping result processing",
                job.job_id,
                current.status.value if current is not None else "deleted",
            )
            return

        if self.registry.was_interrupted(job.job_id):
            logger.info("Job %s was interrupted by a chat message; requeueing", job.job_id)
            self._transition(job, JobStatus.QUEUED)
            return

        outcome = parse_agent_output(
            result.text,
            default_branch=request.default_branch,
            log_since=partial(self.workspace.log_since, repo_path),
        )
        logger.info("Job %s agent result: %s", job.job_id, outcome.kind.value)

        if outcome.kind is AgentResultKind.PR_READY:
            self._finish_pr(request, job, issue, outcome, repo_path, run_usage)
        elif outcome.kind is AgentResultKind.NEEDS_CLARIFICATION:
            self._finish_clarification(request, job, outcome)
        else:
            self._finish_failed(request, job, outcome)

    def _build_prompt(
        self,
        job: JobRecord,
        issue: IssueUnit,
        replies: list[IssueReply],
        repo_path: Path,
        entries: list[LogEntry],
    ) -> str:
        messages = [entry.line.content for entry in entries if entry.line.kind is OutputKind.USER]
        if messages:
            return build_followup_prompt(
                issue,
                replies,
                messages,
                repo_path=str(repo_path),
                branch=job.branch,
            )
        return build_solve_prompt(issue, replies, repo_path=str(repo_path), branch=job.branch)

    def _run_agent(
        self,
        job: JobRecord,
        prompt: str,
        repo_path: Path,
        run_usage: TokenUsage,
        *,
        seen_seq: int,
    ) -> AgentRunResult:
        process = AgentProcess(
            command=self.agent.argv,
            cwd=repo_path,
            env=build_agent_env(api_key_env=self.agent.api_key_env, source=self.env_source),
            timeout_seconds=self.agent.timeout_seconds,
            kill_grace_seconds=self.agent.kill_grace_seconds,
            stdin_close_delay_seconds=self.agent.stdin_close_delay_seconds,
        )
        logger.info("Job %s: spawning agent", job.job_id)
        process.start(prompt)
        self.registry.register(job.job_id, process, delivered_seq=seen_seq)

        last_persist: float | None = None
        next_control_check = self.clock() + self.agent.control_poll_interval_seconds
        log_cursor = seen_seq
        released = False

        def release(reason: str) -> None:
            nonlocal released
            if released:
                return
            released = True
            logger.info("Job %s %s; terminating agent", job.job_id, reason)
            process.kill()

        def on_event(event: AgentEvent) -> None:
            nonlocal last_persist
            line = event_to_output_line(event)
            if line is not None:
                self._push(job.job_id, line)
            if extract_usage(event) is None:
                return
            run_usage.input_tokens = process.transcript.usage.input_tokens
            run_usage.output_tokens = process.transcript.usage.output_tokens
            now = self.clock()
            if last_persist is None or now - last_persist >= self.agent.usage_persist_interval_seconds:
                last_persist = now
                if not self._persist_usage(job, run_usage):
                    release("left working")

        def on_poll() -> None:
            nonlocal next_control_check, log_cursor
            now = self.clock()
            if released or now < next_control_check:
                return
            next_control_check = now + self.agent.control_poll_interval_seconds
            try:
                log_cursor = self._apply_external_controls(job.job_id, log_cursor, release)
            except Exception:
                logger.exception("Job %s: failed to check for external commands", job.job_id)

        result = process.supervise(on_event, on_poll)
        run_usage.input_tokens = result.usage.input_tokens
        run_usage.output_tokens = result.usage.output_tokens
        logger.info(
            "Job %s agent finished: input=%d output=%d tokens",
            job.job_id,
            run_usage.input_tokens,
            run_usage.output_tokens,
        )
        return result

    def _apply_external_controls(
        self,
        job_id: str,
        cursor: int,
        release: Callable[[str], None],
    ) -> int:
        """Honour stops and messages written by other processes; returns the new log cursor."""

        current = self.repository.get_by_id(job_id)
        if current is None or current.status is not JobStatus.WORKING:
            release(f"was moved to {current.status.value if current else 'deleted'} externally")
            return cursor
        for entry in self.repository.get_logs(job_id, after_seq=cursor):
            cursor = entry.seq
            if entry.line.kind is not OutputKind.USER:
                continue
            if self.registry.interrupt_and_send(job_id, entry.line.content, seq=entry.seq):
                logger.info("Job %s: operator message %d piped into the session", job_id, entry.seq)
        return cursor

    # -------------------------------------------------------------- outcomes

    def _finish_timeout(self, request: RunRequest, job: JobRecord) -> None:
        minutes = f"{self.agent.timeout_minutes:g}"
        self._log(job.job_id, OutputKind.ERROR, f"Agent timed out after {minutes} minutes")
        logger.error("Job %s: agent timed out after %s minutes", job.job_id, minutes)
        if not self._transition(job, JobStatus.FAILED, failure_reason=TIMEOUT_REASON):
            return
        self._notify(
            "timeout comment",
            self.tracker.post_comment,
            request.owner,
            request.repo,
            request.issue_number,
            f"I ran out of time working on this ({minutes} minute limit). "
            "The task may be too complex for a single run.",
        )
        self.workspace.cleanup(request.owner, request.repo, request.issue_number)

    def _finish_pr(  # noqa: PLR0913
        self,
        request: RunRequest,
        job: JobRecord,
        issue: IssueUnit,
        outcome: AgentResult,
        repo_path: Path,
        run_usage: TokenUsage,
    ) -> None:
        self._log(job.job_id, OutputKind.STATUS, "Pushing branch")
        self.workspace.push(repo_path, job.branch)

        self._log(job.job_id, OutputKind.STATUS, "Creating pull request")
        token_line = _token_line(run_usage)
        if outcome.summary:
            body = f"Fixes #{request.issue_number}\n\n{outcome.summary}{token_line}"
        else:
            body = f"Automated fix for #{request.issue_number}.{token_line}"
        pr_url = self.tracker.open_pull_request(
            request.owner,
            request.repo,
            head=job.branch,
            base=request.default_branch,
            title=f"Fix #{request.issue_number}: {issue.title}",
            body=body,
        )
        if not self._transition(
            job,
            JobStatus.PR_OPENED,
            pr_url=pr_url,
            summary=outcome.summary,
        ):
            return
        self._log(job.job_id, OutputKind.STATUS, f"Pull request opened: {pr_url}")

        summary = f"\n\n{outcome.summary}" if outcome.summary else ""
        self._notify(
            "pull request comment",
            self.tracker.post_comment,
            request.owner,
            request.repo,
            request.issue_number,
            f"I've opened a PR to fix this: {pr_url}{summary}{token_line}",
        )
        if request.trigger_id > 0:
            self._notify(
                "rocket reaction",
                self.tracker.add_reaction,
                request.owner,
                request.repo,
                request.trigger_id,
                "rocket",
            )
        self.workspace.cleanup(request.owner, request.repo, request.issue_number)

    def _finish_clarification(self, request: RunRequest, job: JobRecord, outcome: AgentResult) -> None:
        if not self._transition(job, JobStatus.WAITING_FOR_REPLY, summary=outcome.message):
            return
        self.workspace.retain(request.owner, request.repo, request.issue_number)
        self._notify(
            "clarification comment",
            self.tracker.post_comment,
            request.owner,
            request.repo,
            request.issue_number,
            "I need some clarification before I can solve this:\n\n"
            f"{outcome.message}\n\n"
            f"Reply here and mention @{self.bot_username} when you're ready for me to try again.",
        )

    def _finish_failed(self, request: RunRequest, job: JobRecord, outcome: AgentResult) -> None:
        if not self._transition(
            job,
            JobStatus.FAILED,
            failure_reason=truncate(outcome.message, FAILURE_REASON_CHARS),
        ):
            return
        self._notify(
            "failure comment",
            self.tracker.post_comment,
            request.owner,
            request.repo,
            request.issue_number,
            "I wasn't able to solve this automatically. Here's what happened:\n\n"
            f"{outcome.message}\n\nYou may need to tackle this one manually.",
        )
        self.workspace.cleanup(request.owner, request.repo, request.issue_number)

    def _handle_error(self, request: RunRequest, job: JobRecord, error: Exception) -> None:
        try:
            current = self.repository.get_by_id(job.job_id)
            failure = classify_run_failure(
                error,
                stopped=current is not None and current.status is JobStatus.STOPPED,
                interrupted=self.registry.was_interrupted(job.job_id),
            )
            if isinstance(failure, UserStopped):
                logger.info("Job %s was stopped by user; ignoring process error", job.job_id)
                return
            if isinstance(failure, UserInterrupted):
                logger.info("Job %s was interrupted by a chat message; requeueing", job.job_id)
                self._transition(job, JobStatus.QUEUED)
                return

            message = failure.reason if isinstance(failure, Fatal) else failure.message
            logger.error("Job %s failed: %s", job.job_id, truncate(message, ERROR_LINE_CHARS))
            self._log(job.job_id, OutputKind.ERROR, truncate(message, ERROR_LINE_CHARS))

            reason = truncate(message, FAILURE_REASON_CHARS)
            if should_retry(failure, retry_count=job.retry_count, max_retries=self.max_retries):
                attempt = job.retry_count + 1
                if self._transition(
                    job,
                    JobStatus.QUEUED,
                    retry_count=attempt,
                    failure_reason=reason,
                ):
                    logger.info(
                        "Job %s: retryable %s failure, retry %d/%d",
                        job.job_id,
                        failure.subkind.value if isinstance(failure, Transient) else "unknown",
                        attempt,
                        self.max_retries,
                    )
                    self._log(
                        job.job_id,
                        OutputKind.STATUS,
                        f"Retrying (attempt {attempt}/{self.max_retries})...",
                    )
                return

            if self._transition(
                job,
                JobStatus.FAILED,
                failure_reason=reason,
            ):
                self.workspace.cleanup(request.owner, request.repo, request.issue_number)
                self._notify(
                    "error comment",
                    self.tracker.post_comment,
                    request.owner,
                    request.repo,
                    request.issue_number,
                    "Something went wrong while I was working on this. The error has been logged.",
                )
        except Exception:
            logger.exception("Job %s: failed to record error outcome", job.job_id)

    # -------------------------------------------------------------- helpers

    def _transition(self, job: JobRecord, to: JobStatus, **values: object) -> bool:
        if job.issue_title is not None:
            values.setdefault("issue_title", job.issue_title)
        moved = self.repository.transition(
            job.job_id,
            to,
            expected=(JobStatus.WORKING,),
            **values,
        )
        if moved:
            job.status = to
        else:
            logger.info(
                "Job %s left working before it could move to %s; keeping external state",
                job.job_id,
                to.value,
            )
        return moved

    def _persist_usage(self, job: JobRecord, run_usage: TokenUsage) -> bool:
        """Write the run's usage; False once the job is no longer working."""

        try:
            return self.repository.record_progress(
                job.job_id,
                input_tokens=run_usage.input_tokens,
                output_tokens=run_usage.output_tokens,
            )
        except Exception:
            logger.exception("Job %s: failed to persist token usage", job.job_id)
            return True

    def _settle(self, job: JobRecord, run_usage: TokenUsage) -> None:
        try:
            self.ledger.settle(job_id=job.job_id, user_id=job.user_id, usage=run_usage)
        except Exception:
            logger.exception("Job %s: credit settlement failed", job.job_id)

    def _log(self, job_id: str, kind: OutputKind, content: str) -> None:
        self._push(job_id, OutputLine(utc_now(), kind, content))

    def _push(self, job_id: str, line: OutputLine) -> None:
        try:
            self.repository.append_log(job_id, line)
        except Exception:
            logger.exception("Job %s: failed to persist log line", job_id)
        self.output_store.push(job_id, line)

    def _notify(self, what: str, call: Callable[..., object], *args: object) -> None:
        try:
            call(*args)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to post %s: %s", what, error)


def run_request_for(job: JobRecord, default_branch: str) -> RunRequest:
    return RunRequest(
        job_id=make_job_id(job.owner, job.repo, job.issue_number),
        owner=job.owner,
        repo=job.repo,
        issue_number=job.issue_number,
        trigger_id=job.trigger_id,
        default_branch=default_branch,
    )


def _token_line(usage: TokenUsage) -> str:
    if usage.total == 0:
        return ""
    return (
        f"\n\n> Token usage: **{usage.input_tokens:,}** input / "
        f"**{usage.output_tokens:,}** output"
    )
