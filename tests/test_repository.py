from __future__ import annotations

import multiprocessing
import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import text

from issue_autopilot.orchestrator.errors import DuplicateJobError
from issue_autopilot.orchestrator.models import (
    CreditTransaction,
    JobStatus,
    OutputKind,
    OutputLine,
)
from issue_autopilot.orchestrator.repository import JobRepository
from issue_autopilot.storage.alembic_runner import current_revision
from issue_autopilot.storage.common import utc_now

pytestmark = [
    allure.epic("Job Store"),
    allure.feature("Claims & Transitions"),
]


def _claim_in_child(  # pragma: no cover - executed in child process
    db_path: str,
    start_event: multiprocessing.synchronize.Event,
    result_queue: multiprocessing.queues.Queue[str],
) -> None:
    repository = JobRepository(Path(db_path))
    try:
        start_event.wait(timeout=5)
        while True:
            job = repository.claim_next()
            if job is None:
                break
            result_queue.put(job.job_id)
    finally:
        repository.close()
        result_queue.put("done")


def test_alembic_schema_is_initialized_to_head(repository: JobRepository) -> None:
    with repository.engine.connect() as connection:
        tables = {
            row[0]
            for row in connection.execute(
                text("SELECT name FROM sqlite_master WHERE type = 'table'"),
            )
        }

    assert current_revision(repository.engine) == "20261016_0001"
    assert {"jobs", "job_log_lines", "credit_balances", "credit_transactions"} <= tables


def test_create_rejects_duplicate_identity(repository: JobRepository, make_job) -> None:
    repository.create(make_job())

    with pytest.raises(DuplicateJobError, match="acme/widget#42"):
        repository.create(make_job())


def test_upsert_replaces_full_record_and_is_idempotent(repository: JobRepository, make_job) -> None:
    job = make_job(user_id="user-1")
    repository.create(job)

    job.status = JobStatus.WORKING
    job.branch = "autopilot/issue-42"
    repository.upsert(job)
    repository.upsert(job)

    stored = repository.get_by_id(job.job_id)
    assert stored is not None
    assert stored.status is JobStatus.WORKING
    assert stored.branch == "autopilot/issue-42"
    assert stored.user_id == "user-1"
    assert repository.get_by_identity("acme", "widget", 42) == stored


def test_claim_next_takes_oldest_queued_job_once(repository: JobRepository, make_job) -> None:
    repository.create(make_job(issue_number=1, age=timedelta(minutes=5)))
    repository.create(make_job(issue_number=2, age=timedelta(minutes=10)))
    repository.create(make_job(issue_number=3, status=JobStatus.STOPPED, age=timedelta(hours=1)))

    first = repository.claim_next()
    second = repository.claim_next()

    assert first is not None
    assert first.job_id == "acme/widget#2"
    assert first.status is JobStatus.WORKING
    assert first.started_at is not None
    assert second is not None
    assert second.job_id == "acme/widget#1"
    assert repository.claim_next() is None


def test_concurrent_thread_claims_never_duplicate(repository: JobRepository, make_job) -> None:
    for number in range(1, 21):
        repository.create(make_job(issue_number=number))

    claimed: list[str] = []
    lock = threading.Lock()
    barrier = threading.Barrier(4)

    def _worker() -> None:
        barrier.wait(timeout=5)
        while True:
            job = repository.claim_next()
            if job is None:
                return
            with lock:
                claimed.append(job.job_id)

    threads = [threading.Thread(target=_worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(claimed) == 20
    assert len(set(claimed)) == 20
    assert repository.list_jobs(status=JobStatus.QUEUED) == []


def test_concurrent_process_claims_never_duplicate(tmp_path: Path, make_job) -> None:
    db_path = tmp_path / "claims.db"
    repository = JobRepository(db_path)
    repository.init_schema()
    for number in range(1, 13):
        repository.create(make_job(issue_number=number))
    repository.close()

    context = multiprocessing.get_context("spawn")
    start_event = context.Event()
    result_queue = context.Queue()
    processes = [
        context.Process(target=_claim_in_child, args=(str(db_path), start_event, result_queue))
        for _ in range(3)
    ]
    for process in processes:
        process.start()
    start_event.set()

    claimed: list[str] = []
    finished = 0
    while finished < len(processes):
        item = result_queue.get(timeout=60)
        if item == "done":
            finished += 1
        else:
            claimed.append(item)
    for process in processes:
        process.join(timeout=10)

    assert sorted(claimed) == sorted(f"acme/widget#{number}" for number in range(1, 13))


def test_transition_respects_expected_status(repository: JobRepository, make_job) -> None:
    repository.create(make_job(status=JobStatus.WORKING))

    assert repository.transition("acme/widget#42", JobStatus.STOPPED) is True
    assert (
        repository.transition(
            "acme/widget#42",
            JobStatus.FAILED,
            expected=(JobStatus.WORKING,),
            failure_reason="late",
        )
        is False
    )
    stored = repository.get_by_id("acme/widget#42")
    assert stored is not None
    assert stored.status is JobStatus.STOPPED
    assert stored.failure_reason is None
    assert repository.transition("missing/repo#1", JobStatus.QUEUED) is False


def test_transition_rejects_unknown_fields(repository: JobRepository, make_job) -> None:
    repository.create(make_job())

    with pytest.raises(ValueError, match="Unsupported transition fields"):
        repository.transition("acme/widget#42", JobStatus.WORKING, owner="someone-else")


def test_record_progress_only_touches_working_jobs(repository: JobRepository, make_job) -> None:
    repository.create(make_job(status=JobStatus.WORKING))

    assert repository.record_progress("acme/widget#42", input_tokens=100, output_tokens=20)
    repository.transition("acme/widget#42", JobStatus.STOPPED)
    assert not repository.record_progress("acme/widget#42", input_tokens=900, output_tokens=90)

    stored = repository.get_by_id("acme/widget#42")
    assert stored is not None
    assert stored.status is JobStatus.STOPPED
    assert stored.token_usage.total == 120


def test_stale_recovery_requeues_once_without_retry_increment(repository: JobRepository, make_job) -> None:
    repository.create(
        make_job(issue_number=1, status=JobStatus.WORKING, age=timedelta(hours=2), retry_count=1),
    )
    repository.create(make_job(issue_number=2, status=JobStatus.WORKING))
    cutoff = utc_now() - timedelta(minutes=35)

    assert repository.recover_stale_jobs(stale_before=cutoff) == ["acme/widget#1"]
    assert repository.recover_stale_jobs(stale_before=cutoff) == []

    recovered = repository.get_by_id("acme/widget#1")
    fresh = repository.get_by_id("acme/widget#2")
    assert recovered is not None and fresh is not None
    assert recovered.status is JobStatus.QUEUED
    assert recovered.retry_count == 1
    assert fresh.status is JobStatus.WORKING


def test_list_active_excludes_final_statuses(repository: JobRepository, make_job) -> None:
    statuses = [
        JobStatus.QUEUED,
        JobStatus.WORKING,
        JobStatus.WAITING_FOR_REPLY,
        JobStatus.PR_OPENED,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CLOSED,
        JobStatus.STOPPED,
    ]
    for number, status in enumerate(statuses, start=1):
        repository.create(make_job(issue_number=number, status=status))

    active = {job.status for job in repository.list_active()}

    assert active == {
        JobStatus.QUEUED,
        JobStatus.WORKING,
        JobStatus.WAITING_FOR_REPLY,
        JobStatus.PR_OPENED,
    }


def test_logs_are_replayed_in_order_from_cursor(repository: JobRepository, make_job) -> None:
    repository.create(make_job())
    repository.create(make_job(issue_number=7))
    seqs = [
        repository.append_log("acme/widget#42", OutputLine(utc_now(), OutputKind.STATUS, f"line {n}"))
        for n in range(3)
    ]
    repository.append_log("acme/widget#7", OutputLine(utc_now(), OutputKind.TEXT, "other job"))

    entries = repository.get_logs("acme/widget#42")
    tail = repository.get_logs("acme/widget#42", after_seq=seqs[0])

    assert seqs == sorted(seqs)
    assert [entry.line.content for entry in entries] == ["line 0", "line 1", "line 2"]
    assert [entry.seq for entry in tail] == seqs[1:]
    assert entries[0].line.kind is OutputKind.STATUS


def test_token_usage_since_and_stats(repository: JobRepository, make_job) -> None:
    repository.create(make_job(issue_number=1, status=JobStatus.WORKING))
    repository.create(
        make_job(issue_number=2, status=JobStatus.FAILED, age=timedelta(hours=3), repo="gadget"),
    )
    repository.record_progress("acme/widget#1", input_tokens=1000, output_tokens=500)
    with repository.engine.begin() as connection:
        connection.execute(
            text("UPDATE jobs SET input_tokens = 7000 WHERE job_id = 'acme/gadget#2'"),
        )

    assert repository.token_usage_since(utc_now() - timedelta(hours=1)) == 1500
    assert repository.token_usage_since(utc_now() - timedelta(days=1)) == 8500

    stats = repository.stats()
    assert stats.total_jobs == 2
    assert stats.by_status == {"working": 1, "failed": 1}
    assert stats.by_repo == {"acme/widget": 1, "acme/gadget": 1}
    assert stats.token_usage.input_tokens == 8000


def test_purge_removes_old_final_jobs_and_logs(repository: JobRepository, make_job) -> None:
    repository.create(make_job(issue_number=1, status=JobStatus.COMPLETED, age=timedelta(days=40)))
    repository.create(make_job(issue_number=2, status=JobStatus.QUEUED, age=timedelta(days=40)))
    repository.create(make_job(issue_number=3, status=JobStatus.FAILED))
    repository.append_log("acme/widget#1", OutputLine(utc_now(), OutputKind.STATUS, "old"))

    deleted = repository.purge_jobs(older_than=utc_now() - timedelta(days=30))

    assert deleted == 1
    assert repository.get_by_id("acme/widget#1") is None
    assert repository.get_logs("acme/widget#1") == []
    assert repository.get_by_id("acme/widget#2") is not None
    assert repository.get_by_id("acme/widget#3") is not None


def test_credit_grant_deduct_and_ledger(repository: JobRepository, make_job) -> None:
    balance = repository.add_credits("user-1", 5, description="welcome")
    assert balance.credits == 5
    assert balance.lifetime_purchased == 5

    assert repository.deduct_credits("user-1", 3) is True
    assert repository.deduct_credits("user-1", 3) is False
    assert repository.deduct_credits("nobody", 1) is False

    repository.record_credit_transaction(
        CreditTransaction(
            transaction_id="deduct-1",
            user_id="user-1",
            kind="deduction",
            amount=-3,
            balance_after=2,
            created_at=utc_now(),
            job_id="acme/widget#42",
            tokens_consumed=25_000,
        ),
    )
    after = repository.get_credit_balance("user-1")
    transactions = repository.list_credit_transactions("user-1")

    assert after is not None
    assert after.credits == 2
    assert after.lifetime_used == 3
    assert {transaction.kind for transaction in transactions} == {"grant", "deduction"}
    with pytest.raises(ValueError, match="positive"):
        repository.add_credits("user-1", 0)
