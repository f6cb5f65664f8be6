from __future__ import annotations

from datetime import timedelta

import allure

from issue_autopilot.orchestrator.models import JobStatus
from issue_autopilot.orchestrator.reconciliation import Reconciler
from issue_autopilot.orchestrator.repository import JobRepository

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Recovery"),
]


def _reconciler(repository: JobRepository, tracker) -> Reconciler:
    return Reconciler(repository=repository, tracker=tracker, stale_after=timedelta(minutes=35))


def _status(repository: JobRepository, job_id: str) -> JobStatus:
    job = repository.get_by_id(job_id)
    assert job is not None
    return job.status


def test_startup_sync_closes_and_requeues(repository: JobRepository, tracker, make_job) -> None:
    for number in (1, 2, 3, 4):
        tracker.add_unit("acme", "widget", number)
    tracker.add_unit("acme", "widget", 1, state="closed")
    tracker.add_unit("acme", "widget", 5, state="closed")
    repository.create(make_job(issue_number=1, status=JobStatus.QUEUED))
    repository.create(
        make_job(issue_number=2, status=JobStatus.WORKING, age=timedelta(hours=1), retry_count=1),
    )
    repository.create(make_job(issue_number=3, status=JobStatus.WORKING))
    repository.create(make_job(issue_number=4, status=JobStatus.PR_OPENED))
    repository.create(make_job(issue_number=5, status=JobStatus.FAILED))
    repository.create(make_job(issue_number=6, status=JobStatus.WAITING_FOR_REPLY))

    summary = _reconciler(repository, tracker).sync_with_tracker()

    assert summary.checked == 5
    assert summary.closed == ["acme/widget#1"]
    assert summary.requeued == ["acme/widget#2"]
    assert summary.errors == 1
    assert _status(repository, "acme/widget#1") is JobStatus.CLOSED
    assert _status(repository, "acme/widget#2") is JobStatus.QUEUED
    assert _status(repository, "acme/widget#3") is JobStatus.WORKING
    assert _status(repository, "acme/widget#4") is JobStatus.PR_OPENED
    assert _status(repository, "acme/widget#5") is JobStatus.FAILED
    assert _status(repository, "acme/widget#6") is JobStatus.WAITING_FOR_REPLY
    requeued = repository.get_by_id("acme/widget#2")
    assert requeued is not None
    assert requeued.retry_count == 1


def test_pull_request_of_closed_issue_is_closed(repository: JobRepository, tracker, make_job) -> None:
    tracker.add_unit("acme", "widget", 9, state="closed")
    repository.create(make_job(issue_number=9, status=JobStatus.PR_OPENED))

    _reconciler(repository, tracker).sync_with_tracker()

    assert _status(repository, "acme/widget#9") is JobStatus.CLOSED


def test_periodic_sweep_requeues_only_stale_working_jobs(repository: JobRepository, tracker, make_job) -> None:
    repository.create(make_job(issue_number=1, status=JobStatus.WORKING, age=timedelta(hours=2)))
    repository.create(make_job(issue_number=2, status=JobStatus.WORKING, age=timedelta(minutes=10)))
    repository.create(make_job(issue_number=3, status=JobStatus.QUEUED, age=timedelta(hours=2)))
    reconciler = _reconciler(repository, tracker)

    assert reconciler.sweep_stale() == ["acme/widget#1"]
    assert reconciler.sweep_stale() == []
    assert _status(repository, "acme/widget#2") is JobStatus.WORKING
