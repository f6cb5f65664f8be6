"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from issue_autopilot.orchestrator.errors import DuplicateJobError
from issue_autopilot.orchestrator.models import (
    FINAL_STATUSES,
    CreditBalance,
    CreditTransaction,
    JobRecord,
    JobStats,
    JobStatus,
    LogEntry,
    OutputKind,
    OutputLine,
    TokenUsage,
)
from issue_autopilot.storage.alembic_runner import upgrade_head
from issue_autopilot.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from issue_autopilot.storage.sqlmodel_models import (
    CreditBalanceRow,
    CreditTransactionRow,
    JobLogLineRow,
    JobRow,
)

# Columns a conditional transition may change alongside the status.
_TRANSITION_FIELDS = frozenset(
    {
        "branch",
        "pr_url",
        "retry_count",
        "failure_reason",
        "summary",
        "trigger_id",
        "started_at",
        "issue_title",
        "input_tokens",
        "output_tokens",
    },
)


class JobRepository:
    """Job persistence facade.

    Every read returns detached dataclasses; every write opens its own short
    session, so one repository instance is safe to share between threads.
    Cross-process exclusion relies on conditional updates keyed on status.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Dispose the engine."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # ------------------------------------------------------------------ reads

    def get_by_id(self, job_id: str) -> JobRecord | None:
        with Session(self.engine) as session:
            row = session.get(JobRow, job_id)
            return _to_record(row) if row is not None else None

    def get_by_identity(self, owner: str, repo: str, issue_number: int) -> JobRecord | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(JobRow).where(
                    JobRow.owner == owner,
                    JobRow.repo == repo,
                    JobRow.issue_number == issue_number,
                ),
            ).one_or_none()
            return _to_record(row) if row is not None else None

    def get_by_pr_url(self, pr_url: str) -> JobRecord | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(JobRow).where(JobRow.pr_url == pr_url).limit(1),
            ).one_or_none()
            return _to_record(row) if row is not None else None

    def list_active(self) -> list[JobRecord]:
        """Jobs whose status is not final, oldest update first."""

        final = [status.value for status in FINAL_STATUSES]
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow)
                .where(col(JobRow.status).not_in(final))
                .order_by(col(JobRow.updated_at).asc()),
            ).all()
        return [_to_record(row) for row in rows]

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobRecord]:
        """Most recently updated jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(JobRow).order_by(col(JobRow.updated_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(JobRow.status == status.value)
            rows = session.exec(statement).all()
        return [_to_record(row) for row in rows]

    # ----------------------------------------------------------------- writes

    def create(self, job: JobRecord) -> JobRecord:
        """Insert a new job; raise DuplicateJobError when the identity exists."""

        with Session(self.engine) as session:
            session.add(_to_row(job))
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateJobError(
                    f"Job already exists for {job.owner}/{job.repo}#{job.issue_number}",
                ) from exc
        return job

    def upsert(self, job: JobRecord) -> None:
        """Replace the full record, inserting it when missing."""

        with Session(self.engine) as session:
            session.merge(_to_row(job))
            session.commit()

    def claim_next(self) -> JobRecord | None:
        """Atomically move the oldest queued job to working.

        The claim opens a new run: ``started_at`` is stamped and the token
        counters restart from zero.
        """

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(JobRow)
                    .where(JobRow.status == JobStatus.QUEUED.value)
                    .order_by(col(JobRow.updated_at).asc(), col(JobRow.created_at).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(JobRow)
                    .where(
                        col(JobRow.job_id) == candidate.job_id,
                        col(JobRow.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.WORKING.value,
                        started_at=now,
                        updated_at=now,
                        input_tokens=0,
                        output_tokens=0,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()

                claimed = session.get(JobRow, candidate.job_id, populate_existing=True)
                if claimed is None:
                    continue
                return _to_record(claimed)

    def transition(
        self,
        job_id: str,
        to: JobStatus,
        *,
        expected: Iterable[JobStatus] | None = None,
        **values: object,
    ) -> bool:
        """Set status (and optional fields) when the current status is expected.

        Returns False when the job is missing or another writer moved it first.
        """

        unknown = set(values) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")
        changes = {
            key: to_db_datetime(value) if isinstance(value, datetime) else value
            for key, value in values.items()
        }
        statement = sa_update(JobRow).where(col(JobRow.job_id) == job_id)
        if expected is not None:
            statement = statement.where(
                col(JobRow.status).in_([status.value for status in expected]),
            )
        statement = statement.values(
            status=to.value,
            updated_at=to_db_datetime(utc_now()),
            **changes,
        )
        with Session(self.engine) as session:
            result = session.exec(statement)
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def record_progress(self, job_id: str, *, input_tokens: int, output_tokens: int) -> bool:
        """Persist the current run's token counters while the job is still working."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.WORKING.value,
                )
                .values(
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def requeue_stale(self, job_id: str, *, stale_before: datetime) -> bool:
        """Requeue one working job whose last update predates the cutoff."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.WORKING.value,
                    col(JobRow.updated_at) < to_db_datetime(stale_before),
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def recover_stale_jobs(self, *, stale_before: datetime) -> list[str]:
        """Requeue every stale working job; retry_count is left untouched."""

        with Session(self.engine) as session:
            job_ids = session.exec(
                select(JobRow.job_id).where(
                    JobRow.status == JobStatus.WORKING.value,
                    col(JobRow.updated_at) < to_db_datetime(stale_before),
                ),
            ).all()
        return [
            job_id
            for job_id in job_ids
            if self.requeue_stale(job_id, stale_before=stale_before)
        ]

    def token_usage_since(self, since: datetime) -> int:
        """Sum of input+output tokens over runs started at or after `since`.

        Counters hold one run's usage and count toward that run's start.
        """

        with Session(self.engine) as session:
            total = session.exec(
                select(
                    func.coalesce(func.sum(JobRow.input_tokens + JobRow.output_tokens), 0),
                ).where(col(JobRow.started_at) >= to_db_datetime(since)),
            ).one()
        return int(total or 0)

    def purge_jobs(self, *, older_than: datetime) -> int:
        """Hard-delete final jobs (and their logs) last updated before the cutoff."""

        final = [status.value for status in FINAL_STATUSES]
        with Session(self.engine) as session:
            job_ids = list(
                session.exec(
                    select(JobRow.job_id).where(
                        col(JobRow.status).in_(final),
                        col(JobRow.updated_at) < to_db_datetime(older_than),
                    ),
                ).all(),
            )
            if not job_ids:
                return 0
            session.exec(sa_delete(JobLogLineRow).where(col(JobLogLineRow.job_id).in_(job_ids)))
            session.exec(sa_delete(JobRow).where(col(JobRow.job_id).in_(job_ids)))
            session.commit()
        return len(job_ids)

    def stats(self) -> JobStats:
        with Session(self.engine) as session:
            by_status = {
                status: int(count)
                for status, count in session.exec(
                    select(JobRow.status, func.count()).group_by(JobRow.status),
                ).all()
            }
            by_repo = {
                f"{owner}/{repo}": int(count)
                for owner, repo, count in session.exec(
                    select(JobRow.owner, JobRow.repo, func.count()).group_by(
                        JobRow.owner,
                        JobRow.repo,
                    ),
                ).all()
            }
            input_tokens, output_tokens = session.exec(
                select(
                    func.coalesce(func.sum(JobRow.input_tokens), 0),
                    func.coalesce(func.sum(JobRow.output_tokens), 0),
                ),
            ).one()
        return JobStats(
            total_jobs=sum(by_status.values()),
            by_status=by_status,
            by_repo=by_repo,
            token_usage=TokenUsage(int(input_tokens), int(output_tokens)),
        )

    # ------------------------------------------------------------------- logs

    def append_log(self, job_id: str, line: OutputLine) -> int:
        """Append one durable log line and return its sequence number."""

        with Session(self.engine) as session:
            row = JobLogLineRow(
                job_id=job_id,
                kind=line.kind.value,
                content=line.content,
                created_at=to_db_datetime(line.timestamp),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return row.seq or 0

    def get_logs(
        self,
        job_id: str,
        *,
        after_seq: int = 0,
        limit: int | None = None,
    ) -> list[LogEntry]:
        """Durable log lines with `seq > after_seq` in insertion order."""

        with Session(self.engine) as session:
            statement = (
                select(JobLogLineRow)
                .where(JobLogLineRow.job_id == job_id, col(JobLogLineRow.seq) > after_seq)
                .order_by(col(JobLogLineRow.seq).asc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [
            LogEntry(
                seq=row.seq or 0,
                line=OutputLine(
                    timestamp=to_utc_aware_datetime(row.created_at),
                    kind=OutputKind(row.kind),
                    content=row.content,
                ),
            )
            for row in rows
        ]

    # ---------------------------------------------------------------- credits

    def get_credit_balance(self, user_id: str) -> CreditBalance | None:
        with Session(self.engine) as session:
            row = session.get(CreditBalanceRow, user_id)
            return _to_balance(row) if row is not None else None

    def add_credits(self, user_id: str, amount: int, *, description: str = "") -> CreditBalance:
        """Grant credits, creating the balance on first use."""

        if amount <= 0:
            raise ValueError("amount must be positive")
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(CreditBalanceRow, user_id)
            if row is None:
                row = CreditBalanceRow(user_id=user_id, updated_at=now)
            row.credits += amount
            row.lifetime_purchased += amount
            row.updated_at = now
            session.add(row)
            session.add(
                CreditTransactionRow(
                    transaction_id=f"grant-{uuid4().hex}",
                    user_id=user_id,
                    kind="grant",
                    amount=amount,
                    balance_after=row.credits,
                    description=description,
                    created_at=now,
                ),
            )
            session.commit()
            session.refresh(row)
            return _to_balance(row)

    def deduct_credits(self, user_id: str, amount: int) -> bool:
        """Deduct when the balance covers the amount; False otherwise."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CreditBalanceRow)
                .where(
                    col(CreditBalanceRow.user_id) == user_id,
                    col(CreditBalanceRow.credits) >= amount,
                )
                .values(
                    credits=CreditBalanceRow.credits - amount,
                    lifetime_used=CreditBalanceRow.lifetime_used + amount,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def record_credit_transaction(self, transaction: CreditTransaction) -> None:
        with Session(self.engine) as session:
            session.add(
                CreditTransactionRow(
                    transaction_id=transaction.transaction_id,
                    user_id=transaction.user_id,
                    kind=transaction.kind,
                    amount=transaction.amount,
                    balance_after=transaction.balance_after,
                    job_id=transaction.job_id,
                    tokens_consumed=transaction.tokens_consumed,
                    description=transaction.description,
                    created_at=to_db_datetime(transaction.created_at),
                ),
            )
            session.commit()

    def list_credit_transactions(self, user_id: str, *, limit: int = 50) -> list[CreditTransaction]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(CreditTransactionRow)
                .where(CreditTransactionRow.user_id == user_id)
                .order_by(col(CreditTransactionRow.created_at).desc())
                .limit(limit),
            ).all()
        return [
            CreditTransaction(
                transaction_id=row.transaction_id,
                user_id=row.user_id,
                kind=row.kind,
                amount=row.amount,
                balance_after=row.balance_after,
                created_at=to_utc_aware_datetime(row.created_at),
                job_id=row.job_id,
                tokens_consumed=row.tokens_consumed,
                description=row.description,
            )
            for row in rows
        ]


def _to_row(job: JobRecord) -> JobRow:
    return JobRow(
        job_id=job.job_id,
        owner=job.owner,
        repo=job.repo,
        issue_number=job.issue_number,
        status=job.status.value,
        branch=job.branch,
        trigger_id=job.trigger_id,
        issue_title=job.issue_title,
        input_tokens=job.token_usage.input_tokens,
        output_tokens=job.token_usage.output_tokens,
        pr_url=job.pr_url,
        retry_count=job.retry_count,
        failure_reason=job.failure_reason,
        summary=job.summary,
        user_id=job.user_id,
        created_at=to_db_datetime(job.created_at),
        started_at=to_db_datetime(job.started_at) if job.started_at is not None else None,
        updated_at=to_db_datetime(job.updated_at),
    )


def _to_record(row: JobRow) -> JobRecord:
    return JobRecord(
        job_id=row.job_id,
        owner=row.owner,
        repo=row.repo,
        issue_number=row.issue_number,
        status=JobStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        branch=row.branch,
        trigger_id=row.trigger_id,
        issue_title=row.issue_title,
        token_usage=TokenUsage(row.input_tokens, row.output_tokens),
        pr_url=row.pr_url,
        retry_count=row.retry_count,
        failure_reason=row.failure_reason,
        summary=row.summary,
        user_id=row.user_id,
        started_at=(
            to_utc_aware_datetime(row.started_at) if row.started_at is not None else None
        ),
    )


def _to_balance(row: CreditBalanceRow) -> CreditBalance:
    return CreditBalance(
        user_id=row.user_id,
        credits=row.credits,
        lifetime_purchased=row.lifetime_purchased,
        lifetime_used=row.lifetime_used,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
