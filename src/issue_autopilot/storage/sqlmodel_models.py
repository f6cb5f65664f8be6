"""SQLModel ORM tables for job state, job logs and credits."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("owner", "repo", "issue_number", name="uq_jobs_identity"),
        Index("idx_jobs_queue", "status", "updated_at"),
    )

    job_id: str = Field(primary_key=True)
    owner: str = Field(index=True)
    repo: str = Field(index=True)
    issue_number: int
    status: str = Field(index=True)
    branch: str = ""
    trigger_id: int = 0
    issue_title: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    pr_url: str | None = Field(default=None, index=True)
    retry_count: int = 0
    failure_reason: str | None = None
    summary: str | None = Field(default=None, sa_column=Column(Text))
    user_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobLogLineRow(SQLModel, table=True):
    __tablename__ = "job_log_lines"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_log_lines_job_seq", "job_id", "seq"),)

    seq: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(index=True)
    kind: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CreditBalanceRow(SQLModel, table=True):
    __tablename__ = "credit_balances"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True)
    credits: int = 0
    lifetime_purchased: int = 0
    lifetime_used: int = 0
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CreditTransactionRow(SQLModel, table=True):
    __tablename__ = "credit_transactions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_credit_transactions_user_time", "user_id", "created_at"),)

    transaction_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    kind: str
    amount: int
    balance_after: int
    job_id: str | None = Field(default=None, index=True)
    tokens_consumed: int | None = None
    description: str = ""
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
