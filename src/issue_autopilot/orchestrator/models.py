"""Domain models for the job state machine, output lines and budgets."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    WORKING = "working"
    WAITING_FOR_REPLY = "waiting_for_reply"
    PR_OPENED = "pr_opened"
    COMPLETED = "completed"
    FAILED = "failed"
    CLOSED = "closed"
    STOPPED = "stopped"


# No more live output is expected once a job reaches one of these.
STREAM_TERMINAL_STATUSES = frozenset(
    {
        JobStatus.PR_OPENED,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CLOSED,
        JobStatus.STOPPED,
    },
)

# Excluded from active listings and reconciliation. pr_opened stays active
# because a merge or an externally closed issue can still move it.
FINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CLOSED, JobStatus.STOPPED},
)

# Statuses from which an operator chat message requeues the job.
IDLE_STATUSES = frozenset(
    {
        JobStatus.STOPPED,
        JobStatus.WAITING_FOR_REPLY,
        JobStatus.FAILED,
        JobStatus.PR_OPENED,
        JobStatus.COMPLETED,
    },
)


class OutputKind(str, Enum):
    """Kinds of normalized live-output lines."""

    TEXT = "text"
    TOOL = "tool"
    STATUS = "status"
    ERROR = "error"
    USER = "user"


class AgentResultKind(str, Enum):
    """Outcome parsed from the agent's final output."""

    PR_READY = "pr_ready"
    NEEDS_CLARIFICATION = "needs_clarification"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class OutputLine:
    """One normalized line of job output."""

    timestamp: datetime
    kind: OutputKind
    content: str

    def to_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind.value,
            "content": self.content,
        }


@dataclass(slots=True, frozen=True)
class LogEntry:
    """Durable log line with its replay cursor."""

    seq: int
    line: OutputLine


@dataclass(slots=True)
class TokenUsage:
    """Input/output token counters."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += max(0, input_tokens)
        self.output_tokens += max(0, output_tokens)


@dataclass(slots=True)
class JobRecord:
    """Full job record as persisted in the job store."""

    job_id: str
    owner: str
    repo: str
    issue_number: int
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    branch: str = ""
    trigger_id: int = 0
    issue_title: str | None = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    pr_url: str | None = None
    retry_count: int = 0
    failure_reason: str | None = None
    summary: str | None = None
    user_id: str | None = None
    started_at: datetime | None = None


@dataclass(slots=True)
class UnitOfWork:
    """Ingress payload describing one issue to work on."""

    owner: str
    repo: str
    issue_number: int
    trigger_id: int = 0
    issue_title: str | None = None
    user_id: str | None = None


@dataclass(slots=True)
class RunRequest:
    """Everything the runner needs to execute one claimed job."""

    job_id: str
    owner: str
    repo: str
    issue_number: int
    trigger_id: int
    default_branch: str


@dataclass(slots=True)
class AgentResult:
    """Structured result parsed from agent output."""

    kind: AgentResultKind
    message: str
    summary: str | None = None


@dataclass(slots=True)
class BudgetSnapshot:
    """Derived token budget status for operator visibility."""

    hourly_used: int
    hourly_limit: int
    daily_used: int
    daily_limit: int
    paused: bool
    resumes_at: datetime | None


@dataclass(slots=True)
class IssueUnit:
    """Issue as returned by the tracker."""

    number: int
    title: str
    body: str
    labels: tuple[str, ...]
    state: str
    author: str = ""
    url: str = ""


@dataclass(slots=True)
class IssueReply:
    """One discussion comment on an issue."""

    author: str
    body: str
    created_at: str


@dataclass(slots=True)
class CreditBalance:
    """Per-user credit balance."""

    user_id: str
    credits: int
    lifetime_purchased: int
    lifetime_used: int
    updated_at: datetime


@dataclass(slots=True)
class CreditTransaction:
    """Auditable credit ledger entry."""

    transaction_id: str
    user_id: str
    kind: str
    amount: int
    balance_after: int
    created_at: datetime
    job_id: str | None = None
    tokens_consumed: int | None = None
    description: str = ""


@dataclass(slots=True)
class JobStats:
    """Aggregate counters across all jobs."""

    total_jobs: int
    by_status: dict[str, int]
    by_repo: dict[str, int]
    token_usage: TokenUsage


def make_job_id(owner: str, repo: str, issue_number: int) -> str:
    """Serialize the job identity tuple into its string key."""

    return f"{owner}/{repo}#{issue_number}"


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]
