"""Credit pre-flight checks and post-run settlement."""

from __future__ import annotations

import logging
import math

from issue_autopilot.orchestrator.models import CreditTransaction, TokenUsage
from issue_autopilot.orchestrator.repository import JobRepository
from issue_autopilot.storage.common import utc_now

logger = logging.getLogger(__name__)

TOKENS_PER_CREDIT = 10_000
INSUFFICIENT_CREDITS = "Insufficient credits"


def credits_for(tokens: int) -> int:
    return math.ceil(tokens / TOKENS_PER_CREDIT) if tokens > 0 else 0


class CreditLedger:
    """Per-user credit checks on top of the job repository."""

    def __init__(self, repository: JobRepository, *, enabled: bool) -> None:
        self.repository = repository
        self.enabled = enabled

    def has_credits(self, user_id: str | None) -> bool:
        """True unless billing applies to this user and the balance is empty."""

        if not self.enabled or not user_id:
            return True
        balance = self.repository.get_credit_balance(user_id)
        return balance is not None and balance.credits > 0

    def settle(self, *, job_id: str, user_id: str | None, usage: TokenUsage) -> CreditTransaction | None:
        """Deduct the run's cost and record the transaction.

        Returns None when billing does not apply, the run was free, or the
        balance could not cover the cost.
        """

        if not self.enabled or not user_id:
            return None
        cost = credits_for(usage.total)
        if cost == 0:
            return None
        if not self.repository.deduct_credits(user_id, cost):
            logger.warning(
                "Could not deduct %d credits from user %s for job %s",
                cost,
                user_id,
                job_id,
            )
            return None

        balance = self.repository.get_credit_balance(user_id)
        now = utc_now()
        transaction = CreditTransaction(
            transaction_id=f"deduct-{job_id}-{int(now.timestamp() * 1000)}",
            user_id=user_id,
            kind="deduction",
            amount=-cost,
            balance_after=balance.credits if balance is not None else 0,
            created_at=now,
            job_id=job_id,
            tokens_consumed=usage.total,
            description=f"Job {job_id}: {usage.total:,} tokens",
        )
        self.repository.record_credit_transaction(transaction)
        logger.info("Deducted %d credits for %d tokens (job %s)", cost, usage.total, job_id)
        return transaction
