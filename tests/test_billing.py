from __future__ import annotations

import allure
import pytest

from issue_autopilot.orchestrator.billing import CreditLedger, credits_for
from issue_autopilot.orchestrator.models import TokenUsage
from issue_autopilot.orchestrator.repository import JobRepository

pytestmark = [
    allure.epic("Admission Control"),
    allure.feature("Credits"),
]


@pytest.mark.parametrize(
    ("tokens", "credits"),
    [(0, 0), (1, 1), (10_000, 1), (10_001, 2), (25_000, 3)],
)
def test_credits_round_up_per_ten_thousand_tokens(tokens: int, credits: int) -> None:
    assert credits_for(tokens) == credits


def test_disabled_billing_always_admits(repository: JobRepository) -> None:
    ledger = CreditLedger(repository, enabled=False)

    assert ledger.has_credits("user-1") is True
    assert ledger.settle(job_id="acme/widget#42", user_id="user-1", usage=TokenUsage(5000, 0)) is None


def test_jobs_without_user_are_free(repository: JobRepository) -> None:
    ledger = CreditLedger(repository, enabled=True)

    assert ledger.has_credits(None) is True
    assert ledger.settle(job_id="acme/widget#42", user_id=None, usage=TokenUsage(5000, 0)) is None


def test_has_credits_requires_positive_balance(repository: JobRepository) -> None:
    ledger = CreditLedger(repository, enabled=True)

    assert ledger.has_credits("user-1") is False
    repository.add_credits("user-1", 1)
    assert ledger.has_credits("user-1") is True


def test_settle_deducts_and_records_transaction(repository: JobRepository) -> None:
    repository.add_credits("user-1", 10)
    ledger = CreditLedger(repository, enabled=True)

    transaction = ledger.settle(
        job_id="acme/widget#42",
        user_id="user-1",
        usage=TokenUsage(input_tokens=20_000, output_tokens=1_000),
    )

    assert transaction is not None
    assert transaction.amount == -3
    assert transaction.balance_after == 7
    assert transaction.tokens_consumed == 21_000
    balance = repository.get_credit_balance("user-1")
    assert balance is not None
    assert balance.credits == 7
    kinds = [entry.kind for entry in repository.list_credit_transactions("user-1")]
    assert sorted(kinds) == ["deduction", "grant"]


def test_settle_skips_when_balance_cannot_cover_cost(repository: JobRepository) -> None:
    repository.add_credits("user-1", 1)
    ledger = CreditLedger(repository, enabled=True)

    assert ledger.settle(job_id="acme/widget#42", user_id="user-1", usage=TokenUsage(50_000, 0)) is None
    balance = repository.get_credit_balance("user-1")
    assert balance is not None
    assert balance.credits == 1
