"""Rolling token budget gate for admission control."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Protocol

from issue_autopilot.orchestrator.models import BudgetSnapshot
from issue_autopilot.storage.common import utc_now

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(hours=24)


class UsageSource(Protocol):
    def token_usage_since(self, since: datetime) -> int: ...


class TokenBudget:
    """Derive trailing 1h/24h token usage from job records.

    Each job carries the usage of its latest run, attributed to the run's
    ``started_at``. The gate is only as fresh as the runner's progress writes.
    It throttles new claims and never touches in-flight work. A limit of 0
    disables that window.
    """

    def __init__(self, source: UsageSource, *, hourly_limit: int = 0, daily_limit: int = 0) -> None:
        self.source = source
        self.hourly_limit = hourly_limit
        self.daily_limit = daily_limit

    def usage(self, now: datetime | None = None) -> tuple[int, int]:
        now = now or utc_now()
        return (
            self.source.token_usage_since(now - HOUR),
            self.source.token_usage_since(now - DAY),
        )

    def can_run(self, now: datetime | None = None) -> bool:
        if self.hourly_limit == 0 and self.daily_limit == 0:
            return True

        hourly, daily = self.usage(now)
        if self.hourly_limit > 0 and hourly >= self.hourly_limit:
            logger.warning("Hourly token budget exceeded: %d / %d", hourly, self.hourly_limit)
            return False
        if self.daily_limit > 0 and daily >= self.daily_limit:
            logger.warning("Daily token budget exceeded: %d / %d", daily, self.daily_limit)
            return False
        return True

    def status(self, now: datetime | None = None) -> BudgetSnapshot:
        now = now or utc_now()
        hourly, daily = self.usage(now)
        hourly_exceeded = self.hourly_limit > 0 and hourly >= self.hourly_limit
        daily_exceeded = self.daily_limit > 0 and daily >= self.daily_limit

        resumes_at: datetime | None = None
        if daily_exceeded:
            resumes_at = now + DAY
        elif hourly_exceeded:
            resumes_at = now + HOUR

        return BudgetSnapshot(
            hourly_used=hourly,
            hourly_limit=self.hourly_limit,
            daily_used=daily,
            daily_limit=self.daily_limit,
            paused=hourly_exceeded or daily_exceeded,
            resumes_at=resumes_at,
        )
