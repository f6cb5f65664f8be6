"""Runtime configuration for the orchestrator, loaded from the environment."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_AGENT_COMMAND = (
    "claude -p --verbose --input-format stream-json --output-format stream-json "
    '--allowedTools "Bash(git:*),Bash(npm:*),Bash(yarn:*),Bash(node:*),Bash(npx:*),'
    'Read,Edit,Write,Glob,Grep"'
)
_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(slots=True)
class AgentSettings:
    """Agent subprocess settings."""

    command: str = DEFAULT_AGENT_COMMAND
    timeout_minutes: float = 30
    kill_grace_seconds: float = 10.0
    stdin_close_delay_seconds: float = 3.0
    usage_persist_interval_seconds: float = 3.0
    control_poll_interval_seconds: float = 1.0
    api_key_env: str = "ANTHROPIC_API_KEY"

    @property
    def argv(self) -> list[str]:
        return shlex.split(self.command)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60


@dataclass(slots=True)
class SchedulerSettings:
    """Poll loop, concurrency and recovery settings."""

    max_concurrent_jobs: int = 2
    poll_interval_seconds: float = 2.0
    stale_sweep_interval_seconds: float = 300.0
    stale_grace_minutes: float = 5
    shutdown_timeout_seconds: float = 60.0
    max_retries: int = 2
    work_dir: Path = Path("/tmp/issue-autopilot-jobs")  # noqa: S108
    log_poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class BudgetSettings:
    """Token budget limits; 0 disables a window."""

    hourly_token_budget: int = 0
    daily_token_budget: int = 0


@dataclass(slots=True)
class GitHubSettings:
    """Issue tracker and git host settings."""

    token: str = ""
    api_url: str = "https://api.github.com"
    git_host: str = "https://github.com"
    bot_username: str = "issue-autopilot"
    max_retries: int = 3
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class BillingSettings:
    """Credit billing mode."""

    enabled: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".autopilot.db")
    agent: AgentSettings = field(default_factory=AgentSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    budget: BudgetSettings = field(default_factory=BudgetSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)
    billing: BillingSettings = field(default_factory=BillingSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from AUTOPILOT_* variables with local-development defaults."""

        settings = cls(
            db_path=db_path or Path(os.getenv("AUTOPILOT_DB_PATH", ".autopilot.db")),
            agent=AgentSettings(
                command=os.getenv("AUTOPILOT_AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
                timeout_minutes=_env_float("AUTOPILOT_AGENT_TIMEOUT_MINUTES", 30),
                kill_grace_seconds=_env_float("AUTOPILOT_AGENT_KILL_GRACE_SECONDS", 10.0),
                stdin_close_delay_seconds=_env_float(
                    "AUTOPILOT_AGENT_STDIN_CLOSE_DELAY_SECONDS",
                    3.0,
                ),
                usage_persist_interval_seconds=_env_float(
                    "AUTOPILOT_USAGE_PERSIST_INTERVAL_SECONDS",
                    3.0,
                ),
                control_poll_interval_seconds=_env_float(
                    "AUTOPILOT_AGENT_CONTROL_POLL_SECONDS",
                    1.0,
                ),
                api_key_env=os.getenv("AUTOPILOT_AGENT_API_KEY_ENV", "ANTHROPIC_API_KEY"),
            ),
            scheduler=SchedulerSettings(
                max_concurrent_jobs=_env_int("AUTOPILOT_MAX_CONCURRENT_JOBS", 2),
                poll_interval_seconds=_env_float("AUTOPILOT_POLL_INTERVAL_SECONDS", 2.0),
                stale_sweep_interval_seconds=_env_float(
                    "AUTOPILOT_STALE_SWEEP_INTERVAL_SECONDS",
                    300.0,
                ),
                stale_grace_minutes=_env_float("AUTOPILOT_STALE_GRACE_MINUTES", 5),
                shutdown_timeout_seconds=_env_float("AUTOPILOT_SHUTDOWN_TIMEOUT_SECONDS", 60.0),
                max_retries=_env_int("AUTOPILOT_MAX_RETRIES", 2),
                work_dir=Path(os.getenv("AUTOPILOT_WORK_DIR", "/tmp/issue-autopilot-jobs")),  # noqa: S108
                log_poll_interval_seconds=_env_float("AUTOPILOT_LOG_POLL_INTERVAL_SECONDS", 2.0),
            ),
            budget=BudgetSettings(
                hourly_token_budget=_env_int("AUTOPILOT_HOURLY_TOKEN_BUDGET", 0),
                daily_token_budget=_env_int("AUTOPILOT_DAILY_TOKEN_BUDGET", 0),
            ),
            github=GitHubSettings(
                token=os.getenv("AUTOPILOT_GITHUB_TOKEN", os.getenv("GITHUB_TOKEN", "")),
                api_url=os.getenv("AUTOPILOT_GITHUB_API_URL", "https://api.github.com"),
                git_host=os.getenv("AUTOPILOT_GIT_HOST", "https://github.com"),
                bot_username=os.getenv("AUTOPILOT_BOT_USERNAME", "issue-autopilot"),
                max_retries=_env_int("AUTOPILOT_GITHUB_MAX_RETRIES", 3),
                request_timeout_seconds=_env_float(
                    "AUTOPILOT_GITHUB_REQUEST_TIMEOUT_SECONDS",
                    30.0,
                ),
            ),
            billing=BillingSettings(
                enabled=_env_bool("AUTOPILOT_BILLING_ENABLED", default=False),
            ),
            log_level=os.getenv("AUTOPILOT_LOG_LEVEL", "INFO").strip().upper(),
        )
        settings.validate()
        return settings

    @property
    def stale_after_seconds(self) -> float:
        """Age past which a working job is presumed orphaned."""

        return self.agent.timeout_seconds + self.scheduler.stale_grace_minutes * 60

    def validate(self) -> None:  # noqa: C901
        """Raise ValueError naming the offending variable."""

        if not self.agent.argv:
            raise ValueError("AUTOPILOT_AGENT_COMMAND must not be empty.")
        if self.agent.timeout_minutes <= 0:
            raise ValueError("AUTOPILOT_AGENT_TIMEOUT_MINUTES must be > 0.")
        if self.agent.kill_grace_seconds < 0:
            raise ValueError("AUTOPILOT_AGENT_KILL_GRACE_SECONDS must be >= 0.")
        if self.agent.stdin_close_delay_seconds < 0:
            raise ValueError("AUTOPILOT_AGENT_STDIN_CLOSE_DELAY_SECONDS must be >= 0.")
        if self.agent.control_poll_interval_seconds <= 0:
            raise ValueError("AUTOPILOT_AGENT_CONTROL_POLL_SECONDS must be > 0.")
        if self.scheduler.max_concurrent_jobs <= 0:
            raise ValueError("AUTOPILOT_MAX_CONCURRENT_JOBS must be > 0.")
        if self.scheduler.poll_interval_seconds <= 0:
            raise ValueError("AUTOPILOT_POLL_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.stale_sweep_interval_seconds <= 0:
            raise ValueError("AUTOPILOT_STALE_SWEEP_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.max_retries < 0:
            raise ValueError("AUTOPILOT_MAX_RETRIES must be >= 0.")
        if self.budget.hourly_token_budget < 0:
            raise ValueError("AUTOPILOT_HOURLY_TOKEN_BUDGET must be >= 0.")
        if self.budget.daily_token_budget < 0:
            raise ValueError("AUTOPILOT_DAILY_TOKEN_BUDGET must be >= 0.")
        for name, url in (
            ("AUTOPILOT_GITHUB_API_URL", self.github.api_url),
            ("AUTOPILOT_GIT_HOST", self.github.git_host),
        ):
            parsed = urlparse(url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(f"{name} must be an absolute http(s) URL, got {url!r}.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"Invalid AUTOPILOT_LOG_LEVEL: {self.log_level!r}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
