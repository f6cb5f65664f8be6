"""Failure taxonomy produced once at the error-detection boundary."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

import httpx

from issue_autopilot.orchestrator.errors import AgentSpawnError, TrackerError


class TransientKind(str, Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    CLONE = "clone"
    SPAWN = "spawn"


@dataclass(slots=True, frozen=True)
class Transient:
    """Infrastructure failure worth retrying."""

    subkind: TransientKind
    message: str
    matched_pattern: str | None = None


@dataclass(slots=True, frozen=True)
class Fatal:
    """Failure that ends the job."""

    reason: str


@dataclass(slots=True, frozen=True)
class UserStopped:
    """The job was stopped by an operator while its process ran."""


@dataclass(slots=True, frozen=True)
class UserInterrupted:
    """The run was interrupted on purpose by a chat message."""


Failure = Transient | Fatal | UserStopped | UserInterrupted

_SPAWN_PATTERNS: tuple[str, ...] = (r"failed to spawn",)
_CLONE_PATTERNS: tuple[str, ...] = (r"clone.*failed", r"git.*error")
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (r"rate limit", r"too many requests", r"\b429\b")
_NETWORK_PATTERNS: tuple[str, ...] = (
    r"econnreset",
    r"econnrefused",
    r"etimedout",
    r"enotfound",
    r"connection reset",
    r"connection refused",
    r"could not resolve host",
    r"name or service not known",
    r"temporary failure in name resolution",
    r"timed out",
)
_SERVER_ERROR_PATTERNS: tuple[str, ...] = (r"\b500\b", r"\b502\b", r"\b503\b")

_RULES: tuple[tuple[TransientKind, tuple[str, ...]], ...] = (
    (TransientKind.SPAWN, _SPAWN_PATTERNS),
    (TransientKind.CLONE, _CLONE_PATTERNS),
    (TransientKind.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
    (TransientKind.NETWORK, _NETWORK_PATTERNS),
    (TransientKind.SERVER_ERROR, _SERVER_ERROR_PATTERNS),
)


def classify_error(error: BaseException | str) -> Transient | Fatal:
    """Classify a runner error into Transient(subkind) or Fatal(reason)."""

    message = error if isinstance(error, str) else _describe(error)

    if isinstance(error, AgentSpawnError):
        return Transient(TransientKind.SPAWN, message)
    if isinstance(error, httpx.TransportError | ConnectionError | TimeoutError):
        return Transient(TransientKind.NETWORK, message)
    if isinstance(error, TrackerError) and error.status_code is not None:
        if error.status_code == 429:  # noqa: PLR2004
            return Transient(TransientKind.RATE_LIMIT, message)
        if error.status_code >= 500:  # noqa: PLR2004
            return Transient(TransientKind.SERVER_ERROR, message)

    for kind, patterns in _RULES:
        pattern = _first_match(message, patterns)
        if pattern is not None:
            return Transient(kind, message, matched_pattern=pattern)
    return Fatal(message)


def should_retry(failure: Failure, *, retry_count: int, max_retries: int) -> bool:
    return isinstance(failure, Transient) and retry_count < max_retries


def _describe(error: BaseException) -> str:
    text = str(error).strip()
    return text or type(error).__name__


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if re.search(pattern, haystack, re.IGNORECASE):
            return pattern
    return None


def classify_run_failure(error: BaseException, *, stopped: bool, interrupted: bool) -> Failure:
    """Classify an error raised inside a run, given what operators did meanwhile."""

    if stopped:
        return UserStopped()
    if interrupted:
        return UserInterrupted()
    return classify_error(error)
