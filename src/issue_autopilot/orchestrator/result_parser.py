"""Recover the agent's final result from its captured text."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable

from issue_autopilot.orchestrator.errors import GitCommandError
from issue_autopilot.orchestrator.models import AgentResult, AgentResultKind

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```json\s*\n(\{.*?\})\s*\n```", re.DOTALL)
_LEGACY_CLARIFICATION = re.compile(r"RESULT:\s*NEEDS_CLARIFICATION\s*\n(.*?)(?:```|$)", re.DOTALL)
_LEGACY_PR_READY = re.compile(r"RESULT:\s*PR_READY")

NO_RESULT_MESSAGE = "Agent did not produce commits or a clear result marker."


def parse_agent_output(
    text: str,
    *,
    default_branch: str,
    log_since: Callable[[str], str] | None = None,
) -> AgentResult:
    """Structured JSON block, then legacy markers, then commit history.

    ``log_since(base)`` returns ``git log --oneline base..HEAD`` output and
    raises GitCommandError when ``base`` does not resolve.
    """

    structured = _parse_structured(text)
    if structured is not None:
        return structured

    legacy = _parse_legacy(text)
    if legacy is not None:
        return legacy

    if log_since is not None:
        inferred = _infer_from_history(log_since, default_branch)
        if inferred is not None:
            return inferred

    return AgentResult(kind=AgentResultKind.FAILED, message=NO_RESULT_MESSAGE)


def candidate_bases(default_branch: str) -> list[str]:
    candidates = [
        default_branch,
        f"origin/{default_branch}" if default_branch else "",
        "main",
        "origin/main",
        "master",
        "origin/master",
    ]
    return [base for base in candidates if base]


def _parse_structured(text: str) -> AgentResult | None:
    match = _FENCED_JSON.search(text)
    if match is None:
        return None
    try:
        payload = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    result = payload.get("result")
    if result == "PR_READY":
        summary = payload.get("summary")
        return AgentResult(
            kind=AgentResultKind.PR_READY,
            message="Agent completed.",
            summary=summary if isinstance(summary, str) and summary.strip() else None,
        )
    if result == "NEEDS_CLARIFICATION":
        questions = payload.get("questions")
        if isinstance(questions, list):
            message = "\n".join(str(question) for question in questions)
        else:
            message = str(questions or "")
        return AgentResult(kind=AgentResultKind.NEEDS_CLARIFICATION, message=message)
    return None


def _parse_legacy(text: str) -> AgentResult | None:
    clarification = _LEGACY_CLARIFICATION.search(text)
    if clarification is not None:
        return AgentResult(
            kind=AgentResultKind.NEEDS_CLARIFICATION,
            message=clarification.group(1).strip(),
        )
    if _LEGACY_PR_READY.search(text):
        return AgentResult(kind=AgentResultKind.PR_READY, message="Agent marked as ready for PR.")
    return None


def _infer_from_history(log_since: Callable[[str], str], default_branch: str) -> AgentResult | None:
    for base in candidate_bases(default_branch):
        try:
            history = log_since(base).strip()
        except GitCommandError:
            continue
        # The first base that resolves decides.
        if history:
            return AgentResult(
                kind=AgentResultKind.PR_READY,
                message=f"Agent made commits (detected via git log):\n{history}",
            )
        logger.debug("No commits ahead of %s", base)
        return None
    return None
