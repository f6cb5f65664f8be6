from __future__ import annotations

import allure
import pytest

from issue_autopilot.orchestrator.models import IssueReply, IssueUnit
from issue_autopilot.orchestrator.prompt import build_followup_prompt, build_solve_prompt

pytestmark = [
    allure.epic("Agent Runs"),
    allure.feature("Prompts"),
]

ISSUE = IssueUnit(
    number=42,
    title="Widget renders upside down",
    body="Steps: open the widget. It is upside down. {not a placeholder}",
    labels=("bug", "ui"),
    state="open",
    author="octocat",
    url="https://github.com/acme/widget/issues/42",
)


def test_solve_prompt_carries_issue_context_and_output_contract() -> None:
    replies = [IssueReply(author="maintainer", body="Only on Safari.", created_at="2026-10-15T10:00:00Z")]

    prompt = build_solve_prompt(ISSUE, replies, repo_path="/work/acme-widget-42/widget", branch="autopilot/issue-42")

    assert "## Issue #42: Widget renders upside down" in prompt
    assert "**Labels:** bug, ui" in prompt
    assert "{not a placeholder}" in prompt
    assert "--- @maintainer (2026-10-15T10:00:00Z) ---\nOnly on Safari." in prompt
    assert "/work/acme-widget-42/widget" in prompt
    assert "`autopilot/issue-42`" in prompt
    assert '{"result": "PR_READY"' in prompt
    assert "Do NOT push the branch." in prompt


def test_solve_prompt_without_body_or_comments() -> None:
    bare = IssueUnit(number=1, title="Empty", body="  ", labels=(), state="open")

    prompt = build_solve_prompt(bare, [], repo_path="/r", branch="b")

    assert "(no description)" in prompt
    assert "**Labels:** none" in prompt
    assert "**Author:** @unknown" in prompt
    assert "### Comments" not in prompt


def test_followup_prompt_marks_only_the_newest_message() -> None:
    prompt = build_followup_prompt(
        ISSUE,
        [],
        ["Use the v2 API.", "Also add a regression test."],
        repo_path="/r",
        branch="autopilot/issue-42",
    )

    assert "--- operator (earlier) ---\nUse the v2 API." in prompt
    assert "--- operator (NEW) ---\nAlso add a regression test." in prompt
    assert prompt.count("(NEW)") == 1
    assert "NEEDS_CLARIFICATION" in prompt


def test_followup_prompt_requires_a_message() -> None:
    with pytest.raises(ValueError, match="at least one"):
        build_followup_prompt(ISSUE, [], [], repo_path="/r", branch="b")
