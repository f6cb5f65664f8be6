"""Prompt templates for solve and follow-up agent runs."""

from __future__ import annotations

from collections.abc import Sequence

from issue_autopilot.orchestrator.models import IssueReply, IssueUnit

_OUTPUT_FORMAT = """
## Output Format

When you are done, finish your reply with EXACTLY ONE fenced JSON block.

If you successfully implemented the solution:
```json
{"result": "PR_READY", "summary": "<one paragraph describing the change>"}
```

If you need more information or the issue is ambiguous:
```json
{"result": "NEEDS_CLARIFICATION", "questions": ["<question>", "<question>"]}
```

## Rules

- Do NOT push the branch. The server pushes and opens the pull request.
- Do NOT create a pull request.
- DO commit your changes to the current branch.
- Keep changes minimal and focused on the issue.
- If the issue is unclear or you cannot solve it, use NEEDS_CLARIFICATION.
"""

SOLVE_PROMPT = """\
You are an autonomous coding agent. You have been assigned an issue to solve.

{issue_block}

## Your Task

You are working in a cloned repository at: {repo_path}
The branch `{branch}` has been created for you.

1. Read and understand the issue and all comments above.
2. Explore the codebase to understand the relevant code.
3. Implement the fix or feature requested in the issue.
4. Make clean, well-structured commits with descriptive messages.
5. Run the available tests where it makes sense.
"""

FOLLOWUP_PROMPT = """\
You are an autonomous coding agent continuing work on an issue.

{issue_block}

## Operator Messages

An operator has been chatting with you about this issue. Earlier messages
are context; the message marked NEW is the one to act on now.

{messages_block}

## Your Task

You are working in a cloned repository at: {repo_path}
The branch `{branch}` is checked out and may already contain your earlier commits.
Address the NEW operator message, then commit your changes.
"""


def build_solve_prompt(
    issue: IssueUnit,
    replies: Sequence[IssueReply],
    *,
    repo_path: str,
    branch: str,
) -> str:
    return SOLVE_PROMPT.format(
        issue_block=_issue_block(issue, replies),
        repo_path=repo_path,
        branch=branch,
    ) + _OUTPUT_FORMAT


def build_followup_prompt(
    issue: IssueUnit,
    replies: Sequence[IssueReply],
    messages: Sequence[str],
    *,
    repo_path: str,
    branch: str,
) -> str:
    """Follow-up variant: the newest operator message is marked as new."""

    if not messages:
        raise ValueError("Follow-up prompt needs at least one operator message.")
    lines: list[str] = []
    for index, message in enumerate(messages):
        marker = "NEW" if index == len(messages) - 1 else "earlier"
        lines.append(f"--- operator ({marker}) ---\n{message}")
    return FOLLOWUP_PROMPT.format(
        issue_block=_issue_block(issue, replies),
        messages_block="\n\n".join(lines),
        repo_path=repo_path,
        branch=branch,
    ) + _OUTPUT_FORMAT


def _issue_block(issue: IssueUnit, replies: Sequence[IssueReply]) -> str:
    labels = ", ".join(issue.labels) if issue.labels else "none"
    parts = [
        f"## Issue #{issue.number}: {issue.title}",
        "",
        f"**Author:** @{issue.author or 'unknown'}",
        f"**Labels:** {labels}",
    ]
    if issue.url:
        parts.append(f"**URL:** {issue.url}")
    parts += ["", "### Description", "", issue.body.strip() or "(no description)"]
    if replies:
        comments = "\n\n".join(
            f"--- @{reply.author} ({reply.created_at}) ---\n{reply.body}" for reply in replies
        )
        parts += ["", "### Comments", "", comments]
    return "\n".join(parts)
