"""Deterministic stream-json agent for local runs and integration tests.

Speaks the same newline-delimited JSON protocol as the real agent CLI and
plays one fixed scenario. Standard library only, so it also runs as a plain
script path without the package installed.
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import time

SESSION_ID = "scripted-session"
SCENARIOS = ("pr-ready", "clarify", "legacy-pr", "no-result", "hang", "echo", "crash")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--scenario", choices=SCENARIOS, required=True)
    parser.add_argument("--summary", default="Fixed the widget rendering.")
    parser.add_argument("--input-tokens", type=int, default=1200)
    parser.add_argument("--output-tokens", type=int, default=300)
    parser.add_argument("--ignore-sigterm", action="store_true")
    args = parser.parse_args(argv)

    if args.ignore_sigterm:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    _read_message()
    _emit({"type": "system", "subtype": "init", "session_id": SESSION_ID})
    _emit(
        {
            "type": "content_block_start",
            "content_block": {
                "type": "tool_use",
                "name": "Read",
                "input": {"file_path": "README.md"},
            },
        },
    )
    usage = {"input_tokens": args.input_tokens, "output_tokens": args.output_tokens}

    if args.scenario == "pr-ready":
        block = json.dumps({"result": "PR_READY", "summary": args.summary})
        _final(f"Done.\n\n```json\n{block}\n```", usage)
        return _serve_followups()

    if args.scenario == "clarify":
        block = json.dumps(
            {
                "result": "NEEDS_CLARIFICATION",
                "questions": ["Which API version?", "Should old clients keep working?"],
            },
        )
        _final(f"I have questions.\n\n```json\n{block}\n```", usage)
        return _serve_followups()

    if args.scenario == "legacy-pr":
        _final("All tests pass.\nRESULT: PR_READY", usage)
        return _serve_followups()

    if args.scenario == "no-result":
        _final("I looked at the code but changed nothing.", usage)
        return 0

    if args.scenario == "crash":
        sys.stderr.write("fatal: scripted crash\n")
        sys.stderr.flush()
        return 3

    if args.scenario == "echo":
        _emit({"type": "assistant", "message": {"content": [{"type": "text", "text": "ready"}]}})
        return _serve_followups()

    # hang: report usage once, then never finish.
    _emit({"type": "assistant", "message": {"content": [], "usage": usage}})
    while True:
        time.sleep(0.1)


def _serve_followups() -> int:
    """Acknowledge every further user message until stdin closes."""

    while True:
        content = _read_message()
        if content is None:
            return 0
        _emit(
            {
                "type": "assistant",
                "message": {"content": [{"type": "text", "text": f"ack: {content}"}]},
            },
        )


def _final(text: str, usage: dict[str, int]) -> None:
    _emit(
        {
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": text}], "usage": usage},
        },
    )
    _emit({"type": "result", "subtype": "success", "result": text})


def _read_message() -> str | None:
    line = sys.stdin.readline()
    if not line:
        return None
    try:
        envelope = json.loads(line)
    except json.JSONDecodeError:
        return line.strip()
    message = envelope.get("message") if isinstance(envelope, dict) else None
    if isinstance(message, dict):
        return str(message.get("content") or "")
    return ""


def _emit(event: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(event) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
