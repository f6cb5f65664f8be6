"""Newline-delimited JSON protocol spoken with the agent subprocess."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from issue_autopilot.orchestrator.models import OutputKind, OutputLine, TokenUsage
from issue_autopilot.storage.common import utc_now

_FINAL_RESULT_MARKER = re.compile(r"PR_READY|NEEDS_CLARIFICATION")
_BASH_PREVIEW_CHARS = 120


@dataclass(slots=True, frozen=True)
class AgentEvent:
    """One decoded inbound protocol event."""

    type: str
    payload: dict[str, Any]

    @property
    def subtype(self) -> str:
        return str(self.payload.get("subtype") or "")


def encode_user_message(content: str, *, session_id: str = "") -> str:
    """Outbound user envelope, newline-terminated."""

    envelope = {
        "type": "user",
        "message": {"role": "user", "content": content},
        "session_id": session_id,
        "parent_tool_use_id": None,
    }
    return json.dumps(envelope, ensure_ascii=False) + "\n"


def decode_event(line: str) -> AgentEvent | None:
    """Decode one stdout line; blank and non-JSON lines yield None."""

    stripped = line.strip()
    if not stripped:
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return AgentEvent(type=str(payload.get("type") or ""), payload=payload)


def extract_usage(event: AgentEvent) -> TokenUsage | None:
    """Usage figures carried by the event, summed over `usage` and `message.usage`."""

    found = False
    usage = TokenUsage()
    for candidate in (event.payload.get("usage"), _message(event).get("usage")):
        if not isinstance(candidate, dict):
            continue
        found = True
        usage.add(_as_int(candidate.get("input_tokens")), _as_int(candidate.get("output_tokens")))
    return usage if found else None


def event_to_output_line(event: AgentEvent, *, now: datetime | None = None) -> OutputLine | None:
    """Translate an event into at most one display line."""

    timestamp = now or utc_now()
    if event.type == "assistant":
        for block in _content_blocks(event):
            if block.get("type") == "text":
                text = str(block.get("text") or "").strip()
                if text:
                    return OutputLine(timestamp, OutputKind.TEXT, text)
            elif block.get("type") == "tool_use":
                return OutputLine(timestamp, OutputKind.TOOL, tool_use_summary(block))
        return None

    if event.type == "content_block_start":
        block = event.payload.get("content_block")
        if isinstance(block, dict) and block.get("type") == "tool_use":
            return OutputLine(timestamp, OutputKind.TOOL, tool_use_summary(block))
        return None

    if event.type == "content_block_delta":
        text = _text_delta(event).strip()
        if text:
            return OutputLine(timestamp, OutputKind.TEXT, text)
    return None


def tool_use_summary(block: dict[str, Any]) -> str:
    name = str(block.get("name") or "Unknown")
    tool_input = block.get("input")
    if not isinstance(tool_input, dict):
        tool_input = {}

    if name in {"Read", "Edit", "Write"}:
        return f"{name} {tool_input.get('file_path') or ''}"
    if name == "Bash":
        return f"Bash: {str(tool_input.get('command') or '')[:_BASH_PREVIEW_CHARS]}"
    if name == "Glob":
        return f"Glob: {tool_input.get('pattern') or ''}"
    if name == "Grep":
        scope = tool_input.get("glob") or tool_input.get("path") or ""
        return f"Grep: {tool_input.get('pattern') or ''} in {scope}"
    return name


def is_final_result(event: AgentEvent, accumulated_text: str = "") -> bool:
    """True for a `result` event that looks like the end of a solve turn."""

    if event.type != "result" or not event.payload.get("result"):
        return False
    result = event.payload["result"]
    text = result if isinstance(result, str) else accumulated_text
    return _FINAL_RESULT_MARKER.search(text) is not None


@dataclass(slots=True)
class Transcript:
    """Session id, result text and usage folded from the event stream."""

    session_id: str = ""
    text: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)

    def feed(self, event: AgentEvent) -> TokenUsage | None:
        """Fold one event; returns the usage delta it carried, if any."""

        if event.type == "system" and event.subtype == "init":
            self.session_id = str(event.payload.get("session_id") or "")
        elif event.type == "assistant":
            for block in _content_blocks(event):
                if block.get("type") == "text":
                    self.text += str(block.get("text") or "")
        elif event.type == "content_block_delta":
            self.text += _text_delta(event)
        elif event.type == "result" and isinstance(event.payload.get("result"), str):
            self.text = event.payload["result"]

        delta = extract_usage(event)
        if delta is not None:
            self.usage.add(delta.input_tokens, delta.output_tokens)
        return delta


def _message(event: AgentEvent) -> dict[str, Any]:
    message = event.payload.get("message")
    return message if isinstance(message, dict) else {}


def _content_blocks(event: AgentEvent) -> list[dict[str, Any]]:
    content = _message(event).get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _text_delta(event: AgentEvent) -> str:
    delta = event.payload.get("delta")
    if isinstance(delta, dict) and delta.get("type") == "text_delta":
        return str(delta.get("text") or "")
    return ""


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0
