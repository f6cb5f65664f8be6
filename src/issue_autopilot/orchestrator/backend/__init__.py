"""Agent subprocess backend: wire protocol and process supervision."""

from issue_autopilot.orchestrator.backend.agent_process import (
    AgentProcess,
    AgentRunResult,
    ProcessHandle,
    StdinState,
    build_agent_env,
)
from issue_autopilot.orchestrator.backend.agent_protocol import (
    AgentEvent,
    Transcript,
    decode_event,
    encode_user_message,
)

__all__ = [
    "AgentEvent",
    "AgentProcess",
    "AgentRunResult",
    "ProcessHandle",
    "StdinState",
    "Transcript",
    "build_agent_env",
    "decode_event",
    "encode_user_message",
]
