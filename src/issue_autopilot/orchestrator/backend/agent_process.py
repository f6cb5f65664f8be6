"""Supervised agent subprocess with a bidirectional JSON-line session."""

from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from issue_autopilot.orchestrator.backend.agent_protocol import (
    AgentEvent,
    Transcript,
    decode_event,
    encode_user_message,
    is_final_result,
)
from issue_autopilot.orchestrator.errors import AgentSpawnError
from issue_autopilot.orchestrator.models import TokenUsage

logger = logging.getLogger(__name__)

ENV_ALLOWLIST = ("PATH", "HOME", "USER", "SHELL", "TERM", "LANG", "TMPDIR")

_POLL_SECONDS = 0.1
_STDERR_TAIL_CHARS = 2_000
# How long to wait for stdout EOF once the process has exited.
_EXIT_DRAIN_SECONDS = 2.0
_EOF = object()


class ProcessHandle(Protocol):
    """Control surface of one live agent session."""

    def kill(self) -> None: ...

    def interrupt(self) -> None: ...

    def write(self, message: str) -> bool: ...


class StdinState(str, Enum):
    OPEN = "open"
    PENDING_CLOSE = "pending_close"
    CLOSED = "closed"


@dataclass(slots=True)
class AgentRunResult:
    """Outcome of one supervised agent session."""

    text: str
    session_id: str
    exit_code: int | None
    timed_out: bool
    usage: TokenUsage = field(default_factory=TokenUsage)
    stderr_tail: str = ""


def build_agent_env(
    *,
    api_key_env: str,
    source: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Minimal environment for the agent: shell, path, locale and the API key only."""

    environ = os.environ if source is None else source
    env = {name: environ.get(name, "") for name in ENV_ALLOWLIST}
    if api_key_env:
        env[api_key_env] = environ.get(api_key_env, "")
    return env


class AgentProcess:
    """One agent subprocess and its session.

    ``start`` spawns the process and sends the initial prompt; ``supervise``
    then blocks the calling thread, feeding decoded events to ``on_event`` in
    emission order while enforcing the wall-clock timeout and the stdin close
    schedule. ``kill``, ``interrupt`` and ``write`` may be called from any
    thread while the session is alive.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        command: Sequence[str],
        cwd: Path,
        env: Mapping[str, str],
        timeout_seconds: float,
        kill_grace_seconds: float = 10.0,
        stdin_close_delay_seconds: float = 3.0,
    ) -> None:
        if not command:
            raise ValueError("Agent command is empty.")
        self.command = list(command)
        self.cwd = cwd
        self.env = dict(env)
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.stdin_close_delay_seconds = stdin_close_delay_seconds

        self.transcript = Transcript()
        self._process: subprocess.Popen[str] | None = None
        self._events: queue.Queue[object] = queue.Queue()
        self._stderr_tail: deque[str] = deque()
        self._stderr_size = 0
        self._stdin_lock = threading.Lock()
        self._stdin_state = StdinState.OPEN
        self._stdin_close_at: float | None = None
        self._threads: list[threading.Thread] = []

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def stdin_state(self) -> StdinState:
        with self._stdin_lock:
            return self._stdin_state

    def start(self, prompt: str) -> None:
        try:
            self._process = subprocess.Popen(  # noqa: S603
                self.command,
                cwd=self.cwd,
                env=self.env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as error:
            raise AgentSpawnError(f"Failed to spawn agent: {error}") from error

        logger.info("Agent process spawned, pid=%s", self._process.pid)
        for target, name in ((self._read_stdout, "stdout"), (self._read_stderr, "stderr")):
            thread = threading.Thread(
                target=target,
                name=f"agent-{name}-{self._process.pid}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

        with self._stdin_lock:
            self._send_locked(prompt)

    # -------------------------------------------------------------- handle

    def kill(self) -> None:
        self._signal(signal.SIGTERM)

    def interrupt(self) -> None:
        self._signal(signal.SIGINT)

    def write(self, message: str) -> bool:
        """Send a follow-up into the open session; cancels a pending stdin close."""

        with self._stdin_lock:
            if self._stdin_state is StdinState.CLOSED:
                return False
            self._stdin_state = StdinState.OPEN
            self._stdin_close_at = None
            return self._send_locked(message)

    # ---------------------------------------------------------- supervision

    def supervise(
        self,
        on_event: Callable[[AgentEvent], None] | None = None,
        on_poll: Callable[[], None] | None = None,
    ) -> AgentRunResult:
        """Block until the session ends.

        `on_poll` runs on every loop pass (about every 100ms) while the
        process is alive, even when the agent emits nothing.
        """

        process = self._require_process()
        started = time.monotonic()
        deadline = started + self.timeout_seconds
        kill_at: float | None = None
        exited_at: float | None = None
        timed_out = False
        eof = False

        while True:
            item = self._next_item()
            if item is _EOF:
                eof = True
            elif isinstance(item, AgentEvent):
                self._handle_event(item, on_event)

            if on_poll is not None and process.poll() is None:
                on_poll()

            now = time.monotonic()
            self._maybe_close_stdin(now)

            if not timed_out and now >= deadline:
                timed_out = True
                logger.warning(
                    "Agent timed out after %.0f seconds, terminating pid=%s",
                    self.timeout_seconds,
                    process.pid,
                )
                self._signal(signal.SIGTERM)
                kill_at = now + self.kill_grace_seconds

            if kill_at is not None and now >= kill_at:
                if process.poll() is None:
                    logger.warning("Agent ignored SIGTERM, killing pid=%s", process.pid)
                    self._signal(signal.SIGKILL)
                kill_at = None

            if process.poll() is not None:
                exited_at = exited_at or now
                if eof or now - exited_at >= _EXIT_DRAIN_SECONDS:
                    break

        self._drain(on_event)
        self._close_stdin()
        for thread in self._threads:
            thread.join(timeout=1)

        exit_code = process.returncode
        if exit_code not in (0, None) and not timed_out:
            logger.warning("Agent exited with code %s, stderr: %s", exit_code, self.stderr_tail[-500:])
        else:
            logger.info("Agent process closed with code %s", exit_code)

        return AgentRunResult(
            text=self.transcript.text,
            session_id=self.transcript.session_id,
            exit_code=exit_code,
            timed_out=timed_out,
            usage=TokenUsage(
                self.transcript.usage.input_tokens,
                self.transcript.usage.output_tokens,
            ),
            stderr_tail=self.stderr_tail,
        )

    @property
    def stderr_tail(self) -> str:
        return "".join(self._stderr_tail)[-_STDERR_TAIL_CHARS:]

    # ------------------------------------------------------------- internals

    def _require_process(self) -> subprocess.Popen[str]:
        if self._process is None:
            raise RuntimeError("Agent process has not been started.")
        return self._process

    def _next_item(self) -> object | None:
        try:
            return self._events.get(timeout=_POLL_SECONDS)
        except queue.Empty:
            return None

    def _drain(self, on_event: Callable[[AgentEvent], None] | None) -> None:
        while True:
            try:
                item = self._events.get_nowait()
            except queue.Empty:
                return
            if isinstance(item, AgentEvent):
                self._handle_event(item, on_event)

    def _handle_event(
        self,
        event: AgentEvent,
        on_event: Callable[[AgentEvent], None] | None,
    ) -> None:
        self.transcript.feed(event)
        if event.type == "system" and event.subtype == "init":
            logger.info(
                "Agent session initialised, session_id=%s",
                self.transcript.session_id[:8] or "(empty)",
            )
        if is_final_result(event, self.transcript.text):
            self._schedule_stdin_close()
        if on_event is not None:
            on_event(event)

    def _schedule_stdin_close(self) -> None:
        with self._stdin_lock:
            if self._stdin_state is StdinState.CLOSED:
                return
            self._stdin_state = StdinState.PENDING_CLOSE
            self._stdin_close_at = time.monotonic() + self.stdin_close_delay_seconds

    def _maybe_close_stdin(self, now: float) -> None:
        with self._stdin_lock:
            if self._stdin_state is not StdinState.PENDING_CLOSE:
                return
            if self._stdin_close_at is None or now < self._stdin_close_at:
                return
            self._close_stdin_locked()

    def _close_stdin(self) -> None:
        with self._stdin_lock:
            self._close_stdin_locked()

    def _close_stdin_locked(self) -> None:
        if self._stdin_state is StdinState.CLOSED:
            return
        self._stdin_state = StdinState.CLOSED
        self._stdin_close_at = None
        stdin = self._process.stdin if self._process is not None else None
        if stdin is None:
            return
        try:
            stdin.close()
        except OSError:
            logger.debug("Agent stdin already closed")

    def _send_locked(self, message: str) -> bool:
        process = self._process
        if process is None or process.stdin is None or process.poll() is not None:
            return False
        try:
            process.stdin.write(
                encode_user_message(message, session_id=self.transcript.session_id),
            )
            process.stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as error:
            logger.warning("Failed to write to agent stdin: %s", error)
            return False
        return True

    def _signal(self, signum: signal.Signals) -> None:
        process = self._process
        if process is None or process.poll() is not None:
            return
        try:
            process.send_signal(signum)
        except OSError:
            return

    def _read_stdout(self) -> None:
        process = self._require_process()
        assert process.stdout is not None
        try:
            for line in process.stdout:
                if not line.strip():
                    continue
                logger.debug("agent stdout: %s", line[:200].rstrip())
                event = decode_event(line)
                if event is not None:
                    self._events.put(event)
        except (OSError, ValueError):
            logger.debug("Agent stdout reader stopped")
        finally:
            self._events.put(_EOF)

    def _read_stderr(self) -> None:
        process = self._require_process()
        assert process.stderr is not None
        try:
            for chunk in process.stderr:
                logger.debug("agent stderr: %s", chunk.rstrip())
                self._stderr_tail.append(chunk)
                self._stderr_size += len(chunk)
                while self._stderr_size > _STDERR_TAIL_CHARS and len(self._stderr_tail) > 1:
                    self._stderr_size -= len(self._stderr_tail.popleft())
        except (OSError, ValueError):
            logger.debug("Agent stderr reader stopped")
