"""In-memory live output: bounded per-job buffers plus subscribers."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable

from issue_autopilot.orchestrator.models import OutputLine

logger = logging.getLogger(__name__)

MAX_LINES = 500

Subscriber = Callable[[OutputLine], None]


class _JobOutput:
    __slots__ = ("lines", "subscribers")

    def __init__(self, max_lines: int) -> None:
        self.lines: deque[OutputLine] = deque(maxlen=max_lines)
        self.subscribers: list[Subscriber] = []


class OutputStore:
    """Process-wide registry of job id -> ring buffer + subscribers."""

    def __init__(self, *, max_lines: int = MAX_LINES) -> None:
        self.max_lines = max_lines
        self._jobs: dict[str, _JobOutput] = {}
        self._lock = threading.Lock()

    def _entry(self, job_id: str) -> _JobOutput:
        entry = self._jobs.get(job_id)
        if entry is None:
            entry = _JobOutput(self.max_lines)
            self._jobs[job_id] = entry
        return entry

    def push(self, job_id: str, line: OutputLine) -> None:
        """Append a line and notify subscribers synchronously, in push order."""

        with self._lock:
            entry = self._entry(job_id)
            entry.lines.append(line)
            subscribers = list(entry.subscribers)
        for callback in subscribers:
            try:
                callback(line)
            except Exception:
                logger.exception("Output subscriber failed for job %s", job_id)

    def subscribe(self, job_id: str, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns the matching unsubscribe callable."""

        with self._lock:
            self._entry(job_id).subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                entry = self._jobs.get(job_id)
                if entry is None:
                    return
                if callback in entry.subscribers:
                    entry.subscribers.remove(callback)
                if not entry.subscribers and not entry.lines:
                    del self._jobs[job_id]

        return unsubscribe

    def buffer(self, job_id: str) -> list[OutputLine]:
        with self._lock:
            entry = self._jobs.get(job_id)
            return list(entry.lines) if entry is not None else []

    def cleanup(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)
