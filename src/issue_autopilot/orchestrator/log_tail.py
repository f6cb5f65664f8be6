"""Tail a job's durable log with optional in-process live wakeups."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Protocol

from issue_autopilot.orchestrator.models import (
    STREAM_TERMINAL_STATUSES,
    JobRecord,
    LogEntry,
    OutputLine,
)
from issue_autopilot.orchestrator.output_store import OutputStore


@dataclass(slots=True, frozen=True)
class EndOfStream:
    """Explicit end marker of a log stream."""

    job_id: str


class LogSource(Protocol):
    def get_by_id(self, job_id: str) -> JobRecord | None: ...

    def get_logs(
        self,
        job_id: str,
        *,
        after_seq: int = 0,
        limit: int | None = None,
    ) -> list[LogEntry]: ...


class JobLogTail:
    """Transport-independent log feed for one job.

    Replays the durable log from a cursor, then follows it until the job
    reaches a stream-terminal status. When the run lives in this process the
    output store wakes the follower immediately; otherwise it polls every
    ``poll_interval_seconds``. The durable ``seq`` is the only cursor, so a
    line is never yielded twice.
    """

    def __init__(
        self,
        source: LogSource,
        output_store: OutputStore,
        *,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.source = source
        self.output_store = output_store
        self.poll_interval_seconds = poll_interval_seconds

    def stream(self, job_id: str, *, after_seq: int = 0) -> Iterator[LogEntry | EndOfStream]:
        wakeup = threading.Event()

        def _on_line(_: OutputLine) -> None:
            wakeup.set()

        unsubscribe = self.output_store.subscribe(job_id, _on_line)
        cursor = after_seq
        try:
            while True:
                wakeup.clear()
                job = self.source.get_by_id(job_id)
                finished = job is None or job.status in STREAM_TERMINAL_STATUSES
                # Drain after reading status so lines written before the
                # terminal transition are never lost.
                for entry in self.source.get_logs(job_id, after_seq=cursor):
                    cursor = entry.seq
                    yield entry
                if finished:
                    yield EndOfStream(job_id)
                    return
                wakeup.wait(self.poll_interval_seconds)
        finally:
            unsubscribe()
