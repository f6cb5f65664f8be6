"""Process-wide registry of live agent sessions."""

from __future__ import annotations

import threading

from issue_autopilot.orchestrator.backend.agent_process import ProcessHandle


class ProcessRegistry:
    """Job id -> live process handle, plus the jobs interrupted on purpose.

    Only the runner that owns a job registers or removes its entry; external
    commands look handles up to signal them. Operator messages carry their
    durable log ``seq`` so a message is piped into a session at most once,
    whether an in-process command or the runner's own log watch gets to it
    first.
    """

    def __init__(self) -> None:
        self._handles: dict[str, ProcessHandle] = {}
        self._interrupted: set[str] = set()
        self._delivered_seq: dict[str, int] = {}
        self._lock = threading.Lock()

    def register(self, job_id: str, handle: ProcessHandle, *, delivered_seq: int = 0) -> None:
        """Track a live session; messages up to `delivered_seq` are already in its prompt."""

        with self._lock:
            self._handles[job_id] = handle
            self._delivered_seq[job_id] = delivered_seq

    def get(self, job_id: str) -> ProcessHandle | None:
        with self._lock:
            return self._handles.get(job_id)

    def remove(self, job_id: str) -> None:
        with self._lock:
            self._handles.pop(job_id, None)
            self._interrupted.discard(job_id)
            self._delivered_seq.pop(job_id, None)

    def kill(self, job_id: str) -> bool:
        """Kill the job's process; False when no live process is registered."""

        with self._lock:
            handle = self._handles.pop(job_id, None)
        if handle is None:
            return False
        handle.kill()
        return True

    def interrupt_and_send(self, job_id: str, message: str, *, seq: int | None = None) -> bool:
        """Interrupt the current turn and pipe `message` into the live session.

        Returns False when no session is registered or the write failed. A
        message whose `seq` was already delivered counts as delivered.
        """

        with self._lock:
            handle = self._handles.get(job_id)
            if handle is None:
                return False
            if seq is not None:
                if seq <= self._delivered_seq.get(job_id, 0):
                    return True
                self._delivered_seq[job_id] = seq
            self._interrupted.add(job_id)
        handle.interrupt()
        return handle.write(message)

    def was_interrupted(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._interrupted

    def active_job_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._handles)
