# state.py
from __future__ import annotations

import threading
from typing import Dict, List, Set, Tuple

from .errors import IllegalTransitionError
from .model import JobStatus

# Pending -> Provisioning -> Running(i) -> {Succeeded | Failed}
# Cancelled is reachable from any non-terminal state.
ALLOWED_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROVISIONING, JobStatus.CANCELLED},
    JobStatus.PROVISIONING: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.RUNNING, JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.SUCCEEDED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}


class JobLifecycle:
    """
    Tracks one job's state. Thread-safe: the runner thread advances it,
    dispatcher threads read it.

    Running(i) -> Running(j) is only legal for j > i.
    """

    def __init__(self, job: str):
        self.job = job
        self._lock = threading.Lock()
        self._status = JobStatus.PENDING
        self._step_index: int | None = None
        self.history: List[Tuple[JobStatus, int | None]] = [(JobStatus.PENDING, None)]

    @property
    def status(self) -> JobStatus:
        return self._status

    @property
    def step_index(self) -> int | None:
        return self._step_index

    def transition(self, to: JobStatus, step_index: int | None = None) -> None:
        with self._lock:
            current = self._status
            if to not in ALLOWED_TRANSITIONS[current]:
                raise IllegalTransitionError(
                    f"[{self.job}] illegal transition: {current.value} -> {to.value}"
                )
            if to is JobStatus.RUNNING:
                if step_index is None:
                    raise IllegalTransitionError(f"[{self.job}] running requires a step index")
                if current is JobStatus.RUNNING and step_index <= (self._step_index or 0):
                    raise IllegalTransitionError(
                        f"[{self.job}] illegal transition: running({self._step_index}) -> running({step_index})"
                    )
                self._step_index = step_index
            self._status = to
            self.history.append((to, self._step_index if to is JobStatus.RUNNING else None))

    def __repr__(self) -> str:
        if self._status is JobStatus.RUNNING:
            return f"<JobLifecycle {self.job}: running({self._step_index})>"
        return f"<JobLifecycle {self.job}: {self._status.value}>"
