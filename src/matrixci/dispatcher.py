# dispatcher.py
from __future__ import annotations

import logging
import threading
from typing import Dict, List, Mapping, Optional

from . import triggers
from .host import ExecutionHost
from .model import (
    Event,
    Pipeline,
    PullRequestEvent,
    PushEvent,
    RunResult,
    ScheduleTick,
)
from .runner import PipelineRun, Reporter, plan_jobs
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Receives repository events and turns accepted ones into runs.

    - trigger mismatch -> no run (normal skip)
    - a new push/PR run for a branch cancels that branch's in-flight run
    - a schedule tick starts one run per due time, never coalesced

    Runs live in memory only.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        host: ExecutionHost,
        *,
        settings: Settings | None = None,
        reporter: Reporter | None = None,
        only: Mapping[str, str] | None = None,
        background: bool = True,
    ):
        self.pipeline = pipeline
        self.host = host
        self.settings = settings or get_settings()
        self.reporter = reporter
        self.only = dict(only or {})
        # fail at construction, not on the first event
        plan_jobs(pipeline, self.only)
        self.background = background

        self._lock = threading.Lock()
        self._runs: Dict[str, PipelineRun] = {}
        # "push:master" -> latest run for that branch
        self._latest: Dict[str, PipelineRun] = {}
        self._threads: List[threading.Thread] = []

    # ---- queries ----

    def get(self, run_id: str) -> PipelineRun:
        return self._runs[run_id]

    def runs(self) -> List[PipelineRun]:
        with self._lock:
            return list(self._runs.values())

    def in_flight(self) -> List[PipelineRun]:
        return [r for r in self.runs() if not r.done]

    # ---- events ----

    def submit(self, event: Event) -> List[PipelineRun]:
        """
        Handle one event. Returns the runs it started (possibly none).
        """
        if isinstance(event, ScheduleTick):
            due = triggers.due_runs(event, self.pipeline.triggers)
            if not due:
                logger.debug("tick %s..%s: nothing due", event.since, event.until)
            return [self._start(e) for e in due]

        if not triggers.matches(event, self.pipeline.triggers):
            logger.info("%s event for %r matches no trigger; skipped", event.kind, getattr(event, "branch", None))
            return []

        return [self._start(event)]

    def _supersede_key(self, event: Event) -> Optional[str]:
        if isinstance(event, (PushEvent, PullRequestEvent)):
            return f"{event.kind}:{event.branch}"
        return None

    def _start(self, event: Event) -> PipelineRun:
        run = PipelineRun(
            self.pipeline,
            event,
            self.host,
            settings=self.settings,
            reporter=self.reporter,
            only=self.only,
        )
        key = self._supersede_key(event)

        with self._lock:
            if key is not None:
                previous = self._latest.get(key)
                if previous is not None and not previous.done:
                    previous.cancel(f"superseded by run {run.run_id}")
                self._latest[key] = run
            self._runs[run.run_id] = run
            self._prune()

        logger.info("run %s started for %s event", run.run_id, event.kind)
        if self.background:
            t = threading.Thread(target=run.execute, name=f"matrixci-run-{run.run_id}", daemon=True)
            with self._lock:
                self._threads.append(t)
                t.start()
        else:
            run.execute()
        return run

    def _prune(self) -> None:
        """Drop finished threads and the oldest finished runs beyond `run_history`. Caller holds the lock."""
        self._threads = [t for t in self._threads if t.is_alive()]
        finished = [rid for rid, r in self._runs.items() if r.done]
        for rid in finished[: max(0, len(finished) - self.settings.run_history)]:
            del self._runs[rid]

    def cancel(self, run_id: str, reason: str = "cancelled by request") -> None:
        self.get(run_id).cancel(reason)

    def wait_all(self, timeout: float | None = None) -> List[RunResult]:
        with self._lock:
            threads = list(self._threads)
        for t in threads:
            t.join(timeout)
        with self._lock:
            self._prune()
        return [r.result for r in self.runs() if r.result is not None]
