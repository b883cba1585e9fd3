# runner.py
from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Mapping, Optional, Protocol

from .errors import ConfigurationError, JobCancelled, ProvisioningFailure, StepFailure, StepTimeout
from .host import Environment, ExecutionHost
from .matrix import expand_jobs
from .model import (
    Event,
    Job,
    JobResult,
    JobStatus,
    Pipeline,
    RunResult,
    StepOutcome,
    StepResult,
)
from .settings import Settings, get_settings
from .state import JobLifecycle

logger = logging.getLogger(__name__)


class Reporter(Protocol):
    def job_started(self, job: Job) -> None: ...
    def step_started(self, job: Job, index: int, name: str) -> None: ...
    def job_finished(self, result: JobResult) -> None: ...


class CancelToken:
    """Cooperative cancellation flag, checked between steps."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _min_timeout(*values: Optional[float]) -> Optional[float]:
    present = [v for v in values if v is not None]
    return min(present) if present else None


# ----------------------------------------------------------------------
# Job runner + step executor
# ----------------------------------------------------------------------

def run_job(
    job: Job,
    host: ExecutionHost,
    *,
    run_id: str,
    cancel: CancelToken | None = None,
    lifecycle: JobLifecycle | None = None,
    settings: Settings | None = None,
    reporter: Reporter | None = None,
) -> JobResult:
    """
    Provision, install the toolchain, then run the job's steps in order.

    Fail-fast: the first failed step ends the job. No retries. Provisioning
    errors count as a failed job. Never raises for job-scoped failures.
    """
    settings = settings or get_settings()
    cancel = cancel or CancelToken()
    lifecycle = lifecycle or JobLifecycle(job.name)
    result = JobResult(job=job, status=JobStatus.PENDING)
    started = time.monotonic()

    job_timeout = _min_timeout(job.timeout, settings.job_timeout)
    deadline = started + job_timeout if job_timeout is not None else None

    def finish(status: JobStatus, error: str | None = None) -> JobResult:
        lifecycle.transition(status)
        result.status = status
        result.error = error
        result.duration = time.monotonic() - started
        if status is JobStatus.SUCCEEDED:
            logger.info("[%s] succeeded", job.name)
        else:
            logger.warning("[%s] %s: %s", job.name, status.value, error)
        if reporter:
            reporter.job_finished(result)
        return result

    def cancelled() -> JobResult:
        return finish(JobStatus.CANCELLED, str(JobCancelled(job=job.name, reason=cancel.reason or "cancelled")))

    def remaining() -> Optional[float]:
        return None if deadline is None else deadline - time.monotonic()

    if cancel.cancelled:
        return cancelled()

    if reporter:
        reporter.job_started(job)

    # ---- provision ----
    lifecycle.transition(JobStatus.PROVISIONING)
    env: Environment | None = None
    try:
        env = host.provision(job, run_id)
        if job.toolchain:
            outcome = env.install_toolchain(job.toolchain, timeout=remaining())
            if not outcome.ok:
                raise ProvisioningFailure(
                    job=job.name,
                    message=f"toolchain '{job.toolchain}' could not be installed",
                    details={"exit_code": outcome.exit_code, "timed_out": outcome.timed_out},
                )
    except ProvisioningFailure as e:
        if env is not None:
            env.teardown()
        return finish(JobStatus.FAILED, str(e))

    # ---- run steps ----
    try:
        for index, step in enumerate(job.steps):
            if cancel.cancelled:
                return cancelled()

            left = remaining()
            if left is not None and left <= 0:
                return finish(JobStatus.FAILED, f"[{job.name}] job timed out after {job_timeout:g}s")

            lifecycle.transition(JobStatus.RUNNING, index)
            if reporter:
                reporter.step_started(job, index, step.name)
            logger.info("[%s] > %s", job.name, step.name)

            step_timeout = _min_timeout(step.timeout, settings.step_timeout, left)
            step_started = time.monotonic()
            outcome = env.run(step.command, env=step.env, cwd=step.cwd, timeout=step_timeout)
            duration = time.monotonic() - step_started

            if outcome.timed_out:
                result.steps.append(
                    StepResult(step.name, StepOutcome.TIMED_OUT, None, outcome.output, duration)
                )
                err = StepTimeout(job=job.name, step=step.name, timeout=step_timeout or 0)
                return finish(JobStatus.FAILED, str(err))

            ok = outcome.exit_code == 0
            result.steps.append(
                StepResult(
                    step.name,
                    StepOutcome.SUCCEEDED if ok else StepOutcome.FAILED,
                    outcome.exit_code,
                    outcome.output,
                    duration,
                )
            )
            if not ok:
                err = StepFailure(
                    job=job.name, step=step.name, cmd=str(step.command), exit_code=outcome.exit_code
                )
                return finish(JobStatus.FAILED, str(err))

        # a cancel that lands during the last step still wins over success
        if cancel.cancelled:
            return cancelled()
        return finish(JobStatus.SUCCEEDED)
    finally:
        env.teardown()


# ----------------------------------------------------------------------
# Pipeline run
# ----------------------------------------------------------------------

def plan_jobs(pipeline: Pipeline, only: Mapping[str, str] | None = None) -> List[Job]:
    """Expand every job template; `only` keeps entries matching the selector."""
    jobs: List[Job] = []
    for spec in pipeline.jobs:
        for job in expand_jobs(spec):
            if only and not job.entry.matches(only):
                continue
            jobs.append(job)
    if not jobs and only:
        raise ConfigurationError(f"selector {dict(only)} matches no matrix entry")
    if not jobs:
        raise ConfigurationError(f"pipeline '{pipeline.name}' expands to no jobs")
    return jobs


class PipelineRun:
    """
    One triggered run: a fixed set of jobs executed independently.

    A job's failure never aborts its siblings. `cancel()` is cooperative.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        event: Event,
        host: ExecutionHost,
        *,
        run_id: str | None = None,
        settings: Settings | None = None,
        only: Mapping[str, str] | None = None,
        reporter: Reporter | None = None,
    ):
        self.pipeline = pipeline
        self.event = event
        self.host = host
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.settings = settings or get_settings()
        self.reporter = reporter
        self.jobs = plan_jobs(pipeline, only)
        self.lifecycles: Dict[str, JobLifecycle] = {j.name: JobLifecycle(j.name) for j in self.jobs}
        self.cancel_token = CancelToken()
        self.result: RunResult | None = None
        self._done = threading.Event()

    @property
    def branch(self) -> str | None:
        return getattr(self.event, "branch", None)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        logger.info("run %s: cancel requested (%s)", self.run_id, reason)
        self.cancel_token.cancel(reason)

    def statuses(self) -> Dict[str, str]:
        return {name: lc.status.value for name, lc in self.lifecycles.items()}

    def wait(self, timeout: float | None = None) -> RunResult | None:
        self._done.wait(timeout)
        return self.result

    def execute(self, max_workers: int | None = None) -> RunResult:
        max_workers = max_workers or self.settings.max_workers
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)

        logger.info("run %s: %d job(s), %d worker(s)", self.run_id, len(self.jobs), max_workers)
        results: Dict[int, JobResult] = {}

        try:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                futures = {
                    pool.submit(
                        run_job,
                        job,
                        self.host,
                        run_id=self.run_id,
                        cancel=self.cancel_token,
                        lifecycle=self.lifecycles[job.name],
                        settings=self.settings,
                        reporter=self.reporter,
                    ): i
                    for i, job in enumerate(self.jobs)
                }
                for fut in as_completed(futures):
                    i = futures[fut]
                    try:
                        results[i] = fut.result()
                    except Exception as e:
                        # a bug in one job's execution stays scoped to that job
                        logger.exception("run %s: job %s crashed", self.run_id, self.jobs[i].name)
                        results[i] = JobResult(job=self.jobs[i], status=JobStatus.FAILED, error=str(e))

            self.result = RunResult(
                run_id=self.run_id,
                event=self.event,
                jobs=[results[i] for i in range(len(self.jobs))],
            )
            logger.info("run %s: %s", self.run_id, self.result.status)
            return self.result
        finally:
            self._done.set()


def run_pipeline(
    pipeline: Pipeline,
    event: Event,
    host: ExecutionHost,
    *,
    settings: Settings | None = None,
    only: Mapping[str, str] | None = None,
    reporter: Reporter | None = None,
    max_workers: int | None = None,
) -> RunResult:
    """Run every job of `pipeline` for `event`, without trigger evaluation."""
    run = PipelineRun(pipeline, event, host, settings=settings, only=only, reporter=reporter)
    return run.execute(max_workers=max_workers)
