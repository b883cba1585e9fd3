"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional

from ..model import Job, JobResult, JobStatus, MatrixEntry, Pipeline, RunResult, StepOutcome
from ..triggers import describe


class Console:
    """Centralized console output formatting. Also usable as a runner Reporter."""

    def __init__(self, debug: bool = False, show_output: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            show_output: If True, print every step's captured output, not only failures
        """
        self.debug = debug
        self.show_output = show_output
        # jobs report from worker threads
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(self, pipeline: str, event: str, job_count: int, run_id: str) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Event: {event}",
            f"Run ID: {run_id}",
            f"Jobs: {job_count}",
            "",
        )

    # ---- Reporter ----

    def job_started(self, job: Job) -> None:
        self._print(f"JOB STARTED: {job.name}")

    def step_started(self, job: Job, index: int, name: str) -> None:
        self._print(f"[{job.name}] STEP {index + 1}/{len(job.steps)}: {name}")

    def job_finished(self, result: JobResult) -> None:
        lines = [f"[{result.name}] STATUS: {result.status.value}"]
        if result.status is JobStatus.FAILED:
            lines.extend(self._failure_lines(result))
        elif self.show_output:
            for step in result.steps:
                lines.extend(self._output_lines(result.name, step.name, step.output))
        self._print(*lines)

    # ---- details ----

    def _output_lines(self, job: str, step: str, output: str) -> list[str]:
        if not output:
            return []
        body = output if self.debug or self.show_output else "\n".join(output.splitlines()[-20:])
        return [f"--- {job} / {step} ---", body.rstrip("\n"), "---"]

    def _failure_lines(self, result: JobResult) -> list[str]:
        lines: list[str] = []
        failed = [s for s in result.steps if s.outcome is not StepOutcome.SUCCEEDED]
        if failed:
            step = failed[-1]
            lines.append(f"STEP FAILED: {step.name}")
            if step.exit_code is not None:
                lines.append(f"Exit code: {step.exit_code}")
            lines.extend(self._output_lines(result.name, step.name, step.output))
        if result.error:
            if self.debug:
                lines.append(f"Error details: {result.error}")
            else:
                lines.append(f"Error: {result.error.splitlines()[0]}")
        return lines

    def print_pipeline(self, pipeline: Pipeline) -> None:
        """Print a summary of a loaded pipeline."""
        self._print(f"Pipeline: {pipeline.name}")
        self._print("Triggers:", *(f"  {describe(t)}" for t in pipeline.triggers))
        for spec in pipeline.jobs:
            axes = ", ".join(f"{a.name}[{len(a.values)}]" for a in spec.matrix.axes) or "none"
            self._print(
                f"Job: {spec.name}",
                f"  runs-on: {spec.runs_on}",
                f"  toolchain: {spec.toolchain or '-'}",
                f"  matrix: {axes}",
                "  steps:",
                *(f"    {i + 1}. {s.name}: {s.command}" for i, s in enumerate(spec.steps)),
            )

    def print_matrix(self, job: str, entries: Iterable[MatrixEntry], blocking: Iterable[bool]) -> None:
        self.print_header(f"{job} matrix")
        count = 0
        for entry, is_blocking in zip(entries, blocking):
            count += 1
            suffix = "" if is_blocking else "  (allowed to fail)"
            self._print(f"  {entry.label or '(single entry)'}{suffix}")
        self._print(f"  {count} entr{'y' if count == 1 else 'ies'}")

    def print_results(self, result: RunResult) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job in result.jobs:
            note = "" if job.blocking else " (non-blocking)"
            lines.append(f"  {job.name}: {job.status.value.upper()}{note}")
        lines.append(f"RUN {result.status.upper()}")
        self._print(*lines)

    def print_skipped(self, event: str, reason: str) -> None:
        self._print(f"SKIPPED: {event} ({reason})")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._print(message)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
