# model.py
from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from .cron import CronExpression

MATRIX_REF = re.compile(r"\$\{\{\s*matrix\.([A-Za-z0-9_\-]+)\s*\}\}")


def substitute(text: str, values: Mapping[str, str]) -> str:
    """Replace `${{ matrix.<axis> }}` references with the entry's values."""
    return MATRIX_REF.sub(lambda m: str(values[m.group(1)]), text)


def matrix_refs(text: str) -> List[str]:
    return MATRIX_REF.findall(text)


# ---------------------------------------------------------------------
# Triggers + events
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class PullRequestTrigger:
    # empty -> any target branch
    branches: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PushTrigger:
    branches: Tuple[str, ...]


@dataclass(frozen=True)
class ScheduleTrigger:
    cron: CronExpression


Trigger = PullRequestTrigger | PushTrigger | ScheduleTrigger


@dataclass(frozen=True)
class PullRequestEvent:
    branch: str            # target (base) branch
    number: int | None = None

    @property
    def kind(self) -> str:
        return "pull_request"


@dataclass(frozen=True)
class PushEvent:
    branch: str
    sha: str | None = None

    @property
    def kind(self) -> str:
        return "push"


@dataclass(frozen=True)
class ScheduleTick:
    """Clock tick covering the half-open window (since, until]."""
    since: datetime
    until: datetime

    @property
    def kind(self) -> str:
        return "schedule"


@dataclass(frozen=True)
class ScheduledEvent:
    """One due time of one schedule trigger."""
    due: datetime
    cron: str

    @property
    def kind(self) -> str:
        return "schedule"


Event = PullRequestEvent | PushEvent | ScheduleTick | ScheduledEvent


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Axis:
    """One independent dimension of environment variation."""
    name: str
    values: Tuple[str, ...]


@dataclass(frozen=True)
class MatrixEntry:
    """One concrete assignment of a value to every axis, in axis order."""
    items: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def of(cls, **values: str) -> MatrixEntry:
        return cls(tuple((k, str(v)) for k, v in values.items()))

    def as_dict(self) -> Dict[str, str]:
        return dict(self.items)

    def get(self, axis: str, default: str | None = None) -> str | None:
        return self.as_dict().get(axis, default)

    def matches(self, selector: Mapping[str, str]) -> bool:
        """True if every key of `selector` has the same value in this entry."""
        values = self.as_dict()
        return all(k in values and values[k] == str(v) for k, v in selector.items())

    @property
    def label(self) -> str:
        return ", ".join(f"{k}={v}" for k, v in self.items)

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True)
class MatrixSpec:
    axes: Tuple[Axis, ...] = ()
    include: Tuple[Dict[str, str], ...] = ()
    exclude: Tuple[Dict[str, str], ...] = ()
    # entries matching any selector are non-blocking for the run result
    allow_failure: Tuple[Dict[str, str], ...] = ()

    @property
    def axis_names(self) -> List[str]:
        return [a.name for a in self.axes]


# ---------------------------------------------------------------------
# Steps + jobs
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Command:
    """
    Capability-scoped command: an executable plus an argument vector.

    Never interpreted by a shell. The execution host performs the actual run.
    """
    executable: str
    args: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, line: str) -> Command:
        # `${{ matrix.x }}` contains spaces; keep each reference inside one token
        refs: List[str] = []

        def hide(m: re.Match) -> str:
            refs.append(m.group(0))
            return f"\x00{len(refs) - 1}\x00"

        parts = shlex.split(MATRIX_REF.sub(hide, line))
        if not parts:
            raise ValueError("empty command line")
        parts = [re.sub(r"\x00(\d+)\x00", lambda m: refs[int(m.group(1))], p) for p in parts]
        return cls(parts[0], tuple(parts[1:]))

    @property
    def argv(self) -> List[str]:
        return [self.executable, *self.args]

    def substitute(self, values: Mapping[str, str]) -> Command:
        return Command(
            substitute(self.executable, values),
            tuple(substitute(a, values) for a in self.args),
        )

    def __str__(self) -> str:
        return shlex.join(self.argv)


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    command: Command
    options: Dict[str, str] = field(default_factory=dict, compare=False)
    env: Dict[str, str] = field(default_factory=dict, compare=False)
    timeout: Optional[float] = None
    cwd: str | None = None
    uses: str | None = None


@dataclass(frozen=True)
class JobSpec:
    """
    A job template: steps + environment descriptor, before matrix expansion.

    `runs_on` and `toolchain` may reference axes with `${{ matrix.<axis> }}`.
    """
    name: str
    steps: Tuple[Step, ...]
    runs_on: str = "local"
    toolchain: str | None = None
    matrix: MatrixSpec = field(default_factory=MatrixSpec)
    env: Dict[str, str] = field(default_factory=dict, compare=False)
    timeout: Optional[float] = None
    checkout: bool = False
    allow_failure: bool = False


@dataclass(frozen=True)
class Job:
    """One JobSpec bound to exactly one MatrixEntry. Never reused."""
    spec: JobSpec
    entry: MatrixEntry
    runs_on: str
    toolchain: str | None
    steps: Tuple[Step, ...]
    env: Dict[str, str] = field(default_factory=dict, compare=False)
    blocking: bool = True

    @property
    def name(self) -> str:
        if not self.entry.items:
            return self.spec.name
        return f"{self.spec.name} ({self.entry.label})"

    @property
    def timeout(self) -> Optional[float]:
        return self.spec.timeout

    @property
    def checkout(self) -> bool:
        return self.spec.checkout

    @classmethod
    def bind(cls, spec: JobSpec, entry: MatrixEntry) -> Job:
        values = entry.as_dict()
        steps = tuple(
            replace(
                s,
                name=substitute(s.name, values),
                command=s.command.substitute(values),
                options={k: substitute(str(v), values) for k, v in s.options.items()},
                env={k: substitute(str(v), values) for k, v in s.env.items()},
            )
            for s in spec.steps
        )
        blocking = not spec.allow_failure and not any(
            entry.matches(sel) for sel in spec.matrix.allow_failure
        )
        return cls(
            spec=spec,
            entry=entry,
            runs_on=substitute(spec.runs_on, values),
            toolchain=substitute(spec.toolchain, values) if spec.toolchain else None,
            steps=steps,
            env={k: substitute(str(v), values) for k, v in spec.env.items()},
            blocking=blocking,
        )


@dataclass(frozen=True)
class Pipeline:
    """Immutable pipeline definition, loaded once at process start."""
    name: str
    triggers: Tuple[Trigger, ...]
    jobs: Tuple[JobSpec, ...]
    source: str | None = None

    def job(self, name: str) -> JobSpec:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


class StepOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class StepResult:
    name: str
    outcome: StepOutcome
    exit_code: int | None = None
    output: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome is StepOutcome.SUCCEEDED


@dataclass
class JobResult:
    job: Job
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    error: str | None = None
    duration: float = 0.0

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def blocking(self) -> bool:
        return self.job.blocking

    def step(self, name: str) -> StepResult:
        for s in self.steps:
            if s.name == name:
                return s
        raise KeyError(name)

    def logs(self) -> Dict[str, str]:
        """Per-step output text, in execution order."""
        return {s.name: s.output for s in self.steps}


@dataclass
class RunResult:
    run_id: str
    event: Event
    jobs: List[JobResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        # a run with no jobs proves nothing
        return bool(self.jobs) and all(j.status is JobStatus.SUCCEEDED for j in self.jobs if j.blocking)

    @property
    def status(self) -> str:
        if self.succeeded:
            return JobStatus.SUCCEEDED.value
        blocking = [j for j in self.jobs if j.blocking]
        if not self.jobs or any(j.status is JobStatus.FAILED for j in blocking):
            return JobStatus.FAILED.value
        return JobStatus.CANCELLED.value

    def job(self, name: str) -> JobResult:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    def statuses(self) -> Dict[str, str]:
        return {j.name: j.status.value for j in self.jobs}
