# src/matrixci/dsl.py
from __future__ import annotations

import shlex
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .config import validate_pipeline
from .cron import CronExpression
from .model import (
    Axis,
    Command,
    JobSpec,
    MatrixSpec,
    Pipeline,
    PullRequestTrigger,
    PushTrigger,
    ScheduleTrigger,
    Step,
    Trigger,
)

CommandLike = Union[str, Sequence[str], Command]


def _as_command(cmd: CommandLike) -> Command:
    if isinstance(cmd, Command):
        return cmd
    if isinstance(cmd, str):
        return Command.parse(cmd)
    parts = [str(p) for p in cmd]
    if not parts:
        raise ValueError("empty command")
    return Command(parts[0], tuple(parts[1:]))


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: CommandLike,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
) -> Step:
    """Create a command step. A string is split with shlex, never run through a shell."""
    return Step(name=name, command=_as_command(cmd), env=env or {}, timeout=timeout, cwd=cwd)


def cargo(name: str, command: str, args: str = "", **kwargs) -> Step:
    """`cargo <command> <args>`, the way actions-rs/cargo builds it."""
    return sh(name, Command("cargo", (command, *shlex.split(args))), **kwargs)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def on_push(*branches: str) -> PushTrigger:
    if not branches:
        raise ValueError("on_push() needs at least one branch")
    return PushTrigger(branches=tuple(branches))


def on_pull_request(*branches: str) -> PullRequestTrigger:
    return PullRequestTrigger(branches=tuple(branches))


def on_schedule(cron: str) -> ScheduleTrigger:
    return ScheduleTrigger(cron=CronExpression.parse(cron))


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Matrix builder.

    Example:
        matrix(os=["ubuntu-latest", "macos-latest"], rust=["stable", "nightly"])
            .allow_failure(rust="nightly")
    """
    def __init__(self, axes: Mapping[str, Iterable[object]]):
        self.axes = [Axis(name=k, values=tuple(str(v) for v in vs)) for k, vs in axes.items()]
        self._include: List[Dict[str, str]] = []
        self._exclude: List[Dict[str, str]] = []
        self._allow_failure: List[Dict[str, str]] = []

    def include(self, **values: object) -> Matrix:
        self._include.append({k: str(v) for k, v in values.items()})
        return self

    def exclude(self, **values: object) -> Matrix:
        self._exclude.append({k: str(v) for k, v in values.items()})
        return self

    def allow_failure(self, **values: object) -> Matrix:
        self._allow_failure.append({k: str(v) for k, v in values.items()})
        return self

    def build(self) -> MatrixSpec:
        return MatrixSpec(
            axes=tuple(self.axes),
            include=tuple(self._include),
            exclude=tuple(self._exclude),
            allow_failure=tuple(self._allow_failure),
        )


def matrix(**axes: Iterable[object]) -> Matrix:
    return Matrix(axes)


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,
    runs_on: str | None = None,
    toolchain: str | None = None,
    matrix: Matrix | MatrixSpec | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    checkout: bool = False,
    allow_failure: bool = False,
) -> JobSpec:
    if not steps:
        raise ValueError(f"job({name!r}) must have at least one step")

    spec = matrix.build() if isinstance(matrix, Matrix) else (matrix or MatrixSpec())
    if runs_on is None:
        runs_on = "${{ matrix.os }}" if "os" in spec.axis_names else "local"

    return JobSpec(
        name=name,
        steps=tuple(steps),
        runs_on=runs_on,
        toolchain=toolchain,
        matrix=spec,
        env={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
        checkout=checkout,
        allow_failure=allow_failure,
    )


class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._runs_on: str | None = None
        self._toolchain: str | None = None
        self._matrix: Matrix | None = None
        self._env: dict[str, str] = {}
        self._timeout: float | None = None
        self._checkout = False
        self._allow_failure = False

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def with_toolchain(self, toolchain: str):
        self._toolchain = toolchain
        return self

    def with_matrix(self, **axes: Iterable[object]):
        self._matrix = Matrix(axes)
        return self

    def allow_failure(self, **values: object):
        if not values:
            self._allow_failure = True
            return self
        if self._matrix is None:
            raise ValueError(f"Job '{self.name}': allow_failure(**values) needs a matrix")
        self._matrix.allow_failure(**values)
        return self

    def checkout(self, enabled: bool = True):
        self._checkout = enabled
        return self

    def define_step(self, name: str, cmd: CommandLike, **kwargs):
        self._steps.append(sh(name, cmd, **kwargs))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> JobSpec:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            *self._steps,
            runs_on=self._runs_on,
            toolchain=self._toolchain,
            matrix=self._matrix,
            env=self._env,
            timeout=self._timeout,
            checkout=self._checkout,
            allow_failure=self._allow_failure,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('ci').with_matrix(...).define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------

def pipeline(name: str, *, triggers: Sequence[Trigger], jobs: Sequence[JobSpec]) -> Pipeline:
    """Build and validate a pipeline. Raises ConfigurationError."""
    p = Pipeline(name=name, triggers=tuple(triggers), jobs=tuple(jobs))
    validate_pipeline(p)
    return p
