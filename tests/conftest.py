from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import pytest

from matrixci.errors import ProvisioningFailure
from matrixci.host import CommandOutcome, Environment, ExecutionHost
from matrixci.model import Command, Job
from matrixci.settings import Settings

FIXTURES = Path(__file__).parent / "fixtures"

Behaviour = Callable[[Job, Command], CommandOutcome]


class FakeEnvironment(Environment):
    def __init__(self, host: FakeHost, job: Job):
        self.host = host
        self.job = job
        self.torn_down = False

    def install_toolchain(self, toolchain: str, *, timeout: Optional[float] = None) -> CommandOutcome:
        self.host.record(self.job, ["<install>", toolchain])
        if toolchain in self.host.broken_toolchains:
            return CommandOutcome(exit_code=1, output=f"error: toolchain '{toolchain}' not found")
        return CommandOutcome(exit_code=0)

    def run(
        self,
        command: Command,
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        timeout: Optional[float] = None,
    ) -> CommandOutcome:
        self.host.record(self.job, command.argv)
        if self.host.behaviour is not None:
            return self.host.behaviour(self.job, command)
        return CommandOutcome(exit_code=0, output=f"ran {command}\n")

    def teardown(self) -> None:
        self.torn_down = True


class FakeHost(ExecutionHost):
    """In-memory host: records every command per job, never touches the OS."""

    def __init__(
        self,
        behaviour: Behaviour | None = None,
        *,
        unavailable: Tuple[str, ...] = (),
        broken_toolchains: Tuple[str, ...] = (),
    ):
        self.behaviour = behaviour
        self.unavailable = unavailable
        self.broken_toolchains = broken_toolchains
        self.environments: List[FakeEnvironment] = []
        self.calls: Dict[str, List[List[str]]] = {}
        self._lock = threading.Lock()

    def record(self, job: Job, argv: List[str]) -> None:
        with self._lock:
            self.calls.setdefault(job.name, []).append(list(argv))

    def provision(self, job: Job, run_id: str) -> Environment:
        if job.runs_on in self.unavailable:
            raise ProvisioningFailure(job=job.name, message=f"no runner for '{job.runs_on}'")
        env = FakeEnvironment(self, job)
        with self._lock:
            self.environments.append(env)
        return env


def fail_when(predicate: Callable[[Job, Command], bool], exit_code: int = 1) -> Behaviour:
    def behaviour(job: Job, command: Command) -> CommandOutcome:
        if predicate(job, command):
            return CommandOutcome(exit_code=exit_code, output=f"{command} failed\n")
        return CommandOutcome(exit_code=0, output=f"ran {command}\n")
    return behaviour


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        max_workers=4,
        job_timeout=60.0,
        step_timeout=30.0,
        work_dir=tmp_path / "work",
        source_dir=tmp_path / "src",
    )


@pytest.fixture
def rust_yaml() -> str:
    return (FIXTURES / "rust.yml").read_text(encoding="utf-8")
