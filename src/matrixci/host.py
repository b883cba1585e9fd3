# host.py
# The execution host is the external collaborator that owns environments and
# actually runs commands. LocalHost runs them on this machine via subprocess.
from __future__ import annotations

import logging
import os
import re
import shlex
import shutil
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

from .errors import ProvisioningFailure
from .model import Command, Job
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

TOOL_HINTS = {
    "cargo": "Install Rust (rustup.rs) or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or set MATRIXCI_TOOLCHAIN_INSTALL.",
    "rustc": "Install Rust (rustup.rs) or fix PATH.",
    "git": "Install Git or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "python3": "Install Python 3 or fix PATH (python3).",
}

# runs-on label prefix -> sys.platform prefix
PLATFORM_LABELS = {
    "ubuntu": "linux",
    "linux": "linux",
    "windows": "win32",
    "macos": "darwin",
    "osx": "darwin",
}


@dataclass
class CommandOutcome:
    exit_code: Optional[int]
    output: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0


class Environment(ABC):
    """One isolated environment, owned by exactly one job."""

    job: Job

    @abstractmethod
    def install_toolchain(self, toolchain: str, *, timeout: Optional[float] = None) -> CommandOutcome:
        ...

    @abstractmethod
    def run(
        self,
        command: Command,
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        timeout: Optional[float] = None,
    ) -> CommandOutcome:
        ...

    def teardown(self) -> None:
        pass


class ExecutionHost(ABC):
    @abstractmethod
    def provision(self, job: Job, run_id: str) -> Environment:
        """Create the job's environment. Raises ProvisioningFailure."""


# ---------------------------------------------------------------------
# Local host
# ---------------------------------------------------------------------

def _slug(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", text).strip("-") or "job"


def platform_for(label: str) -> str | None:
    """Map a runs-on label to a sys.platform prefix; None for 'local'."""
    key = label.lower()
    if key in ("local", "self-hosted"):
        return None
    for prefix, platform in PLATFORM_LABELS.items():
        if key.startswith(prefix):
            return platform
    return key


def _tail(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[-limit:]


def run_command(
    argv: list[str],
    *,
    cwd: Path,
    env: Dict[str, str],
    timeout: Optional[float],
    output_limit: int,
) -> CommandOutcome:
    try:
        proc = subprocess.run(
            argv,
            shell=False,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        partial = e.output or ""
        if isinstance(partial, bytes):
            partial = partial.decode("utf-8", errors="replace")
        return CommandOutcome(exit_code=None, output=_tail(partial, output_limit), timed_out=True)
    except FileNotFoundError:
        tool = argv[0]
        hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
        return CommandOutcome(exit_code=127, output=f"{tool}: command not found\nHint: {hint}\n")
    except PermissionError as e:
        return CommandOutcome(exit_code=126, output=f"{argv[0]}: {e}\n")

    return CommandOutcome(exit_code=proc.returncode, output=_tail(proc.stdout or "", output_limit))


class LocalEnvironment(Environment):
    def __init__(self, job: Job, work_dir: Path, settings: Settings, *, keep: bool = False):
        self.job = job
        self.work_dir = work_dir
        self.settings = settings
        self.keep = keep
        self.toolchain: str | None = None

    def _env(self, extra: Mapping[str, str] | None) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.job.env)
        env.update(extra or {})
        env["MATRIXCI"] = "true"
        env["MATRIXCI_JOB"] = self.job.name
        for axis, value in self.job.entry.items:
            env[f"MATRIXCI_MATRIX_{_slug(axis).upper().replace('-', '_')}"] = value
        if self.toolchain:
            # rustup honours this for every cargo/rustc invocation
            env["RUSTUP_TOOLCHAIN"] = self.toolchain
        return env

    def install_toolchain(self, toolchain: str, *, timeout: Optional[float] = None) -> CommandOutcome:
        template = self.settings.toolchain_install
        argv = [part.format(toolchain=toolchain) for part in shlex.split(template)]
        logger.info("[%s] installing toolchain %s", self.job.name, toolchain)
        outcome = run_command(
            argv,
            cwd=self.work_dir,
            env=self._env(None),
            timeout=timeout,
            output_limit=self.settings.output_limit,
        )
        if outcome.ok:
            self.toolchain = toolchain
        return outcome

    def run(
        self,
        command: Command,
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        timeout: Optional[float] = None,
    ) -> CommandOutcome:
        step_cwd = (self.work_dir / (cwd or ".")).resolve()
        if not step_cwd.is_relative_to(self.work_dir.resolve()):
            return CommandOutcome(exit_code=1, output=f"working directory outside the job work dir: {cwd}\n")
        if not step_cwd.exists():
            return CommandOutcome(exit_code=1, output=f"working directory not found: {step_cwd}\n")
        return run_command(
            command.argv,
            cwd=step_cwd,
            env=self._env(env),
            timeout=timeout,
            output_limit=self.settings.output_limit,
        )

    def teardown(self) -> None:
        if not self.keep:
            shutil.rmtree(self.work_dir, ignore_errors=True)


class LocalHost(ExecutionHost):
    """
    Runs jobs on this machine, each in its own work directory.

    With `any_os=False`, jobs whose runs-on label names another platform fail
    provisioning instead of running on the wrong OS.
    """

    def __init__(self, settings: Settings | None = None, *, any_os: bool = False, keep: bool = False):
        self.settings = settings or get_settings()
        self.any_os = any_os
        self.keep = keep

    def _checkout(self, job: Job, dest: Path) -> None:
        source = self.settings.source_dir.resolve()
        if (source / ".git").exists():
            proc = subprocess.run(
                ["git", "clone", "--quiet", "--local", str(source), str(dest)],
                capture_output=True,
                text=True,
            )
            if proc.returncode != 0:
                raise ProvisioningFailure(
                    job=job.name,
                    message="checkout failed",
                    details={"stderr": proc.stderr.strip()},
                )
            return
        shutil.copytree(
            source,
            dest,
            dirs_exist_ok=True,
            ignore=shutil.ignore_patterns(".matrixci", "__pycache__", "target"),
        )

    def provision(self, job: Job, run_id: str) -> Environment:
        wanted = platform_for(job.runs_on)
        if wanted is not None and not self.any_os and not sys.platform.startswith(wanted):
            raise ProvisioningFailure(
                job=job.name,
                message=f"no local runner for '{job.runs_on}'",
                details={"platform": sys.platform},
            )

        work_dir = (self.settings.work_dir / run_id / _slug(job.name)).resolve()
        if work_dir.exists():
            shutil.rmtree(work_dir)

        try:
            if job.checkout:
                work_dir.parent.mkdir(parents=True, exist_ok=True)
                self._checkout(job, work_dir)
            work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProvisioningFailure(job=job.name, message=str(e)) from e

        logger.debug("[%s] provisioned %s", job.name, work_dir)
        return LocalEnvironment(job, work_dir, self.settings, keep=self.keep)
