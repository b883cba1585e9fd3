# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class MatrixCIError(Exception):
    """Base class for every error raised by matrixci."""


class ConfigurationError(MatrixCIError):
    """
    The pipeline definition is invalid.

    Raised at load time only. A pipeline that fails to load never starts a run.
    """


class IllegalTransitionError(MatrixCIError):
    """A job was asked to move to a state its lifecycle does not allow."""


@dataclass
class ProvisioningFailure(MatrixCIError):
    """The host could not provide an environment or install the toolchain."""
    job: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"provisioning failed: {self.message}", f"job={self.job}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(MatrixCIError):
    job: str
    step: str
    cmd: str
    exit_code: int

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class StepTimeout(MatrixCIError):
    job: str
    step: str
    timeout: float

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' timed out after {self.timeout:g}s"


@dataclass
class JobCancelled(MatrixCIError):
    job: str
    reason: str = "cancelled"

    def __str__(self) -> str:
        return f"[{self.job}] {self.reason}"
