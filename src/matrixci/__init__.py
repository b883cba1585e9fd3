from .config import load_pipeline, parse_pipeline_config, parse_pipeline_dict
from .dispatcher import Dispatcher
from .dsl import build, cargo, job, matrix, on_pull_request, on_push, on_schedule, pipeline, sh
from .errors import ConfigurationError, ProvisioningFailure, StepFailure
from .host import ExecutionHost, LocalHost
from .matrix import expand
from .model import Job, JobStatus, Pipeline, RunResult, Step
from .runner import run_job, run_pipeline
from .triggers import matches

__all__ = [
    "load_pipeline", "parse_pipeline_config", "parse_pipeline_dict",
    "Dispatcher",
    "build", "cargo", "job", "matrix", "on_pull_request", "on_push", "on_schedule", "pipeline", "sh",
    "ConfigurationError", "ProvisioningFailure", "StepFailure",
    "ExecutionHost", "LocalHost",
    "expand",
    "Job", "JobStatus", "Pipeline", "RunResult", "Step",
    "run_job", "run_pipeline",
    "matches",
]
