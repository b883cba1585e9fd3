"""
Pipeline definition loader and validator.

Two YAML shapes are accepted:

  * the flat form: `triggers`, `matrix.axes`, `job.steps`
  * the hosted-CI form: `on`, `jobs.<id>.strategy.matrix`, `uses`/`run`/`with`

Python workflow files (`*.py` defining `workflow()`, `pipeline()` or
`PIPELINE`) are loaded with runpy.
"""

from __future__ import annotations

import logging
import re
import runpy
import shlex
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .cron import CronExpression
from .errors import ConfigurationError
from .matrix import expand, validate_axes
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
    matrix_refs,
)

logger = logging.getLogger(__name__)

# `continue-on-error: ${{ matrix.rust == 'nightly' }}`
CONTINUE_ON_ERROR_EXPR = re.compile(
    r"^\$\{\{\s*matrix\.([A-Za-z0-9_\-]+)\s*==\s*['\"]([^'\"]*)['\"]\s*\}\}$"
)

# Actions that set up the environment; handled at provisioning, not as steps.
CHECKOUT_ACTIONS = ("actions/checkout",)
TOOLCHAIN_ACTIONS = ("actions-rs/toolchain", "dtolnay/rust-toolchain")
CARGO_ACTIONS = ("actions-rs/cargo",)


# ---------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------

def parse_pipeline_config(yaml_content: str, *, source: str | None = None) -> Pipeline:
    """Parse a pipeline definition from YAML text."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML: {e}") from e

    return parse_pipeline_dict(config, source=source)


def parse_pipeline_dict(config: Optional[Dict[Any, Any]], *, source: str | None = None) -> Pipeline:
    """Validate a pipeline definition already loaded into a dict."""
    if not config:
        raise ConfigurationError("Empty pipeline configuration")
    if not isinstance(config, dict):
        raise ConfigurationError("Pipeline configuration must be a mapping")

    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise ConfigurationError("Pipeline 'name' must be a string")

    triggers = parse_triggers(_triggers_section(config))

    if "jobs" in config:
        jobs = _parse_hosted_jobs(config["jobs"])
    elif "job" in config:
        jobs = [_parse_flat_job(config["job"], config.get("matrix"))]
    else:
        raise ConfigurationError("Pipeline must define 'job' or 'jobs'")

    pipeline = Pipeline(name=name, triggers=tuple(triggers), jobs=tuple(jobs), source=source)
    validate_pipeline(pipeline)
    logger.debug("loaded pipeline %r with %d job template(s)", name, len(jobs))
    return pipeline


def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a YAML or Python file.

    A Python file must define one of:
      - workflow() -> Pipeline
      - pipeline() -> Pipeline
      - PIPELINE = Pipeline(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml"):
        return parse_pipeline_config(wf_path.read_text(encoding="utf-8"), source=str(wf_path))

    if wf_path.suffix != ".py":
        raise ConfigurationError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")

    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    pipeline = None
    fn = globals_dict.get("pipeline")
    if callable(globals_dict.get("workflow")):
        pipeline = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        pipeline = globals_dict["PIPELINE"]
    elif callable(fn) and getattr(fn, "__module__", None) != "matrixci.dsl":
        # the dsl helper shares the name; only a user-defined pipeline() is called
        pipeline = fn()

    if not isinstance(pipeline, Pipeline):
        raise ConfigurationError(
            "Workflow must return/define a Pipeline. "
            "Define workflow() -> Pipeline, pipeline() -> Pipeline or PIPELINE = Pipeline(...)."
        )

    if pipeline.source is None:
        pipeline = replace(pipeline, source=str(wf_path))
    validate_pipeline(pipeline)
    return pipeline


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def _triggers_section(config: Dict[Any, Any]) -> Any:
    if "triggers" in config:
        return config["triggers"]
    # YAML 1.1 reads a bare `on:` key as boolean True
    if "on" in config:
        return config["on"]
    if True in config:
        return config[True]
    raise ConfigurationError("Pipeline must declare 'triggers' (or 'on')")


def _branches(value: Any, where: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(b, str) for b in value):
        raise ConfigurationError(f"{where} 'branches' must be a list of strings")
    return tuple(value)


def _trigger(kind: Any, body: Any) -> List[Trigger]:
    if kind == "pull_request":
        body = body or {}
        if not isinstance(body, dict):
            raise ConfigurationError("'pull_request' trigger must be empty or a mapping")
        return [PullRequestTrigger(branches=_branches(body.get("branches"), "pull_request"))]

    if kind == "push":
        if not isinstance(body, dict) or not body.get("branches"):
            raise ConfigurationError("'push' trigger must declare 'branches'")
        return [PushTrigger(branches=_branches(body["branches"], "push"))]

    if kind == "schedule":
        entries = body if isinstance(body, list) else [body]
        out: List[Trigger] = []
        for entry in entries:
            if not isinstance(entry, dict) or "cron" not in entry:
                raise ConfigurationError("'schedule' entries must be mappings with a 'cron' key")
            out.append(ScheduleTrigger(cron=CronExpression.parse(entry["cron"])))
        if not out:
            raise ConfigurationError("'schedule' trigger must declare at least one cron")
        return out

    raise ConfigurationError(f"Unknown trigger kind: {kind!r}")


def parse_triggers(section: Any) -> List[Trigger]:
    triggers: List[Trigger] = []

    if isinstance(section, str):
        section = [section]

    if isinstance(section, dict):
        for kind, body in section.items():
            triggers.extend(_trigger(kind, body))
    elif isinstance(section, list):
        for item in section:
            if isinstance(item, str):
                triggers.extend(_trigger(item, None))
            elif isinstance(item, dict) and len(item) == 1:
                (kind, body), = item.items()
                triggers.extend(_trigger(kind, body))
            else:
                raise ConfigurationError(f"Invalid trigger entry: {item!r}")
    else:
        raise ConfigurationError("'triggers' must be a list or mapping")

    if not triggers:
        raise ConfigurationError("Pipeline must declare at least one trigger")
    return triggers


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def _selectors(value: Any, where: str) -> Tuple[Dict[str, str], ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise ConfigurationError(f"matrix '{where}' must be a list of mappings")
    return tuple({str(k): str(v) for k, v in sel.items()} for sel in value)


def parse_matrix(section: Any, *, allow_failure: Any = None) -> MatrixSpec:
    """
    Parse a matrix section.

    Accepts `{axes: {name: [values]}}` or the hosted shape where axes sit
    directly under the matrix mapping next to `include`/`exclude`.
    """
    if section is None:
        return MatrixSpec()
    if not isinstance(section, dict):
        raise ConfigurationError("'matrix' must be a mapping")

    reserved = {"axes", "include", "exclude", "allow_failure", "allow-failure"}
    raw_axes = section.get("axes")
    if raw_axes is None:
        raw_axes = {k: v for k, v in section.items() if k not in reserved}
    if not isinstance(raw_axes, dict):
        raise ConfigurationError("'matrix.axes' must be a mapping of axis name -> values")

    axes: List[Axis] = []
    for name, values in raw_axes.items():
        if not isinstance(values, list):
            raise ConfigurationError(f"Matrix axis '{name}' must be a list")
        if any(isinstance(v, (dict, list)) for v in values):
            raise ConfigurationError(f"Matrix axis '{name}' values must be scalars")
        axes.append(Axis(name=str(name), values=tuple(str(v) for v in values)))

    validate_axes(axes)

    allowed = section.get("allow_failure", section.get("allow-failure", allow_failure))
    return MatrixSpec(
        axes=tuple(axes),
        include=_selectors(section.get("include"), "include"),
        exclude=_selectors(section.get("exclude"), "exclude"),
        allow_failure=_selectors(allowed, "allow_failure"),
    )


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

def _action_name(uses: str) -> str:
    # "actions-rs/toolchain/@v1" -> "actions-rs/toolchain"
    return uses.split("@", 1)[0].rstrip("/")


def _timeout(value: Any, where: str, *, minutes: bool = False) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError(f"{where} timeout must be a positive number")
    return float(value) * 60 if minutes else float(value)


def _env(value: Any, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{where} 'env' must be a mapping")
    return {str(k): str(v) for k, v in value.items()}


def _command(value: Any, where: str) -> Command:
    if isinstance(value, str):
        try:
            return Command.parse(value)
        except ValueError as e:
            raise ConfigurationError(f"{where}: {e}") from e
    if isinstance(value, list) and value and all(isinstance(v, (str, int, float)) for v in value):
        return Command(str(value[0]), tuple(str(v) for v in value[1:]))
    raise ConfigurationError(f"{where} 'command' must be a string or a non-empty list")


def validate_step(step: Any, index: int, job: Dict[str, Any]) -> Optional[Step]:
    """
    Validate a single step.

    Returns None for environment-setup actions (checkout, toolchain) whose
    effect is recorded on `job` and performed by the host at provisioning.
    """
    if not isinstance(step, dict):
        raise ConfigurationError(f"Step {index} must be a mapping")

    options = step.get("with") or step.get("options") or {}
    if not isinstance(options, dict):
        raise ConfigurationError(f"Step {index} 'with' must be a mapping")
    options = {str(k): v for k, v in options.items()}

    uses = step.get("uses")
    name = step.get("name")
    if name is not None and not isinstance(name, str):
        raise ConfigurationError(f"Step {index} 'name' must be a string")

    if uses is not None:
        if not isinstance(uses, str):
            raise ConfigurationError(f"Step {index} 'uses' must be a string")
        action = _action_name(uses)

        if action in CHECKOUT_ACTIONS:
            job["checkout"] = True
            return None

        if action in TOOLCHAIN_ACTIONS:
            toolchain = options.get("toolchain")
            if not toolchain:
                raise ConfigurationError(f"Step {index} ({uses}) missing 'with.toolchain'")
            job["toolchain"] = str(toolchain)
            return None

        if action in CARGO_ACTIONS:
            sub = options.get("command")
            if not sub:
                raise ConfigurationError(f"Step {index} ({uses}) missing 'with.command'")
            args = shlex.split(str(options.get("args") or ""))
            command = Command("cargo", (str(sub), *args))
        else:
            raise ConfigurationError(f"Step {index} uses unsupported action {uses!r}")
    elif "run" in step:
        command = _command(step["run"], f"Step {index}")
    elif "command" in step:
        command = _command(step["command"], f"Step {index}")
        extra = step.get("args") or step.get("arguments")
        if extra:
            if isinstance(extra, str):
                extra = shlex.split(extra)
            command = Command(command.executable, command.args + tuple(str(a) for a in extra))
    else:
        raise ConfigurationError(f"Step {index} needs one of 'run', 'command' or 'uses'")

    return Step(
        name=name or (uses if uses else str(command)),
        command=command,
        options={k: str(v) for k, v in options.items()},
        env=_env(step.get("env"), f"Step {index}"),
        timeout=_timeout(step.get("timeout"), f"Step {index}")
        or _timeout(step.get("timeout-minutes"), f"Step {index}", minutes=True),
        cwd=step.get("working-directory") or step.get("cwd"),
        uses=uses,
    )


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

def _parse_job(name: str, body: Any, matrix: MatrixSpec) -> JobSpec:
    if not isinstance(body, dict):
        raise ConfigurationError(f"Job '{name}' must be a mapping")

    raw_steps = body.get("steps")
    if not isinstance(raw_steps, list):
        raise ConfigurationError(f"Job '{name}' 'steps' must be a list")

    setup: Dict[str, Any] = {"checkout": False, "toolchain": body.get("toolchain")}
    steps = [s for i, raw in enumerate(raw_steps) if (s := validate_step(raw, i, setup))]
    if not steps:
        raise ConfigurationError(f"Job '{name}' must have at least one step")

    names = [s.name for s in steps]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Job '{name}' has duplicate step names: {dupes}")

    runs_on = body.get("runs-on", body.get("runs_on"))
    if runs_on is None:
        runs_on = "${{ matrix.os }}" if "os" in matrix.axis_names else "local"
    if not isinstance(runs_on, str):
        raise ConfigurationError(f"Job '{name}' 'runs-on' must be a string")

    allow_failure = body.get("continue-on-error", body.get("allow_failure", False))
    if isinstance(allow_failure, str):
        m = CONTINUE_ON_ERROR_EXPR.match(allow_failure.strip())
        if not m:
            raise ConfigurationError(
                f"Job '{name}' 'continue-on-error' supports only "
                "`${{ matrix.<axis> == '<value>' }}` expressions"
            )
        matrix = MatrixSpec(
            axes=matrix.axes,
            include=matrix.include,
            exclude=matrix.exclude,
            allow_failure=matrix.allow_failure + ({m.group(1): m.group(2)},),
        )
        allow_failure = False
    elif not isinstance(allow_failure, bool):
        raise ConfigurationError(f"Job '{name}' 'continue-on-error' must be a boolean")

    return JobSpec(
        name=name,
        steps=tuple(steps),
        runs_on=runs_on,
        toolchain=str(setup["toolchain"]) if setup["toolchain"] else None,
        matrix=matrix,
        env=_env(body.get("env"), f"Job '{name}'"),
        timeout=_timeout(body.get("timeout"), f"Job '{name}'")
        or _timeout(body.get("timeout-minutes"), f"Job '{name}'", minutes=True),
        checkout=bool(setup["checkout"] or body.get("checkout", False)),
        allow_failure=allow_failure,
    )


def _parse_flat_job(body: Any, matrix_section: Any) -> JobSpec:
    if not isinstance(body, dict):
        raise ConfigurationError("'job' must be a mapping")
    name = body.get("name", "ci")
    if not isinstance(name, str):
        raise ConfigurationError("'job.name' must be a string")
    return _parse_job(name, body, parse_matrix(matrix_section))


def _parse_hosted_jobs(section: Any) -> List[JobSpec]:
    if not isinstance(section, dict) or not section:
        raise ConfigurationError("'jobs' must be a non-empty mapping")

    jobs: List[JobSpec] = []
    for job_id, body in section.items():
        strategy = body.get("strategy") if isinstance(body, dict) else None
        strategy = strategy or {}
        if not isinstance(strategy, dict):
            raise ConfigurationError(f"Job '{job_id}' 'strategy' must be a mapping")
        if strategy.get("fail-fast"):
            # sibling jobs are always independent here
            logger.debug("job %s: strategy.fail-fast ignored", job_id)
        matrix = parse_matrix(
            strategy.get("matrix"),
            allow_failure=strategy.get("allow-failure", strategy.get("allow_failure")),
        )
        jobs.append(_parse_job(str(job_id), body, matrix))
    return jobs


# ---------------------------------------------------------------------
# Whole-pipeline checks
# ---------------------------------------------------------------------

def _check_refs(text: str | None, known: set, where: str) -> None:
    if not text:
        return
    for ref in matrix_refs(text):
        if ref not in known:
            raise ConfigurationError(f"{where} references unknown matrix axis '{ref}'")


def validate_pipeline(pipeline: Pipeline) -> None:
    """Definition-load checks. Any failure here prevents every run."""
    if not pipeline.triggers:
        raise ConfigurationError("Pipeline must declare at least one trigger")
    if not pipeline.jobs:
        raise ConfigurationError("Pipeline must define at least one job")

    names = [j.name for j in pipeline.jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job names found: {dupes}")

    for job in pipeline.jobs:
        step_names = [s.name for s in job.steps]
        if not step_names:
            raise ConfigurationError(f"Job '{job.name}' must have at least one step")
        if len(set(step_names)) != len(step_names):
            dupes = sorted({n for n in step_names if step_names.count(n) > 1})
            raise ConfigurationError(f"Job '{job.name}' has duplicate step names: {dupes}")

        # every reference must resolve for every entry (include may add keys)
        for entry in expand(job.matrix):
            known = set(entry.as_dict())
            _check_refs(job.runs_on, known, f"Job '{job.name}' runs-on")
            _check_refs(job.toolchain, known, f"Job '{job.name}' toolchain")
            for v in job.env.values():
                _check_refs(v, known, f"Job '{job.name}' env")
            for step in job.steps:
                where = f"Job '{job.name}' step '{step.name}'"
                texts = [step.name, *step.command.argv, *step.options.values(), *step.env.values()]
                for text in texts:
                    _check_refs(text, known, where)


# ---------------------------------------------------------------------
# Emit
# ---------------------------------------------------------------------

def _dump_trigger(t: Trigger) -> Any:
    if isinstance(t, PullRequestTrigger):
        return {"pull_request": {"branches": list(t.branches)}} if t.branches else "pull_request"
    if isinstance(t, PushTrigger):
        return {"push": {"branches": list(t.branches)}}
    return {"schedule": {"cron": t.cron.text}}


def _dump_step(s: Step) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": s.name, "command": s.command.argv}
    if s.options:
        out["with"] = dict(s.options)
    if s.env:
        out["env"] = dict(s.env)
    if s.timeout is not None:
        out["timeout"] = s.timeout
    if s.cwd:
        out["cwd"] = s.cwd
    return out


def dump(pipeline: Pipeline) -> Dict[str, Any]:
    """Emit a canonical mapping form; parse_pipeline_dict() accepts it back."""
    jobs: Dict[str, Any] = {}
    for j in pipeline.jobs:
        matrix: Dict[str, Any] = {"axes": {a.name: list(a.values) for a in j.matrix.axes}}
        if j.matrix.include:
            matrix["include"] = [dict(s) for s in j.matrix.include]
        if j.matrix.exclude:
            matrix["exclude"] = [dict(s) for s in j.matrix.exclude]
        if j.matrix.allow_failure:
            matrix["allow_failure"] = [dict(s) for s in j.matrix.allow_failure]

        body: Dict[str, Any] = {
            "runs_on": j.runs_on,
            "strategy": {"matrix": matrix},
            "steps": [_dump_step(s) for s in j.steps],
        }
        if j.toolchain:
            body["toolchain"] = j.toolchain
        if j.checkout:
            body["checkout"] = True
        if j.env:
            body["env"] = dict(j.env)
        if j.timeout is not None:
            body["timeout"] = j.timeout
        if j.allow_failure:
            body["allow_failure"] = True
        jobs[j.name] = body

    return {
        "name": pipeline.name,
        "triggers": [_dump_trigger(t) for t in pipeline.triggers],
        "jobs": jobs,
    }


def dump_yaml(pipeline: Pipeline) -> str:
    return yaml.safe_dump(dump(pipeline), sort_keys=False)
