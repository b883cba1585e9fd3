# cli.py
from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import click

from matrixci.config import load_pipeline
from matrixci.dispatcher import Dispatcher
from matrixci.errors import ConfigurationError
from matrixci.git import safe_branch, safe_sha
from matrixci.host import LocalHost
from matrixci.log import configure_logging
from matrixci.matrix import expand_jobs
from matrixci.model import PullRequestEvent, PushEvent, ScheduleTick
from matrixci.runner import PipelineRun
from matrixci.settings import get_settings
from matrixci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOWS = (".matrixci.yml", "matrixci.yml", "matrixci_workflow.py")


def find_workflow_files() -> list[Path]:
    """
    Find candidate workflow files in the current directory.

    Looks for the default names first, then `.github/workflows/*.yml`.
    """
    current_dir = Path(".")
    found = [current_dir / name for name in DEFAULT_WORKFLOWS if (current_dir / name).exists()]
    if found:
        return found
    gh = current_dir / ".github" / "workflows"
    return sorted([*gh.glob("*.yml"), *gh.glob("*.yaml")])


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow ci.yml",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOWS), "  .github/workflows/*.yml"],
            suggestion="Specify a workflow explicitly:\n  matrixci run --workflow ci.yml",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  matrixci run --workflow .github/workflows/rust.yml",
        )
        sys.exit(1)

    return workflow_files[0]


def _load(workflow: str | None):
    console = get_console()
    path = discover_workflow(workflow)
    try:
        return load_pipeline(path)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", f"{path}: {e}")
        sys.exit(2)


def _parse_selector(pairs: tuple[str, ...]) -> dict[str, str]:
    selector: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected axis=value, got {pair!r}", param_hint="--only")
        selector[key] = value
    return selector


def _parse_time(value: str | None, default: datetime) -> datetime:
    if value is None:
        return default
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        raise click.BadParameter(f"not an ISO-8601 time: {value!r}")
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Show stack traces and full step output")
@click.option("--log-level", default=None, help="Log level (defaults to MATRIXCI_LOG_LEVEL)")
@click.option("--json-logs", is_flag=True, default=False, help="Emit logs as JSON lines")
@click.pass_context
def cli(ctx, debug, log_level, json_logs):
    """matrixci: trigger evaluation, matrix expansion and fail-fast job runs."""
    settings = get_settings()
    configure_logging(log_level or settings.log_level, json_output=json_logs or settings.log_json)
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml or .py)")
def check(workflow):
    """Validate a workflow file and print its summary."""
    pipeline = _load(workflow)
    get_console().print_pipeline(pipeline)
    get_console().print_info("OK")


@cli.command("matrix")
@click.option("--workflow", default=None, help="Workflow file (.yml or .py)")
def matrix_cmd(workflow):
    """Print the expanded matrix of every job."""
    pipeline = _load(workflow)
    console = get_console()
    for spec in pipeline.jobs:
        jobs = expand_jobs(spec)
        console.print_matrix(spec.name, [j.entry for j in jobs], [j.blocking for j in jobs])


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml or .py)")
@click.option(
    "--event",
    type=click.Choice(["push", "pull_request", "schedule"]),
    default="push",
    show_default=True,
    help="Event to simulate",
)
@click.option("--branch", default=None, help="Branch for push/pull_request (defaults to current git branch)")
@click.option("--since", default=None, help="Schedule window start, ISO-8601 (default: one minute before --until)")
@click.option("--until", default=None, help="Schedule window end, ISO-8601 (default: now)")
@click.option("--force", is_flag=True, default=False, help="Run even if no trigger matches")
@click.option("--only", multiple=True, help="Only run entries matching axis=value (repeatable)")
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--any-os", is_flag=True, default=False, help="Run every runs-on label on this machine")
@click.option("--keep-workdirs", is_flag=True, default=False, help="Keep per-job work directories")
@click.option("--show-output", is_flag=True, default=False, help="Print output of every step")
@click.pass_context
def run(ctx, workflow, event, branch, since, until, force, only, workers, any_os, keep_workdirs, show_output):
    """Evaluate triggers for an event and run the resulting pipeline."""
    console = get_console()
    console.show_output = show_output
    pipeline = _load(workflow)
    selector = _parse_selector(only)
    settings = get_settings()
    host = LocalHost(settings, any_os=any_os, keep=keep_workdirs)

    if event == "schedule":
        end = _parse_time(until, datetime.now(timezone.utc))
        start = _parse_time(since, end - timedelta(minutes=1))
        ev = ScheduleTick(since=start, until=end)
    else:
        branch = branch or safe_branch()
        ev = PushEvent(branch=branch, sha=safe_sha()) if event == "push" else PullRequestEvent(branch=branch)

    if workers:
        settings = settings.model_copy(update={"max_workers": workers})

    try:
        if force:
            # no trigger evaluation
            pipeline_run = PipelineRun(pipeline, ev, host, settings=settings, only=selector, reporter=console)
            console.print_run_started(pipeline.name, ev.kind, len(pipeline_run.jobs), pipeline_run.run_id)
            pipeline_run.execute()
            runs = [pipeline_run]
        else:
            dispatcher = Dispatcher(
                pipeline, host, settings=settings, reporter=console, only=selector, background=False
            )
            runs = dispatcher.submit(ev)
            if not runs:
                console.print_skipped(ev.kind, "no matching trigger or nothing due")
                return

        failed = False
        for r in runs:
            console.print_results(r.result)
            failed = failed or not r.result.succeeded
        if failed:
            sys.exit(1)

    except ConfigurationError as e:
        console.print_error("Nothing to run", str(e), suggestion="Check the --only selector against:\n  matrixci matrix")
        sys.exit(2)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml or .py)")
@click.option("--host", "bind", default=None, help="Bind address (defaults to MATRIXCI_HOST)")
@click.option("--port", default=None, type=int, help="Port (defaults to MATRIXCI_PORT)")
@click.option("--any-os", is_flag=True, default=False, help="Run every runs-on label on this machine")
def serve(workflow, bind, port, any_os):
    """Serve the event API for a workflow."""
    import uvicorn

    from matrixci.server import create_app

    pipeline = _load(workflow)
    settings = get_settings()
    dispatcher = Dispatcher(pipeline, LocalHost(settings, any_os=any_os), settings=settings)
    uvicorn.run(create_app(dispatcher), host=bind or settings.host, port=port or settings.port)


if __name__ == "__main__":
    cli()
