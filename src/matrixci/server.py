from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, field_validator

from .dispatcher import Dispatcher
from .model import PullRequestEvent, PushEvent, ScheduleTick
from .runner import PipelineRun

# -------------------- Schemas --------------------

class PushRequest(BaseModel):
    branch: str
    sha: str | None = None

class PullRequestRequest(BaseModel):
    branch: str
    number: int | None = None

class ScheduleRequest(BaseModel):
    since: datetime
    until: datetime

    @field_validator("since", "until")
    @classmethod
    def utc_if_naive(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

class EventResponse(BaseModel):
    status: str  # queued|skipped
    run_ids: list[str] = Field(default_factory=list)

class StepResponse(BaseModel):
    name: str
    outcome: str
    exit_code: int | None
    output: str

class JobResponse(BaseModel):
    name: str
    status: str
    blocking: bool
    error: str | None = None
    steps: list[StepResponse] = Field(default_factory=list)

class RunResponse(BaseModel):
    run_id: str
    event: dict[str, Any]
    status: str  # running|succeeded|failed|cancelled
    jobs: list[JobResponse]


def _event_dict(run: PipelineRun) -> dict[str, Any]:
    ev = run.event
    out: dict[str, Any] = {"kind": ev.kind}
    for key in ("branch", "sha", "number", "due", "cron", "since", "until"):
        value = getattr(ev, key, None)
        if value is not None:
            out[key] = value.isoformat() if isinstance(value, datetime) else value
    return out


def run_response(run: PipelineRun) -> RunResponse:
    if run.result is None:
        jobs = [
            JobResponse(name=j.name, status=run.lifecycles[j.name].status.value, blocking=j.blocking)
            for j in run.jobs
        ]
        return RunResponse(run_id=run.run_id, event=_event_dict(run), status="running", jobs=jobs)

    jobs = [
        JobResponse(
            name=j.name,
            status=j.status.value,
            blocking=j.blocking,
            error=j.error,
            steps=[
                StepResponse(name=s.name, outcome=s.outcome.value, exit_code=s.exit_code, output=s.output)
                for s in j.steps
            ],
        )
        for j in run.result.jobs
    ]
    return RunResponse(run_id=run.run_id, event=_event_dict(run), status=run.result.status, jobs=jobs)


def create_app(dispatcher: Dispatcher) -> FastAPI:
    app = FastAPI(title=f"matrixci: {dispatcher.pipeline.name}")

    def _submitted(runs: list[PipelineRun]) -> EventResponse:
        if not runs:
            return EventResponse(status="skipped")
        return EventResponse(status="queued", run_ids=[r.run_id for r in runs])

    def _get(run_id: str) -> PipelineRun:
        try:
            return dispatcher.get(run_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Run not found")

    @app.get("/health")
    async def health():
        return {"status": "ok", "pipeline": dispatcher.pipeline.name}

    @app.post("/events/push", response_model=EventResponse)
    def push(req: PushRequest):
        return _submitted(dispatcher.submit(PushEvent(branch=req.branch, sha=req.sha)))

    @app.post("/events/pull_request", response_model=EventResponse)
    def pull_request(req: PullRequestRequest):
        return _submitted(dispatcher.submit(PullRequestEvent(branch=req.branch, number=req.number)))

    @app.post("/events/schedule", response_model=EventResponse)
    def schedule(req: ScheduleRequest):
        if req.until < req.since:
            raise HTTPException(status_code=400, detail="until must not be before since")
        return _submitted(dispatcher.submit(ScheduleTick(since=req.since, until=req.until)))

    @app.get("/runs", response_model=list[RunResponse])
    def list_runs():
        return [run_response(r) for r in dispatcher.runs()]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        return run_response(_get(run_id))

    @app.post("/runs/{run_id}/cancel", response_model=RunResponse)
    def cancel_run(run_id: str):
        run = _get(run_id)
        run.cancel("cancelled by request")
        return run_response(run)

    return app
