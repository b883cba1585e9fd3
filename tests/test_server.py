from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from matrixci.dispatcher import Dispatcher
from matrixci.dsl import job, matrix, on_push, on_schedule, pipeline, sh
from matrixci.server import create_app

from .conftest import FakeHost, fail_when

PIPELINE = pipeline(
    "api",
    triggers=[on_push("master"), on_schedule("0 1 * * *")],
    jobs=[
        job(
            "ci",
            sh("build", "make build"),
            sh("test", "make test"),
            matrix=matrix(rust=["stable", "nightly"]).allow_failure(rust="nightly"),
        )
    ],
)


@pytest.fixture
def client(settings) -> TestClient:
    host = FakeHost(fail_when(lambda j, c: j.entry.get("rust") == "nightly" and c.args == ("test",)))
    dispatcher = Dispatcher(PIPELINE, host, settings=settings, background=False)
    return TestClient(create_app(dispatcher))


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok", "pipeline": "api"}


def test_push_event_runs_pipeline(client: TestClient) -> None:
    resp = client.post("/events/push", json={"branch": "master", "sha": "abc123"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "queued"
    (run_id,) = body["run_ids"]

    run = client.get(f"/runs/{run_id}").json()
    assert run["status"] == "succeeded"
    assert run["event"] == {"kind": "push", "branch": "master", "sha": "abc123"}
    jobs = {j["name"]: j for j in run["jobs"]}
    assert jobs["ci (rust=stable)"]["status"] == "succeeded"
    nightly = jobs["ci (rust=nightly)"]
    assert nightly["status"] == "failed"
    assert nightly["blocking"] is False
    assert [s["outcome"] for s in nightly["steps"]] == ["succeeded", "failed"]


def test_push_to_other_branch_is_skipped(client: TestClient) -> None:
    resp = client.post("/events/push", json={"branch": "feature"})
    assert resp.json() == {"status": "skipped", "run_ids": []}
    assert client.get("/runs").json() == []


def test_pull_request_without_trigger_is_skipped(client: TestClient) -> None:
    resp = client.post("/events/pull_request", json={"branch": "master", "number": 1})
    assert resp.json()["status"] == "skipped"


def test_schedule_window(client: TestClient) -> None:
    resp = client.post(
        "/events/schedule",
        json={"since": "2026-10-18T00:00:00+00:00", "until": "2026-10-20T00:00:00+00:00"},
    )
    assert len(resp.json()["run_ids"]) == 2
    runs = client.get("/runs").json()
    assert [r["event"]["due"] for r in runs] == ["2026-10-18T01:00:00+00:00", "2026-10-19T01:00:00+00:00"]


def test_schedule_window_must_be_ordered(client: TestClient) -> None:
    resp = client.post(
        "/events/schedule",
        json={"since": "2026-10-20T00:00:00+00:00", "until": "2026-10-18T00:00:00+00:00"},
    )
    assert resp.status_code == 400


def test_unknown_run(client: TestClient) -> None:
    assert client.get("/runs/nope").status_code == 404
    assert client.post("/runs/nope/cancel").status_code == 404


def test_cancel_finished_run_keeps_result(client: TestClient) -> None:
    (run_id,) = client.post("/events/push", json={"branch": "master"}).json()["run_ids"]
    resp = client.post(f"/runs/{run_id}/cancel")
    assert resp.status_code == 200
    assert resp.json()["status"] == "succeeded"


def test_schedule_window_naive_times_are_utc(client: TestClient) -> None:
    resp = client.post(
        "/events/schedule",
        json={"since": "2026-10-19T00:00:00", "until": "2026-10-19T02:00:00Z"},
    )
    assert resp.status_code == 200
    (run_id,) = resp.json()["run_ids"]
    assert client.get(f"/runs/{run_id}").json()["event"]["due"] == "2026-10-19T01:00:00+00:00"
