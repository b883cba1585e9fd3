from __future__ import annotations

import pytest

from matrixci.dsl import build, cargo, job, matrix, on_pull_request, on_push, on_schedule, pipeline, sh
from matrixci.errors import ConfigurationError
from matrixci.matrix import expand_jobs
from matrixci.model import Command, PushTrigger


def test_sh_splits_without_a_shell() -> None:
    step = sh("greet", "echo 'hello world' $HOME")
    assert step.command.argv == ["echo", "hello world", "$HOME"]
    assert sh("list", ["ls", "-la"]).command == Command("ls", ("-la",))


def test_cargo_step() -> None:
    step = cargo("Generate Docs", "doc", "--all-features --no-deps")
    assert step.command.argv == ["cargo", "doc", "--all-features", "--no-deps"]


def test_builder_matches_job_helper() -> None:
    built = (
        build("ci")
        .with_matrix(os=["ubuntu-latest", "macOS-latest"], rust=["stable", "nightly"])
        .with_toolchain("${{ matrix.rust }}")
        .allow_failure(rust="nightly")
        .checkout()
        .define_step("Build", ["cargo", "build"])
        .with_timeout(600)
        .build()
    )
    plain = job(
        "ci",
        sh("Build", ["cargo", "build"]),
        toolchain="${{ matrix.rust }}",
        matrix=matrix(os=["ubuntu-latest", "macOS-latest"], rust=["stable", "nightly"]).allow_failure(rust="nightly"),
        timeout=600,
        checkout=True,
    )
    assert built == plain
    assert built.runs_on == "${{ matrix.os }}"

    jobs = expand_jobs(built)
    assert [j.blocking for j in jobs] == [True, False, True, False]


def test_builder_requires_steps() -> None:
    with pytest.raises(ValueError):
        build("empty").build()


def test_allow_failure_selector_needs_matrix() -> None:
    with pytest.raises(ValueError):
        build("ci").allow_failure(rust="nightly")


def test_triggers() -> None:
    assert on_push("main", "release/*") == PushTrigger(branches=("main", "release/*"))
    assert on_pull_request().branches == ()
    with pytest.raises(ValueError):
        on_push()
    with pytest.raises(ConfigurationError):
        on_schedule("not a cron")


def test_pipeline_is_validated() -> None:
    with pytest.raises(ConfigurationError, match="unknown matrix axis"):
        pipeline(
            "bad",
            triggers=[on_push("main")],
            jobs=[job("ci", sh("x", "echo ${{ matrix.nope }}"))],
        )
    with pytest.raises(ConfigurationError, match="Duplicate job names"):
        pipeline(
            "bad",
            triggers=[on_push("main")],
            jobs=[job("ci", sh("x", "true")), job("ci", sh("y", "true"))],
        )


def test_sh_keeps_matrix_references_whole() -> None:
    spec = job("ci", sh("build", "cargo +${{ matrix.rust }} build"), matrix=matrix(rust=["stable", "beta"]))
    assert spec.steps[0].command.argv == ["cargo", "+${{ matrix.rust }}", "build"]
    assert [j.steps[0].command.argv[1] for j in expand_jobs(spec)] == ["+stable", "+beta"]
