from __future__ import annotations

import sys

import pytest

from matrixci.errors import ProvisioningFailure
from matrixci.host import LocalHost, platform_for
from matrixci.model import Command, Job, JobSpec, MatrixEntry, Step

PY = sys.executable


def _job(runs_on: str = "local", checkout: bool = False) -> Job:
    spec = JobSpec(
        name="local",
        steps=(Step("noop", Command(PY, ("-c", "pass"))),),
        runs_on=runs_on,
        checkout=checkout,
    )
    return Job.bind(spec, MatrixEntry.of(os=runs_on, rust="stable"))


@pytest.mark.parametrize(
    "label, platform",
    [
        ("local", None),
        ("self-hosted", None),
        ("ubuntu-latest", "linux"),
        ("windows-2022", "win32"),
        ("macOS-latest", "darwin"),
        ("freebsd", "freebsd"),
    ],
)
def test_platform_for(label, platform) -> None:
    assert platform_for(label) == platform


def test_exit_codes_and_output(settings) -> None:
    env = LocalHost(settings).provision(_job(), "run1")
    try:
        ok = env.run(Command(PY, ("-c", "print('hello')")))
        assert ok.exit_code == 0
        assert ok.output.strip() == "hello"

        bad = env.run(Command(PY, ("-c", "import sys; sys.stderr.write('boom'); sys.exit(3)")))
        assert bad.exit_code == 3
        assert "boom" in bad.output
        assert not bad.ok
    finally:
        env.teardown()


def test_arguments_are_not_shell_interpreted(settings) -> None:
    env = LocalHost(settings).provision(_job(), "run1")
    out = env.run(Command(PY, ("-c", "import sys; print(sys.argv[1])", "$HOME; rm -rf /")))
    assert out.output.strip() == "$HOME; rm -rf /"
    env.teardown()


def test_matrix_values_are_exported(settings) -> None:
    env = LocalHost(settings).provision(_job(), "run1")
    out = env.run(
        Command(PY, ("-c", "import os; print(os.environ['MATRIXCI_MATRIX_RUST'], os.environ['STEP_VAR'])")),
        env={"STEP_VAR": "set"},
    )
    assert out.output.split() == ["stable", "set"]
    env.teardown()


def test_missing_executable_is_exit_127(settings) -> None:
    env = LocalHost(settings).provision(_job(), "run1")
    out = env.run(Command("definitely-not-a-real-tool-xyz"))
    assert out.exit_code == 127
    assert "command not found" in out.output
    env.teardown()


def test_timeout(settings) -> None:
    env = LocalHost(settings).provision(_job(), "run1")
    out = env.run(Command(PY, ("-c", "import time; time.sleep(10)")), timeout=0.5)
    assert out.timed_out
    assert out.exit_code is None
    env.teardown()


def test_work_dir_is_per_job_and_removed(settings) -> None:
    env = LocalHost(settings).provision(_job(), "run1")
    assert env.work_dir.is_dir()
    assert settings.work_dir.resolve() in env.work_dir.parents
    env.teardown()
    assert not env.work_dir.exists()


def test_keep_work_dir(settings) -> None:
    env = LocalHost(settings, keep=True).provision(_job(), "run1")
    env.teardown()
    assert env.work_dir.exists()


def test_checkout_copies_source(settings) -> None:
    settings.source_dir.mkdir(parents=True)
    (settings.source_dir / "Cargo.toml").write_text("[package]\n", encoding="utf-8")
    env = LocalHost(settings).provision(_job(checkout=True), "run1")
    assert (env.work_dir / "Cargo.toml").read_text(encoding="utf-8") == "[package]\n"
    env.teardown()


def test_foreign_platform_fails_provisioning(settings) -> None:
    foreign = "windows-latest" if not sys.platform.startswith("win") else "ubuntu-latest"
    with pytest.raises(ProvisioningFailure, match="no local runner"):
        LocalHost(settings).provision(_job(runs_on=foreign), "run1")

    env = LocalHost(settings, any_os=True).provision(_job(runs_on=foreign), "run1")
    env.teardown()


def test_toolchain_install_uses_template(settings) -> None:
    settings = settings.model_copy(update={"toolchain_install": f"{PY} -c pass {{toolchain}}"})
    env = LocalHost(settings).provision(_job(), "run1")
    outcome = env.install_toolchain("beta")
    assert outcome.ok
    assert env.toolchain == "beta"
    out = env.run(Command(PY, ("-c", "import os; print(os.environ['RUSTUP_TOOLCHAIN'])")))
    assert out.output.strip() == "beta"
    env.teardown()


@pytest.mark.parametrize("cwd", ["..", "../other", "/"])
def test_step_cwd_must_stay_in_work_dir(settings, cwd) -> None:
    env = LocalHost(settings).provision(_job(), "run1")
    out = env.run(Command(PY, ("-c", "print('escaped')")), cwd=cwd)
    assert out.exit_code == 1
    assert "outside the job work dir" in out.output
    assert "escaped" not in out.output
    env.teardown()
