# matrixci_workflow.py
# Rust crate CI: every OS x toolchain pair builds, tests and documents the crate.
from __future__ import annotations

from matrixci.dsl import cargo, job, matrix, on_pull_request, on_push, on_schedule, pipeline


def workflow():
    return pipeline(
        "Rust",
        triggers=[
            on_pull_request(),
            on_push("master"),
            # nightly build at 01:00 UTC
            on_schedule("00 01 * * *"),
        ],
        jobs=[
            job(
                "ci",
                cargo("Build", "build"),
                cargo("Run Tests", "test"),
                cargo("Generate Docs", "doc", "--all-features --no-deps"),
                runs_on="${{ matrix.os }}",
                toolchain="${{ matrix.rust }}",
                matrix=matrix(
                    os=["ubuntu-latest", "windows-latest", "macOS-latest"],
                    rust=["stable", "beta", "nightly", "1.39.0"],
                ),
                checkout=True,
            ),
        ],
    )
