from __future__ import annotations

import math

import pytest

from matrixci.errors import ConfigurationError
from matrixci.matrix import cross_product, expand, expand_jobs, select
from matrixci.model import Axis, Command, JobSpec, MatrixEntry, MatrixSpec, Step

OS = Axis("os", ("A", "B", "C"))
TOOLCHAIN = Axis("toolchain", ("x", "y", "z", "w"))


def test_three_by_four_yields_twelve_distinct_entries() -> None:
    entries = expand([OS, TOOLCHAIN])
    assert len(entries) == 12
    assert len(set(entries)) == 12
    assert MatrixEntry.of(os="B", toolchain="y") in entries


def test_order_is_lexicographic_over_declaration_order() -> None:
    entries = expand([OS, TOOLCHAIN])
    assert [e.label for e in entries[:5]] == [
        "os=A, toolchain=x",
        "os=A, toolchain=y",
        "os=A, toolchain=z",
        "os=A, toolchain=w",
        "os=B, toolchain=x",
    ]
    assert expand([OS, TOOLCHAIN]) == entries


@pytest.mark.parametrize("sizes", [(1,), (2, 3), (3, 1, 2), (2, 2, 2, 2)])
def test_size_is_product_of_axis_sizes(sizes) -> None:
    axes = [Axis(f"a{i}", tuple(f"v{j}" for j in range(n))) for i, n in enumerate(sizes)]
    entries = cross_product(axes)
    assert len(entries) == math.prod(sizes)
    assert len(set(entries)) == len(entries)


def test_no_axes_is_a_single_entry() -> None:
    assert expand([]) == [MatrixEntry()]


def test_empty_axis_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="no values"):
        expand([OS, Axis("toolchain", ())])


def test_duplicate_axis_values_rejected() -> None:
    with pytest.raises(ConfigurationError, match="duplicate values"):
        expand([Axis("os", ("A", "A"))])


def test_duplicate_axis_names_rejected() -> None:
    with pytest.raises(ConfigurationError, match="Duplicate matrix axes"):
        expand([OS, Axis("os", ("D",))])


def test_exclude_and_include() -> None:
    spec = MatrixSpec(
        axes=(OS, TOOLCHAIN),
        exclude=({"os": "C", "toolchain": "w"},),
        include=({"os": "D", "toolchain": "x"},),
    )
    entries = expand(spec)
    assert len(entries) == 12
    assert MatrixEntry.of(os="C", toolchain="w") not in entries
    assert entries[-1] == MatrixEntry.of(os="D", toolchain="x")


def test_include_duplicating_an_entry_is_rejected() -> None:
    spec = MatrixSpec(axes=(OS,), include=({"os": "A"},))
    with pytest.raises(ConfigurationError, match="Duplicate matrix entry"):
        expand(spec)


def test_exclude_unknown_axis_rejected() -> None:
    spec = MatrixSpec(axes=(OS,), exclude=({"arch": "arm"},))
    with pytest.raises(ConfigurationError, match="unknown axes"):
        expand(spec)


def test_excluding_everything_is_an_error() -> None:
    spec = MatrixSpec(axes=(OS,), exclude=({},))
    with pytest.raises(ConfigurationError, match="zero entries"):
        expand(spec)


def test_select() -> None:
    entries = expand([OS, TOOLCHAIN])
    assert len(select(entries, {"os": "A"})) == 4


def test_expand_jobs_binds_matrix_references() -> None:
    spec = JobSpec(
        name="ci",
        steps=(Step("Build on ${{ matrix.os }}", Command("cargo", ("+${{ matrix.toolchain }}", "build"))),),
        runs_on="${{ matrix.os }}",
        toolchain="${{ matrix.toolchain }}",
        matrix=MatrixSpec(axes=(OS, TOOLCHAIN), allow_failure=({"toolchain": "w"},)),
    )
    jobs = expand_jobs(spec)
    assert len(jobs) == 12
    assert len({j.name for j in jobs}) == 12

    job = jobs[5]
    assert job.name == "ci (os=B, toolchain=y)"
    assert job.runs_on == "B"
    assert job.toolchain == "y"
    assert job.steps[0].name == "Build on B"
    assert job.steps[0].command.argv == ["cargo", "+y", "build"]
    assert job.blocking
    assert not jobs[3].blocking  # toolchain=w


def test_include_only_matrix_has_no_empty_entry() -> None:
    spec = MatrixSpec(include=({"os": "A"}, {"os": "B", "rust": "beta"}))
    assert [e.label for e in expand(spec)] == ["os=A", "os=B, rust=beta"]
