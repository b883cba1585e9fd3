# matrix.py
from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Sequence

from .errors import ConfigurationError
from .model import Axis, Job, JobSpec, MatrixEntry, MatrixSpec


def validate_axes(axes: Sequence[Axis]) -> None:
    names = [a.name for a in axes]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate matrix axes: {dupes}")

    for axis in axes:
        if not axis.values:
            raise ConfigurationError(f"Matrix axis '{axis.name}' has no values")
        values = list(axis.values)
        if len(set(values)) != len(values):
            dupes = sorted({v for v in values if values.count(v) > 1})
            raise ConfigurationError(f"Matrix axis '{axis.name}' has duplicate values: {dupes}")


def cross_product(axes: Sequence[Axis]) -> List[MatrixEntry]:
    """
    Explicit cross product over `axes`.

    Ordered lexicographically by axis declaration order, then value declaration
    order (the last axis varies fastest). Zero axes yield one empty entry.
    """
    validate_axes(axes)

    rows: List[List[tuple]] = [[]]
    for axis in axes:
        next_rows: List[List[tuple]] = []
        for row in rows:
            for value in axis.values:
                next_rows.append(row + [(axis.name, str(value))])
        rows = next_rows

    return [MatrixEntry(tuple(r)) for r in rows]


def _selector_keys_known(selectors: Iterable[Mapping[str, str]], names: List[str], what: str) -> None:
    for sel in selectors:
        unknown = sorted(set(sel) - set(names))
        if unknown:
            raise ConfigurationError(f"matrix {what} references unknown axes {unknown}")


def expand(spec: MatrixSpec | Sequence[Axis]) -> List[MatrixEntry]:
    """
    Expand a matrix into its entries.

    `exclude` drops entries matching every key of a selector; `include`
    appends extra entries after the cross product. Duplicates are rejected.
    """
    if not isinstance(spec, MatrixSpec):
        spec = MatrixSpec(axes=tuple(spec))

    names = spec.axis_names
    _selector_keys_known(spec.exclude, names, "exclude")

    # an include-only matrix has no base row
    base = cross_product(spec.axes) if spec.axes or not spec.include else []
    entries = [e for e in base if not any(e.matches(sel) for sel in spec.exclude)]
    for extra in spec.include:
        ordered: Dict[str, str] = {n: str(extra[n]) for n in names if n in extra}
        ordered.update({k: str(v) for k, v in extra.items() if k not in ordered})
        entries.append(MatrixEntry(tuple(ordered.items())))

    seen = set()
    for e in entries:
        if e in seen:
            raise ConfigurationError(f"Duplicate matrix entry: {e.label}")
        seen.add(e)

    if not entries:
        raise ConfigurationError("Matrix expands to zero entries")

    return entries


def expand_jobs(spec: JobSpec) -> List[Job]:
    """Bind a job template to every entry of its matrix."""
    return [Job.bind(spec, entry) for entry in expand(spec.matrix)]


def select(entries: Iterable[MatrixEntry], selector: Mapping[str, str]) -> List[MatrixEntry]:
    return [e for e in entries if e.matches(selector)]
