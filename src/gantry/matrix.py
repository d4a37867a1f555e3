# matrix.py
from __future__ import annotations

from dataclasses import replace
from itertools import product
from typing import Dict, List, Tuple

from .errors import DefinitionError
from .model import EnvValue, Job, Matrix, Step
from .templates import render_namespace, render_value


def validate_matrix(job: Job) -> None:
    m = job.matrix
    if m is None:
        return
    if not m.axes:
        raise DefinitionError(f"Job '{job.name}' declares a matrix with no axes")

    seen: set[str] = set()
    for axis in m.axes:
        if axis.name in seen:
            raise DefinitionError(f"Job '{job.name}' declares matrix axis '{axis.name}' twice")
        seen.add(axis.name)
        if not axis.values:
            raise DefinitionError(f"Job '{job.name}' matrix axis '{axis.name}' has no values")
        if len(set(axis.values)) != len(axis.values):
            raise DefinitionError(f"Job '{job.name}' matrix axis '{axis.name}' has duplicate values: {axis.values}")

    for d in m.derived:
        if d.name in seen:
            raise DefinitionError(f"Job '{job.name}' derived value '{d.name}' clashes with another matrix name")
        seen.add(d.name)
        axis = next((a for a in m.axes if a.name == d.axis), None)
        if axis is None:
            raise DefinitionError(f"Job '{job.name}' derived value '{d.name}' refers to unknown axis '{d.axis}'")
        missing = [v for v in axis.values if v not in d.table]
        if missing:
            raise DefinitionError(
                f"Job '{job.name}' derived value '{d.name}' has no entry for {d.axis}={missing}"
            )


def instance_id(job_name: str, values: Dict[str, str], axes: List[str]) -> str:
    if not axes:
        return job_name
    return f"{job_name}[{', '.join(values[a] for a in axes)}]"


def expand(job: Job) -> List[Tuple[str, Dict[str, str]]]:
    """
    Cartesian product over the job's axes, in declaration order.

    Returns one (instance_id, values) pair per tuple; `values` also carries the
    derived lookups. An unparameterized job yields a single instance.
    """
    validate_matrix(job)
    m = job.matrix
    if m is None:
        return [(job.name, {})]

    names = [a.name for a in m.axes]
    out: List[Tuple[str, Dict[str, str]]] = []
    for combo in product(*(a.values for a in m.axes)):
        values = {name: str(v) for name, v in zip(names, combo)}
        for d in m.derived:
            values[d.name] = d.table[values[d.axis]]
        out.append((instance_id(job.name, values, names), values))
    return out


def _missing(job: Job):
    def _err(key: str) -> Exception:
        return DefinitionError(f"Job '{job.name}' references unknown matrix value 'matrix.{key}'")
    return _err


def _sub_env(env: Dict[str, EnvValue], fn) -> Dict[str, EnvValue]:
    return {k: fn(v) if isinstance(v, str) else v for k, v in env.items()}


def substitute_matrix(job: Job, values: Dict[str, str]) -> Job:
    """Return a copy of `job` with `${{ matrix.X }}` rendered in step names, commands, inputs and env."""

    def fn(text: str) -> str:
        return render_namespace(text, "matrix", values, _missing(job))

    steps: List[Step] = []
    for s in job.steps:
        steps.append(
            replace(
                s,
                name=fn(s.name),
                run=fn(s.run) if s.run is not None else None,
                with_=render_value(s.with_, fn),
                env=_sub_env(s.env, fn),
                cwd=fn(s.cwd) if s.cwd is not None else None,
            )
        )

    return replace(
        job,
        steps=steps,
        env=_sub_env(job.env, fn),
    )
