# src/gantry/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .model import (
    DerivedValue,
    EnvValue,
    Job,
    JoinPolicy,
    Matrix,
    MatrixAxis,
    Need,
    SecretRef,
    Step,
    TriggerEvent,
    Workflow,
)

NeedLike = Union[str, Need]


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, EnvValue]] = None,
    if_: Optional[str] = None,
    id: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, env=env or {}, if_=if_, id=id, timeout_seconds=timeout_seconds)


def uses(
    name: str,
    ref: str,
    *,
    env: Optional[Dict[str, EnvValue]] = None,
    if_: Optional[str] = None,
    id: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
    **inputs: Any,
) -> Step:
    """Create an action step: uses("Push", "gantry/image-build@v1", tag=..., platform=...)."""
    return Step(
        name=name,
        uses=ref,
        with_=dict(inputs),
        env=env or {},
        if_=if_,
        id=id,
        timeout_seconds=timeout_seconds,
    )


def secret(name: str) -> SecretRef:
    """Env value resolved by the broker when the step runs."""
    return SecretRef(name)


# ---------------------------------------------------------------------
# Dependencies + matrix
# ---------------------------------------------------------------------

def need(
    job: str,
    policy: Union[str, JoinPolicy] = JoinPolicy.ALL_SUCCEEDED,
    *,
    skipped_satisfies: bool = True,
) -> Need:
    return Need(job=job, policy=JoinPolicy(policy), skipped_satisfies=skipped_satisfies)


def _needs(items: Optional[Iterable[NeedLike]]) -> List[Need]:
    return [n if isinstance(n, Need) else Need(n) for n in items or []]


def matrix(**axes: Sequence[Any]) -> Matrix:
    """
    Matrix axes in declaration order.

    Example:
        job("build", sh(...), matrix=matrix(platform=["amd64", "arm64"]))
    """
    return Matrix(axes=[MatrixAxis(k, [str(v) for v in vals]) for k, vals in axes.items()])


def _derive(m: Optional[Matrix], derive: Optional[Mapping[str, Tuple[str, Mapping[str, str]]]]) -> Optional[Matrix]:
    if not derive:
        return m
    if m is None:
        raise ValueError("derive= needs a matrix")
    extra = [DerivedValue(name, axis, dict(table)) for name, (axis, table) in derive.items()]
    return replace(m, derived=[*m.derived, *extra])


# ---------------------------------------------------------------------
# Functional Job helpers
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[NeedLike]] = None,
    matrix: Optional[Matrix] = None,
    derive: Optional[Mapping[str, Tuple[str, Mapping[str, str]]]] = None,
    if_: Optional[str] = None,
    env: Optional[Dict[str, EnvValue]] = None,
    runs_on: str = "ubuntu-latest",
    timeout_seconds: Optional[float] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=_needs(needs),
        matrix=_derive(matrix, derive),
        if_=if_,
        env=env or {},
        runs_on=runs_on,
        timeout_seconds=timeout_seconds,
    )


def aggregate(name: str, needs: List[NeedLike]) -> Job:
    """The merge gate: no steps, succeeds iff every needed job satisfied its edge."""
    return Job(name=name, needs=_needs(needs), aggregate=True)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[Need] = []
        self._steps: list[Step] = []
        self._env: dict[str, EnvValue] = {}
        self._matrix: Optional[Matrix] = None
        self._if: Optional[str] = None
        self._runs_on = "ubuntu-latest"
        self._timeout: Optional[float] = None

    def depends_on(self, *job_names: NeedLike):
        self._needs.extend(_needs(job_names))
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, name: str, ref: str, **inputs):
        self._steps.append(uses(name, ref, **inputs))
        return self

    def with_env(self, **env):
        # secrets stay references; everything else is forced to str
        self._env.update({k: v if isinstance(v, SecretRef) else str(v) for k, v in env.items()})
        return self

    def with_matrix(self, **axes: Sequence[Any]):
        self._matrix = matrix(**axes)
        return self

    def derive(self, name: str, axis: str, table: Mapping[str, str]):
        self._matrix = _derive(self._matrix, {name: (axis, table)})
        return self

    def when(self, condition: str):
        self._if = condition
        return self

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            matrix=self._matrix,
            if_=self._if,
            env=dict(self._env),
            runs_on=self._runs_on,
            timeout_seconds=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: Job,
    on: Optional[Iterable[Union[str, TriggerEvent]]] = None,
    env: Optional[Dict[str, EnvValue]] = None,
) -> Workflow:
    """
    Workflow definition helper.

    Users can write:
        from gantry import wf, job, sh

        def workflow():
            return wf(
                "ci",
                job(...),
                job(...),
            )

    Or define WORKFLOW directly:
        WORKFLOW = wf("ci", job(...), job(...))
    """
    events = [TriggerEvent(e) for e in on] if on is not None else list(TriggerEvent)
    return Workflow(name=name, jobs=list(jobs), on=events, env=env or {})
