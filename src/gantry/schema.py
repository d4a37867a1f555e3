"""Workflow document schema.

Pydantic models for the YAML workflow format. They only describe shape;
`to_workflow()` turns a validated document into the runtime dataclasses and
the graph-level checks happen in `gantry.dag`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

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

Scalar = Union[str, int, float, bool]


def _scalar(value: Scalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class SecretSpec(BaseModel):
    """`{secret: NAME}` inside an env mapping."""
    model_config = ConfigDict(extra="forbid")

    secret: str = Field(..., min_length=1, description="Secret name known to the broker")


EnvSpec = Dict[str, Union[SecretSpec, Scalar]]


def _env(values: EnvSpec) -> Dict[str, EnvValue]:
    return {
        k: SecretRef(v.secret) if isinstance(v, SecretSpec) else _scalar(v)
        for k, v in values.items()
    }


class NeedSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job: str
    policy: JoinPolicy = Field(JoinPolicy.ALL_SUCCEEDED, description="all_succeeded | any_succeeded")
    skipped_satisfies: bool = Field(True, description="Whether a gate-skipped instance satisfies the edge")

    def to_need(self) -> Need:
        return Need(job=self.job, policy=self.policy, skipped_satisfies=self.skipped_satisfies)


class StepSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: EnvSpec = Field(default_factory=dict)
    if_: Optional[str] = Field(None, alias="if")
    working_directory: Optional[str] = Field(None, alias="working-directory")
    timeout_seconds: Optional[float] = Field(None, alias="timeout-seconds", gt=0)

    @model_validator(mode="after")
    def validate_kind(self) -> "StepSpec":
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"step '{self.name}' needs exactly one of 'run' or 'uses'")
        return self

    def to_step(self) -> Step:
        return Step(
            name=self.name,
            run=self.run,
            uses=self.uses,
            with_=dict(self.with_),
            env=_env(self.env),
            if_=self.if_,
            id=self.id,
            cwd=self.working_directory,
            timeout_seconds=self.timeout_seconds,
        )


class DeriveSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    axis: str
    values: Dict[Scalar, Scalar]


class JobSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = Field(None, description="Display name; the mapping key is the job id")
    runs_on: str = Field("ubuntu-latest", alias="runs-on")
    needs: List[Union[str, NeedSpec]] = Field(default_factory=list)
    matrix: Optional[Dict[str, List[Scalar]]] = None
    derive: Dict[str, DeriveSpec] = Field(default_factory=dict)
    if_: Optional[str] = Field(None, alias="if")
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes", gt=0)
    env: EnvSpec = Field(default_factory=dict)
    steps: List[StepSpec] = Field(default_factory=list)
    aggregate: bool = False

    @field_validator("needs", mode="before")
    @classmethod
    def single_need(cls, v):
        if isinstance(v, (str, dict)):
            return [v]
        return v

    def to_job(self, key: str) -> Job:
        matrix: Optional[Matrix] = None
        if self.matrix is not None:
            matrix = Matrix(
                axes=[MatrixAxis(axis, [_scalar(x) for x in values]) for axis, values in self.matrix.items()],
                derived=[
                    DerivedValue(name, d.axis, {_scalar(k): _scalar(v) for k, v in d.values.items()})
                    for name, d in self.derive.items()
                ],
            )
        elif self.derive:
            raise ValueError(f"job '{key}' declares 'derive' without a matrix")

        return Job(
            name=key,
            steps=[s.to_step() for s in self.steps],
            needs=[n.to_need() if isinstance(n, NeedSpec) else Need(n) for n in self.needs],
            matrix=matrix,
            if_=self.if_,
            env=_env(self.env),
            runs_on=self.runs_on,
            timeout_seconds=self.timeout_minutes * 60 if self.timeout_minutes else None,
            aggregate=self.aggregate,
        )


class WorkflowSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    on: List[TriggerEvent] = Field(default_factory=lambda: list(TriggerEvent))
    env: EnvSpec = Field(default_factory=dict)
    jobs: Dict[str, JobSpec] = Field(..., description="Job id -> job definition")

    @field_validator("on", mode="before")
    @classmethod
    def normalize_on(cls, v):
        # `on: push`, `on: [push]` and `on: {push: {...}}` are all accepted
        if isinstance(v, str):
            return [v]
        if isinstance(v, dict):
            return list(v.keys())
        return v

    def to_workflow(self) -> Workflow:
        return Workflow(
            name=self.name,
            jobs=[spec.to_job(key) for key, spec in self.jobs.items()],
            on=list(self.on),
            env=_env(self.env),
        )
