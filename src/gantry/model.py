# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class TriggerEvent(str, Enum):
    """Events a workflow run can be started by."""
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    WORKFLOW_DISPATCH = "workflow_dispatch"


class JobStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = {
    JobStatus.SUCCEEDED,
    JobStatus.FAILED,
    JobStatus.SKIPPED,
    JobStatus.CANCELLED,
    JobStatus.TIMED_OUT,
}


class SkipReason(str, Enum):
    GATE = "gate"          # the job's own `if` evaluated to false
    UPSTREAM = "upstream"  # a needed job did not satisfy its join policy


class JoinPolicy(str, Enum):
    """How a `needs` edge is satisfied by the full instance set of a job."""
    ALL_SUCCEEDED = "all_succeeded"
    ANY_SUCCEEDED = "any_succeeded"


@dataclass(frozen=True)
class Need:
    """One `needs` edge. `skipped_satisfies` covers gate-skipped instances only."""
    job: str
    policy: JoinPolicy = JoinPolicy.ALL_SUCCEEDED
    skipped_satisfies: bool = True


@dataclass(frozen=True)
class SecretRef:
    """Placeholder for a secret value inside an env mapping."""
    name: str

    def __str__(self) -> str:
        return f"<secret {self.name}>"


EnvValue = Union[str, SecretRef]


@dataclass(frozen=True)
class Step:
    """
    A single step inside a CI job.

    Exactly one of `run` (opaque shell command) or `uses` (versioned action
    reference such as `gantry/image-build@v1`, with typed inputs in `with_`).
    """
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, EnvValue] = field(default_factory=dict)
    if_: Optional[str] = None
    id: Optional[str] = None
    cwd: Optional[str] = None
    timeout_seconds: Optional[float] = None

    @property
    def kind(self) -> str:
        return "action" if self.uses else "command"


@dataclass(frozen=True)
class MatrixAxis:
    name: str
    values: List[str]


@dataclass(frozen=True)
class DerivedValue:
    """Lookup table from an axis value to a derived value (e.g. amd64 -> x86_64)."""
    name: str
    axis: str
    table: Dict[str, str]


@dataclass(frozen=True)
class Matrix:
    axes: List[MatrixAxis]
    derived: List[DerivedValue] = field(default_factory=list)

    @property
    def size(self) -> int:
        n = 1
        for axis in self.axes:
            n *= len(axis.values)
        return n


@dataclass
class Job:
    """
    A CI job definition: steps + dependencies + gating.

    `aggregate=True` marks the merge gate: it has no steps and its terminal
    status is the run's externally observed result.
    """
    name: str
    steps: List[Step] = field(default_factory=list)
    needs: List[Need] = field(default_factory=list)
    matrix: Optional[Matrix] = None
    if_: Optional[str] = None
    env: Dict[str, EnvValue] = field(default_factory=dict)
    runs_on: str = "ubuntu-latest"
    timeout_seconds: Optional[float] = None
    aggregate: bool = False


@dataclass
class Workflow:
    name: str
    jobs: List[Job]
    on: List[TriggerEvent] = field(default_factory=lambda: list(TriggerEvent))
    env: Dict[str, EnvValue] = field(default_factory=dict)

    @property
    def aggregator(self) -> Optional[Job]:
        for j in self.jobs:
            if j.aggregate:
                return j
        return None


@dataclass(frozen=True)
class RunContext:
    """Static, immutable facts about a run; the only input gates see besides upstream results."""
    event: TriggerEvent
    ref: str
    sha: str
    repository: str
    run_id: str

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    @property
    def repository_owner(self) -> str:
        return self.repository.split("/", 1)[0]

    @property
    def repository_name(self) -> str:
        return self.repository.rsplit("/", 1)[-1]

    def as_scope(self) -> Dict[str, str]:
        return {
            "event": self.event.value,
            "ref": self.ref,
            "ref_name": self.ref_name,
            "sha": self.sha,
            "repository": self.repository,
            "repository_owner": self.repository_owner,
            "repository_name": self.repository_name,
            "run_id": self.run_id,
        }


@dataclass
class StepRecord:
    name: str
    status: JobStatus = JobStatus.PENDING
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    error: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


@dataclass
class JobRun:
    """Runtime instantiation of a Job: one per matrix tuple."""
    job: str
    instance_id: str
    matrix_values: Dict[str, str] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    skip_reason: Optional[SkipReason] = None
    error: Optional[str] = None
    steps: List[StepRecord] = field(default_factory=list)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def log(self) -> str:
        lines: List[str] = []
        for rec in self.steps:
            lines.append(f"## {rec.name} [{rec.status.value}]")
            if rec.stdout:
                lines.append(rec.stdout.rstrip("\n"))
            if rec.stderr:
                lines.append(rec.stderr.rstrip("\n"))
            if rec.error:
                lines.append(f"error: {rec.error}")
        if self.error and not any(rec.error == self.error for rec in self.steps):
            lines.append(f"error: {self.error}")
        return "\n".join(lines)
