# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


class GantryError(Exception):
    """Base class for every error raised by gantry."""


class DefinitionError(GantryError):
    """Invalid workflow definition (cycle, unresolved reference, bad matrix). Fatal before any job runs."""


class ConditionEvaluationError(GantryError):
    """Malformed or unresolvable gate expression. Fatal for the owning job only."""


class TemplateError(GantryError):
    """A `${{ ... }}` placeholder that cannot be resolved when a step starts."""


@dataclass(eq=False)
class StepFailure(GantryError):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass(eq=False)
class TimedOut(GantryError):
    job: str
    step: Optional[str]
    timeout_seconds: float

    def __str__(self) -> str:
        where = f"step '{self.step}'" if self.step else "job"
        return f"[{self.job}] {where} exceeded {self.timeout_seconds:g}s"


@dataclass(eq=False)
class CredentialMissing(GantryError):
    secret: str
    scope: str

    def __str__(self) -> str:
        return f"required secret '{self.secret}' is not available (scope={self.scope})"


@dataclass(eq=False)
class PublishVerificationFailed(GantryError):
    ref: str
    expected: List[str]
    actual: List[str]
    details: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return (
            f"manifest {self.ref} does not match the intended platform set: "
            f"expected={sorted(self.expected)} actual={sorted(self.actual)}"
        )


@dataclass(eq=False)
class ImmutableTagError(GantryError):
    ref: str
    existing: str
    attempted: str

    def __str__(self) -> str:
        return f"tag {self.ref} is write-once: holds {self.existing}, refusing {self.attempted}"


class RunCancelled(GantryError):
    """Raised inside an instance when its run is cancelled."""


class RegistryError(GantryError):
    """A registry operation failed (network, auth, unknown reference)."""


class ArtifactNotFound(RegistryError):
    def __init__(self, ref: str):
        super().__init__(f"no such image or manifest: {ref}")
        self.ref = ref
