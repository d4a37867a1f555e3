# actions/registry.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..credentials import SecretBroker
from ..errors import DefinitionError
from ..publish.publisher import ImagePublisher

_REF = re.compile(r"^[A-Za-z0-9_.\-]+/[A-Za-z0-9_.\-]+@[A-Za-z0-9_.\-]+$")


@dataclass(frozen=True)
class Input:
    kind: type = str
    required: bool = True
    default: Any = None


@dataclass
class ActionContext:
    """What a running action sees: its rendered inputs, resolved env and the shared collaborators."""
    job: str
    instance_id: str
    step: str
    inputs: Dict[str, Any]
    env: Mapping[str, str]
    broker: SecretBroker
    publisher: ImagePublisher
    matrix: Mapping[str, str] = field(default_factory=dict)
    lines: List[str] = field(default_factory=list)

    def log(self, line: str) -> None:
        self.lines.append(line)


ActionFn = Callable[[ActionContext], Optional[Dict[str, str]]]


@dataclass(frozen=True)
class ActionSpec:
    ref: str
    fn: ActionFn
    inputs: Dict[str, Input]
    description: str = ""

    def bind(self, given: Mapping[str, Any], *, where: str) -> Dict[str, Any]:
        """Check names and types of `with:` inputs and fill in defaults."""
        unknown = sorted(set(given) - set(self.inputs))
        if unknown:
            raise DefinitionError(f"{where}: action {self.ref} has no input(s) {unknown}")
        bound: Dict[str, Any] = {}
        for name, spec in self.inputs.items():
            if name not in given:
                if spec.required:
                    raise DefinitionError(f"{where}: action {self.ref} requires input '{name}'")
                bound[name] = spec.default
                continue
            value = given[name]
            if spec.kind is str and isinstance(value, (int, float, bool)):
                value = str(value)
            if not isinstance(value, spec.kind):
                raise DefinitionError(
                    f"{where}: input '{name}' of {self.ref} must be {spec.kind.__name__}, got {type(value).__name__}"
                )
            bound[name] = value
        return bound


class ActionRegistry:
    """Versioned reusable actions, looked up by `owner/name@version`."""

    def __init__(self) -> None:
        self._actions: Dict[str, ActionSpec] = {}

    def register(self, ref: str, fn: ActionFn, inputs: Optional[Dict[str, Input]] = None, description: str = "") -> None:
        if not _REF.match(ref):
            raise ValueError(f"action reference must look like owner/name@version, got {ref!r}")
        self._actions[ref] = ActionSpec(ref=ref, fn=fn, inputs=dict(inputs or {}), description=description)

    def action(self, ref: str, inputs: Optional[Dict[str, Input]] = None):
        def deco(fn: ActionFn) -> ActionFn:
            self.register(ref, fn, inputs, description=(fn.__doc__ or "").strip().splitlines()[0] if fn.__doc__ else "")
            return fn
        return deco

    def get(self, ref: str) -> ActionSpec:
        try:
            return self._actions[ref]
        except KeyError:
            raise DefinitionError(f"unknown action '{ref}'. Known actions: {sorted(self._actions)}") from None

    def refs(self) -> List[str]:
        return sorted(self._actions)

    def copy(self) -> "ActionRegistry":
        other = ActionRegistry()
        other._actions = dict(self._actions)
        return other
