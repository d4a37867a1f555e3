# env.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from .model import EnvValue

# Lowest to highest precedence.
LAYERS: Tuple[str, ...] = ("process", "workflow", "job", "step")


def merge_layers(*layers: Mapping[str, EnvValue]) -> Dict[str, EnvValue]:
    """Ordered merge: later layers win."""
    merged: Dict[str, EnvValue] = {}
    for layer in layers:
        merged.update(layer)
    return merged


@dataclass(frozen=True)
class Environment:
    """
    Explicit, immutable environment configuration for one job or step.

    Replaces ambient process state: the process defaults are captured once
    and passed in, and every other layer is attached with `with_layer`.
    """
    process: Mapping[str, str] = field(default_factory=dict)
    workflow: Mapping[str, EnvValue] = field(default_factory=dict)
    job: Mapping[str, EnvValue] = field(default_factory=dict)
    step: Mapping[str, EnvValue] = field(default_factory=dict)

    def with_layer(self, name: str, values: Optional[Mapping[str, EnvValue]]) -> "Environment":
        if name not in LAYERS:
            raise ValueError(f"unknown env layer {name!r}; expected one of {LAYERS}")
        return replace(self, **{name: MappingProxyType(dict(values or {}))})

    def resolve(self) -> Mapping[str, EnvValue]:
        return MappingProxyType(merge_layers(self.process, self.workflow, self.job, self.step))

    def declared(self) -> Mapping[str, EnvValue]:
        """Everything except process defaults (what templates may refer to as env.X)."""
        return MappingProxyType(merge_layers(self.workflow, self.job, self.step))
