"""`${{ name }}` placeholder rendering for step parameters, env values and tags."""

from __future__ import annotations

import re
from typing import Any, Callable, Mapping

from .errors import TemplateError

PLACEHOLDER = re.compile(r"\$\{\{\s*([A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z0-9_\-]+)*)\s*\}\}")


def placeholders(template: str) -> list[str]:
    return PLACEHOLDER.findall(template)


def render(template: str, scope: Mapping[str, str]) -> str:
    """Replace every placeholder from `scope`; an unknown name raises TemplateError."""

    def _sub(m: re.Match) -> str:
        name = m.group(1)
        if name.startswith("github."):
            name = name[len("github."):]
        if name not in scope:
            raise TemplateError(f"unresolved reference '${{{{ {m.group(1)} }}}}'")
        return str(scope[name])

    return PLACEHOLDER.sub(_sub, template)


def render_namespace(template: str, namespace: str, values: Mapping[str, str], on_missing: Callable[[str], Exception]) -> str:
    """
    Replace only `${{ namespace.X }}` placeholders, leaving every other one in place
    for a later pass. Unknown X raises `on_missing(X)`.
    """
    prefix = namespace + "."

    def _sub(m: re.Match) -> str:
        name = m.group(1)
        if not name.startswith(prefix):
            return m.group(0)
        key = name[len(prefix):]
        if key not in values:
            raise on_missing(key)
        return str(values[key])

    return PLACEHOLDER.sub(_sub, template)


def render_value(value: Any, fn: Callable[[str], str]) -> Any:
    """Apply `fn` to every string inside a (possibly nested) input value."""
    if isinstance(value, str):
        return fn(value)
    if isinstance(value, list):
        return [render_value(v, fn) for v in value]
    if isinstance(value, dict):
        return {k: render_value(v, fn) for k, v in value.items()}
    return value
