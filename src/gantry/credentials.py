# credentials.py
from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Protocol

from .errors import CredentialMissing

MASK = "***"


class SecretStore(Protocol):
    def get(self, name: str) -> Optional[str]:
        ...

    def scrub(self, environ: Mapping[str, str]) -> Dict[str, str]:
        """Copy of `environ` without anything this store serves as a secret."""
        ...


class EnvSecretStore:
    """Reads secrets from the process environment, e.g. GANTRY_SECRET_FLY_API_TOKEN."""

    def __init__(self, prefix: str = "GANTRY_SECRET_", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str) -> Optional[str]:
        return self._environ.get(f"{self.prefix}{name}")

    def scrub(self, environ: Mapping[str, str]) -> Dict[str, str]:
        # Secrets reach a step only through a declared SecretRef.
        return {k: v for k, v in environ.items() if not k.startswith(self.prefix)}


class MappingSecretStore:
    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values: Dict[str, str] = dict(values or {})

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)

    def scrub(self, environ: Mapping[str, str]) -> Dict[str, str]:
        return dict(environ)


@dataclass(frozen=True)
class Secret:
    name: str
    value: str = field(repr=False)
    scope: str = "job"

    def __str__(self) -> str:
        return MASK


class Redactor:
    """Collects every secret value handed out and masks it in captured text."""

    def __init__(self) -> None:
        self._values: set[str] = set()
        self._lock = threading.Lock()

    def add(self, value: str) -> None:
        if value:
            with self._lock:
                self._values.add(value)

    def redact(self, text: Optional[str]) -> str:
        if not text:
            return text or ""
        with self._lock:
            values = sorted(self._values, key=len, reverse=True)
        for v in values:
            text = text.replace(v, MASK)
        return text


class SecretBroker:
    """
    Resolves named secrets at execution time.

    A missing or empty secret raises CredentialMissing; it is never replaced
    by an empty string. Every resolved value is registered with the redactor
    before it is returned.
    """

    def __init__(self, store: SecretStore, redactor: Optional[Redactor] = None):
        self.store = store
        self.redactor = redactor or Redactor()

    def resolve(self, name: str, scope: str = "job") -> Secret:
        value = self.store.get(name)
        if not value:
            raise CredentialMissing(secret=name, scope=scope)
        self.redactor.add(value)
        return Secret(name=name, value=value, scope=scope)

    def scrub(self, environ: Mapping[str, str]) -> Dict[str, str]:
        return self.store.scrub(environ)
