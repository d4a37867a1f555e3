from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_DATABASE_URL = "sqlite:///.gantry/runs.db"


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    workflow: Optional[str] = None
    max_workers: Optional[int] = None
    registry: str = "memory"
    secret_prefix: str = "GANTRY_SECRET_"
    repo_root: str = "."

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        workers = env.get("GANTRY_MAX_WORKERS")
        return cls(
            database_url=env.get("GANTRY_DATABASE_URL", DEFAULT_DATABASE_URL),
            workflow=env.get("GANTRY_WORKFLOW") or None,
            max_workers=int(workers) if workers else None,
            registry=env.get("GANTRY_REGISTRY", "memory"),
            secret_prefix=env.get("GANTRY_SECRET_PREFIX", "GANTRY_SECRET_"),
            repo_root=env.get("GANTRY_REPO_ROOT", "."),
        )
