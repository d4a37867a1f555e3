# gantry_workflow.py
# Workflow for gantry itself: lint, tests, and a merge gate
from __future__ import annotations

from gantry.dsl import aggregate, job, matrix, sh, wf


def workflow():
    return wf(
        "gantry",
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
        ),

        # Test job - one instance per supported interpreter
        job(
            "test",
            sh("Install package", "python${{ matrix.python }} -m pip install -e '.[test]'"),
            sh("Run pytest", "python${{ matrix.python }} -m pytest -q"),
            matrix=matrix(python=["3.10", "3.11", "3.12"]),
            timeout_seconds=20 * 60,
        ),

        # Format check is informational: nothing needs it
        job(
            "format-check",
            sh("Ruff format check", "ruff format --check ."),
        ),

        aggregate("accept", needs=["lint", "test"]),
        on=["push", "pull_request", "workflow_dispatch"],
    )
