"""Shared fixtures: a quiet console, an in-memory registry and secret store, and a run helper.

Steps run real shell commands (`true`, `false`, `echo`, `sleep`) with a
minimal process environment; nothing touches a real registry.
"""

from __future__ import annotations

import io
import os
from concurrent.futures import ThreadPoolExecutor

import pytest

from gantry.credentials import MappingSecretStore, SecretBroker
from gantry.executor import StepExecutor
from gantry.model import RunContext, TriggerEvent
from gantry.publish import ImagePublisher, InMemoryRegistry
from gantry.runner import run_workflow
from gantry.ui.console import Console

SHA = "0123456789abcdef0123456789abcdef01234567"

SECRETS = {
    "GITHUB_TOKEN": "ghp_s3cr3t_value",
    "DOCKERHUB_TOKEN": "dckr_pat_value",
    "FLY_API_TOKEN": "fly-token-value",
}


@pytest.fixture
def console() -> Console:
    return Console(stream=io.StringIO())


@pytest.fixture
def registry() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture
def store() -> MappingSecretStore:
    return MappingSecretStore(SECRETS)


@pytest.fixture
def make_context():
    def _make(
        event: TriggerEvent = TriggerEvent.PUSH,
        ref: str = "refs/heads/main",
        sha: str = SHA,
        repository: str = "acme/api",
        run_id: str = "run-1",
    ) -> RunContext:
        return RunContext(event=event, ref=ref, sha=sha, repository=repository, run_id=run_id)
    return _make


@pytest.fixture
def context(make_context) -> RunContext:
    return make_context()


@pytest.fixture
def executor(console, store, registry, tmp_path) -> StepExecutor:
    return StepExecutor(
        SecretBroker(store, redactor=console.redactor),
        publisher=ImagePublisher(registry),
        console=console,
        process_env={"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "HOME": str(tmp_path)},
        repo_root=tmp_path,
    )


@pytest.fixture
def run(executor, console, context):
    """Compile and run a workflow on a small thread pool."""
    def _run(workflow, ctx=None, workers: int = 4):
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return run_workflow(workflow, ctx or context, executor, pool=pool, console=console)
    return _run
