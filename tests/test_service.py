from __future__ import annotations

import os
import textwrap
import time

import pytest
from fastapi.testclient import TestClient

from gantry.credentials import MappingSecretStore
from gantry.publish import InMemoryRegistry
from gantry.service.app import create_app
from gantry.service.settings import Settings

from conftest import SECRETS, SHA

WORKFLOW = """
name: service-demo
on: [push, workflow_dispatch]
jobs:
  build:
    matrix: {platform: [amd64, arm64]}
    steps:
      - name: build
        run: echo building ${{ matrix.platform }} token=$TOKEN
        env:
          TOKEN: {secret: GITHUB_TOKEN}
  deploy:
    needs: build
    if: ref == 'refs/heads/main'
    steps:
      - name: deploy
        run: echo deploying
"""

SLOW = """
name: slow
jobs:
  slow:
    steps:
      - name: sleep
        run: sleep 10
  after:
    needs: slow
    steps:
      - name: after
        run: "true"
"""

TRIGGER = {"event": "push", "ref": "refs/heads/main", "sha": SHA, "repository": "acme/api"}


@pytest.fixture
def make_client(tmp_path, console):
    clients = []

    def _make(body: str = WORKFLOW, workflow: str | None = "ci.yml"):
        (tmp_path / "ci.yml").write_text(textwrap.dedent(body))
        settings = Settings(database_url="sqlite://", workflow=workflow, max_workers=4, repo_root=str(tmp_path))
        app = create_app(
            settings,
            registry=InMemoryRegistry(),
            secret_store=MappingSecretStore(SECRETS),
            process_env={"PATH": os.environ.get("PATH", "/usr/bin:/bin")},
            console=console,
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


def _finish(client, run_id: str) -> dict:
    client.app.state.runs.wait(run_id, timeout=30)
    response = client.get(f"/runs/{run_id}")
    assert response.status_code == 200
    return response.json()


class TestTrigger:
    def test_run_is_archived_with_results(self, make_client):
        client = make_client()
        response = client.post("/runs", json=TRIGGER)
        assert response.status_code == 202
        body = response.json()
        assert body["instances"] == ["build[amd64]", "build[arm64]", "deploy", "aggregate"]

        run = _finish(client, body["run_id"])
        assert run["status"] == "succeeded"
        assert run["workflow"] == "service-demo"
        assert run["finished_at"] is not None
        assert {j["instance_id"]: j["status"] for j in run["jobs"]} == {
            "build[amd64]": "succeeded",
            "build[arm64]": "succeeded",
            "deploy": "succeeded",
            "aggregate": "succeeded",
        }

    def test_gate_skip_is_reported(self, make_client):
        client = make_client()
        run_id = client.post("/runs", json={**TRIGGER, "ref": "refs/heads/feature"}).json()["run_id"]
        jobs = {j["instance_id"]: j for j in _finish(client, run_id)["jobs"]}
        assert jobs["deploy"]["status"] == "skipped"
        assert jobs["deploy"]["skip_reason"] == "gate"

    def test_logs_are_redacted(self, make_client):
        client = make_client()
        run_id = client.post("/runs", json=TRIGGER).json()["run_id"]
        _finish(client, run_id)

        response = client.get(f"/runs/{run_id}/jobs/build[arm64]/logs")
        assert response.status_code == 200
        assert "building arm64 token=***" in response.text
        assert SECRETS["GITHUB_TOKEN"] not in response.text

        assert client.get(f"/runs/{run_id}/jobs/nope/logs").status_code == 404
        assert client.get("/runs/unknown/jobs/deploy/logs").status_code == 404

    def test_untriggered_event(self, make_client):
        client = make_client()
        response = client.post("/runs", json={**TRIGGER, "event": "pull_request"})
        assert response.status_code == 422
        assert "not triggered" in response.json()["detail"]

    def test_request_validation(self, make_client):
        client = make_client()
        assert client.post("/runs", json={**TRIGGER, "sha": "abc"}).status_code == 422
        assert client.post("/runs", json={"ref": "refs/heads/main"}).status_code == 422

    def test_no_workflow_configured(self, make_client):
        client = make_client(workflow=None)
        assert client.post("/runs", json=TRIGGER).status_code == 503

    def test_invalid_workflow(self, make_client):
        client = make_client(body="name: broken\njobs: {a: {needs: b, steps: [{name: a, run: x}]}}\n")
        response = client.post("/runs", json=TRIGGER)
        assert response.status_code == 422
        assert "missing job 'b'" in response.json()["detail"]


class TestRunLookup:
    def test_unknown_run(self, make_client):
        client = make_client()
        assert client.get("/runs/unknown").status_code == 404
        assert client.post("/runs/unknown/cancel").status_code == 404

    def test_cancel_after_finish_conflicts(self, make_client):
        client = make_client()
        run_id = client.post("/runs", json=TRIGGER).json()["run_id"]
        _finish(client, run_id)
        assert client.post(f"/runs/{run_id}/cancel").status_code == 409


class TestCancel:
    def test_cancel_running_run(self, make_client):
        client = make_client(SLOW)
        run_id = client.post("/runs", json={**TRIGGER, "event": "workflow_dispatch"}).json()["run_id"]

        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            jobs = {j["instance_id"]: j["status"] for j in client.get(f"/runs/{run_id}").json()["jobs"]}
            if jobs["slow"] == "running":
                break
            time.sleep(0.05)

        response = client.post(f"/runs/{run_id}/cancel")
        assert response.status_code == 202
        assert response.json() == {"run_id": run_id, "status": "cancelling"}

        run = _finish(client, run_id)
        assert run["status"] == "cancelled"
        assert {j["instance_id"]: j["status"] for j in run["jobs"]} == {
            "slow": "cancelled",
            "after": "cancelled",
            "aggregate": "cancelled",
        }
