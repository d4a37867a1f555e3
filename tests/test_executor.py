from __future__ import annotations

import os
import threading

import pytest

from gantry.credentials import EnvSecretStore, SecretBroker
from gantry.dsl import job, secret, sh, uses, wf
from gantry.executor import StepExecutor
from gantry.gates import GateContext
from gantry.model import JobRun, JobStatus

from conftest import SECRETS, SHA


@pytest.fixture
def execute(executor, context):
    """Run a single job instance directly through the executor."""
    def _execute(j, workflow=None, matrix=None, cancel=None):
        jr = JobRun(job=j.name, instance_id=j.name, matrix_values=matrix or {})
        status = executor.run(
            j,
            jr,
            workflow or wf("w", j),
            context,
            GateContext(run=context, matrix=matrix or {}),
            cancel or threading.Event(),
        )
        assert status is jr.status
        return jr
    return _execute


class TestSteps:
    def test_steps_run_in_order(self, execute, tmp_path):
        jr = execute(job(
            "j",
            sh("one", "echo one >> order.txt"),
            sh("two", "echo two >> order.txt"),
            sh("three", "echo three >> order.txt"),
        ))
        assert jr.status is JobStatus.SUCCEEDED
        assert (tmp_path / "order.txt").read_text().split() == ["one", "two", "three"]
        assert [s.status for s in jr.steps] == [JobStatus.SUCCEEDED] * 3

    def test_failing_step_aborts_the_rest(self, execute, tmp_path):
        jr = execute(job(
            "j",
            sh("ok", "touch first"),
            sh("boom", "echo broken >&2; exit 3"),
            sh("never", "touch never"),
        ))
        assert jr.status is JobStatus.FAILED
        assert (tmp_path / "first").exists()
        assert not (tmp_path / "never").exists()
        failed = jr.steps[-1]
        assert failed.name == "boom"
        assert failed.exit_code == 3
        assert "broken" in failed.stderr
        assert "exit=3" in jr.error

    def test_missing_cwd_fails(self, execute):
        jr = execute(job("j", sh("s", "true", cwd="does/not/exist")))
        assert jr.status is JobStatus.FAILED
        assert "cwd not found" in jr.error

    def test_step_gate(self, execute, tmp_path):
        jr = execute(
            job(
                "j",
                sh("arm only", "touch arm", if_="matrix.platform == 'arm64'"),
                sh("always", "touch always"),
            ),
            matrix={"platform": "amd64"},
        )
        assert jr.status is JobStatus.SUCCEEDED
        assert [s.status for s in jr.steps] == [JobStatus.SKIPPED, JobStatus.SUCCEEDED]
        assert not (tmp_path / "arm").exists()

    def test_malformed_step_gate_fails_job(self, execute):
        jr = execute(job("j", sh("s", "true", if_="ref ==")))
        assert jr.status is JobStatus.FAILED

    def test_unresolved_template_fails_job(self, execute):
        jr = execute(job("j", sh("s", "echo ${{ env.NOPE }}")))
        assert jr.status is JobStatus.FAILED
        assert "env.NOPE" in jr.error


class TestEnvironment:
    def test_layer_precedence(self, execute):
        j = job(
            "j",
            sh("step wins", "echo X=$X", env={"X": "step"}),
            sh("job wins", "echo X=$X"),
            env={"X": "job"},
        )
        jr = execute(j, workflow=wf("w", j, env={"X": "workflow", "W": "only-workflow"}))
        assert jr.steps[0].stdout.strip() == "X=step"
        assert jr.steps[1].stdout.strip() == "X=job"

    def test_process_env_is_the_lowest_layer(self, execute, tmp_path):
        jr = execute(job("j", sh("home", "echo $HOME")))
        assert jr.steps[0].stdout.strip() == str(tmp_path)

    def test_templates_in_env_and_commands(self, execute):
        j = job("j", sh("show", "echo $IMAGE ${{ env.IMAGE }}-${{ github.sha }}"))
        jr = execute(j, workflow=wf("w", j, env={"IMAGE": "ghcr.io/${{ repository }}"}))
        image = "ghcr.io/acme/api"
        assert jr.steps[0].stdout.split() == [image, f"{image}-{SHA}"]


class TestSecrets:
    def test_secret_env_is_masked_in_logs(self, execute):
        jr = execute(job("j", sh("leak", "echo token=$TOKEN", env={"TOKEN": secret("GITHUB_TOKEN")})))
        assert jr.status is JobStatus.SUCCEEDED
        assert SECRETS["GITHUB_TOKEN"] not in jr.log()
        assert "token=***" in jr.steps[0].stdout

    def test_missing_step_secret_fails_before_the_command(self, execute, tmp_path):
        jr = execute(job("j", sh("deploy", "touch deployed", env={"FLY": secret("MISSING")})))
        assert jr.status is JobStatus.FAILED
        assert "CredentialMissing" in jr.error
        assert not (tmp_path / "deployed").exists()

    def test_missing_job_secret_fails_before_any_step(self, execute, tmp_path):
        jr = execute(job("j", sh("first", "touch first"), env={"TOKEN": secret("MISSING")}))
        assert jr.status is JobStatus.FAILED
        assert jr.steps == []
        assert not (tmp_path / "first").exists()

    def test_login_resolves_brokered_password(self, execute, registry):
        jr = execute(job("j", uses("login", "gantry/registry-login@v1", registry="ghcr.io", username="acme", password_secret="GITHUB_TOKEN")))
        assert jr.status is JobStatus.SUCCEEDED
        assert registry.logins == [("ghcr.io", "acme")]

    def test_login_with_missing_secret_never_reaches_registry(self, execute, registry):
        jr = execute(job("j", uses("login", "gantry/registry-login@v1", registry="ghcr.io", username="acme", password_secret="NOPE")))
        assert jr.status is JobStatus.FAILED
        assert registry.logins == []

    def test_env_store_secrets_stay_out_of_undeclared_steps(self, console, context, tmp_path):
        environ = {"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "GANTRY_SECRET_FLY_API_TOKEN": "fly-live-s3cr3t"}
        executor = StepExecutor(
            SecretBroker(EnvSecretStore(environ=environ), redactor=console.redactor),
            console=console,
            process_env=environ,
            repo_root=tmp_path,
        )

        def execute(j):
            jr = JobRun(job=j.name, instance_id=j.name)
            executor.run(j, jr, wf("w", j), context, GateContext(run=context), threading.Event())
            return jr

        lint = execute(job("lint", sh("dump env", "env")))
        assert lint.status is JobStatus.SUCCEEDED
        assert "GANTRY_SECRET_FLY_API_TOKEN" not in lint.log()
        assert "fly-live-s3cr3t" not in lint.log()

        deploy = execute(job("deploy", sh("deploy", "echo token=$FLY", env={"FLY": secret("FLY_API_TOKEN")})))
        assert deploy.status is JobStatus.SUCCEEDED
        assert "token=***" in deploy.steps[0].stdout


class TestActions:
    def test_outputs_feed_later_steps(self, execute, registry):
        jr = execute(job(
            "j",
            uses("push", "gantry/image-build@v1", id="push", tag="ghcr.io/${{ repository }}:${{ sha }}-amd64", platform="amd64"),
            sh("show", "echo ${{ steps.push.outputs.digest }}"),
        ))
        assert jr.status is JobStatus.SUCCEEDED
        digest = jr.steps[0].outputs["digest"]
        assert digest.startswith("sha256:")
        assert jr.steps[1].stdout.strip() == digest
        assert list(registry.tags()) == [f"ghcr.io/acme/api:{SHA}-amd64"]

    def test_action_errors_fail_the_instance(self, execute):
        jr = execute(job("j", uses("promote", "gantry/image-promote@v1", tag="ghcr.io/acme/api:x", floating="ghcr.io/acme/api:latest", platforms=["amd64"])))
        assert jr.status is JobStatus.FAILED
        assert "PublishVerificationFailed" in jr.error


class TestTimeoutsAndCancellation:
    def test_step_timeout(self, execute, tmp_path):
        jr = execute(job("j", sh("slow", "sleep 10", timeout_seconds=0.5), sh("after", "touch after")))
        assert jr.status is JobStatus.TIMED_OUT
        assert jr.steps[0].status is JobStatus.TIMED_OUT
        assert not (tmp_path / "after").exists()

    def test_job_timeout_bounds_steps(self, execute):
        jr = execute(job("j", sh("slow", "sleep 10"), timeout_seconds=0.5))
        assert jr.status is JobStatus.TIMED_OUT
        assert (jr.ended_at - jr.started_at).total_seconds() < 5

    def test_cancel_before_start(self, execute, tmp_path):
        cancel = threading.Event()
        cancel.set()
        jr = execute(job("j", sh("s", "touch ran")), cancel=cancel)
        assert jr.status is JobStatus.CANCELLED
        assert not (tmp_path / "ran").exists()

    def test_cancel_interrupts_running_step(self, execute):
        cancel = threading.Event()
        timer = threading.Timer(0.3, cancel.set)
        timer.start()
        try:
            jr = execute(job("j", sh("slow", "sleep 10")), cancel=cancel)
        finally:
            timer.cancel()
        assert jr.status is JobStatus.CANCELLED
        assert (jr.ended_at - jr.started_at).total_seconds() < 5
