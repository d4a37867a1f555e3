# executor.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

from .actions.images import default_actions
from .actions.registry import ActionContext, ActionRegistry
from .credentials import SecretBroker
from .env import Environment
from .errors import (
    ConditionEvaluationError,
    CredentialMissing,
    RunCancelled,
    StepFailure,
    TimedOut,
)
from .gates import GateContext, evaluate_gate
from .model import EnvValue, Job, JobRun, JobStatus, RunContext, SecretRef, Step, StepRecord, Workflow
from .publish.publisher import ImagePublisher
from .publish.registry import InMemoryRegistry
from .templates import render, render_value
from .ui.console import Console, get_console

POLL_SECONDS = 0.1
OUTPUT_TAIL = 4000


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _Deadline:
    def __init__(self, seconds: Optional[float]):
        self.seconds = seconds
        self._end = time.monotonic() + seconds if seconds else None

    def remaining(self) -> Optional[float]:
        if self._end is None:
            return None
        return max(0.0, self._end - time.monotonic())

    @property
    def expired(self) -> bool:
        return self._end is not None and time.monotonic() >= self._end


def _kill_group(proc: subprocess.Popen) -> None:
    # shell=True: the command runs as children of the shell and holds the pipes open
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


def _min_timeout(*values: Optional[float]) -> Optional[float]:
    present = [v for v in values if v is not None]
    return min(present) if present else None


class StepExecutor:
    """
    Runs one JobRun's steps strictly in order.

    Env precedence (highest wins): step > job > workflow > process default.
    The process default is captured once when the executor is built.
    A failing step aborts the rest of the instance; external side effects
    already produced are left as they are.
    """

    def __init__(
        self,
        broker: SecretBroker,
        *,
        actions: Optional[ActionRegistry] = None,
        publisher: Optional[ImagePublisher] = None,
        console: Optional[Console] = None,
        process_env: Optional[Mapping[str, str]] = None,
        repo_root: str | Path = ".",
    ):
        self.broker = broker
        self.actions = actions or default_actions()
        self.publisher = publisher or ImagePublisher(InMemoryRegistry())
        self.console = console or get_console()
        self.process_env: Dict[str, str] = broker.scrub(os.environ if process_env is None else process_env)
        self.repo_root = Path(repo_root).resolve()

    @property
    def redact(self):
        return self.broker.redactor.redact

    # ------------------------------------------------------------------
    # env + templates
    # ------------------------------------------------------------------

    def _render_layer(self, layer: Mapping[str, EnvValue], scope: Dict[str, str]) -> Dict[str, EnvValue]:
        return {k: render(v, scope) if isinstance(v, str) else v for k, v in layer.items()}

    def _materialize(self, env: Mapping[str, EnvValue], secret_scope: str, only: Mapping[str, EnvValue]) -> Dict[str, str]:
        """Swap SecretRefs declared in `only` for brokered values; raises CredentialMissing up front."""
        out: Dict[str, str] = {}
        for key, value in env.items():
            if isinstance(value, SecretRef):
                scope = secret_scope if key in only and only[key] == value else "job"
                out[key] = self.broker.resolve(value.name, scope=scope).value
            else:
                out[key] = value
        return out

    @staticmethod
    def _scope(context: RunContext, env: Mapping[str, EnvValue], matrix: Mapping[str, str], outputs: Mapping[str, Dict[str, str]]) -> Dict[str, str]:
        scope: Dict[str, str] = dict(context.as_scope())
        for k, v in env.items():
            if isinstance(v, str):
                scope[f"env.{k}"] = v
        for k, v in matrix.items():
            scope[f"matrix.{k}"] = v
        for step_id, values in outputs.items():
            for k, v in values.items():
                scope[f"steps.{step_id}.outputs.{k}"] = v
        return scope

    # ------------------------------------------------------------------
    # execution primitives
    # ------------------------------------------------------------------

    def _run_command(
        self,
        cmd: str,
        cwd: Path,
        env: Mapping[str, str],
        timeout: Optional[float],
        cancel: threading.Event,
    ) -> Tuple[int, str, str, Optional[str]]:
        """Returns (exit_code, stdout, stderr, interrupted) where interrupted is None | 'timeout' | 'cancel'."""
        proc = subprocess.Popen(
            cmd,
            shell=True,
            cwd=str(cwd),
            env=dict(env),
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        started = time.monotonic()
        while True:
            try:
                out, err = proc.communicate(timeout=POLL_SECONDS)
                return proc.returncode, out or "", err or "", None
            except subprocess.TimeoutExpired:
                interrupted = None
                if cancel.is_set():
                    interrupted = "cancel"
                elif timeout is not None and time.monotonic() - started >= timeout:
                    interrupted = "timeout"
                if interrupted:
                    _kill_group(proc)
                    out, err = proc.communicate()
                    return proc.returncode, out or "", err or "", interrupted

    def _run_step(
        self,
        job: Job,
        job_run: JobRun,
        step: Step,
        rec: StepRecord,
        env: Mapping[str, str],
        scope: Dict[str, str],
        timeout: Optional[float],
        cancel: threading.Event,
    ) -> None:
        if step.run is not None:
            cmd = render(step.run, scope)
            cwd = (self.repo_root / render(step.cwd or ".", scope)).resolve()
            if not cwd.exists():
                raise FileNotFoundError(f"[{job_run.instance_id}] step '{step.name}' cwd not found: {cwd}")

            code, out, err, interrupted = self._run_command(cmd, cwd, env, timeout, cancel)
            rec.stdout = self.redact(out)[-OUTPUT_TAIL:]
            rec.stderr = self.redact(err)[-OUTPUT_TAIL:]
            rec.exit_code = code
            if interrupted == "cancel":
                raise RunCancelled(f"step '{step.name}' interrupted by cancellation")
            if interrupted == "timeout":
                raise TimedOut(job=job_run.instance_id, step=step.name, timeout_seconds=timeout or 0)
            if code != 0:
                raise StepFailure(
                    job=job_run.instance_id,
                    step=step.name,
                    cmd=self.redact(cmd),
                    exit_code=code,
                    stdout=rec.stdout,
                    stderr=rec.stderr,
                )
            return

        spec = self.actions.get(step.uses)
        inputs = spec.bind(render_value(step.with_, lambda s: render(s, scope)), where=f"step '{step.name}'")
        ctx = ActionContext(
            job=job.name,
            instance_id=job_run.instance_id,
            step=step.name,
            inputs=inputs,
            env=env,
            broker=self.broker,
            publisher=self.publisher.with_hooks(
                is_cancelled=cancel.is_set,
                notify=lambda event, ref: self.console.print_publish(job_run.instance_id, event, ref),
            ),
            matrix=dict(job_run.matrix_values),
        )
        started = time.monotonic()
        try:
            outputs = spec.fn(ctx) or {}
        finally:
            rec.stdout = self.redact("\n".join(ctx.lines))
        rec.outputs = {k: self.redact(str(v)) for k, v in outputs.items()}
        # actions cannot be interrupted; an overrun is reported once they return
        if step.timeout_seconds is not None and time.monotonic() - started > step.timeout_seconds:
            raise TimedOut(job=job_run.instance_id, step=step.name, timeout_seconds=step.timeout_seconds)

    # ------------------------------------------------------------------
    # job
    # ------------------------------------------------------------------

    def run(
        self,
        job: Job,
        job_run: JobRun,
        workflow: Workflow,
        context: RunContext,
        gate: GateContext,
        cancel: threading.Event,
    ) -> JobStatus:
        """
        Execute `job` (already matrix-substituted) for `job_run`. Returns the
        terminal status; never raises for step-level problems.
        """
        job_run.status = JobStatus.RUNNING
        job_run.started_at = _now()
        name = job_run.instance_id
        self.console.print_job_start(name)
        deadline = _Deadline(job.timeout_seconds)

        status = JobStatus.SUCCEEDED
        try:
            base = Environment(process=self.process_env)
            scope = self._scope(context, {}, job_run.matrix_values, {})
            base = base.with_layer("workflow", self._render_layer(workflow.env, scope))
            scope = self._scope(context, base.declared(), job_run.matrix_values, {})
            base = base.with_layer("job", self._render_layer(job.env, scope))
            # job-scoped secrets are resolved before the first step
            self._materialize(base.resolve(), "job", {})
        except Exception as e:
            job_run.error = self.redact(str(e))
            self.console.print_failure(name, job_run.error)
            return self._finish(job_run, JobStatus.FAILED)

        outputs: Dict[str, Dict[str, str]] = {}
        for step in job.steps:
            if cancel.is_set():
                job_run.error = "run cancelled"
                status = JobStatus.CANCELLED
                break
            if deadline.expired:
                job_run.error = str(TimedOut(job=name, step=None, timeout_seconds=deadline.seconds or 0))
                status = JobStatus.TIMED_OUT
                break

            rec = StepRecord(name=step.name, started_at=_now())
            job_run.steps.append(rec)

            try:
                if not evaluate_gate(step.if_, gate):
                    rec.status = JobStatus.SKIPPED
                    rec.ended_at = _now()
                    self.console.print_step_skipped(name, step.name, "condition false")
                    continue
            except ConditionEvaluationError as e:
                rec.status = JobStatus.FAILED
                rec.error = job_run.error = str(e)
                rec.ended_at = _now()
                self.console.print_failure(name, job_run.error)
                status = JobStatus.FAILED
                break

            self.console.print_step(name, step.name)
            try:
                step_env = base.with_layer("step", self._render_layer(
                    step.env, self._scope(context, base.declared(), job_run.matrix_values, outputs)
                ))
                env = self._materialize(step_env.resolve(), "step", step.env)
                scope = self._scope(context, step_env.declared(), job_run.matrix_values, outputs)
                timeout = _min_timeout(step.timeout_seconds, deadline.remaining())
                self._run_step(job, job_run, step, rec, env, scope, timeout, cancel)
                if deadline.expired:
                    raise TimedOut(job=name, step=None, timeout_seconds=deadline.seconds or 0)
                rec.status = JobStatus.SUCCEEDED
                if step.id:
                    outputs[step.id] = rec.outputs
            except RunCancelled as e:
                rec.status = status = JobStatus.CANCELLED
                rec.error = job_run.error = str(e)
            except TimedOut as e:
                rec.status = status = JobStatus.TIMED_OUT
                rec.error = job_run.error = str(e)
            except StepFailure as e:
                rec.status = status = JobStatus.FAILED
                rec.error = job_run.error = str(e)
                self.console.print_failure(name, rec.error, exit_code=e.exit_code, output=e.stderr or e.stdout)
            except CredentialMissing as e:
                rec.status = status = JobStatus.FAILED
                rec.error = job_run.error = f"CredentialMissing: {e}"
                self.console.print_failure(name, rec.error)
            except Exception as e:
                # anything an action or the registry raises fails this instance only
                rec.status = status = JobStatus.FAILED
                rec.error = job_run.error = self.redact(f"{type(e).__name__}: {e}")
                self.console.print_failure(name, rec.error)
                self.console.print_debug(repr(e))
            finally:
                rec.ended_at = _now()

            if status is not JobStatus.SUCCEEDED:
                break

        return self._finish(job_run, status)

    def _finish(self, job_run: JobRun, status: JobStatus) -> JobStatus:
        job_run.status = status
        job_run.ended_at = _now()
        duration = (job_run.ended_at - job_run.started_at).total_seconds() if job_run.started_at else None
        self.console.print_job_finished(job_run.instance_id, status.value, duration)
        return status
