# runner.py
from __future__ import annotations

import queue
import runpy
import threading
import uuid
from collections import deque
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Dict, List, Optional, Set, Union

from .actions.registry import ActionRegistry
from .dag import build_dag, validate_workflow
from .errors import ConditionEvaluationError, DefinitionError
from .executor import StepExecutor
from .gates import GateContext, evaluate_gate
from .matrix import expand, substitute_matrix
from .model import Job, JobRun, JobStatus, JoinPolicy, Need, RunContext, SkipReason, Workflow
from .ui.console import Console, get_console

AGGREGATOR_NAME = "aggregate"

_CANCEL = object()


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Run state
# ----------------------------------------------------------------------

@dataclass
class WorkflowRun:
    """
    One end-to-end execution. The context is immutable; JobRuns are created at
    compile time and only the scheduler and the executor change them.
    """
    workflow: Workflow
    context: RunContext
    jobs: Dict[str, List[JobRun]]
    definitions: Dict[str, Job]  # instance_id -> matrix-substituted job
    aggregator: str
    created_at: datetime = field(default_factory=_now)
    started: bool = False
    finished: bool = False
    finished_at: Optional[datetime] = None
    _cancel: threading.Event = field(default_factory=threading.Event, repr=False)
    _events: "queue.Queue" = field(default_factory=queue.Queue, repr=False)

    @property
    def run_id(self) -> str:
        return self.context.run_id

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Every non-terminal JobRun ends `cancelled`; running instances stop at their next check."""
        self._cancel.set()
        self._events.put(_CANCEL)

    def instances(self) -> List[JobRun]:
        return [r for runs in self.jobs.values() for r in runs]

    def get(self, instance_id: str) -> JobRun:
        for r in self.instances():
            if r.instance_id == instance_id:
                return r
        raise KeyError(instance_id)

    @property
    def status(self) -> JobStatus:
        """The aggregator's status: the run's externally observed result."""
        return self.jobs[self.aggregator][0].status

    def results(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for r in self.instances():
            label = r.status.value
            if r.status is JobStatus.SKIPPED and r.skip_reason is not None:
                label = f"{label}({r.skip_reason.value})"
            out[r.instance_id] = label
        return out


@dataclass(frozen=True)
class RunResult:
    run: WorkflowRun
    status: JobStatus
    results: Dict[str, str]

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


# ----------------------------------------------------------------------
# Compile
# ----------------------------------------------------------------------

def with_aggregator(workflow: Workflow) -> tuple[Workflow, str]:
    agg = workflow.aggregator
    if agg is not None:
        return workflow, agg.name

    names = {j.name for j in workflow.jobs}
    name = AGGREGATOR_NAME
    while name in names:
        name = f"_{name}"
    synthetic = Job(name=name, needs=[Need(j.name) for j in workflow.jobs], aggregate=True)
    return replace(workflow, jobs=[*workflow.jobs, synthetic]), name


def compile_run(
    workflow: Workflow,
    context: RunContext,
    actions: Optional[ActionRegistry] = None,
) -> WorkflowRun:
    """
    Validate the definition and create every JobRun (one per matrix tuple).
    Raises DefinitionError before anything runs.
    """
    if context.event not in workflow.on:
        raise DefinitionError(
            f"Workflow '{workflow.name}' is not triggered by '{context.event.value}' "
            f"(on: {[e.value for e in workflow.on]})"
        )
    validate_workflow(workflow, actions)
    workflow, aggregator = with_aggregator(workflow)

    jobs: Dict[str, List[JobRun]] = {}
    definitions: Dict[str, Job] = {}
    for job in workflow.jobs:
        runs: List[JobRun] = []
        for iid, values in expand(job):
            runs.append(JobRun(job=job.name, instance_id=iid, matrix_values=values))
            definitions[iid] = substitute_matrix(job, values)
        jobs[job.name] = runs

    return WorkflowRun(
        workflow=workflow,
        context=context,
        jobs=jobs,
        definitions=definitions,
        aggregator=aggregator,
    )


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


# ----------------------------------------------------------------------
# Join policy
# ----------------------------------------------------------------------

def _instance_satisfies(r: JobRun, need: Need) -> bool:
    if r.status is JobStatus.SUCCEEDED:
        return True
    if r.status is JobStatus.SKIPPED and r.skip_reason is SkipReason.GATE:
        return need.skipped_satisfies
    return False


def edge_satisfied(need: Need, instances: List[JobRun]) -> bool:
    """Evaluate one `needs` edge over the needed job's full, terminal instance set."""
    oks = [_instance_satisfies(r, need) for r in instances]
    if need.policy is JoinPolicy.ANY_SUCCEEDED:
        return any(oks)
    return all(oks)


def job_result(instances: List[JobRun]) -> str:
    """Summary seen by gates as needs.JOB.result."""
    statuses = [r.status for r in instances]
    if any(s in (JobStatus.FAILED, JobStatus.TIMED_OUT) for s in statuses):
        return "failure"
    if any(s is JobStatus.CANCELLED for s in statuses):
        return "cancelled"
    if all(s is JobStatus.SKIPPED for s in statuses):
        return "skipped"
    return "success"


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

class Scheduler:
    """
    Drives a WorkflowRun.

    A job's instances are resolved together once every instance of every needed
    job is terminal: the edges are checked against the join policy, then each
    instance's gate decides between `ready` and `skipped`. Completions arrive on
    the run's event queue and unblock dependents; nothing polls job state.

    Concurrency is whatever the supplied `pool` allows.
    """

    def __init__(
        self,
        executor: StepExecutor,
        pool: Optional[Executor] = None,
        console: Optional[Console] = None,
    ):
        self.executor = executor
        self.pool = pool
        self.console = console or get_console()

    def run(self, run: WorkflowRun) -> RunResult:
        if run.started:
            raise RuntimeError(f"run {run.run_id} was already started")
        run.started = True

        owns_pool = self.pool is None
        pool = self.pool or ThreadPoolExecutor()
        try:
            self._drive(run, pool)
        finally:
            if owns_pool:
                pool.shutdown(wait=True)
            run.finished_at = _now()
            run.finished = True

        return RunResult(run=run, status=run.status, results=run.results())

    # ------------------------------------------------------------------

    def _drive(self, run: WorkflowRun, pool: Executor) -> None:
        workflow = run.workflow
        adj, _indeg = build_dag(workflow.jobs)
        by_name = {j.name: j for j in workflow.jobs}

        waiting: Dict[str, int] = {j.name: len(j.needs) for j in workflow.jobs}
        open_instances: Dict[str, int] = {name: len(rs) for name, rs in run.jobs.items()}
        settled: Deque[str] = deque()
        resolved: Set[str] = set()
        in_flight = 0

        def terminal(r: JobRun) -> None:
            open_instances[r.job] -= 1
            if open_instances[r.job] == 0:
                settled.append(r.job)

        def close(r: JobRun, status: JobStatus, reason: Optional[SkipReason] = None, error: Optional[str] = None) -> None:
            r.status = status
            r.skip_reason = reason
            if error:
                r.error = error
            r.ended_at = _now()
            if status is JobStatus.SKIPPED:
                self.console.print_job_skipped(r.instance_id, reason.value if reason else "")
            else:
                self.console.print_job_finished(r.instance_id, status.value)
            terminal(r)

        def resolve(name: str) -> None:
            nonlocal in_flight
            if name in resolved:
                return
            resolved.add(name)
            job = by_name[name]
            instances = run.jobs[name]
            edges = [(need, run.jobs[need.job]) for need in job.needs]
            satisfied = all(edge_satisfied(need, deps) for need, deps in edges)

            if run.cancel_requested:
                for r in instances:
                    close(r, JobStatus.CANCELLED, error="run cancelled")
                return

            if job.aggregate:
                r = instances[0]
                r.started_at = _now()
                if satisfied:
                    close(r, JobStatus.SUCCEEDED)
                else:
                    failed = [need.job for need, deps in edges if not edge_satisfied(need, deps)]
                    close(r, JobStatus.FAILED, error=f"required jobs did not succeed: {failed}")
                return

            if not satisfied:
                blocked = [need.job for need, deps in edges if not edge_satisfied(need, deps)]
                for r in instances:
                    close(r, JobStatus.SKIPPED, SkipReason.UPSTREAM, error=f"blocked by {blocked}")
                return

            needs_results = {need.job: job_result(deps) for need, deps in edges}
            for r in instances:
                gate = GateContext(run=run.context, needs=needs_results, matrix=r.matrix_values)
                try:
                    go = evaluate_gate(job.if_, gate)
                except ConditionEvaluationError as e:
                    close(r, JobStatus.FAILED, error=str(e))
                    self.console.print_failure(r.instance_id, str(e))
                    continue
                if not go:
                    close(r, JobStatus.SKIPPED, SkipReason.GATE)
                    continue

                r.status = JobStatus.READY
                fut = pool.submit(self._execute, run, r, gate)
                in_flight += 1
                fut.add_done_callback(lambda f, r=r: run._events.put((r, f)))

        def pump() -> None:
            while settled:
                done = settled.popleft()
                for child in sorted(adj[done]):
                    waiting[child] -= 1
                    if waiting[child] == 0:
                        resolve(child)

        for name in sorted(n for n, w in waiting.items() if w == 0):
            resolve(name)
        pump()

        while in_flight:
            item = run._events.get()
            if item is _CANCEL:
                # pending jobs end now; ready/running ones report back through their futures
                for name in sorted(open_instances):
                    if name not in resolved:
                        resolved.add(name)
                        for r in run.jobs[name]:
                            close(r, JobStatus.CANCELLED, error="run cancelled")
                pump()
                continue
            r, fut = item
            in_flight -= 1
            exc = fut.exception()
            if exc is not None:
                r.status = JobStatus.FAILED
                r.error = self.executor.redact(f"{type(exc).__name__}: {exc}")
                r.ended_at = _now()
                self.console.print_failure(r.instance_id, r.error)
            terminal(r)
            pump()

        self.console.print_results(run.results(), run.status.value, run.aggregator)

    def _execute(self, run: WorkflowRun, r: JobRun, gate: GateContext) -> JobStatus:
        if run.cancel_requested:
            r.status = JobStatus.CANCELLED
            r.error = "run cancelled"
            r.ended_at = _now()
            return r.status
        return self.executor.run(
            run.definitions[r.instance_id],
            r,
            run.workflow,
            run.context,
            gate,
            run._cancel,
        )


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: Union[str, Path]) -> Workflow:
    """
    Load a workflow from a python file or a YAML document.

    A python file must define either:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = Workflow(...) or JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml"):
        from .loader import load_yaml
        return load_yaml(wf_path)

    if wf_path.suffix != ".py":
        raise DefinitionError(f"Workflow must be a .py or .yml file, got: {wf_path.name}")

    module_name = f"gantry_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        loaded = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        loaded = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]

    if isinstance(loaded, Workflow):
        return loaded
    if isinstance(loaded, list) and loaded and all(isinstance(j, Job) for j in loaded):
        return Workflow(name=wf_path.stem, jobs=loaded)

    raise DefinitionError(
        "Workflow must return/define a Workflow or a List[Job]. "
        "Define workflow() -> Workflow, WORKFLOW = wf(...) or JOBS = [Job, ...]."
    )


def run_workflow(
    workflow: Workflow,
    context: RunContext,
    executor: StepExecutor,
    *,
    pool: Optional[Executor] = None,
    console: Optional[Console] = None,
) -> RunResult:
    """Compile and run in one go; DefinitionError means zero jobs ran."""
    run = compile_run(workflow, context, executor.actions)
    console = console or executor.console
    console.print_run_started(
        repository=context.repository,
        workflow=workflow.name,
        ref=context.ref,
        sha=context.sha,
        job_count=len(run.jobs),
        instance_count=len(run.instances()),
    )
    return Scheduler(executor, pool=pool, console=console).run(run)
