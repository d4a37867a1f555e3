from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Mapping, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import sessionmaker

from ..credentials import EnvSecretStore, SecretBroker, SecretStore
from ..errors import DefinitionError
from ..executor import StepExecutor
from ..model import RunContext, TriggerEvent, Workflow
from ..publish import ImagePublisher, Registry, registry_from_name
from ..runner import Scheduler, WorkflowRun, compile_run, load_workflow, new_run_id
from ..ui.console import Console, get_console
from .db import make_engine, make_session_factory
from .models import Base, JobRunRecord, RunRecord
from .settings import Settings

# -------------------- Schemas --------------------

class TriggerRequest(BaseModel):
    event: TriggerEvent = TriggerEvent.WORKFLOW_DISPATCH
    ref: str = Field(..., min_length=1)
    sha: str = Field(..., min_length=7)
    repository: str = Field(..., min_length=1)

class TriggerResponse(BaseModel):
    run_id: str
    status: str
    instances: list[str]

class JobRunResponse(BaseModel):
    instance_id: str
    job: str
    status: str
    skip_reason: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

class RunResponse(BaseModel):
    run_id: str
    workflow: str
    repository: str
    event: str
    ref: str
    sha: str
    status: str
    created_at: datetime
    finished_at: Optional[datetime] = None
    jobs: list[JobRunResponse]

class CancelResponse(BaseModel):
    run_id: str
    status: str


def run_state(run: WorkflowRun) -> str:
    if run.finished:
        return run.status.value
    return "running" if run.started else "queued"


# -------------------- Run manager --------------------

class RunManager:
    """
    Owns live runs. Each run is driven on its own thread while job instances
    share one pool; finished runs are archived and dropped from memory.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        *,
        registry: Registry,
        secret_store: SecretStore,
        process_env: Optional[Mapping[str, str]] = None,
        console: Optional[Console] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.console = console or get_console()
        self.executor = StepExecutor(
            SecretBroker(secret_store, redactor=self.console.redactor),
            publisher=ImagePublisher(registry),
            console=self.console,
            process_env=process_env,
            repo_root=settings.repo_root,
        )
        self._jobs_pool = ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="gantry-job")
        self._drivers = ThreadPoolExecutor(thread_name_prefix="gantry-run")
        self._live: Dict[str, WorkflowRun] = {}
        self._done: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def trigger(self, workflow: Workflow, context: RunContext) -> WorkflowRun:
        run = compile_run(workflow, context, self.executor.actions)
        with self._lock:
            self._live[run.run_id] = run
            self._done[run.run_id] = self._drivers.submit(self._drive, run)
        return run

    def _drive(self, run: WorkflowRun) -> None:
        try:
            Scheduler(self.executor, pool=self._jobs_pool, console=self.console).run(run)
        except Exception as e:
            self.console.print_exception(e)
        finally:
            self._archive(run)
            with self._lock:
                self._live.pop(run.run_id, None)

    def _archive(self, run: WorkflowRun) -> None:
        record = RunRecord(
            id=run.run_id,
            workflow=run.workflow.name,
            repository=run.context.repository,
            event=run.context.event.value,
            ref=run.context.ref,
            sha=run.context.sha,
            status=run_state(run),
            created_at=run.created_at,
            finished_at=run.finished_at,
        )
        record.jobs = [
            JobRunRecord(
                instance_id=r.instance_id,
                job=r.job,
                status=r.status.value,
                skip_reason=r.skip_reason.value if r.skip_reason else None,
                error=r.error,
                log=r.log(),
                started_at=r.started_at,
                ended_at=r.ended_at,
            )
            for r in run.instances()
        ]
        with self.session_factory() as s:
            with s.begin():
                s.add(record)

    def live(self, run_id: str) -> Optional[WorkflowRun]:
        with self._lock:
            return self._live.get(run_id)

    def archived(self, run_id: str) -> Optional[RunRecord]:
        with self.session_factory() as s:
            record = s.get(RunRecord, run_id)
            if record is not None:
                record.jobs  # load before the session closes
            return record

    def wait(self, run_id: str, timeout: Optional[float] = None) -> None:
        """Block until the run has been archived."""
        with self._lock:
            fut = self._done.get(run_id)
        if fut is not None:
            fut.result(timeout=timeout)

    def shutdown(self) -> None:
        for run in list(self._live.values()):
            run.cancel()
        self._drivers.shutdown(wait=True)
        self._jobs_pool.shutdown(wait=True)


def _live_response(run: WorkflowRun) -> RunResponse:
    return RunResponse(
        run_id=run.run_id,
        workflow=run.workflow.name,
        repository=run.context.repository,
        event=run.context.event.value,
        ref=run.context.ref,
        sha=run.context.sha,
        status=run_state(run),
        created_at=run.created_at,
        finished_at=run.finished_at,
        jobs=[
            JobRunResponse(
                instance_id=r.instance_id,
                job=r.job,
                status=r.status.value,
                skip_reason=r.skip_reason.value if r.skip_reason else None,
                error=r.error,
                started_at=r.started_at,
                ended_at=r.ended_at,
            )
            for r in run.instances()
        ],
    )


def _archived_response(record: RunRecord) -> RunResponse:
    return RunResponse(
        run_id=record.id,
        workflow=record.workflow,
        repository=record.repository,
        event=record.event,
        ref=record.ref,
        sha=record.sha,
        status=record.status,
        created_at=record.created_at,
        finished_at=record.finished_at,
        jobs=[
            JobRunResponse(
                instance_id=j.instance_id,
                job=j.job,
                status=j.status,
                skip_reason=j.skip_reason,
                error=j.error,
                started_at=j.started_at,
                ended_at=j.ended_at,
            )
            for j in record.jobs
        ],
    )


# -------------------- App --------------------

def create_app(
    settings: Optional[Settings] = None,
    *,
    registry: Optional[Registry] = None,
    secret_store: Optional[SecretStore] = None,
    process_env: Optional[Mapping[str, str]] = None,
    console: Optional[Console] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    engine = make_engine(settings.database_url)
    Base.metadata.create_all(engine)

    manager = RunManager(
        settings,
        make_session_factory(engine),
        registry=registry or registry_from_name(settings.registry),
        secret_store=secret_store or EnvSecretStore(prefix=settings.secret_prefix),
        process_env=process_env,
        console=console,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        manager.shutdown()
        engine.dispose()

    app = FastAPI(title="gantry trigger service", lifespan=lifespan)
    app.state.settings = settings
    app.state.runs = manager

    def _load() -> Workflow:
        if not settings.workflow:
            raise HTTPException(status_code=503, detail="No workflow configured (set GANTRY_WORKFLOW)")
        path = Path(settings.workflow)
        if not path.is_absolute():
            path = Path(settings.repo_root) / path
        try:
            return load_workflow(path)
        except FileNotFoundError as e:
            raise HTTPException(status_code=503, detail=str(e))
        except DefinitionError as e:
            raise HTTPException(status_code=422, detail=str(e))

    # -------------------- Endpoints --------------------

    @app.post("/runs", response_model=TriggerResponse, status_code=202)
    def trigger_run(req: TriggerRequest):
        workflow = _load()
        context = RunContext(
            event=req.event,
            ref=req.ref,
            sha=req.sha,
            repository=req.repository,
            run_id=new_run_id(),
        )
        try:
            run = manager.trigger(workflow, context)
        except DefinitionError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return TriggerResponse(
            run_id=run.run_id,
            status=run_state(run),
            instances=[r.instance_id for r in run.instances()],
        )

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        run = manager.live(run_id)
        if run is not None:
            return _live_response(run)
        record = manager.archived(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return _archived_response(record)

    @app.get("/runs/{run_id}/jobs/{instance_id}/logs", response_class=PlainTextResponse)
    def get_logs(run_id: str, instance_id: str):
        run = manager.live(run_id)
        if run is not None:
            try:
                return run.get(instance_id).log()
            except KeyError:
                raise HTTPException(status_code=404, detail="Job instance not found")
        record = manager.archived(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        for j in record.jobs:
            if j.instance_id == instance_id:
                return j.log
        raise HTTPException(status_code=404, detail="Job instance not found")

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse, status_code=202)
    def cancel_run(run_id: str):
        run = manager.live(run_id)
        if run is None or run.finished:
            if run is None and manager.archived(run_id) is None:
                raise HTTPException(status_code=404, detail="Run not found")
            raise HTTPException(status_code=409, detail="Run already finished")
        run.cancel()
        return CancelResponse(run_id=run_id, status="cancelling")

    return app
