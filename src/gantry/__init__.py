from .runner import Scheduler, compile_run, load_workflow, run_workflow
from .model import Job, JoinPolicy, Need, RunContext, Step, TriggerEvent, Workflow

# Last: `matrix` is also a submodule name, the dsl helper must win.
from .dsl import aggregate, build, job, matrix, need, secret, sh, uses, wf, JobBuilder

__all__ = [
    "aggregate",
    "build",
    "job",
    "matrix",
    "need",
    "secret",
    "sh",
    "uses",
    "wf",
    "JobBuilder",
    "Scheduler",
    "compile_run",
    "load_workflow",
    "run_workflow",
    "Job",
    "JoinPolicy",
    "Need",
    "RunContext",
    "Step",
    "TriggerEvent",
    "Workflow",
]
