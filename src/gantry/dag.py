# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Optional, Set, Tuple

from .actions.registry import ActionRegistry
from .errors import DefinitionError
from .matrix import expand, substitute_matrix
from .model import Job, Workflow


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: edges naming jobs that must finish BEFORE this job
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DefinitionError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        seen: Set[str] = set()
        for need in job.needs:
            if need.job not in name_set:
                raise DefinitionError(
                    f"Job '{job.name}' needs missing job '{need.job}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            if need.job in seen:
                raise DefinitionError(f"Job '{job.name}' lists '{need.job}' in needs more than once")
            seen.add(need.job)
            # Edge need -> job.name (need must finish before job)
            adj[need.job].add(job.name)
            indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Jobs within a level have no ordering between them.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise DefinitionError(f"Job graph has a cycle. Stuck jobs: {remaining}")

    return levels


def _validate_job(job: Job, actions: Optional[ActionRegistry]) -> None:
    if job.aggregate:
        if job.steps:
            raise DefinitionError(f"Aggregator '{job.name}' must not declare steps")
        if job.matrix is not None:
            raise DefinitionError(f"Aggregator '{job.name}' must not declare a matrix")
        if job.if_ is not None:
            raise DefinitionError(f"Aggregator '{job.name}' must not declare a gate ('if')")
        if job.env:
            raise DefinitionError(f"Aggregator '{job.name}' must not declare env")
        if job.timeout_seconds is not None:
            raise DefinitionError(f"Aggregator '{job.name}' must not declare a timeout")
        return

    if not job.steps:
        raise DefinitionError(f"Job '{job.name}' has no steps")

    step_ids: Set[str] = set()
    for step in job.steps:
        where = f"Job '{job.name}' step '{step.name}'"
        if (step.run is None) == (step.uses is None):
            raise DefinitionError(f"{where}: exactly one of 'run' or 'uses' is required")
        if step.id is not None:
            if step.id in step_ids:
                raise DefinitionError(f"{where}: duplicate step id '{step.id}'")
            step_ids.add(step.id)
        if step.uses is None:
            if step.with_:
                raise DefinitionError(f"{where}: 'with' is only valid on 'uses' steps")
        elif actions is not None:
            actions.get(step.uses).bind(step.with_, where=where)

    # every instance must render its matrix references
    for _iid, values in expand(job):
        substitute_matrix(job, values)


def validate_workflow(workflow: Workflow, actions: Optional[ActionRegistry] = None) -> List[List[str]]:
    """
    Check everything that can be checked before a run starts. Returns the
    topological levels. Any problem raises DefinitionError.
    """
    if not workflow.jobs:
        raise DefinitionError(f"Workflow '{workflow.name}' defines no jobs")

    adj, indeg = build_dag(workflow.jobs)
    levels = topo_levels(adj, indeg)

    aggregators = [j.name for j in workflow.jobs if j.aggregate]
    if len(aggregators) > 1:
        raise DefinitionError(f"At most one aggregator job is allowed, found {aggregators}")
    if aggregators and adj[aggregators[0]]:
        raise DefinitionError(
            f"Aggregator '{aggregators[0]}' cannot be needed by other jobs: {sorted(adj[aggregators[0]])}"
        )

    for job in workflow.jobs:
        _validate_job(job, actions)

    return levels
