# cli.py
from __future__ import annotations

import os
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import click

from gantry.actions import default_actions
from gantry.credentials import EnvSecretStore, SecretBroker
from gantry.dag import build_dag, topo_levels, validate_workflow
from gantry.errors import DefinitionError
from gantry.executor import StepExecutor
from gantry.git_facts.git import current_ref, head_sha, remote_url, repository_from_remote
from gantry.matrix import expand
from gantry.model import RunContext, TriggerEvent
from gantry.publish import REGISTRY_KINDS, ImagePublisher, registry_from_name
from gantry.runner import load_workflow, new_run_id, run_workflow, with_aggregator
from gantry.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "gantry_workflow.py"


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    for pattern in ("*.yml", "*.yaml"):
        workflow_files.extend((current_dir / ".gantry").glob(pattern))

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  gantry run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
                "  .gantry/*.yml",
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  gantry run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  gantry run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(1)

    return workflow_files[0]


def _load(workflow_path: Path):
    console = get_console()
    try:
        return load_workflow(workflow_path)
    except DefinitionError as e:
        console.print_error(
            "Invalid workflow",
            f"Could not load workflow from {workflow_path}",
            details=str(e).splitlines(),
        )
        sys.exit(1)
    except Exception as e:
        # the workflow file itself raised while being executed
        console.print_error("Could not load workflow", f"{workflow_path} raised {type(e).__name__}")
        console.print_exception(e)
        sys.exit(1)


def _git_fact(name: str, fn, flag: str) -> str:
    try:
        return fn()
    except (subprocess.CalledProcessError, FileNotFoundError):
        get_console().print_error(
            f"Could not determine {name}",
            f"No {flag} given and git could not provide it.",
            suggestion=f"Run inside a git checkout or pass {flag} explicitly.",
        )
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """gantry: dependency-aware CI job-graph runner."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option(
    "--event",
    type=click.Choice([e.value for e in TriggerEvent]),
    default=TriggerEvent.WORKFLOW_DISPATCH.value,
    show_default=True,
    help="Trigger event for this run",
)
@click.option("--ref", default=None, help="Git ref (defaults to the current branch, e.g. refs/heads/main)")
@click.option("--sha", default=None, help="Commit sha (defaults to HEAD)")
@click.option("--repository", default=None, help="owner/name (defaults to the origin remote)")
@click.option("--workers", default=None, type=int, help="Number of parallel job instances")
@click.option("--registry", type=click.Choice(list(REGISTRY_KINDS)), default="memory", show_default=True, help="Image registry backend")
@click.option("--secrets-prefix", default="GANTRY_SECRET_", show_default=True, help="Environment prefix secrets are read from")
@click.pass_context
def run(ctx, workflow, event, ref, sha, repository, workers, registry, secrets_prefix):
    """Run a gantry workflow."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        ref = ref or _git_fact("git ref", current_ref, "--ref")
        sha = sha or _git_fact("commit sha", head_sha, "--sha")
        if not repository:
            remote = _git_fact("repository", remote_url, "--repository")
            repository = repository_from_remote(remote) or Path(".").resolve().name

        wf = _load(workflow_path)
        context = RunContext(
            event=TriggerEvent(event),
            ref=ref,
            sha=sha,
            repository=repository,
            run_id=new_run_id(),
        )
        executor = StepExecutor(
            SecretBroker(EnvSecretStore(prefix=secrets_prefix), redactor=console.redactor),
            publisher=ImagePublisher(registry_from_name(registry)),
            console=console,
            repo_root=".",
        )

        with ThreadPoolExecutor(max_workers=workers) as pool:
            result = run_workflow(wf, context, executor, pool=pool, console=console)

        sys.exit(result.exit_code)

    except DefinitionError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
def validate(workflow):
    """Load and validate a workflow without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    wf = _load(workflow_path)
    try:
        validate_workflow(wf, default_actions())
    except DefinitionError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    instances = sum(len(expand(j)) for j in wf.jobs)
    console.print_info(f"OK: {wf.name} ({len(wf.jobs)} jobs, {instances} instances)")


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
def plan(workflow):
    """Print expanded job instances per stage."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    wf, aggregator = with_aggregator(_load(workflow_path))

    by_name = {j.name: j for j in wf.jobs}
    levels = topo_levels(*build_dag(wf.jobs))
    console.print_header(f"Plan: {wf.name}")
    for i, level in enumerate(levels):
        console.print_plan_stage(i, [iid for name in level for iid, _values in expand(by_name[name])])
    console.print_info(f"Run result: {aggregator}")


@cli.command()
def actions():
    """List the built-in actions and their inputs."""
    console = get_console()
    registry = default_actions()
    for ref in registry.refs():
        spec = registry.get(ref)
        inputs = ", ".join(
            name if i.required else f"{name}?" for name, i in spec.inputs.items()
        )
        console.print_info(f"{ref}  ({inputs or 'no inputs'})")
        if spec.description:
            console.print_info(f"    {spec.description}")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--workflow", default=None, help="Workflow the service runs (sets GANTRY_WORKFLOW)")
def serve(host, port, workflow):
    """Start the trigger service."""
    import uvicorn

    if workflow:
        os.environ["GANTRY_WORKFLOW"] = str(Path(workflow).resolve())
    uvicorn.run("gantry.service.app:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":
    cli()
