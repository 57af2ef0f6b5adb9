# cli.py
from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import click

from releaseci.errors import OrchestrationError
from releaseci.git_facts.git import current_ref
from releaseci.loader import find_workflow_files, load_workflow
from releaseci.model import RunOutcome, TAG_REF_PREFIX, TriggerEvent, TriggerKind
from releaseci.runner import RunCoordinator, plan_run
from releaseci.settings import Settings
from releaseci.ui.console import Console, get_console, set_console

EVENTS = [k.value for k in TriggerKind]


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument, settings or the current directory.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()
    workflow_arg = workflow_arg or os.environ.get("RELEASECI_WORKFLOW")

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  releaseci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", "  releaseci_workflow.py", "  *_workflow.py"],
            suggestion="Create releaseci_workflow.py or pass --workflow.",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  releaseci run --workflow releaseci_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def build_trigger(event: str | None, ref: str | None, head_ref: str | None, secrets: tuple[str, ...]) -> TriggerEvent:
    """
    Build the trigger event. The ref defaults to the checkout's ref; the
    event defaults to tag-push for tag refs and dispatch otherwise. Secret
    values are read from environment variables of the same name.
    """
    console = get_console()
    if ref is None:
        try:
            ref = current_ref()
            console.print_debug(f"Using git ref: {ref}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            ref = ""
            console.print_debug("Could not determine git ref; using an empty ref")

    if event is None:
        event = TriggerKind.TAG_PUSH.value if ref.startswith(TAG_REF_PREFIX) else TriggerKind.DISPATCH.value

    return TriggerEvent(
        kind=TriggerKind(event),
        ref=ref,
        head_ref=head_ref,
        secrets={name: os.environ.get(name, "") for name in secrets},
    )


def _trigger_options(fn):
    fn = click.option("--secret", "secrets", multiple=True, help="Secret name; value read from the env var of the same name")(fn)
    fn = click.option("--head-ref", default=None, help="Pull-request head ref (used for the concurrency group)")(fn)
    fn = click.option("--ref", default=None, help="Ref that triggered the run (defaults to the checkout's ref)")(fn)
    fn = click.option("--event", type=click.Choice(EVENTS), default=None, help="Trigger kind")(fn)
    fn = click.option(
        "--workflow",
        default=None,
        help="Workflow file path (defaults to releaseci_workflow.py if present)",
    )(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the final outcome")
@click.pass_context
def cli(ctx, debug, quiet):
    """releaseci: release pipeline orchestrator."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@_trigger_options
@click.option("--workers", default=None, type=int, help="Number of parallel workers per run")
@click.option("--timeout", "job_timeout", default=None, type=float, help="Default per-job timeout in seconds")
@click.option("--artifact-dir", default=None, help="Store artifacts on disk under this directory")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the run result as JSON")
def run(workflow, event, ref, head_ref, secrets, workers, job_timeout, artifact_dir, as_json):
    """Run a release workflow once for a trigger."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        settings = Settings.from_env()
        graph = load_workflow(workflow_path)
        trigger = build_trigger(event, ref, head_ref, secrets)

        coordinator = RunCoordinator(
            graph,
            settings=settings,
            max_workers=workers,
            job_timeout=job_timeout,
            artifact_root=artifact_dir,
        )
        result = coordinator.run(trigger)

        if as_json:
            click.echo(json.dumps(result.to_dict(), indent=2, sort_keys=True))
        elif console.quiet:
            click.echo(f"OUTCOME: {result.outcome.value.upper()}")

        if result.outcome is not RunOutcome.SUCCESS:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except OrchestrationError as e:
        console.print_error("Workflow error", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@_trigger_options
def plan(workflow, event, ref, head_ref, secrets):
    """Show the waves a trigger would run, without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        graph = load_workflow(workflow_path)
        trigger = build_trigger(event, ref, head_ref, secrets)
    except OrchestrationError as e:
        console.print_error("Workflow error", str(e))
        sys.exit(1)

    console.print_header(f"PLAN: {workflow_path.name} ({trigger.kind.value} {trigger.ref or '-'})")
    for i, entries in enumerate(plan_run(graph, trigger)):
        console.print_plan_wave(i, entries)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
def validate(workflow):
    """Check a workflow for cycles, missing jobs and unsatisfiable artifacts."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        graph = load_workflow(workflow_path)
    except OrchestrationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    console.print_info(f"OK: {len(graph)} job(s) in {workflow_path}")


if __name__ == "__main__":
    cli()
