# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from ciflow.engine import Engine
from ciflow.errors import ConfigError
from ciflow.git_facts.git import local_facts
from ciflow.loader import discover_workflow, load_workflow
from ciflow.model import EventKind, RunStatus, RunTrigger, Workflow
from ciflow.scheduler import validate_workflow
from ciflow.settings import Settings
from ciflow.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 2
EXIT_INTERRUPTED = 130

DEFAULT_BRANCH = "main"


def _load(ctx: click.Context, workflow_arg: str | None) -> Workflow:
    """Discover + load + validate, turning every problem into a clean exit 1."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    try:
        path = discover_workflow(workflow_arg or settings.workflow, root=settings.repo_root)
        workflow = load_workflow(path)
        validate_workflow(workflow)
    except FileNotFoundError as e:
        console.print_error(
            "Workflow file not found",
            str(e),
            suggestion="Create ciflow_workflow.py or specify a path:\n  ciflow run --workflow my_workflow.py",
        )
        sys.exit(EXIT_FAILED)
    except ConfigError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_FAILED)
    except Exception as e:
        console.print_error("Failed to load workflow", f"Could not load workflow: {e}")
        console.print_exception(e)
        sys.exit(EXIT_FAILED)
    console.print_debug(f"Loaded workflow '{workflow.name}' from {workflow.source}")
    return workflow


def _trigger(
    settings: Settings,
    event: str | None,
    branch: str | None,
    ref: str | None,
    pr: int | None,
    sha: str | None,
) -> RunTrigger:
    """Build the trigger; anything not given defaults to a push of the current branch."""
    console = get_console()
    facts = {}
    if branch is None or sha is None:
        facts = local_facts(cwd=str(settings.repo_root))
    if branch is None:
        branch = facts.get("branch")
        if not branch or branch == "HEAD":
            console.print_debug(f"No git branch found; assuming '{DEFAULT_BRANCH}'")
            branch = DEFAULT_BRANCH
    if event is None:
        event = EventKind.PULL_REQUEST.value if pr is not None else EventKind.PUSH.value
    return RunTrigger(
        event_kind=EventKind(event),
        target_branch=branch,
        ref=ref,
        pr_number=pr,
        sha=sha or facts.get("sha"),
    )


trigger_options = [
    click.option("--workflow", default=None, help="Workflow file (.py or .yml); discovered when omitted"),
    click.option(
        "--event",
        type=click.Choice([e.value for e in EventKind]),
        default=None,
        help="Event kind (default: push, or pull_request when --pr is given)",
    ),
    click.option("--branch", default=None, help="Target branch (default: current git branch)"),
    click.option("--ref", default=None, help="Ref used in concurrency groups (default: the branch)"),
    click.option("--pr", "pr", default=None, type=int, help="Pull request number"),
    click.option("--sha", default=None, help="Commit sha (default: git HEAD)"),
]


def with_trigger_options(fn):
    for option in reversed(trigger_options):
        fn = option(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and full step logs)",
)
@click.option("--home", default=None, type=click.Path(file_okay=False), help="State directory (default: .ciflow)")
@click.pass_context
def cli(ctx, debug, home):
    """ciflow: event-driven CI workflow runner."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings.from_env().with_overrides(home=Path(home) if home else None)


@cli.command()
@with_trigger_options
@click.option("--workers", default=None, type=int, help="Max job instances running at once")
@click.pass_context
def run(ctx, workflow, event, branch, ref, pr, sha, workers):
    """Run a workflow for one event."""
    console = get_console()
    wf_def = _load(ctx, workflow)
    settings: Settings = ctx.obj["settings"].with_overrides(workers=workers)
    trigger = _trigger(settings, event, branch, ref, pr, sha)

    engine = Engine(wf_def, settings, console=console)
    current = engine.submit(trigger)
    if current is None:
        sys.exit(EXIT_OK)

    try:
        while not current.wait(0.2):
            pass
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        current.cancel("interrupted by user")
        current.wait()
        sys.exit(EXIT_INTERRUPTED)

    if current.status == RunStatus.SUCCEEDED:
        sys.exit(EXIT_OK)
    if current.status == RunStatus.CANCELLED:
        sys.exit(EXIT_CANCELLED)
    sys.exit(EXIT_FAILED)


@cli.command()
@with_trigger_options
@click.pass_context
def plan(ctx, workflow, event, branch, ref, pr, sha):
    """Show whether an event would start a run and which job instances it would create."""
    console = get_console()
    wf_def = _load(ctx, workflow)
    settings: Settings = ctx.obj["settings"]
    trigger = _trigger(settings, event, branch, ref, pr, sha)
    engine = Engine(wf_def, settings, console=console)

    decision = engine.resolve(trigger)
    console.print_header(f"Plan: {wf_def.name}")
    if not decision.admitted:
        console.print_trigger_ignored(decision.reason)
        return

    console.print_info(f"Admitted: {decision.reason}")
    if decision.group is not None:
        mode = "cancel in progress" if decision.group.cancel_in_progress else "queue"
        console.print_info(f"Concurrency group: {decision.group.key} ({mode})")
    for inst in engine.plan():
        needs = ", ".join(inst.job.needs) or "-"
        console.print_plan_job(inst.name, f"{len(inst.job.steps)} steps, needs: {needs}")


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py or .yml); discovered when omitted")
@click.pass_context
def validate(ctx, workflow):
    """Load a workflow and check jobs, dependencies, matrices and concurrency."""
    console = get_console()
    wf_def = _load(ctx, workflow)
    levels = validate_workflow(wf_def)
    console.print_info(f"OK: workflow '{wf_def.name}' ({len(wf_def.jobs)} jobs)")
    for i, level in enumerate(levels, start=1):
        console.print_info(f"  stage {i}: {', '.join(level)}")


if __name__ == "__main__":
    cli()
