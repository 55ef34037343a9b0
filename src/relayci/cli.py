# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import click

from relayci import config
from relayci.dag import CycleError, topo_levels
from relayci.git_facts.git import current_branch, head_sha
from relayci.log import set_level
from relayci.model import Trigger
from relayci.runner import PipelineExecutor, load_workflow
from relayci.trigger import EVENTS, trigger_from_env
from relayci.ui.console import Console, set_console, get_console


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow file from the argument, RELAYCI_WORKFLOW, or the default name.

    Raises:
        SystemExit: If the workflow file does not exist
    """
    console = get_console()
    workflow_path = Path(workflow_arg or config.WORKFLOW)
    if not workflow_path.exists() and workflow_path.suffix != ".py":
        workflow_path = Path(str(workflow_path) + ".py")
    if not workflow_path.exists():
        console.print_error(
            "Workflow file not found",
            f"Could not find workflow file: {workflow_path}",
            suggestion="Create relayci_workflow.py or pass one explicitly:\n  relayci run --workflow my_workflow.py",
        )
        sys.exit(1)
    return workflow_path


def resolve_trigger(event: str | None, branch: str | None, sha: str | None, pr: int | None) -> Trigger:
    """
    Flags win; otherwise the hosted-runner environment; otherwise the local
    checkout is treated as a push of its current branch.
    """
    detected = trigger_from_env()
    if event is None and branch is None and detected is not None:
        return detected

    if branch is None:
        try:
            branch = current_branch()
        except (subprocess.CalledProcessError, FileNotFoundError):
            get_console().print_error(
                "Could not determine branch",
                "No --branch given and the current git branch could not be read.",
                suggestion="Pass the branch explicitly:\n  relayci run --branch master",
            )
            sys.exit(1)
    if sha is None:
        try:
            sha = head_sha()
        except (subprocess.CalledProcessError, FileNotFoundError):
            sha = None
    return Trigger(event=event or "push", branch=branch, sha=sha, pr_number=pr)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and command output)",
)
@click.pass_context
def cli(ctx, debug):
    """relayci: dependency-ordered pipeline runner with keyed caching."""
    set_console(Console(debug=debug))
    if debug:
        set_level("DEBUG")
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to RELAYCI_WORKFLOW or relayci_workflow.py)")
@click.option("--event", type=click.Choice(EVENTS), default=None, help="Triggering event kind")
@click.option("--branch", default=None, help="Pushed branch, or the pull request's target branch")
@click.option("--sha", default=None, help="Commit being built")
@click.option("--pr", "pr", type=int, default=None, help="Pull request number")
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--cache-dir", default=None, help="Cache directory (defaults to RELAYCI_CACHE_DIR)")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True, help="Stop starting new jobs after first failure")
@click.pass_context
def run(ctx, workflow, event, branch, sha, pr, workers, cache_dir, fail_fast):
    """Run the pipeline for one triggering event."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        pipeline = load_workflow(workflow_path)
    except Exception as e:
        console.print_error("Failed to load workflow", f"Could not load workflow from {workflow_path}", details=[str(e)])
        console.print_exception(e)
        sys.exit(1)

    trigger = resolve_trigger(event, branch, sha, pr)
    executor = PipelineExecutor(
        pipeline,
        repo_root=".",
        cache_root=cache_dir,
        max_workers=workers,
        fail_fast=fail_fast,
        console=console,
    )

    handle = executor.start(trigger)
    try:
        result = handle.wait()
    except CycleError as e:
        console.print_error("Invalid pipeline", str(e), suggestion="Remove the cycle from the jobs' needs.")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted, cancelling run")
        handle.cancel()
        handle.join()
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    if not result.ok:
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to RELAYCI_WORKFLOW or relayci_workflow.py)")
def plan(workflow):
    """Print the resolved job order as parallel stages, without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        pipeline = load_workflow(workflow_path)
        levels = topo_levels(pipeline)
    except CycleError as e:
        console.print_error("Invalid pipeline", str(e), suggestion="Remove the cycle from the jobs' needs.")
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    console.print_plan(levels)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
