# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from . import settings
from .compiler import CompiledWorkflow, compile_workflow
from .errors import CipackError
from .loader import load_workflow
from .logs import configure_logging
from .ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "cipack_workflow.py"

# exit codes
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_INTERRUPTED = 130


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
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  cipack run --workflow my_workflow.py",
            )
            sys.exit(EXIT_INVALID)
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
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  cipack run --workflow my_workflow.py",
        )
        sys.exit(EXIT_INVALID)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  cipack run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(EXIT_INVALID)

    return workflow_files[0]


def _compile(workflow_arg: str | None) -> CompiledWorkflow:
    """Load and compile, exiting with EXIT_INVALID on any definition error."""
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    console.print_debug(f"Loading workflow from {workflow_path}")
    try:
        return compile_workflow(load_workflow(workflow_path))
    except (CipackError, TypeError, ValueError, FileNotFoundError) as e:
        console.print_error(
            "Invalid workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if console.debug:
            console.print_exception(e)
        sys.exit(EXIT_INVALID)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """cipack: compile a pipeline definition and run it, no server required."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.option("--run-id", default=None, envvar=settings.RUN_ID, help="Run identifier (defaults to <workflow>-<time>-<pid>)")
@click.option(
    "--artifacts-dir",
    default=None,
    envvar=settings.ARTIFACTS_DIR,
    type=click.Path(file_okay=False),
    help="Artifact store root (defaults to ~/.cache/cipack/<run-id>/artifacts)",
)
@click.option(
    "--keep-workspace/--no-keep-workspace",
    default=False,
    envvar=settings.KEEP_WORKSPACE,
    help="Leave executor workspaces in place after the run",
)
@click.option("--workers", default=None, type=int, envvar=settings.MAX_WORKERS, help="Maximum jobs running at once")
@click.option(
    "--log-format",
    default=settings.DEFAULT_LOG_FORMAT,
    envvar=settings.LOG_FORMAT,
    type=click.Choice(["text", "json"]),
    show_default=True,
    help="Diagnostic log format (stderr)",
)
@click.pass_context
def run(ctx, workflow, run_id, artifacts_dir, keep_workspace, workers, log_format):
    """Run a cipack workflow."""
    console = get_console()
    configure_logging(log_format, debug=ctx.obj.get("debug", False))

    compiled = _compile(workflow)

    try:
        result = compiled.run(
            run_id=run_id,
            artifact_root=artifacts_dir,
            keep_workspace=keep_workspace,
            max_workers=workers,
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    console.print_info(f"Artifacts: {result.artifact_root}")
    if result.cancelled:
        sys.exit(EXIT_INTERRUPTED)
    if result.exit_code != 0:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the full plan as JSON")
def plan(workflow, as_json):
    """Validate a workflow and print its execution levels."""
    console = get_console()
    compiled = _compile(workflow)

    if as_json:
        click.echo(json.dumps(compiled.to_dict(), indent=2, sort_keys=True))
        return

    console.print_header(f"Workflow: {compiled.name}")
    console.print_plan(compiled.levels)
    for warning in compiled.warnings:
        console.print_info(f"Warning: {warning}")


def main():
    cli()


if __name__ == "__main__":
    main()
