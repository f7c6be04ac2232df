# cli.py
from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click

from ._log import get_logger, setup_logging
from .config import get_settings, set_settings
from .errors import DefinitionError, StageflowError, TriggerNotMatched, UnresolvedVariable
from .git_facts.git import GitError, changed_files_since
from .loader import load_pipeline
from .model import Pipeline, Status
from .runner import prepare_run, start_run
from .ui.console import Console, get_console, set_console
from .validate import validate_pipeline

logger = get_logger("cli")

DEFAULT_PIPELINE = "stageflow.yml"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEFINITION = 2
EXIT_INTERRUPTED = 130


def find_pipeline_files(root: Path = Path(".")) -> list[Path]:
    """
    Find all pipeline definition files in *root*.

    Returns:
        ``stageflow.yml`` first (if present), then every ``*.pipeline.yml``
    """
    found = []
    default = root / DEFAULT_PIPELINE
    if default.exists():
        found.append(default)
    for pattern in ("*.pipeline.yml", "*.pipeline.yaml"):
        found.extend(sorted(root.glob(pattern)))
    return found


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Resolve the pipeline file from the argument or by discovery.

    Raises:
        SystemExit: If no file, or more than one candidate, is found
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Specify an existing definition:\n  stageflow run path/to/stageflow.yml",
            )
            sys.exit(EXIT_DEFINITION)
        return path

    candidates = find_pipeline_files()
    if not candidates:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline definition.",
            details=["Looked for:", f"  {DEFAULT_PIPELINE}", "  *.pipeline.yml"],
            suggestion="Create stageflow.yml or pass a path:\n  stageflow run my.pipeline.yml",
        )
        sys.exit(EXIT_DEFINITION)
    if len(candidates) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline definitions. Please specify which one to use:",
            details=[str(c) for c in candidates],
        )
        sys.exit(EXIT_DEFINITION)
    return candidates[0]


def parse_vars(values: Tuple[str, ...]) -> Dict[str, str]:
    """Turn ``("A=1", "B.c=x=y")`` into ``{"A": "1", "B.c": "x=y"}``."""
    out: Dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--var")
        out[name.strip()] = value
    return out


def _load_or_exit(path: Path) -> Pipeline:
    try:
        return load_pipeline(path)
    except DefinitionError as e:
        get_console().print_error("Invalid pipeline definition", str(e))
        sys.exit(EXIT_DEFINITION)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print failures and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """stageflow: declarative multi-stage pipeline runner."""
    setup_logging(verbose=debug)
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("pipeline", required=False)
@click.option("--branch", default=None, help="Source branch (defaults to the current git branch)")
@click.option("--force", is_flag=True, default=False, help="Run even if the trigger does not match the branch")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True, help="Stop dispatching stages after the first failure")
@click.option("--var", "var", multiple=True, metavar="NAME=VALUE", help="Queue-time variable (repeatable)")
@click.option("--workers", default=None, type=int, help="Capacity of the default agent pool")
@click.option("--work-dir", default=None, type=click.Path(file_okay=False, path_type=Path), help="Working directory for steps")
@click.option("--changed-since", default=None, metavar="REF", help="Evaluate path filters against files changed since REF")
@click.pass_context
def run(ctx, pipeline, branch, force, fail_fast, var, workers, work_dir, changed_since):
    """Run a pipeline."""
    console = get_console()
    path = discover_pipeline(pipeline)
    variables = parse_vars(var)

    settings = get_settings().with_overrides(default_pool_size=workers, work_dir=work_dir)
    set_settings(settings)

    changed: Optional[List[str]] = None
    if changed_since:
        try:
            changed = changed_files_since(changed_since, cwd=str(settings.work_dir))
        except GitError as e:
            console.print_error("Cannot compute changed files", str(e))
            sys.exit(EXIT_DEFINITION)

    definition = _load_or_exit(path)
    try:
        prepared = prepare_run(
            definition,
            branch=branch,
            changed_files=changed,
            variables=variables,
            settings=settings,
            force=force,
            detect_git=True,
        )
    except TriggerNotMatched as e:
        console.print_info(f"{e}; nothing to run (use --force to run anyway)")
        sys.exit(EXIT_OK)
    except (DefinitionError, UnresolvedVariable) as e:
        console.print_error("Invalid pipeline definition", str(e))
        sys.exit(EXIT_DEFINITION)

    console.print_run_started(prepared.pipeline.name, prepared.id, len(prepared.pipeline.stages))
    thread = start_run(prepared, fail_fast=fail_fast, settings=settings)
    interrupted = False
    try:
        while not prepared.wait(0.2):
            pass
    except KeyboardInterrupt:
        interrupted = True
        console.print_info("\nInterrupted by user, cancelling run")
        prepared.cancel()
        prepared.wait()
    thread.join()

    snapshot = prepared.snapshot()
    console.print_results(snapshot)
    status = snapshot.status()
    logger.debug("run %s ended %s", prepared.id, status.value)

    if interrupted:
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(EXIT_OK if status == Status.SUCCEEDED else EXIT_FAILED)


@cli.command()
@click.argument("pipeline", required=False)
def validate(pipeline):
    """Check a pipeline definition without running it."""
    console = get_console()
    path = discover_pipeline(pipeline)
    definition = _load_or_exit(path)
    try:
        validate_pipeline(definition)
    except StageflowError as e:
        console.print_error("Invalid pipeline definition", str(e))
        sys.exit(EXIT_DEFINITION)
    jobs = sum(len(s.jobs) for s in definition.stages)
    console.print_info(f"{path}: OK ({len(definition.stages)} stage(s), {jobs} job(s))")


@cli.command()
@click.argument("pipeline", required=False)
def plan(pipeline):
    """Print the stages grouped by dependency level."""
    console = get_console()
    path = discover_pipeline(pipeline)
    definition = _load_or_exit(path)
    try:
        dag = validate_pipeline(definition)
    except StageflowError as e:
        console.print_error("Invalid pipeline definition", str(e))
        sys.exit(EXIT_DEFINITION)
    console.print_plan(definition.name, dag.levels())


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.pass_context
def serve(ctx, host, port):
    """Run the HTTP status service."""
    import uvicorn

    from .server.app import create_app

    uvicorn.run(create_app(), host=host, port=port, log_level="debug" if ctx.obj.get("debug") else "info")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
