from __future__ import annotations

import threading
from typing import Callable, List, Mapping, Optional

from ._log import get_logger
from .agent.agent import Agent, LocalAgent
from .agent.pool import PoolSet
from .config import Settings, get_settings
from .model import Pipeline, Status
from .run import Run, create_run
from .scheduler import Scheduler
from .tasks import TaskRegistry, default_registry
from .validate import validate_pipeline

logger = get_logger("runner")


def build_pools(
    pipeline: Pipeline,
    *,
    settings: Optional[Settings] = None,
    registry: Optional[TaskRegistry] = None,
    agent_factory: Optional[Callable[[str], Agent]] = None,
) -> PoolSet:
    """Pools declared by *pipeline*, plus ``default`` sized from settings."""
    settings = settings or get_settings()
    registry = registry or default_registry()
    factory = agent_factory or (lambda name: LocalAgent(name, registry, settings))
    return PoolSet.from_specs(
        pipeline.pools,
        factory,
        default_capacity=settings.default_pool_size,
        poll_interval=settings.poll_interval,
    )


def prepare_run(
    pipeline: Pipeline,
    *,
    branch: Optional[str] = None,
    sha: Optional[str] = None,
    changed_files: Optional[List[str]] = None,
    variables: Optional[Mapping[str, str]] = None,
    registry: Optional[TaskRegistry] = None,
    settings: Optional[Settings] = None,
    force: bool = False,
    detect_git: bool = False,
) -> Run:
    """Validate, check the trigger and resolve variables. Nothing runs yet."""
    settings = settings or get_settings()
    validate_pipeline(pipeline, registry)
    return create_run(
        pipeline,
        branch=branch,
        sha=sha,
        changed_files=changed_files,
        variables=variables,
        work_dir=settings.work_dir,
        force=force,
        detect_git=detect_git,
    )


def execute_run(
    run: Run,
    *,
    pools: Optional[PoolSet] = None,
    fail_fast: bool = False,
    registry: Optional[TaskRegistry] = None,
    settings: Optional[Settings] = None,
    agent_factory: Optional[Callable[[str], Agent]] = None,
) -> Status:
    settings = settings or get_settings()
    if pools is None:
        pools = build_pools(run.pipeline, settings=settings, registry=registry, agent_factory=agent_factory)
    return Scheduler(run, pools, fail_fast=fail_fast, settings=settings).execute()


def run_pipeline(
    pipeline: Pipeline,
    *,
    branch: Optional[str] = None,
    variables: Optional[Mapping[str, str]] = None,
    fail_fast: bool = False,
    force: bool = True,
    registry: Optional[TaskRegistry] = None,
    settings: Optional[Settings] = None,
    agent_factory: Optional[Callable[[str], Agent]] = None,
) -> Run:
    """
    Validate and execute *pipeline* to completion; return the finished Run.

    ``force`` defaults to True: a direct call is a manual run, so the trigger
    is only checked when the caller asks for it.
    """
    run = prepare_run(
        pipeline,
        branch=branch,
        variables=variables,
        registry=registry,
        settings=settings,
        force=force,
    )
    execute_run(run, fail_fast=fail_fast, registry=registry, settings=settings, agent_factory=agent_factory)
    return run


def start_run(run: Run, **kwargs) -> threading.Thread:
    """Execute *run* on a background thread; observe it through ``run.snapshot()``."""

    def _target() -> None:
        try:
            execute_run(run, **kwargs)
        except Exception:
            logger.exception("run %s crashed", run.id)
            if not run.finished:
                run.finish()

    t = threading.Thread(target=_target, name=f"run-{run.id}", daemon=True)
    t.start()
    return t

