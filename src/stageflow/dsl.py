# src/stageflow/dsl.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from .model import Condition, Job, Pipeline, PoolSpec, ScriptStep, Stage, Step, TaskStep, Trigger
from .tasks import parse_task_ref


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def script(
    text: str,
    name: str | None = None,
    *,
    continue_on_error: bool = False,
    timeout_s: float | None = None,
    env: Optional[Dict[str, str]] = None,
) -> ScriptStep:
    """Create a shell step."""
    return ScriptStep(
        script=text,
        display_name=name,
        continue_on_error=continue_on_error,
        timeout_s=timeout_s,
        env=env or {},
    )


def task(
    ref: str,
    name: str | None = None,
    *,
    inputs: Optional[Dict[str, Any]] = None,
    continue_on_error: bool = False,
    timeout_s: float | None = None,
    env: Optional[Dict[str, str]] = None,
) -> TaskStep:
    """Create a typed task step, e.g. ``task("Docker@2", inputs={...})``."""
    kind, version = parse_task_ref(ref)
    return TaskStep(
        task=kind,
        version=version,
        inputs={k: str(v) for k, v in (inputs or {}).items()},
        display_name=name,
        continue_on_error=continue_on_error,
        timeout_s=timeout_s,
        env=env or {},
    )


# ---------------------------------------------------------------------
# Job / stage helpers
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", script(...), script(...))
    depends_on: Optional[List[str]] = None,
    pool: str | None = None,
    variables: Optional[Dict[str, str]] = None,
    timeout_s: float | None = None,
) -> Job:
    if not steps:
        raise ValueError(f"job({name!r}) must have at least one step")
    return Job(
        name=name,
        steps=tuple(steps),
        depends_on=tuple(depends_on or ()),
        pool=pool,
        variables=variables or {},
        timeout_s=timeout_s,
    )


def stage(
    name: str,
    *jobs: Job,
    depends_on: Optional[List[str]] = None,
    pool: str | None = None,
    variables: Optional[Dict[str, str]] = None,
    condition: Condition | str = Condition.SUCCEEDED,
    optional: bool = False,
    timeout_s: float | None = None,
) -> Stage:
    if not jobs:
        raise ValueError(f"stage({name!r}) must have at least one job")
    return Stage(
        name=name,
        jobs=tuple(jobs),
        depends_on=tuple(depends_on or ()),
        pool=pool,
        variables=variables or {},
        condition=Condition(condition),
        optional=optional,
        timeout_s=timeout_s,
    )


def pipeline(
    name: str,
    *stages: Stage,
    variables: Optional[Dict[str, str]] = None,
    branches: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None,
    pools: Optional[Dict[str, int]] = None,
) -> Pipeline:
    """
    Pipeline definition helper.

        from stageflow.dsl import pipeline, stage, job, script

        def build_pipeline():
            return pipeline(
                "web",
                stage("Build", job("compile", script("make"))),
                stage("Test", job("unit", script("make test")), depends_on=["Build"]),
            )
    """
    trigger = Trigger(include=tuple(branches or ("*",)), exclude=tuple(exclude or ()))
    return Pipeline(
        name=name,
        stages=tuple(stages),
        variables=variables or {},
        trigger=trigger,
        pools=tuple(PoolSpec(n, c) for n, c in (pools or {}).items()),
    )

