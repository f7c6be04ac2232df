"""Definition-time checks. Anything raised here is fatal and never retried."""

from __future__ import annotations

import re
from typing import Optional

from .dag import Dag, build_dag
from .errors import DefinitionError, DuplicateName, UnknownPool
from .model import DEFAULT_POOL, Pipeline, TaskStep
from .tasks import TaskRegistry, default_registry
from .variables import BUILTIN_VARIABLES

NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


def _check_name(kind: str, name: str) -> None:
    if not NAME.match(name or ""):
        raise DefinitionError(
            f"Invalid {kind} name {name!r}: use letters, digits, '_' or '-', starting with a letter or '_'"
        )


def validate_pipeline(pipeline: Pipeline, registry: Optional[TaskRegistry] = None) -> Dag:
    """
    Validate *pipeline* and return its stage DAG.

    Checks, in order: names, pools, reserved variables, the stage graph,
    each stage's job graph, steps and task kinds.
    """
    registry = registry or default_registry()

    if not pipeline.stages:
        raise DefinitionError(f"Pipeline '{pipeline.name}' has no stages")

    pools = {DEFAULT_POOL}
    for spec in pipeline.pools:
        _check_name("pool", spec.name)
        if spec.name in pools and spec.name != DEFAULT_POOL:
            raise DuplicateName("pools", spec.name)
        if spec.capacity < 1:
            raise DefinitionError(f"Pool '{spec.name}' capacity must be >= 1, got {spec.capacity}")
        pools.add(spec.name)

    reserved = sorted(set(pipeline.variables) & set(BUILTIN_VARIABLES))
    if reserved:
        raise DefinitionError(f"Pipeline variables may not redefine built-ins: {reserved}")

    for stage in pipeline.stages:
        _check_name("stage", stage.name)
        if stage.pool and stage.pool not in pools:
            raise UnknownPool(stage.name, stage.pool)
        if stage.timeout_s is not None and stage.timeout_s <= 0:
            raise DefinitionError(f"Stage '{stage.name}' timeout must be positive")

    stage_dag = build_dag(
        pipeline.stage_names,
        {s.name: s.depends_on for s in pipeline.stages},
        scope=f"pipeline '{pipeline.name}'",
    )

    for stage in pipeline.stages:
        if not stage.jobs:
            raise DefinitionError(f"Stage '{stage.name}' has no jobs")
        for job in stage.jobs:
            _check_name("job", job.name)
            where = f"{stage.name}/{job.name}"
            if job.pool and job.pool not in pools:
                raise UnknownPool(where, job.pool)
            if not job.steps:
                raise DefinitionError(f"Job '{where}' has no steps")
            if job.timeout_s is not None and job.timeout_s <= 0:
                raise DefinitionError(f"Job '{where}' timeout must be positive")
            for idx, step in enumerate(job.steps, start=1):
                if step.timeout_s is not None and step.timeout_s <= 0:
                    raise DefinitionError(f"Step {idx} of '{where}' timeout must be positive")
                if isinstance(step, TaskStep):
                    registry.get(step.ref)
                elif not step.script.strip():
                    raise DefinitionError(f"Step {idx} of '{where}' has an empty script")

        build_dag(
            [j.name for j in stage.jobs],
            {j.name: j.depends_on for j in stage.jobs},
            scope=f"stage '{stage.name}'",
        )

    return stage_dag
