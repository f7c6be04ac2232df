"""Variable resolution: ``$(name)`` placeholders against a job -> stage -> pipeline scope chain."""

from __future__ import annotations

import re
from dataclasses import replace
from typing import Dict, List, Mapping, Sequence

from .errors import UnresolvedVariable
from .model import Job, Pipeline, ScriptStep, Stage, Step

PLACEHOLDER = re.compile(r"\$\(\s*([A-Za-z_][A-Za-z0-9_.\-]*)\s*\)")

# Injected into the pipeline scope when a Run is created.
BUILTIN_VARIABLES = (
    "Build.BuildId",
    "Build.BuildNumber",
    "Build.SourceBranch",
    "Build.SourceBranchName",
    "Build.SourceVersion",
    "Pipeline.Name",
    "System.DefaultWorkingDirectory",
)


def references(template: str) -> List[str]:
    """Names referenced by *template*, in order of appearance."""
    return [m.group(1) for m in PLACEHOLDER.finditer(template)]


def resolve(
    template: str,
    scopes: Sequence[Mapping[str, str]],
    *,
    where: str | None = None,
) -> str:
    """Substitute every ``$(name)`` in *template*.

    *scopes* is searched innermost first, so a job variable shadows a stage
    variable which shadows a pipeline variable. Substitution is a single pass:
    a substituted value is never scanned again.

    Raises:
        UnresolvedVariable: a referenced name is absent from every scope.
    """

    def replacer(match: re.Match) -> str:
        name = match.group(1)
        for scope in scopes:
            if name in scope:
                return scope[name]
        raise UnresolvedVariable(name, template=template, where=where)

    return PLACEHOLDER.sub(replacer, template)


def scope_chain(pipeline: Pipeline, stage: Stage, job: Job) -> List[Mapping[str, str]]:
    return [job.variables, stage.variables, pipeline.variables]


def env_name(variable: str) -> str:
    """``Build.BuildId`` -> ``BUILD_BUILDID``."""
    return re.sub(r"[^A-Za-z0-9_]", "_", variable).upper()


def export_env(scopes: Sequence[Mapping[str, str]]) -> Dict[str, str]:
    """Environment variables exposing every visible variable to a step process."""
    env: Dict[str, str] = {}
    # outermost first so inner scopes win
    for scope in reversed(list(scopes)):
        for name, value in scope.items():
            env[env_name(name)] = value
    return env


# ----------------------------------------------------------------------
# Whole-pipeline resolution (happens once per Run, before dispatch)
# ----------------------------------------------------------------------

def _resolve_step(step: Step, scopes: Sequence[Mapping[str, str]], where: str) -> Step:
    display = resolve(step.display_name, scopes, where=where) if step.display_name else None
    env = {k: resolve(v, scopes, where=f"{where} env '{k}'") for k, v in step.env.items()}

    if isinstance(step, ScriptStep):
        return replace(
            step,
            script=resolve(step.script, scopes, where=where),
            display_name=display,
            env=env,
        )

    inputs = {k: resolve(v, scopes, where=f"{where} input '{k}'") for k, v in step.inputs.items()}
    return replace(step, inputs=inputs, display_name=display, env=env)


def resolve_pipeline(pipeline: Pipeline, extra: Mapping[str, str] | None = None) -> Pipeline:
    """Return a copy of *pipeline* with every step template substituted.

    *extra* (built-ins and queue-time overrides) is merged into the pipeline
    scope, taking precedence over declared pipeline variables. The input
    pipeline is left untouched.
    """
    pipeline_vars = dict(pipeline.variables)
    pipeline_vars.update(extra or {})
    resolved = replace(pipeline, variables=pipeline_vars)

    stages: List[Stage] = []
    for stage in resolved.stages:
        jobs: List[Job] = []
        for job in stage.jobs:
            scopes = scope_chain(resolved, stage, job)
            steps = [
                _resolve_step(step, scopes, where=f"{stage.name}/{job.name} step {idx + 1}")
                for idx, step in enumerate(job.steps)
            ]
            jobs.append(replace(job, steps=tuple(steps)))
        stages.append(replace(stage, jobs=tuple(jobs)))

    return replace(resolved, stages=tuple(stages))
