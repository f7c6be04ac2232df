from .dsl import job, pipeline, script, stage, task
from .errors import (
    CyclicDependency,
    DefinitionError,
    DuplicateName,
    StageflowError,
    UnknownDependency,
    UnresolvedVariable,
)
from .loader import load_pipeline, parse_pipeline
from .model import Condition, Job, Pipeline, ScriptStep, Stage, Status, TaskStep
from .run import Run
from .runner import run_pipeline, start_run

__version__ = "0.1.0"

__all__ = [
    "Condition",
    "CyclicDependency",
    "DefinitionError",
    "DuplicateName",
    "Job",
    "Pipeline",
    "Run",
    "ScriptStep",
    "Stage",
    "StageflowError",
    "Status",
    "TaskStep",
    "UnknownDependency",
    "UnresolvedVariable",
    "job",
    "load_pipeline",
    "parse_pipeline",
    "pipeline",
    "run_pipeline",
    "script",
    "stage",
    "start_run",
    "task",
]
