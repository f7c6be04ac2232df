"""Pydantic models for pipeline YAML definitions."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import DuplicateName
from .model import Condition, Job, Pipeline, PoolSpec, ScriptStep, Stage, TaskStep, Trigger
from .tasks import TASK_REF


def _as_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _variables(value: Any, scope: str) -> Dict[str, str]:
    """Accept ``{name: value}`` or ``[{name:, value:}, ...]``."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): _as_str(v) for k, v in value.items()}
    if isinstance(value, list):
        out: Dict[str, str] = {}
        for item in value:
            if not isinstance(item, dict) or "name" not in item:
                raise ValueError("variables list entries need 'name' and 'value'")
            name = str(item["name"])
            if name in out:
                raise DuplicateName(scope, name)
            out[name] = _as_str(item.get("value"))
        return out
    raise ValueError("variables must be a mapping or a list of {name, value}")


def _name_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _minutes(value: Optional[float]) -> Optional[float]:
    return None if value is None else float(value) * 60.0


class _Doc(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

class StepDoc(_Doc):
    script: Optional[str] = None
    bash: Optional[str] = None
    task: Optional[str] = None
    inputs: Dict[str, str] = {}
    display_name: Optional[str] = Field(default=None, alias="displayName")
    continue_on_error: bool = Field(default=False, alias="continueOnError")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeoutInMinutes", gt=0)
    env: Dict[str, str] = {}

    @field_validator("inputs", "env", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Dict[str, str]:
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("must be a mapping")
        return {str(k): _as_str(val) for k, val in v.items()}

    @model_validator(mode="after")
    def _one_kind(self) -> "StepDoc":
        given = [k for k in ("script", "bash", "task") if getattr(self, k) is not None]
        if len(given) != 1:
            raise ValueError(f"a step needs exactly one of script/bash/task, got {given or 'none'}")
        if self.task is not None and not TASK_REF.match(self.task.strip()):
            raise ValueError(f"task must look like Kind@Version, got {self.task!r}")
        if self.inputs and self.task is None:
            raise ValueError("inputs are only valid on task steps")
        return self

    def to_step(self) -> Union[ScriptStep, TaskStep]:
        common = dict(
            display_name=self.display_name,
            continue_on_error=self.continue_on_error,
            timeout_s=_minutes(self.timeout_minutes),
            env=self.env,
        )
        if self.script is not None:
            return ScriptStep(script=self.script, **common)
        if self.bash is not None:
            return TaskStep(task="Bash", version=3, inputs={"targetType": "inline", "script": self.bash}, **common)
        m = TASK_REF.match(self.task.strip())
        return TaskStep(task=m.group(1), version=int(m.group(2)), inputs=self.inputs, **common)


# ---------------------------------------------------------------------
# Jobs / stages
# ---------------------------------------------------------------------

def _pool_name(v: Any) -> Optional[str]:
    if v is None or isinstance(v, str):
        return v
    if isinstance(v, dict) and "name" in v:
        return str(v["name"])
    raise ValueError("pool must be a name or {name: ...}")


class JobDoc(_Doc):
    job: str
    display_name: Optional[str] = Field(default=None, alias="displayName")
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    pool: Optional[str] = None
    variables: Dict[str, str] = {}
    timeout_minutes: Optional[float] = Field(default=None, alias="timeoutInMinutes", gt=0)
    steps: List[StepDoc] = Field(min_length=1)

    @field_validator("depends_on", mode="before")
    @classmethod
    def _deps(cls, v: Any) -> List[str]:
        return _name_list(v)

    @field_validator("pool", mode="before")
    @classmethod
    def _pool(cls, v: Any) -> Optional[str]:
        return _pool_name(v)

    @field_validator("variables", mode="before")
    @classmethod
    def _vars(cls, v: Any) -> Dict[str, str]:
        return _variables(v, "job variables")

    def to_job(self) -> Job:
        return Job(
            name=self.job,
            steps=tuple(s.to_step() for s in self.steps),
            depends_on=tuple(self.depends_on),
            pool=self.pool,
            variables=self.variables,
            timeout_s=_minutes(self.timeout_minutes),
            display_name=self.display_name,
        )


class StageDoc(_Doc):
    stage: str
    display_name: Optional[str] = Field(default=None, alias="displayName")
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    condition: Condition = Condition.SUCCEEDED
    optional: bool = False
    pool: Optional[str] = None
    variables: Dict[str, str] = {}
    timeout_minutes: Optional[float] = Field(default=None, alias="timeoutInMinutes", gt=0)
    jobs: List[JobDoc] = Field(min_length=1)

    @field_validator("depends_on", mode="before")
    @classmethod
    def _deps(cls, v: Any) -> List[str]:
        return _name_list(v)

    @field_validator("pool", mode="before")
    @classmethod
    def _pool(cls, v: Any) -> Optional[str]:
        return _pool_name(v)

    @field_validator("variables", mode="before")
    @classmethod
    def _vars(cls, v: Any) -> Dict[str, str]:
        return _variables(v, "stage variables")

    @field_validator("condition", mode="before")
    @classmethod
    def _condition(cls, v: Any) -> Condition:
        if isinstance(v, Condition):
            return v
        text = "".join(str(v).split()).lower()
        for c in Condition:
            if text == c.value:
                return c
        raise ValueError(f"unsupported condition {v!r}; use succeeded(), failed() or always()")

    def to_stage(self) -> Stage:
        return Stage(
            name=self.stage,
            jobs=tuple(j.to_job() for j in self.jobs),
            depends_on=tuple(self.depends_on),
            pool=self.pool,
            variables=self.variables,
            condition=self.condition,
            optional=self.optional,
            timeout_s=_minutes(self.timeout_minutes),
            display_name=self.display_name,
        )


# ---------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------

class FilterDoc(_Doc):
    include: List[str] = []
    exclude: List[str] = []


class TriggerDoc(_Doc):
    branches: FilterDoc = FilterDoc(include=["*"])
    paths: FilterDoc = FilterDoc()

    @field_validator("branches", "paths", mode="before")
    @classmethod
    def _shorthand(cls, v: Any) -> Any:
        # `branches: [main]` means `branches: {include: [main]}`
        if isinstance(v, (list, str)):
            return {"include": _name_list(v)}
        return v

    def to_trigger(self) -> Trigger:
        return Trigger(
            include=tuple(self.branches.include or ["*"]),
            exclude=tuple(self.branches.exclude),
            paths_include=tuple(self.paths.include),
            paths_exclude=tuple(self.paths.exclude),
        )


class PoolDoc(_Doc):
    name: str
    capacity: int = Field(default=1, ge=1)


class PipelineDoc(_Doc):
    name: Optional[str] = None
    trigger: Optional[Union[TriggerDoc, List[str], str]] = None
    variables: Dict[str, str] = {}
    pools: List[PoolDoc] = []
    stages: List[StageDoc] = []
    jobs: List[JobDoc] = []

    @field_validator("variables", mode="before")
    @classmethod
    def _vars(cls, v: Any) -> Dict[str, str]:
        return _variables(v, "pipeline variables")

    @model_validator(mode="after")
    def _stages_or_jobs(self) -> "PipelineDoc":
        if self.stages and self.jobs:
            raise ValueError("use either 'stages' or top-level 'jobs', not both")
        if not self.stages and not self.jobs:
            raise ValueError("a pipeline needs 'stages' (or top-level 'jobs')")
        if isinstance(self.trigger, str) and self.trigger.strip().lower() != "none":
            self.trigger = [self.trigger]
        return self

    def _trigger(self) -> Trigger:
        t = self.trigger
        if t is None:
            return Trigger()
        if isinstance(t, str):
            return Trigger(enabled=False)
        if isinstance(t, list):
            return Trigger(include=tuple(t))
        return t.to_trigger()

    def to_pipeline(self, default_name: str = "pipeline") -> Pipeline:
        if self.stages:
            stages = tuple(s.to_stage() for s in self.stages)
        else:
            # single implicit stage
            stages = (Stage(name="Default", jobs=tuple(j.to_job() for j in self.jobs)),)
        return Pipeline(
            name=self.name or default_name,
            stages=stages,
            variables=self.variables,
            trigger=self._trigger(),
            pools=tuple(PoolSpec(p.name, p.capacity) for p in self.pools),
        )
