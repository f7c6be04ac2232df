# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple, Union

DEFAULT_POOL = "default"


class Status(str, Enum):
    PENDING = "Pending"
    READY = "Ready"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    CANCELLED = "Cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL

    def __str__(self) -> str:
        return self.value


_TERMINAL = frozenset({Status.SUCCEEDED, Status.FAILED, Status.SKIPPED, Status.CANCELLED})


class Condition(str, Enum):
    """When a stage may run, judged on the terminal status of its dependencies."""
    SUCCEEDED = "succeeded()"
    FAILED = "failed()"
    ALWAYS = "always()"

    def __str__(self) -> str:
        return self.value


def _frozen(mapping: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    return MappingProxyType(dict(mapping or {}))


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ScriptStep:
    """Opaque shell text executed by the agent."""
    script: str
    display_name: str | None = None
    continue_on_error: bool = False
    timeout_s: float | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # frozen dataclass: bypass __setattr__ to store a read-only view
        object.__setattr__(self, "env", _frozen(self.env))

    @property
    def name(self) -> str:
        if self.display_name:
            return self.display_name
        first = self.script.strip().splitlines()[0] if self.script.strip() else "script"
        return first if len(first) <= 40 else first[:37] + "..."


@dataclass(frozen=True)
class TaskStep:
    """A typed reference to a registered task (``Kind@Version``)."""
    task: str
    version: int
    inputs: Mapping[str, str] = field(default_factory=dict)
    display_name: str | None = None
    continue_on_error: bool = False
    timeout_s: float | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "inputs", _frozen(self.inputs))
        object.__setattr__(self, "env", _frozen(self.env))

    @property
    def ref(self) -> str:
        return f"{self.task}@{self.version}"

    @property
    def name(self) -> str:
        return self.display_name or self.ref


Step = Union[ScriptStep, TaskStep]


# ---------------------------------------------------------------------
# Jobs / stages / pipeline
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Job:
    """A unit of work bound to one agent: ordered steps plus scheduling metadata."""
    name: str
    steps: Tuple[Step, ...]
    depends_on: Tuple[str, ...] = ()
    pool: str | None = None
    variables: Mapping[str, str] = field(default_factory=dict)
    timeout_s: float | None = None
    display_name: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        object.__setattr__(self, "variables", _frozen(self.variables))


@dataclass(frozen=True)
class Stage:
    name: str
    jobs: Tuple[Job, ...]
    depends_on: Tuple[str, ...] = ()
    pool: str | None = None
    variables: Mapping[str, str] = field(default_factory=dict)
    condition: Condition = Condition.SUCCEEDED
    optional: bool = False
    timeout_s: float | None = None
    display_name: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "jobs", tuple(self.jobs))
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        object.__setattr__(self, "variables", _frozen(self.variables))
        object.__setattr__(self, "condition", Condition(self.condition))

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(f"Stage '{self.name}' has no job '{name}'")


@dataclass(frozen=True)
class Trigger:
    """
    Which source events start a run.

    ``include``/``exclude`` hold fnmatch patterns for branch names; the
    ``paths_*`` pair narrows further on changed files when those are known.
    A disabled trigger (``trigger: none``) never matches.
    """
    include: Tuple[str, ...] = ("*",)
    exclude: Tuple[str, ...] = ()
    paths_include: Tuple[str, ...] = ()
    paths_exclude: Tuple[str, ...] = ()
    enabled: bool = True

    def __post_init__(self) -> None:
        for attr in ("include", "exclude", "paths_include", "paths_exclude"):
            object.__setattr__(self, attr, tuple(getattr(self, attr)))


@dataclass(frozen=True)
class PoolSpec:
    name: str
    capacity: int = 1


@dataclass(frozen=True)
class Pipeline:
    """A parsed pipeline definition. Immutable; shared by every Run made from it."""
    name: str
    stages: Tuple[Stage, ...]
    variables: Mapping[str, str] = field(default_factory=dict)
    trigger: Trigger = field(default_factory=Trigger)
    pools: Tuple[PoolSpec, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "stages", tuple(self.stages))
        object.__setattr__(self, "variables", _frozen(self.variables))
        object.__setattr__(self, "pools", tuple(self.pools))

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]

    def stage(self, name: str) -> Stage:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(f"Pipeline '{self.name}' has no stage '{name}'")
