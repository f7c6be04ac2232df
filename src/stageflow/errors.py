# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


class StageflowError(Exception):
    """Base class for every error raised by stageflow."""


# ----------------------------------------------------------------------
# Definition errors (parse / validation time, never retried)
# ----------------------------------------------------------------------

class DefinitionError(StageflowError):
    """The pipeline definition is malformed and no Run may start from it."""


class PipelineLoadError(DefinitionError):
    """Raised when a definition file cannot be read, parsed or validated."""


class DuplicateName(DefinitionError):
    def __init__(self, scope: str, name: str):
        self.scope = scope
        self.name = name
        super().__init__(f"Duplicate name '{name}' in {scope}")


class UnknownDependency(DefinitionError):
    def __init__(self, owner: str, missing: str, known: List[str] | None = None):
        self.owner = owner
        self.missing = missing
        self.known = sorted(known or [])
        msg = f"'{owner}' depends on unknown '{missing}'"
        if self.known:
            msg += f". Known: {self.known}"
        super().__init__(msg)


class CyclicDependency(DefinitionError):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle: {' -> '.join(self.cycle)}")


class UnknownTaskKind(DefinitionError):
    def __init__(self, kind: str, known: List[str] | None = None):
        self.kind = kind
        self.known = sorted(known or [])
        super().__init__(f"Unknown task kind '{kind}'. Registered: {self.known}")


class UnknownPool(DefinitionError):
    def __init__(self, owner: str, pool: str):
        self.owner = owner
        self.pool = pool
        super().__init__(f"'{owner}' references undeclared agent pool '{pool}'")


# ----------------------------------------------------------------------
# Run-time errors
# ----------------------------------------------------------------------

class UnresolvedVariable(StageflowError):
    def __init__(self, name: str, template: str | None = None, where: str | None = None):
        self.name = name
        self.template = template
        self.where = where
        msg = f"Unresolved variable $({name})"
        if where:
            msg += f" in {where}"
        super().__init__(msg)


@dataclass
class StepExecutionFailure(StageflowError):
    """
    A script/task step exited unsuccessfully.

    Carries enough context to render a useful failure line without a
    traceback: which job and step, the exit code and the tail of the output.
    """
    job: str
    step: str
    exit_code: int | None
    output: str = ""
    reason: str = field(default="")

    def __str__(self) -> str:
        if self.reason:
            return f"[{self.job}] step '{self.step}' failed: {self.reason}"
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code})"


@dataclass
class StepTimeout(StepExecutionFailure):
    timeout_s: float = 0.0

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' timed out after {self.timeout_s:g}s"


class TaskError(StageflowError):
    """A task handler rejected its inputs or could not find its tool."""

    def __init__(self, task: str, message: str, hint: str | None = None):
        self.task = task
        self.hint = hint
        text = f"{task}: {message}"
        if hint:
            text += f" (hint: {hint})"
        super().__init__(text)


class LeaseTimeout(StageflowError):
    """No agent became free in the pool before the job's deadline."""

    def __init__(self, pool: str):
        self.pool = pool
        super().__init__(f"timed out waiting for an agent in pool '{pool}'")


class TriggerNotMatched(StageflowError):
    def __init__(self, pipeline: str, branch: str | None):
        self.pipeline = pipeline
        self.branch = branch
        super().__init__(f"Trigger of pipeline '{pipeline}' does not match branch {branch!r}")


class CancellationRequested(StageflowError):
    """Raised inside a job's thread of control when its Run was cancelled.

    Not a failure: the affected nodes end ``Cancelled``.
    """
