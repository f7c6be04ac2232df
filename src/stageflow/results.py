"""Result records, read-only run snapshots and the aggregate status projection."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .model import Status

STAGE, JOB, STEP = "stage", "job", "step"


@dataclass(frozen=True)
class Result:
    """
    Outcome of one node of a run (stage, job or step).

    Frozen: the owning Run swaps whole records under its lock, so a reader
    holding a Result never sees a half-applied update.
    """
    id: str
    kind: str
    name: str
    status: Status = Status.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    output: str = ""
    reason: Optional[str] = None
    exit_code: Optional[int] = None
    optional: bool = False
    agent: Optional[str] = None
    children: Tuple[str, ...] = ()

    @property
    def duration_s(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_s": self.duration_s,
            "output": self.output,
            "reason": self.reason,
            "exit_code": self.exit_code,
            "optional": self.optional,
            "agent": self.agent,
        }


def stage_id(stage: str) -> str:
    return stage


def job_id(stage: str, job: str) -> str:
    return f"{stage}/{job}"


def step_id(stage: str, job: str, index: int) -> str:
    return f"{stage}/{job}/{index}"


@dataclass(frozen=True)
class RunSnapshot:
    """A consistent, point-in-time copy of a run's Result tree."""
    run_id: str
    pipeline: str
    cancelled: bool
    finished: bool
    stage_ids: Tuple[str, ...]
    nodes: Mapping[str, Result] = field(default_factory=dict)

    def __getitem__(self, node_id: str) -> Result:
        return self.nodes[node_id]

    def stages(self) -> List[Result]:
        return [self.nodes[s] for s in self.stage_ids]

    def children(self, node_id: str) -> List[Result]:
        return [self.nodes[c] for c in self.nodes[node_id].children]

    def status(self) -> Status:
        return aggregate(self)

    def to_dict(self) -> Dict[str, Any]:
        def node(r: Result) -> Dict[str, Any]:
            d = r.to_dict()
            key = {STAGE: "jobs", JOB: "steps"}.get(r.kind)
            if key:
                d[key] = [node(c) for c in self.children(r.id)]
            return d

        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "status": self.status().value,
            "cancelled": self.cancelled,
            "finished": self.finished,
            "stages": [node(s) for s in self.stages()],
        }


# ----------------------------------------------------------------------
# Aggregation (pure read-side projection)
# ----------------------------------------------------------------------

def aggregate(snapshot: RunSnapshot) -> Status:
    """
    Overall run status:
      - Failed if any required stage Failed
      - Running while any stage is not terminal
      - Cancelled if any stage ended Cancelled
      - Succeeded if every stage Succeeded, or is optional and ended otherwise
      - Failed otherwise (a required stage was skipped)
    """
    stages = snapshot.stages()
    if any(s.status == Status.FAILED and not s.optional for s in stages):
        return Status.FAILED
    if not all(s.status.terminal for s in stages):
        return Status.RUNNING
    if any(s.status == Status.CANCELLED for s in stages):
        return Status.CANCELLED
    if all(s.status == Status.SUCCEEDED or s.optional for s in stages):
        return Status.SUCCEEDED
    return Status.FAILED


def first_failure(snapshot: RunSnapshot) -> Optional[Result]:
    """The first failing step, in declaration order, that failed its job."""
    fallback: Optional[Result] = None
    for stage in snapshot.stages():
        for job in snapshot.children(stage.id):
            for step in snapshot.children(job.id):
                if step.status != Status.FAILED:
                    continue
                if job.status == Status.FAILED:
                    return step
                fallback = fallback or step
    return fallback


def skipped_stages(snapshot: RunSnapshot) -> List[Result]:
    return [s for s in snapshot.stages() if s.status == Status.SKIPPED]
