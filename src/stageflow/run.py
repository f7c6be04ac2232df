# run.py
from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Mapping

from ._log import get_logger
from .errors import TriggerNotMatched
from .git_facts.git import GitError, current_branch, head_sha
from .ids import generate_id
from .model import Pipeline, Status
from .results import JOB, STAGE, STEP, Result, RunSnapshot, job_id, stage_id, step_id
from .trigger import branch_short_name, trigger_matches
from .variables import resolve_pipeline

logger = get_logger("run")

_build_counter = itertools.count(1)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class Run:
    """
    One execution of a pipeline.

    Owns every Result record it produces, keyed by stable ids
    (``Stage``, ``Stage/Job``, ``Stage/Job/<n>``). Writers go through
    :meth:`update`; readers take :meth:`snapshot`. Both hold the same lock,
    so a snapshot never contains a partially written record.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        run_id: str | None = None,
        source: Pipeline | None = None,
        work_dir: Path | None = None,
        variables: Mapping[str, str] | None = None,
    ):
        self.id = run_id or generate_id()
        self.pipeline = pipeline
        self.source = source or pipeline
        self.work_dir = Path(work_dir or ".").resolve()
        self.variables: Dict[str, str] = dict(variables or {})
        self.created_at = now_utc()

        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._done = threading.Event()
        self._finished = False
        self._nodes: Dict[str, Result] = {}

        for stage in pipeline.stages:
            sid = stage_id(stage.name)
            job_ids: List[str] = []
            for job in stage.jobs:
                jid = job_id(stage.name, job.name)
                job_ids.append(jid)
                step_ids: List[str] = []
                for idx, step in enumerate(job.steps):
                    tid = step_id(stage.name, job.name, idx)
                    step_ids.append(tid)
                    self._nodes[tid] = Result(id=tid, kind=STEP, name=step.name)
                self._nodes[jid] = Result(id=jid, kind=JOB, name=job.name, children=tuple(step_ids))
            self._nodes[sid] = Result(
                id=sid,
                kind=STAGE,
                name=stage.name,
                optional=stage.optional,
                children=tuple(job_ids),
            )
        self._stage_ids = tuple(stage_id(s.name) for s in pipeline.stages)

    # ------------------------------------------------------------------
    # Writes (scheduler / executor only)
    # ------------------------------------------------------------------

    def update(self, node_id: str, **fields) -> Result:
        """Atomically replace fields on one Result; timestamps follow status."""
        with self._lock:
            if self._finished:
                raise RuntimeError(f"Run {self.id} is finished; results are immutable")
            current = self._nodes[node_id]
            status = fields.get("status")
            if status == Status.RUNNING and current.started_at is None:
                fields.setdefault("started_at", now_utc())
            if status is not None and Status(status).terminal and current.finished_at is None:
                fields.setdefault("finished_at", now_utc())
            new = replace(current, **fields)
            self._nodes[node_id] = new
            return new

    def close_subtree(self, node_id: str, status: Status, reason: str) -> None:
        """Give every non-terminal node under (and including) *node_id* a terminal status."""
        with self._lock:
            pending = [node_id]
            while pending:
                nid = pending.pop()
                node = self._nodes[nid]
                pending.extend(node.children)
                if node.status.terminal:
                    continue
                self._nodes[nid] = replace(
                    node,
                    status=status,
                    reason=node.reason or reason,
                    finished_at=now_utc() if node.started_at else None,
                )

    def finish(self) -> None:
        with self._lock:
            self._finished = True
        self._done.set()
        logger.debug("run %s finished: %s", self.id, self.status())

    # ------------------------------------------------------------------
    # Reads (any thread)
    # ------------------------------------------------------------------

    def get(self, node_id: str) -> Result:
        with self._lock:
            return self._nodes[node_id]

    def statuses(self, node_ids: Iterable[str]) -> Dict[str, Status]:
        with self._lock:
            return {n: self._nodes[n].status for n in node_ids}

    def snapshot(self) -> RunSnapshot:
        with self._lock:
            return RunSnapshot(
                run_id=self.id,
                pipeline=self.pipeline.name,
                cancelled=self._cancel.is_set(),
                finished=self._finished,
                stage_ids=self._stage_ids,
                nodes=dict(self._nodes),
            )

    def status(self) -> Status:
        return self.snapshot().status()

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Request cancellation; best effort, nothing already done is rolled back."""
        if not self._cancel.is_set():
            logger.info("run %s: cancellation requested", self.id)
        self._cancel.set()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()


# ----------------------------------------------------------------------
# Run creation
# ----------------------------------------------------------------------

def builtin_variables(
    pipeline: Pipeline,
    *,
    run_id: str,
    build_number: str,
    branch: str | None,
    sha: str | None,
    work_dir: Path,
) -> Dict[str, str]:
    ref = branch or ""
    if ref and not ref.startswith("refs/"):
        ref = f"refs/heads/{ref}"
    return {
        "Build.BuildId": run_id,
        "Build.BuildNumber": build_number,
        "Build.SourceBranch": ref,
        "Build.SourceBranchName": branch_short_name(branch) if branch else "",
        "Build.SourceVersion": sha or "",
        "Pipeline.Name": pipeline.name,
        "System.DefaultWorkingDirectory": str(work_dir),
    }


def _git_defaults(work_dir: Path) -> tuple[str | None, str | None]:
    try:
        return current_branch(cwd=str(work_dir)), head_sha(cwd=str(work_dir))
    except GitError:
        return None, None


def create_run(
    pipeline: Pipeline,
    *,
    branch: str | None = None,
    sha: str | None = None,
    changed_files: List[str] | None = None,
    variables: Mapping[str, str] | None = None,
    work_dir: Path | str | None = None,
    run_id: str | None = None,
    build_number: str | None = None,
    force: bool = False,
    detect_git: bool = False,
) -> Run:
    """
    Create a Run for a validated *pipeline*.

    Checks the trigger (unless *force*), injects built-in variables, applies
    queue-time *variables* and resolves every step template. Unresolved
    references raise ``UnresolvedVariable`` here, before any stage starts.
    """
    work = Path(work_dir or ".").resolve()
    if detect_git and (branch is None or sha is None):
        git_branch, git_sha = _git_defaults(work)
        branch = branch or git_branch
        sha = sha or git_sha

    if not force and not trigger_matches(pipeline.trigger, branch, changed_files):
        raise TriggerNotMatched(pipeline.name, branch)

    rid = run_id or generate_id()
    number = build_number or f"{now_utc():%Y%m%d}.{next(_build_counter)}"
    extra = builtin_variables(pipeline, run_id=rid, build_number=number, branch=branch, sha=sha, work_dir=work)
    extra.update(variables or {})

    resolved = resolve_pipeline(pipeline, extra)
    logger.debug("created run %s for pipeline %s (branch=%s)", rid, pipeline.name, branch)
    return Run(resolved, run_id=rid, source=pipeline, work_dir=work, variables=extra)
