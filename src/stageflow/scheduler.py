# scheduler.py
from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Tuple

from ._log import get_logger
from .agent.pool import PoolSet
from .config import Settings, get_settings
from .dag import Dag, build_dag
from .executor import StageExecutor
from .model import Condition, Stage, Status
from .results import stage_id
from .run import Run
from .ui.console import get_console

logger = get_logger("scheduler")


def readiness(stage: Stage, deps: Dict[str, Status]) -> Tuple[Optional[Status], Optional[str]]:
    """
    Decide a Pending stage's next state from its dependencies' statuses.

    Returns ``(Status.READY, None)``, ``(Status.SKIPPED, reason)`` or
    ``(None, None)`` while it must keep waiting.
    """
    settled = all(s.terminal for s in deps.values())
    unsuccessful = [n for n, s in deps.items() if s.terminal and s != Status.SUCCEEDED]

    if stage.condition == Condition.SUCCEEDED:
        if unsuccessful:
            name = unsuccessful[0]
            return Status.SKIPPED, f"dependency '{name}' ended {deps[name].value}"
        return (Status.READY, None) if settled else (None, None)

    if not settled:
        return None, None
    if stage.condition == Condition.ALWAYS:
        return Status.READY, None
    # failed()
    if any(s == Status.FAILED for s in deps.values()):
        return Status.READY, None
    return Status.SKIPPED, "condition failed() not met: no dependency failed"


class Scheduler:
    """
    Drives a Run's stages through Pending -> Ready -> Running -> terminal.

    - a stage becomes Ready once its dependencies allow it (see ``readiness``)
    - Ready stages start in declaration order when their pool admits them
    - with ``fail_fast``, the first required-stage failure stops dispatch
    - cancelling the Run closes every stage that has not started
    """

    def __init__(
        self,
        run: Run,
        pools: PoolSet,
        *,
        dag: Optional[Dag] = None,
        fail_fast: bool = False,
        settings: Optional[Settings] = None,
    ):
        self.run = run
        self.pools = pools
        self.fail_fast = fail_fast
        self.settings = settings or get_settings()
        stages = run.pipeline.stages
        self.dag = dag or build_dag([s.name for s in stages], {s.name: s.depends_on for s in stages})
        self.by_name = {s.name: s for s in stages}
        self.executor = StageExecutor(run, pools, self.settings)

    def execute(self) -> Status:
        """Run every reachable stage to a terminal status and return the run status."""
        pending: List[str] = list(self.dag.nodes)
        ready: List[str] = []
        in_flight: Dict[Future, str] = {}
        stop_dispatch = False
        order = {n: i for i, n in enumerate(self.dag.nodes)}

        try:
            with ThreadPoolExecutor(max_workers=max(1, len(pending)), thread_name_prefix="stage") as pool:
                while pending or ready or in_flight:
                    if self.run.cancelled:
                        for name in pending + ready:
                            self.run.close_subtree(stage_id(name), Status.CANCELLED, "run cancelled")
                        pending, ready = [], []
                    elif stop_dispatch:
                        for name in pending + ready:
                            self.run.close_subtree(stage_id(name), Status.SKIPPED, "fail-fast: an earlier stage failed")
                        pending, ready = [], []

                    self._promote(pending, ready)
                    ready.sort(key=order.__getitem__)

                    for name in list(ready):
                        stage = self.by_name[name]
                        if not self.pools.get(stage.pool).try_admit():
                            continue
                        ready.remove(name)
                        self.run.update(stage_id(name), status=Status.RUNNING)
                        logger.debug("dispatching stage %s", name)
                        in_flight[pool.submit(self._run_stage, stage)] = name

                    if not in_flight:
                        continue

                    done, _ = wait(list(in_flight), timeout=self.settings.poll_interval, return_when=FIRST_COMPLETED)
                    for fut in done:
                        name = in_flight.pop(fut)
                        # released here, not in the worker, so fail-fast sees the failure first
                        self.pools.get(self.by_name[name].pool).release_stage()
                        status = fut.result()
                        if status == Status.FAILED and not self.by_name[name].optional and self.fail_fast:
                            stop_dispatch = True
        finally:
            self.run.finish()

        status = self.run.status()
        logger.info("run %s ended %s", self.run.id, status)
        return status

    def _run_stage(self, stage: Stage) -> Status:
        try:
            return self.executor.run_stage(stage)
        except Exception as e:
            logger.exception("stage %s crashed", stage.name)
            sid = stage_id(stage.name)
            self.run.update(sid, status=Status.FAILED, reason=f"internal error: {e}")
            self.run.close_subtree(sid, Status.SKIPPED, "stage crashed")
            return Status.FAILED

    def _promote(self, pending: List[str], ready: List[str]) -> None:
        """Move Pending stages to Ready or Skipped until nothing changes."""
        changed = True
        while changed:
            changed = False
            for name in list(pending):
                deps = self.run.statuses(stage_id(d) for d in self.dag.deps[name])
                nxt, reason = readiness(self.by_name[name], deps)
                if nxt is None:
                    continue
                pending.remove(name)
                changed = True
                if nxt == Status.READY:
                    self.run.update(stage_id(name), status=Status.READY)
                    ready.append(name)
                else:
                    self.run.close_subtree(stage_id(name), Status.SKIPPED, reason)
                    get_console().print_stage_skipped(name, reason)
