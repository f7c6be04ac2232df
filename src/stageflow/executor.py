# executor.py
from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Tuple

from ._log import get_logger
from .agent.agent import Agent
from .agent.models import ExecResult, WorkingState, parse_set_variables
from .agent.pool import PoolSet
from .config import Settings, get_settings
from .dag import build_dag
from .errors import (
    CancellationRequested,
    LeaseTimeout,
    StepExecutionFailure,
    StepTimeout,
)
from .model import Job, ScriptStep, Stage, Status, Step
from .results import job_id, stage_id, step_id
from .run import Run
from .ui.console import get_console
from .variables import export_env, scope_chain

logger = get_logger("executor")


def _earliest(*deadlines: Optional[float]) -> Optional[float]:
    present = [d for d in deadlines if d is not None]
    return min(present) if present else None


def _after(seconds: Optional[float]) -> Optional[float]:
    return None if seconds is None else time.monotonic() + seconds


class StageExecutor:
    """
    Runs the jobs of one Running stage.

    Jobs without a dependency between them run concurrently, each on its own
    leased agent; a job's steps run strictly in order on that agent. The stage
    succeeds only if every job succeeds.
    """

    def __init__(self, run: Run, pools: PoolSet, settings: Optional[Settings] = None):
        self.run = run
        self.pools = pools
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Stage
    # ------------------------------------------------------------------

    def run_stage(self, stage: Stage) -> Status:
        sid = stage_id(stage.name)
        stage_deadline = _after(stage.timeout_s)
        console = get_console()
        console.print_stage_start(stage.name)

        dag = build_dag([j.name for j in stage.jobs], {j.name: j.depends_on for j in stage.jobs}, scope=stage.name)
        by_name = {j.name: j for j in stage.jobs}
        waiting: List[str] = list(dag.nodes)
        outcome: Dict[str, Status] = {}
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=len(stage.jobs), thread_name_prefix=f"job-{stage.name}") as pool:
            while waiting or in_flight:
                # schedule every job whose dependencies are settled
                for name in list(waiting):
                    deps = dag.deps[name]
                    if any(d not in outcome for d in deps):
                        bad = [d for d in deps if outcome.get(d, Status.SUCCEEDED) != Status.SUCCEEDED]
                        if not bad:
                            continue
                    else:
                        bad = [d for d in deps if outcome[d] != Status.SUCCEEDED]
                    waiting.remove(name)
                    jid = job_id(stage.name, name)
                    if self.run.cancelled:
                        self.run.close_subtree(jid, Status.CANCELLED, "run cancelled")
                        outcome[name] = Status.CANCELLED
                    elif bad:
                        reason = f"dependency '{bad[0]}' did not succeed"
                        self.run.close_subtree(jid, Status.SKIPPED, reason)
                        outcome[name] = Status.SKIPPED
                    else:
                        fut = pool.submit(self.run_job, stage, by_name[name], stage_deadline)
                        in_flight[fut] = name

                if not in_flight:
                    continue

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    try:
                        outcome[name] = fut.result()
                    except Exception as e:
                        logger.exception("job %s/%s crashed", stage.name, name)
                        jid = job_id(stage.name, name)
                        self.run.update(jid, status=Status.FAILED, reason=f"internal error: {e}")
                        self.run.close_subtree(jid, Status.SKIPPED, "job crashed")
                        outcome[name] = Status.FAILED

        return self._finish_stage(stage, sid, outcome)

    def _finish_stage(self, stage: Stage, sid: str, outcome: Dict[str, Status]) -> Status:
        if all(s == Status.SUCCEEDED for s in outcome.values()):
            status, reason = Status.SUCCEEDED, None
        elif self.run.cancelled and not any(s == Status.FAILED for s in outcome.values()):
            status, reason = Status.CANCELLED, "run cancelled"
        else:
            failed = [n for n in (j.name for j in stage.jobs) if outcome.get(n) != Status.SUCCEEDED]
            status, reason = Status.FAILED, f"job '{failed[0]}' did not succeed"

        self.run.update(sid, status=status, reason=reason)
        get_console().print_stage_result(stage.name, status, reason)
        return status

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    def job_env(self, stage: Stage, job: Job) -> Dict[str, str]:
        return export_env(scope_chain(self.run.pipeline, stage, job))

    def run_job(self, stage: Stage, job: Job, stage_deadline: Optional[float] = None) -> Status:
        """Lease an agent, run the steps in order, record the job result."""
        jid = job_id(stage.name, job.name)
        pool = self.pools.get(job.pool or stage.pool)
        job_deadline = _earliest(stage_deadline, _after(job.timeout_s))

        try:
            with pool.lease(cancel_event=self.run.cancel_event, deadline=job_deadline) as agent:
                self.run.update(jid, status=Status.RUNNING, agent=agent.name)
                get_console().print_job_start(stage.name, job.name, agent.name)
                state = WorkingState(
                    cwd=self.run.work_dir,
                    env=self.job_env(stage, job),
                    cancel_event=self.run.cancel_event,
                )
                status, reason = self._run_steps(stage, job, agent, state, job_deadline)
        except CancellationRequested:
            status, reason = Status.CANCELLED, "run cancelled"
        except LeaseTimeout as e:
            status, reason = Status.FAILED, str(e)

        self.run.update(jid, status=status, reason=reason)
        if status == Status.CANCELLED:
            self.run.close_subtree(jid, Status.CANCELLED, "run cancelled")
        else:
            self.run.close_subtree(jid, Status.SKIPPED, "not run: an earlier step failed")
        get_console().print_job_result(stage.name, job.name, status, reason)
        return status

    def _run_steps(
        self,
        stage: Stage,
        job: Job,
        agent: Agent,
        state: WorkingState,
        job_deadline: Optional[float],
    ) -> Tuple[Status, Optional[str]]:
        issues: List[str] = []
        for idx, step in enumerate(job.steps):
            tid = step_id(stage.name, job.name, idx)
            if self.run.cancelled:
                return Status.CANCELLED, "run cancelled"

            state.deadline = _earliest(job_deadline, _after(step.timeout_s))
            status, failure = self.run_step(job, step, tid, agent, state)

            if status == Status.CANCELLED:
                return Status.CANCELLED, "run cancelled"
            if failure is None:
                continue
            if step.continue_on_error:
                issues.append(str(failure))
                continue
            # remaining steps are marked Skipped by the caller
            return Status.FAILED, str(failure)

        if issues:
            return Status.SUCCEEDED, f"succeeded with issues: {issues[0]}"
        return Status.SUCCEEDED, None

    # ------------------------------------------------------------------
    # Step
    # ------------------------------------------------------------------

    def run_step(
        self,
        job: Job,
        step: Step,
        tid: str,
        agent: Agent,
        state: WorkingState,
    ) -> Tuple[Status, Optional[StepExecutionFailure]]:
        self.run.update(tid, status=Status.RUNNING, agent=agent.name)
        get_console().print_step(job.name, step.name)
        started = time.monotonic()
        step_state = state.with_env(dict(step.env))

        try:
            if isinstance(step, ScriptStep):
                res = agent.run_script(step.script, step_state)
            else:
                res = agent.run_task(step.ref, step.inputs, step_state)
        except Exception as e:
            # the agent is an external collaborator: any error it raises is this step's failure
            logger.debug("step %s raised", tid, exc_info=True)
            res = ExecResult(exit_code=1, output=str(e))
            crash = StepExecutionFailure(job=job.name, step=step.name, exit_code=None, output=str(e), reason=str(e))
            self._record(tid, step, res, crash)
            return Status.FAILED, crash

        # the agent scans the untrimmed output; its findings win over the tail
        state.env.update(parse_set_variables(res.output))
        state.env.update(res.variables)

        if res.cancelled:
            self.run.update(tid, status=Status.CANCELLED, output=res.output, exit_code=res.exit_code, reason="run cancelled")
            return Status.CANCELLED, None

        failure: Optional[StepExecutionFailure] = None
        if res.timed_out:
            failure = StepTimeout(
                job=job.name,
                step=step.name,
                exit_code=res.exit_code,
                output=res.output,
                timeout_s=round(time.monotonic() - started, 3),
            )
        elif res.exit_code != 0:
            failure = StepExecutionFailure(job=job.name, step=step.name, exit_code=res.exit_code, output=res.output)

        self._record(tid, step, res, failure)
        return (Status.FAILED if failure else Status.SUCCEEDED), failure

    def _record(self, tid: str, step: Step, res: ExecResult, failure: Optional[StepExecutionFailure]) -> None:
        if failure is None:
            self.run.update(tid, status=Status.SUCCEEDED, output=res.output, exit_code=res.exit_code)
            return
        reason = str(failure)
        if step.continue_on_error:
            reason += " (continued on error)"
        self.run.update(tid, status=Status.FAILED, output=res.output, exit_code=failure.exit_code, reason=reason)
        get_console().print_failure(step.name, reason, exit_code=failure.exit_code, output=res.output)
