# agent/agent.py
from __future__ import annotations

import os
import signal
import subprocess
from typing import TYPE_CHECKING, List, Mapping, Optional, Union

from stageflow._log import get_logger
from stageflow.config import Settings, get_settings

from .models import ExecResult, WorkingState, parse_set_variables

if TYPE_CHECKING:
    from stageflow.tasks import TaskRegistry

logger = get_logger("agent")


class Agent:
    """
    The execution environment a job is bound to.

    The orchestrator treats both calls as opaque, slow and fallible: it only
    looks at the returned exit code and captured output.
    """

    def __init__(self, name: str):
        self.name = name

    def run_script(self, text: str, state: WorkingState) -> ExecResult:
        raise NotImplementedError

    def run_task(self, kind: str, inputs: Mapping[str, str], state: WorkingState) -> ExecResult:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class LocalAgent(Agent):
    """Runs steps as subprocesses on this machine."""

    def __init__(
        self,
        name: str,
        registry: Optional["TaskRegistry"] = None,
        settings: Optional[Settings] = None,
    ):
        super().__init__(name)
        if registry is None:
            from stageflow.tasks import default_registry

            registry = default_registry()
        self.registry = registry
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Agent interface
    # ------------------------------------------------------------------

    def run_script(self, text: str, state: WorkingState) -> ExecResult:
        return self.run_command(text, state, shell=True)

    def run_task(self, kind: str, inputs: Mapping[str, str], state: WorkingState) -> ExecResult:
        handler = self.registry.get(kind)
        return handler(self, dict(inputs), state)

    # ------------------------------------------------------------------
    # Process primitive (shared by scripts and built-in tasks)
    # ------------------------------------------------------------------

    def run_command(
        self,
        cmd: Union[str, List[str]],
        state: WorkingState,
        *,
        shell: bool = False,
    ) -> ExecResult:
        """
        Run *cmd* in ``state.cwd`` with ``state.env`` and capture stdout+stderr.

        The process is killed when ``state.deadline`` passes or
        ``state.cancel_event`` is set; the partial output is still returned.
        Output is decoded as UTF-8 with undecodable bytes replaced, so only
        the exit code decides success.
        """
        if not state.cwd.exists():
            return ExecResult(exit_code=1, output=f"working directory not found: {state.cwd}")

        env = os.environ.copy()
        env.update(state.env)

        logger.debug("%s: running %r in %s", self.name, cmd, state.cwd)
        try:
            proc = subprocess.Popen(
                cmd,
                shell=shell,
                executable=self.settings.shell if shell else None,
                cwd=str(state.cwd),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                encoding="utf-8",
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError as e:
            return ExecResult(exit_code=127, output=str(e))

        poll = max(self.settings.poll_interval, 0.01)
        timed_out = cancelled = False
        while True:
            remaining = state.remaining()
            if remaining is not None and remaining <= 0:
                timed_out = True
                break
            if state.cancelled:
                cancelled = True
                break
            wait = poll if remaining is None else min(poll, remaining)
            try:
                out, _ = proc.communicate(timeout=wait)
                return ExecResult(exit_code=proc.returncode, output=self._tail(out), variables=parse_set_variables(out))
            except subprocess.TimeoutExpired:
                continue

        self._kill(proc)
        out, _ = proc.communicate()
        logger.debug("%s: killed %r (timed_out=%s cancelled=%s)", self.name, cmd, timed_out, cancelled)
        return ExecResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            output=self._tail(out),
            timed_out=timed_out,
            cancelled=cancelled,
            variables=parse_set_variables(out),
        )

    def _tail(self, text: Optional[str]) -> str:
        text = text or ""
        limit = self.settings.output_tail
        return text[-limit:] if limit > 0 else text

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        # the whole process group, so children of the shell die too
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass
