# agent/models.py
from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

# A step may set an env var for the rest of its job by printing this line.
SET_VARIABLE = re.compile(r"^##stageflow\[setvariable name=([A-Za-z_][A-Za-z0-9_]*)\](.*)$", re.MULTILINE)


def parse_set_variables(output: str) -> Dict[str, str]:
    """Collect setvariable directives from *output*; the last one for a name wins."""
    return {name: value.rstrip("\r") for name, value in SET_VARIABLE.findall(output or "")}


@dataclass
class WorkingState:
    """
    Per-job execution state carried from one step to the next.

    ``cwd`` and ``env`` persist across the steps of a job. ``deadline``
    (a ``time.monotonic()`` value) and ``cancel_event`` are refreshed by the
    executor before every step so the agent can stop the external process.
    """
    cwd: Path
    env: Dict[str, str] = field(default_factory=dict)
    deadline: Optional[float] = None
    cancel_event: Optional[threading.Event] = None

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def with_env(self, extra: Dict[str, str]) -> "WorkingState":
        """Copy with *extra* layered over ``env`` (the job's env is left alone)."""
        env = dict(self.env)
        env.update(extra)
        return WorkingState(cwd=self.cwd, env=env, deadline=self.deadline, cancel_event=self.cancel_event)


@dataclass
class ExecResult:
    """
    What an agent reports back for one script or task call.

    ``variables`` holds setvariable directives the agent found in the full
    output, before ``output`` was cut down to its tail.
    """
    exit_code: int
    output: str = ""
    timed_out: bool = False
    cancelled: bool = False
    variables: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled
