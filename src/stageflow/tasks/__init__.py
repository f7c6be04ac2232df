"""Typed task steps: a registry mapping ``Kind@Version`` to a handler."""

from __future__ import annotations

import re
import threading
from typing import TYPE_CHECKING, Callable, Dict, List, Mapping, Optional, Tuple

from stageflow.errors import DefinitionError, TaskError, UnknownTaskKind

if TYPE_CHECKING:
    from stageflow.agent.agent import LocalAgent
    from stageflow.agent.models import ExecResult, WorkingState

TaskHandler = Callable[["LocalAgent", Dict[str, str], "WorkingState"], "ExecResult"]

TASK_REF = re.compile(r"^([A-Za-z][A-Za-z0-9_.\-]*)@(\d+)$")


def parse_task_ref(ref: str) -> Tuple[str, int]:
    """``"Docker@2"`` -> ``("Docker", 2)``."""
    m = TASK_REF.match(ref.strip())
    if not m:
        raise DefinitionError(f"Malformed task reference {ref!r}, expected Kind@Version")
    return m.group(1), int(m.group(2))


class TaskRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[str, TaskHandler] = {}
        self._lock = threading.Lock()

    def register(self, kind: str, version: int, handler: Optional[TaskHandler] = None):
        """Register *handler* for ``kind@version``; usable as a decorator."""

        def _add(fn: TaskHandler) -> TaskHandler:
            with self._lock:
                self._handlers[f"{kind}@{version}"] = fn
            return fn

        if handler is not None:
            return _add(handler)
        return _add

    def get(self, ref: str) -> TaskHandler:
        try:
            return self._handlers[ref]
        except KeyError:
            raise UnknownTaskKind(ref, self.kinds()) from None

    def kinds(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, ref: str) -> bool:
        return ref in self._handlers

    def copy(self) -> "TaskRegistry":
        other = TaskRegistry()
        other._handlers = dict(self._handlers)
        return other


def require(inputs: Mapping[str, str], key: str, task: str) -> str:
    value = (inputs.get(key) or "").strip()
    if not value:
        raise TaskError(task, f"input '{key}' is required")
    return value


_default: Optional[TaskRegistry] = None


def default_registry() -> TaskRegistry:
    """The registry with every built-in task kind."""
    global _default
    if _default is None:
        from . import builtin, docker

        reg = TaskRegistry()
        builtin.register(reg)
        docker.register(reg)
        _default = reg
    return _default
