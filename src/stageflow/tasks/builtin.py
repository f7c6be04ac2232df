# tasks/builtin.py
from __future__ import annotations

import shlex
import shutil
import sys
from pathlib import Path
from typing import Dict

from stageflow.agent.models import ExecResult, WorkingState
from stageflow.errors import TaskError

from . import TaskRegistry, require

TOOL_HINTS = {
    "bash": "Install bash or use a CmdLine@2 step instead.",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


def check_tool(task: str, tool: str) -> str:
    """Return the tool's path or raise a TaskError with an install hint."""
    path = shutil.which(tool)
    if path is None:
        raise TaskError(task, f"{tool} is not available", hint=TOOL_HINTS.get(tool, f"Install {tool} or fix PATH."))
    return path


def _in_dir(state: WorkingState, inputs: Dict[str, str]) -> WorkingState:
    wd = (inputs.get("workingDirectory") or "").strip()
    if not wd:
        return state
    cwd = Path(wd)
    if not cwd.is_absolute():
        cwd = state.cwd / cwd
    return WorkingState(cwd=cwd, env=state.env, deadline=state.deadline, cancel_event=state.cancel_event)


# ---------------------------------------------------------------------
# CmdLine@2: inline script through the agent's shell
# ---------------------------------------------------------------------

def cmdline(agent, inputs: Dict[str, str], state: WorkingState) -> ExecResult:
    script = require(inputs, "script", "CmdLine@2")
    return agent.run_script(script, _in_dir(state, inputs))


# ---------------------------------------------------------------------
# Bash@3: inline or file script through bash
# ---------------------------------------------------------------------

def bash(agent, inputs: Dict[str, str], state: WorkingState) -> ExecResult:
    task = "Bash@3"
    exe = check_tool(task, "bash")
    target = (inputs.get("targetType") or "inline").strip()
    args = shlex.split(inputs.get("arguments") or "")

    if target == "inline":
        cmd = [exe, "-c", require(inputs, "script", task)]
    elif target == "filePath":
        cmd = [exe, require(inputs, "filePath", task), *args]
    else:
        raise TaskError(task, f"targetType must be 'inline' or 'filePath', got {target!r}")

    if (inputs.get("failOnError") or "").lower() == "true" and target == "inline":
        cmd.insert(1, "-e")
    return agent.run_command(cmd, _in_dir(state, inputs))


# ---------------------------------------------------------------------
# PythonScript@0
# ---------------------------------------------------------------------

def python_script(agent, inputs: Dict[str, str], state: WorkingState) -> ExecResult:
    task = "PythonScript@0"
    interpreter = (inputs.get("pythonInterpreter") or "").strip() or sys.executable
    source = (inputs.get("scriptSource") or "filePath").strip()
    args = shlex.split(inputs.get("arguments") or "")

    if source == "inline":
        cmd = [interpreter, "-c", require(inputs, "script", task), *args]
    elif source == "filePath":
        cmd = [interpreter, require(inputs, "scriptPath", task), *args]
    else:
        raise TaskError(task, f"scriptSource must be 'inline' or 'filePath', got {source!r}")
    return agent.run_command(cmd, _in_dir(state, inputs))


def register(registry: TaskRegistry) -> None:
    registry.register("CmdLine", 2, cmdline)
    registry.register("Bash", 3, bash)
    registry.register("PythonScript", 0, python_script)
