# tasks/docker.py
from __future__ import annotations

import re
import shlex
from typing import Dict, List

from stageflow.agent.models import ExecResult, WorkingState
from stageflow.errors import TaskError

from . import TaskRegistry, require
from .builtin import check_tool

TASK = "Docker@2"
COMMANDS = ("build", "push", "buildAndPush", "run")


def _tags(inputs: Dict[str, str]) -> List[str]:
    raw = inputs.get("tags") or "latest"
    return [t for t in (s.strip() for s in re.split(r"[\n,]", raw)) if t]


def _image_refs(inputs: Dict[str, str]) -> List[str]:
    repository = require(inputs, "repository", TASK)
    return [f"{repository}:{tag}" for tag in _tags(inputs)]


def build_commands(inputs: Dict[str, str], docker: str = "docker") -> List[List[str]]:
    """
    Translate task inputs into docker CLI invocations, in execution order.

      build         docker build -f <Dockerfile> -t repo:tag ... <buildContext>
      push          docker push repo:tag   (one per tag)
      buildAndPush  both of the above
      run           docker run --rm [-v ...] [-w ...] <image> sh -c <script>
    """
    command = (inputs.get("command") or "buildAndPush").strip()
    if command not in COMMANDS:
        raise TaskError(TASK, f"command must be one of {list(COMMANDS)}, got {command!r}")

    out: List[List[str]] = []
    if command in ("build", "buildAndPush"):
        cmd = [docker, "build", "-f", inputs.get("Dockerfile") or "Dockerfile"]
        for ref in _image_refs(inputs):
            cmd.extend(["-t", ref])
        cmd.extend(shlex.split(inputs.get("arguments") or ""))
        cmd.append(inputs.get("buildContext") or ".")
        out.append(cmd)

    if command in ("push", "buildAndPush"):
        for ref in _image_refs(inputs):
            out.append([docker, "push", ref])

    if command == "run":
        image = require(inputs, "image", TASK)
        cmd = [docker, "run", "--rm"]
        for vol in (inputs.get("volumes") or "").splitlines():
            if vol.strip():
                cmd.extend(["-v", vol.strip()])
        if inputs.get("workDir"):
            cmd.extend(["-w", inputs["workDir"]])
        if inputs.get("user"):
            cmd.extend(["--user", inputs["user"]])
        cmd.append(image)
        cmd.extend(["sh", "-c", require(inputs, "script", TASK)])
        out.append(cmd)

    return out


def docker_task(agent, inputs: Dict[str, str], state: WorkingState) -> ExecResult:
    commands = build_commands(inputs)
    check_tool(TASK, "docker")

    outputs: List[str] = []
    variables: Dict[str, str] = {}
    result = ExecResult(exit_code=0)
    for cmd in commands:
        result = agent.run_command(cmd, state)
        outputs.append(f"$ {shlex.join(cmd)}\n{result.output}")
        variables.update(result.variables)
        if not result.ok:
            break
    return ExecResult(
        exit_code=result.exit_code,
        output="\n".join(outputs),
        timed_out=result.timed_out,
        cancelled=result.cancelled,
        variables=variables,
    )


def register(registry: TaskRegistry) -> None:
    registry.register("Docker", 2, docker_task)
