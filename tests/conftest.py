"""Shared test fixtures and helpers."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest

from stageflow.agent.agent import Agent
from stageflow.agent.models import ExecResult, WorkingState
from stageflow.config import Settings, set_settings
from stageflow.model import Condition, Job, Pipeline, PoolSpec, ScriptStep, Stage
from stageflow.ui.console import Console, set_console

Outcome = Union[ExecResult, Callable[[str, WorkingState], ExecResult]]


class FakeAgent(Agent):
    """Agent that records every call and answers from a scripted outcome table."""

    def __init__(self, name: str, factory: "FakeAgentFactory"):
        super().__init__(name)
        self.factory = factory

    def _answer(self, key: str, state: WorkingState) -> ExecResult:
        self.factory.record(self.name, key, state)
        outcome = self.factory.outcomes.get(key)
        if outcome is None:
            return ExecResult(exit_code=0, output=f"ran {key}\n")
        if callable(outcome):
            return outcome(key, state)
        return outcome

    def run_script(self, text: str, state: WorkingState) -> ExecResult:
        return self._answer(text, state)

    def run_task(self, kind, inputs, state: WorkingState) -> ExecResult:
        return self._answer(kind, state)


class FakeAgentFactory:
    """``agent_factory`` for runners and pools; all its agents share one call log."""

    def __init__(self, outcomes: Optional[Dict[str, Outcome]] = None):
        self.outcomes: Dict[str, Outcome] = dict(outcomes or {})
        self.calls: List[Tuple[str, str, Dict[str, str]]] = []
        self._lock = threading.Lock()

    def __call__(self, name: str) -> FakeAgent:
        return FakeAgent(name, self)

    def record(self, agent: str, key: str, state: WorkingState) -> None:
        with self._lock:
            self.calls.append((agent, key, dict(state.env)))

    @property
    def scripts(self) -> List[str]:
        with self._lock:
            return [key for _, key, _ in self.calls]

    def env_for(self, key: str) -> Dict[str, str]:
        with self._lock:
            for _, k, env in self.calls:
                if k == key:
                    return env
        raise KeyError(key)


def fail(exit_code: int = 1, output: str = "boom\n") -> ExecResult:
    return ExecResult(exit_code=exit_code, output=output)


def make_job(name: str, *scripts: str, depends_on=(), **kwargs) -> Job:
    steps = tuple(ScriptStep(script=s) for s in (scripts or (f"echo {name}",)))
    return Job(name=name, steps=steps, depends_on=tuple(depends_on), **kwargs)


def make_stage(name: str, *jobs: Job, depends_on=(), condition=Condition.SUCCEEDED, **kwargs) -> Stage:
    return Stage(
        name=name,
        jobs=jobs or (make_job("main", f"echo {name}"),),
        depends_on=tuple(depends_on),
        condition=condition,
        **kwargs,
    )


def make_pipeline(*stages: Stage, name: str = "test-pipeline", variables=None, pools=None) -> Pipeline:
    return Pipeline(
        name=name,
        stages=stages,
        variables=variables or {},
        pools=tuple(PoolSpec(n, c) for n, c in (pools or {}).items()),
    )


@pytest.fixture(autouse=True)
def _isolated_globals(tmp_path: Path):
    """Fast polling, a temp work dir and a quiet console for every test."""
    set_settings(Settings(default_pool_size=2, work_dir=tmp_path, poll_interval=0.01, output_tail=4000))
    set_console(Console(quiet=True))
    yield
    set_settings(None)
    set_console(Console())


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(default_pool_size=2, work_dir=tmp_path, poll_interval=0.01, output_tail=4000)


@pytest.fixture
def agents() -> FakeAgentFactory:
    return FakeAgentFactory()
