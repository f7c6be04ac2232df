"""HTTP status service: start runs, list them, read their Result trees, cancel them."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .._log import get_logger
from ..agent.agent import Agent
from ..config import Settings, get_settings
from ..errors import DefinitionError, TriggerNotMatched, UnresolvedVariable
from ..loader import load_pipeline
from ..run import Run
from ..runner import prepare_run, start_run
from .store import RunStore

logger = get_logger("server")

# -------------------- Schemas --------------------


class CreateRunRequest(BaseModel):
    pipeline: str = Field(description="Path to a .yml or .py definition, on the server")
    branch: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    force: bool = False
    fail_fast: bool = False


class RunSummary(BaseModel):
    run_id: str
    pipeline: str
    status: str
    finished: bool
    cancelled: bool
    created_at: datetime


class ResultOut(BaseModel):
    id: str
    kind: str
    name: str
    status: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_s: Optional[float] = None
    output: str = ""
    reason: Optional[str] = None
    exit_code: Optional[int] = None
    optional: bool = False
    agent: Optional[str] = None
    jobs: Optional[List["ResultOut"]] = None
    steps: Optional[List["ResultOut"]] = None


ResultOut.model_rebuild()


class RunDetail(RunSummary):
    stages: List[ResultOut]


def _summary(run: Run) -> RunSummary:
    snap = run.snapshot()
    return RunSummary(
        run_id=run.id,
        pipeline=snap.pipeline,
        status=snap.status().value,
        finished=snap.finished,
        cancelled=snap.cancelled,
        created_at=run.created_at,
    )


def _detail(run: Run) -> RunDetail:
    data: Dict[str, Any] = run.snapshot().to_dict()
    return RunDetail(
        run_id=run.id,
        pipeline=data["pipeline"],
        status=data["status"],
        finished=data["finished"],
        cancelled=data["cancelled"],
        created_at=run.created_at,
        stages=[ResultOut.model_validate(s) for s in data["stages"]],
    )


# -------------------- App --------------------


def create_app(
    store: Optional[RunStore] = None,
    *,
    settings: Optional[Settings] = None,
    agent_factory: Optional[Callable[[str], Agent]] = None,
) -> FastAPI:
    """Build the service. Runs execute on background threads owned by *store*."""
    app = FastAPI(title="stageflow")
    app.state.store = store if store is not None else RunStore((settings or get_settings()).max_finished_runs)
    runs: RunStore = app.state.store

    def _get(run_id: str) -> Run:
        run = runs.get(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
        return run

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, "runs": len(runs)}

    @app.post("/runs", response_model=RunSummary, status_code=201)
    def create_run(req: CreateRunRequest):
        cfg = settings or get_settings()
        try:
            definition = load_pipeline(req.pipeline)
            run = prepare_run(
                definition,
                branch=req.branch,
                variables=req.variables,
                settings=cfg,
                force=req.force,
            )
        except TriggerNotMatched as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        except (DefinitionError, UnresolvedVariable) as e:
            raise HTTPException(status_code=422, detail=str(e)) from e

        thread = start_run(run, fail_fast=req.fail_fast, settings=cfg, agent_factory=agent_factory)
        runs.add(run, thread)
        logger.info("started run %s (%s)", run.id, run.pipeline.name)
        return _summary(run)

    @app.get("/runs", response_model=List[RunSummary])
    def list_runs():
        return [_summary(r) for r in runs.list()]

    @app.get("/runs/{run_id}", response_model=RunDetail)
    def get_run(run_id: str):
        return _detail(_get(run_id))

    @app.post("/runs/{run_id}/cancel", response_model=RunSummary)
    def cancel_run(run_id: str):
        run = _get(run_id)
        if run.finished:
            raise HTTPException(status_code=409, detail=f"Run {run_id} already finished")
        run.cancel()
        return _summary(run)

    return app
