"""Tests for the HTTP status service."""

import textwrap
import threading

import pytest
from fastapi.testclient import TestClient

from stageflow.agent.models import ExecResult
from stageflow.config import get_settings
from stageflow.run import Run
from stageflow.server import RunStore, create_app
from tests.conftest import FakeAgentFactory, fail, make_pipeline, make_stage

PIPELINE = textwrap.dedent(
    """\
    name: svc
    trigger: [main]
    stages:
      - stage: Build
        jobs:
          - job: compile
            steps:
              - script: make
      - stage: Deploy
        dependsOn: Build
        jobs:
          - job: ship
            steps:
              - script: deploy
    """
)


@pytest.fixture
def pipeline_file(tmp_path):
    f = tmp_path / "svc.yml"
    f.write_text(PIPELINE)
    return f


def _make_client(agents=None):
    store = RunStore()
    app = create_app(store, settings=get_settings(), agent_factory=agents or FakeAgentFactory())
    return TestClient(app), store


class TestRuns:
    def test_create_and_fetch(self, pipeline_file):
        client, store = _make_client()
        resp = client.post("/runs", json={"pipeline": str(pipeline_file), "branch": "main"})
        assert resp.status_code == 201
        run_id = resp.json()["run_id"]
        assert store.join(run_id, 5)

        detail = client.get(f"/runs/{run_id}").json()
        assert detail["status"] == "Succeeded"
        assert detail["finished"] is True
        assert [s["name"] for s in detail["stages"]] == ["Build", "Deploy"]
        step = detail["stages"][0]["jobs"][0]["steps"][0]
        assert step["status"] == "Succeeded"
        assert step["output"] == "ran make\n"

    def test_failed_run(self, pipeline_file):
        client, store = _make_client(FakeAgentFactory({"make": fail()}))
        run_id = client.post("/runs", json={"pipeline": str(pipeline_file), "branch": "main"}).json()["run_id"]
        store.join(run_id, 5)
        detail = client.get(f"/runs/{run_id}").json()
        assert detail["status"] == "Failed"
        assert detail["stages"][1]["status"] == "Skipped"

    def test_list(self, pipeline_file):
        client, store = _make_client()
        ids = [
            client.post("/runs", json={"pipeline": str(pipeline_file), "force": True}).json()["run_id"]
            for _ in range(2)
        ]
        for rid in ids:
            store.join(rid, 5)
        listed = client.get("/runs").json()
        assert {r["run_id"] for r in listed} == set(ids)
        assert client.get("/health").json() == {"ok": True, "runs": 2}

    def test_unknown_run(self):
        client, _ = _make_client()
        assert client.get("/runs/nope").status_code == 404
        assert client.post("/runs/nope/cancel").status_code == 404

    def test_trigger_mismatch_conflict(self, pipeline_file):
        client, _ = _make_client()
        resp = client.post("/runs", json={"pipeline": str(pipeline_file), "branch": "dev"})
        assert resp.status_code == 409

    def test_invalid_definition(self, tmp_path):
        f = tmp_path / "bad.yml"
        f.write_text(PIPELINE.replace("dependsOn: Build", "dependsOn: Nope"))
        client, _ = _make_client()
        resp = client.post("/runs", json={"pipeline": str(f), "force": True})
        assert resp.status_code == 422
        assert "Nope" in resp.json()["detail"]

    def test_missing_definition(self, tmp_path):
        client, _ = _make_client()
        resp = client.post("/runs", json={"pipeline": str(tmp_path / "none.yml"), "force": True})
        assert resp.status_code == 422


class TestCancel:
    def test_cancel_running(self, pipeline_file):
        started = threading.Event()

        def block(key, state):
            started.set()
            state.cancel_event.wait(5)
            return ExecResult(exit_code=-9, cancelled=True)

        client, store = _make_client(FakeAgentFactory({"make": block}))
        run_id = client.post("/runs", json={"pipeline": str(pipeline_file), "force": True}).json()["run_id"]
        assert started.wait(5)

        resp = client.post(f"/runs/{run_id}/cancel")
        assert resp.status_code == 200
        assert resp.json()["cancelled"] is True
        assert store.join(run_id, 5)
        assert client.get(f"/runs/{run_id}").json()["status"] == "Cancelled"

    def test_cancel_finished_conflict(self, pipeline_file):
        client, store = _make_client()
        run_id = client.post("/runs", json={"pipeline": str(pipeline_file), "force": True}).json()["run_id"]
        store.join(run_id, 5)
        assert client.post(f"/runs/{run_id}/cancel").status_code == 409


def _make_run(finished=True):
    run = Run(make_pipeline(make_stage("A")))
    if finished:
        run.finish()
    return run


class TestRunStore:
    def test_evicts_oldest_finished_runs(self):
        store = RunStore(max_finished=2)
        runs = [_make_run() for _ in range(3)]
        for run in runs:
            store.add(run)
        assert len(store) == 2
        assert store.get(runs[0].id) is None
        assert store.get(runs[2].id) is runs[2]

    def test_runs_in_progress_are_kept(self):
        store = RunStore(max_finished=1)
        active = _make_run(finished=False)
        store.add(active)
        for _ in range(3):
            store.add(_make_run())
        assert store.get(active.id) is active
        assert len(store) == 2

    def test_app_uses_configured_cap(self):
        app = create_app(settings=get_settings().with_overrides(max_finished_runs=5))
        assert app.state.store.max_finished == 5
