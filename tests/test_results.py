"""Tests for Result records and the aggregate run status."""

from stageflow.model import Status
from stageflow.results import JOB, STAGE, STEP, Result, RunSnapshot, aggregate, first_failure, skipped_stages


def _make_snapshot(stages, *, cancelled=False, finished=True) -> RunSnapshot:
    """*stages* is a list of ``(name, status)`` or ``(name, status, optional)``."""
    nodes = {}
    for entry in stages:
        name, status = entry[0], entry[1]
        optional = entry[2] if len(entry) > 2 else False
        nodes[name] = Result(id=name, kind=STAGE, name=name, status=status, optional=optional)
    return RunSnapshot(
        run_id="r1",
        pipeline="p",
        cancelled=cancelled,
        finished=finished,
        stage_ids=tuple(e[0] for e in stages),
        nodes=nodes,
    )


class TestAggregate:
    def test_all_succeeded(self):
        snap = _make_snapshot([("A", Status.SUCCEEDED), ("B", Status.SUCCEEDED)])
        assert aggregate(snap) == Status.SUCCEEDED

    def test_required_failure(self):
        snap = _make_snapshot([("A", Status.FAILED), ("B", Status.SKIPPED)])
        assert aggregate(snap) == Status.FAILED

    def test_failure_reported_while_running(self):
        snap = _make_snapshot([("A", Status.FAILED), ("B", Status.RUNNING)], finished=False)
        assert aggregate(snap) == Status.FAILED

    def test_running(self):
        snap = _make_snapshot([("A", Status.SUCCEEDED), ("B", Status.PENDING)], finished=False)
        assert aggregate(snap) == Status.RUNNING

    def test_optional_failure_does_not_fail_run(self):
        snap = _make_snapshot([("A", Status.SUCCEEDED), ("Lint", Status.FAILED, True)])
        assert aggregate(snap) == Status.SUCCEEDED

    def test_optional_skipped_does_not_block_success(self):
        snap = _make_snapshot([("A", Status.SUCCEEDED), ("Notify", Status.SKIPPED, True)])
        assert aggregate(snap) == Status.SUCCEEDED

    def test_required_skipped_fails_run(self):
        snap = _make_snapshot([("Lint", Status.FAILED, True), ("Deploy", Status.SKIPPED)])
        assert aggregate(snap) == Status.FAILED

    def test_cancelled(self):
        snap = _make_snapshot([("A", Status.SUCCEEDED), ("B", Status.CANCELLED)], cancelled=True)
        assert aggregate(snap) == Status.CANCELLED

    def test_cancel_requested_but_still_running(self):
        snap = _make_snapshot([("A", Status.RUNNING)], cancelled=True, finished=False)
        assert aggregate(snap) == Status.RUNNING

    def test_required_failure_wins_over_cancel(self):
        snap = _make_snapshot([("A", Status.FAILED), ("B", Status.CANCELLED)], cancelled=True)
        assert aggregate(snap) == Status.FAILED

    def test_late_cancel_keeps_green_run_succeeded(self):
        snap = _make_snapshot([("A", Status.SUCCEEDED), ("B", Status.SUCCEEDED)], cancelled=True)
        assert aggregate(snap) == Status.SUCCEEDED


class TestSnapshotHelpers:
    def _tree(self) -> RunSnapshot:
        nodes = {
            "S": Result(id="S", kind=STAGE, name="S", status=Status.FAILED, children=("S/j",)),
            "S/j": Result(id="S/j", kind=JOB, name="j", status=Status.FAILED, children=("S/j/0", "S/j/1")),
            "S/j/0": Result(id="S/j/0", kind=STEP, name="build", status=Status.FAILED, exit_code=2),
            "S/j/1": Result(id="S/j/1", kind=STEP, name="test", status=Status.SKIPPED),
            "T": Result(id="T", kind=STAGE, name="T", status=Status.SKIPPED),
        }
        return RunSnapshot(run_id="r", pipeline="p", cancelled=False, finished=True, stage_ids=("S", "T"), nodes=nodes)

    def test_first_failure(self):
        assert first_failure(self._tree()).id == "S/j/0"

    def test_skipped_stages(self):
        assert [s.name for s in skipped_stages(self._tree())] == ["T"]

    def test_to_dict_nests_children(self):
        d = self._tree().to_dict()
        assert d["status"] == "Failed"
        stage = d["stages"][0]
        assert stage["jobs"][0]["steps"][0]["exit_code"] == 2
        assert "jobs" not in stage["jobs"][0]["steps"][0]
