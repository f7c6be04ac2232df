"""Tests for job/step execution: ordering, failures, env, setvariable, timeouts."""

import shutil
import sys
import time

import pytest

from stageflow.agent.models import ExecResult
from stageflow.config import get_settings
from stageflow.model import Job, ScriptStep, Status, TaskStep
from stageflow.runner import prepare_run, run_pipeline, start_run
from tests.conftest import FakeAgentFactory, fail, make_job, make_pipeline, make_stage


def _single_job(*steps, **job_kwargs):
    return make_pipeline(make_stage("S", Job(name="j", steps=tuple(steps), **job_kwargs)))


class TestSteps:
    def test_steps_run_in_order_on_one_agent(self, agents):
        run = run_pipeline(_single_job(ScriptStep("one"), ScriptStep("two"), ScriptStep("three")), agent_factory=agents)
        assert agents.scripts == ["one", "two", "three"]
        assert len({agent for agent, _, _ in agents.calls}) == 1
        assert run.get("S/j").status == Status.SUCCEEDED

    def test_failing_step_stops_job(self):
        agents = FakeAgentFactory({"two": fail(exit_code=3)})
        run = run_pipeline(_single_job(ScriptStep("one"), ScriptStep("two"), ScriptStep("three")), agent_factory=agents)
        assert agents.scripts == ["one", "two"]
        failed = run.get("S/j/1")
        assert failed.status == Status.FAILED
        assert failed.exit_code == 3
        assert failed.output == "boom\n"
        skipped = run.get("S/j/2")
        assert skipped.status == Status.SKIPPED
        assert skipped.reason == "not run: an earlier step failed"
        assert skipped.started_at is None
        assert run.get("S/j").status == Status.FAILED
        assert "exit=3" in run.get("S/j").reason

    def test_continue_on_error(self):
        agents = FakeAgentFactory({"flaky": fail()})
        run = run_pipeline(
            _single_job(ScriptStep("flaky", continue_on_error=True), ScriptStep("after")),
            agent_factory=agents,
        )
        assert agents.scripts == ["flaky", "after"]
        assert run.get("S/j/0").status == Status.FAILED
        assert run.get("S/j/1").status == Status.SUCCEEDED
        job = run.get("S/j")
        assert job.status == Status.SUCCEEDED
        assert job.reason.startswith("succeeded with issues")
        assert run.status() == Status.SUCCEEDED

    def test_agent_exception_fails_step(self):
        def explode(key, state):
            raise OSError("agent went away")

        agents = FakeAgentFactory({"x": explode})
        run = run_pipeline(_single_job(ScriptStep("x")), agent_factory=agents)
        step = run.get("S/j/0")
        assert step.status == Status.FAILED
        assert "agent went away" in step.reason

    def test_task_step_goes_to_run_task(self, agents):
        step = TaskStep(task="CmdLine", version=2, inputs={"script": "echo hi"})
        run_pipeline(_single_job(step), agent_factory=agents)
        assert agents.scripts == ["CmdLine@2"]


class TestEnvironment:
    def test_variables_exported(self, agents):
        p = make_pipeline(
            make_stage("S", make_job("j", "show", variables={"tag": "v1"}), variables={"region": "eu"}),
            variables={"tag": "v0"},
        )
        run_pipeline(p, agent_factory=agents)
        env = agents.env_for("show")
        assert env["TAG"] == "v1"
        assert env["REGION"] == "eu"
        assert env["PIPELINE_NAME"] == "test-pipeline"
        assert env["BUILD_BUILDID"]

    def test_step_env_is_step_local(self, agents):
        run_pipeline(_single_job(ScriptStep("a", env={"ONLY": "a"}), ScriptStep("b")), agent_factory=agents)
        assert agents.env_for("a")["ONLY"] == "a"
        assert "ONLY" not in agents.env_for("b")

    def test_setvariable_visible_to_later_steps(self):
        agents = FakeAgentFactory(
            {"set": ExecResult(exit_code=0, output="working\n##stageflow[setvariable name=IMAGE_TAG]v2\r\n")}
        )
        run_pipeline(_single_job(ScriptStep("set"), ScriptStep("use")), agent_factory=agents)
        assert agents.env_for("use")["IMAGE_TAG"] == "v2"

    def test_queue_time_variables(self, agents):
        p = make_pipeline(make_stage("S", make_job("j", "deploy $(target)")), variables={"target": "staging"})
        run_pipeline(p, variables={"target": "prod"}, agent_factory=agents)
        assert agents.scripts == ["deploy prod"]


class TestJobDependencies:
    def test_dependent_job_waits(self, agents):
        p = make_pipeline(make_stage("S", make_job("b", "second", depends_on=["a"]), make_job("a", "first")))
        run_pipeline(p, agent_factory=agents)
        assert agents.scripts == ["first", "second"]

    def test_failed_dependency_skips_job(self):
        agents = FakeAgentFactory({"first": fail()})
        p = make_pipeline(make_stage("S", make_job("a", "first"), make_job("b", "second", depends_on=["a"])))
        run = run_pipeline(p, agent_factory=agents)
        assert run.get("S/b").status == Status.SKIPPED
        assert run.get("S/b/0").status == Status.SKIPPED
        assert run.get("S").status == Status.FAILED


@pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh")
class TestLocalAgent:
    def test_output_captured(self):
        run = run_pipeline(_single_job(ScriptStep("echo hello; echo oops >&2")))
        step = run.get("S/j/0")
        assert step.status == Status.SUCCEEDED
        assert "hello" in step.output
        assert "oops" in step.output

    def test_exit_code_recorded(self):
        run = run_pipeline(_single_job(ScriptStep("exit 4")))
        assert run.get("S/j/0").exit_code == 4
        assert run.status() == Status.FAILED

    def test_step_timeout(self):
        run = run_pipeline(_single_job(ScriptStep("sleep 5", timeout_s=0.3)))
        step = run.get("S/j/0")
        assert step.status == Status.FAILED
        assert "timed out" in step.reason
        assert step.duration_s < 4

    def test_job_timeout_applies_to_steps(self):
        run = run_pipeline(_single_job(ScriptStep("sleep 5"), timeout_s=0.3))
        assert "timed out" in run.get("S/j/0").reason

    def test_setvariable_through_shell(self):
        p = _single_job(
            ScriptStep("echo '##stageflow[setvariable name=GREETING]hi there'"),
            ScriptStep('test "$GREETING" = "hi there"'),
        )
        run = run_pipeline(p)
        assert run.status() == Status.SUCCEEDED

    @pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
    def test_bash_task(self):
        step = TaskStep(task="Bash", version=3, inputs={"targetType": "inline", "script": "echo $((1 + 2))"})
        run = run_pipeline(_single_job(step))
        assert run.get("S/j/0").output.strip() == "3"

    def test_undecodable_output_does_not_fail_step(self):
        run = run_pipeline(_single_job(ScriptStep("printf 'ok\\377\\n'; exit 0")))
        step = run.get("S/j/0")
        assert step.status == Status.SUCCEEDED
        assert step.exit_code == 0
        assert "ok\ufffd" in step.output

    def test_setvariable_survives_output_trimming(self, settings):
        p = _single_job(
            ScriptStep(
                "echo '##stageflow[setvariable name=TAG]v2'; "
                "i=0; while [ $i -lt 50 ]; do echo padding line $i; i=$((i+1)); done"
            ),
            ScriptStep('test "$TAG" = "v2"'),
        )
        run = run_pipeline(p, settings=settings.with_overrides(output_tail=100))
        assert "setvariable" not in run.get("S/j/0").output
        assert run.get("S/j/1").status == Status.SUCCEEDED
        assert run.status() == Status.SUCCEEDED

    def test_stage_timeout_applies_to_steps(self):
        p = make_pipeline(make_stage("S", Job(name="j", steps=(ScriptStep("sleep 5"),)), timeout_s=0.3))
        run = run_pipeline(p)
        step = run.get("S/j/0")
        assert step.status == Status.FAILED
        assert "timed out" in step.reason
        assert step.duration_s < 4
        assert run.get("S").status == Status.FAILED

    def test_cancel_kills_running_process_group(self):
        # the shell stays the parent of sleep, so the pipe only closes if the whole group dies
        p = _single_job(ScriptStep("sleep 30; echo finished"), ScriptStep("echo never"))
        run = prepare_run(p, settings=get_settings(), force=True)
        started = time.monotonic()
        thread = start_run(run)
        while run.get("S/j/0").status != Status.RUNNING and time.monotonic() - started < 5:
            time.sleep(0.01)
        run.cancel()
        assert run.wait(10)
        thread.join(5)

        assert time.monotonic() - started < 10
        assert run.get("S/j/0").status == Status.CANCELLED
        assert "finished" not in run.get("S/j/0").output
        assert run.get("S/j/1").status == Status.CANCELLED
        assert run.status() == Status.CANCELLED
