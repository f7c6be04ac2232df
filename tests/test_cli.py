"""Tests for the CLI."""

import textwrap

from click.testing import CliRunner

from stageflow.cli import cli, parse_vars

runner = CliRunner()

GOOD = textwrap.dedent(
    """\
    name: demo
    variables:
      greeting: hello
    stages:
      - stage: Build
        jobs:
          - job: compile
            steps:
              - script: echo $(greeting) from $(Pipeline.Name)
      - stage: Test
        dependsOn: Build
        jobs:
          - job: unit
            steps:
              - script: echo testing
    """
)


def _write(tmp_path, text=GOOD, name="stageflow.yml"):
    f = tmp_path / name
    f.write_text(text)
    return f


class TestValidate:
    def test_valid(self, tmp_path):
        f = _write(tmp_path)
        result = runner.invoke(cli, ["validate", str(f)])
        assert result.exit_code == 0
        assert "OK (2 stage(s), 2 job(s))" in result.output

    def test_unknown_dependency_exit_2(self, tmp_path):
        f = _write(tmp_path, GOOD.replace("dependsOn: Build", "dependsOn: NonExistentStage"))
        result = runner.invoke(cli, ["validate", str(f)])
        assert result.exit_code == 2
        assert "NonExistentStage" in result.output

    def test_parse_error_exit_2(self, tmp_path):
        f = _write(tmp_path, "stages: [")
        result = runner.invoke(cli, ["validate", str(f)])
        assert result.exit_code == 2

    def test_missing_file(self, tmp_path):
        result = runner.invoke(cli, ["validate", str(tmp_path / "nope.yml")])
        assert result.exit_code == 2
        assert "not found" in result.output


class TestDiscovery:
    def test_finds_default_file(self, tmp_path, monkeypatch):
        _write(tmp_path)
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(cli, ["validate"])
        assert result.exit_code == 0

    def test_ambiguous(self, tmp_path, monkeypatch):
        _write(tmp_path)
        _write(tmp_path, name="other.pipeline.yml")
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(cli, ["validate"])
        assert result.exit_code == 2
        assert "Multiple pipeline files" in result.output

    def test_none_found(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(cli, ["validate"])
        assert result.exit_code == 2


class TestPlan:
    def test_levels(self, tmp_path):
        f = _write(tmp_path)
        result = runner.invoke(cli, ["plan", str(f)])
        assert result.exit_code == 0
        assert "1. Build" in result.output
        assert "2. Test" in result.output


class TestRun:
    def test_success(self, tmp_path):
        f = _write(tmp_path)
        result = runner.invoke(cli, ["run", str(f), "--force", "--work-dir", str(tmp_path)])
        assert result.exit_code == 0, result.output
        assert "RESULTS" in result.output
        assert "Run: SUCCEEDED" in result.output

    def test_failure_exit_1(self, tmp_path):
        f = _write(tmp_path, GOOD.replace("echo testing", "exit 3"))
        result = runner.invoke(cli, ["run", str(f), "--force", "--work-dir", str(tmp_path)])
        assert result.exit_code == 1
        assert "STEP FAILED" in result.output
        assert "Run: FAILED" in result.output

    def test_results_pinpoint_failure_and_skips(self, tmp_path):
        f = _write(tmp_path, GOOD.replace("echo $(greeting) from $(Pipeline.Name)", "echo compiling; exit 3"))
        result = runner.invoke(cli, ["run", str(f), "--force", "--work-dir", str(tmp_path)])
        assert result.exit_code == 1
        summary = result.output[result.output.index("RESULTS"):]
        assert "First failure: Build/compile/0" in summary
        assert "exit=3" in summary
        assert "| compiling" in summary
        assert "Skipped stages: Test" in summary

    def test_unresolved_variable_exit_2(self, tmp_path):
        f = _write(tmp_path, GOOD.replace("$(greeting)", "$(missing)"))
        result = runner.invoke(cli, ["run", str(f), "--force", "--work-dir", str(tmp_path)])
        assert result.exit_code == 2
        assert "$(missing)" in result.output

    def test_var_fills_placeholder(self, tmp_path):
        f = _write(tmp_path, GOOD.replace("$(greeting)", "$(who)"))
        result = runner.invoke(
            cli, ["run", str(f), "--force", "--var", "who=world", "--work-dir", str(tmp_path)]
        )
        assert result.exit_code == 0, result.output

    def test_trigger_not_matched(self, tmp_path):
        f = _write(tmp_path, "trigger: [main]\n" + GOOD)
        result = runner.invoke(cli, ["run", str(f), "--branch", "feature/x", "--work-dir", str(tmp_path)])
        assert result.exit_code == 0
        assert "nothing to run" in result.output

    def test_bad_var(self, tmp_path):
        f = _write(tmp_path)
        result = runner.invoke(cli, ["run", str(f), "--var", "novalue"])
        assert result.exit_code == 2


class TestParseVars:
    def test_splits_on_first_equals(self):
        assert parse_vars(("a=1", "Build.x=k=v")) == {"a": "1", "Build.x": "k=v"}
