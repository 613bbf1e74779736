import json
import logging
import textwrap

import pytest
from click.testing import CliRunner

from cipack.cli import cli
from cipack.errors import ValidationError
from cipack.loader import load_workflow

GOOD = """
from cipack import wf, job, sh

def workflow():
    return wf(
        "demo",
        job("lint", sh("check", "echo linting")),
        job("build", sh("make", "mkdir -p out && echo ok > out/app"), outputs={"dist": "out"}),
        job("deploy", sh("ship", "test -f out/app"), needs=["lint", "build"], inputs=["dist"]),
    )
"""

FAILING = """
from cipack import wf, job, sh

WORKFLOW = wf("demo", job("test", sh("pytest", "exit 4")))
"""

CYCLE = """
from cipack import wf, job, sh

WORKFLOW = wf("demo", job("a", sh("s", "true"), needs=["b"]), job("b", sh("s", "true"), needs=["a"]))
"""


def write(tmp_path, name, body):
    path = tmp_path / name
    path.write_text(textwrap.dedent(body))
    return path


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CIPACK_WORKSPACE_ROOT", str(tmp_path / "ws"))
    monkeypatch.setenv("CIPACK_ARTIFACTS_DIR", str(tmp_path / "artifacts"))
    for var in ("CIPACK_RUN_ID", "CIPACK_KEEP_WORKSPACE", "CIPACK_LOG_FORMAT", "CIPACK_MAX_WORKERS"):
        monkeypatch.delenv(var, raising=False)
    yield
    # drop the handler bound to the runner's captured stderr
    logger = logging.getLogger("cipack")
    for h in list(logger.handlers):
        logger.removeHandler(h)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


class TestRun:
    def test_success(self, tmp_path):
        write(tmp_path, "cipack_workflow.py", GOOD)
        result = CliRunner().invoke(cli, ["run", "--run-id", "r1"])
        assert result.exit_code == 0, result.output
        assert "Run ID: r1" in result.output
        assert "deploy: SUCCESS" in result.output
        assert "CLEANUP COMPLETE" in result.output
        assert (tmp_path / "artifacts" / "dist" / "out" / "app").exists()
        assert not (tmp_path / "ws" / "r1").exists()

    def test_keep_workspace(self, tmp_path):
        path = write(tmp_path, "ci.py", GOOD)
        result = CliRunner().invoke(cli, ["run", "--workflow", str(path), "--run-id", "r2", "--keep-workspace"])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "ws" / "r2" / "local" / "jobs" / "deploy" / "out" / "app").exists()

    def test_failed_run_exits_1(self, tmp_path):
        path = write(tmp_path, "ci.py", FAILING)
        result = CliRunner().invoke(cli, ["run", "--workflow", str(path)])
        assert result.exit_code == 1
        assert "JOB FAILED: test" in result.output

    def test_invalid_workflow_exits_2(self, tmp_path):
        path = write(tmp_path, "ci.py", CYCLE)
        result = CliRunner().invoke(cli, ["run", "--workflow", str(path)])
        assert result.exit_code == 2
        assert "Invalid workflow" in result.output
        assert "cycle" in result.output

    def test_missing_file_exits_2(self):
        result = CliRunner().invoke(cli, ["run", "--workflow", "nope.py"])
        assert result.exit_code == 2
        assert "Workflow file not found" in result.output

    def test_no_workflow_found(self):
        result = CliRunner().invoke(cli, ["run"])
        assert result.exit_code == 2
        assert "No workflow file found" in result.output

    def test_json_logs(self, tmp_path):
        path = write(tmp_path, "ci.py", GOOD)
        result = CliRunner().invoke(cli, ["run", "--workflow", str(path), "--log-format", "json"])
        assert result.exit_code == 0, result.output
        events = [json.loads(line) for line in result.output.splitlines() if line.startswith("{")]
        assert any(e.get("event") == "run.finished" for e in events)


class TestPlan:
    def test_levels(self, tmp_path):
        path = write(tmp_path, "ci.py", GOOD)
        result = CliRunner().invoke(cli, ["plan", "--workflow", str(path)])
        assert result.exit_code == 0, result.output
        assert "Level 0:" in result.output
        assert "Level 1:" in result.output

    def test_json(self, tmp_path):
        path = write(tmp_path, "ci.py", GOOD)
        result = CliRunner().invoke(cli, ["plan", "--workflow", str(path), "--json"])
        assert result.exit_code == 0, result.output
        plan = json.loads(result.output)
        assert plan["levels"] == [["build", "lint"], ["deploy"]]
        assert plan["jobs"]["deploy"]["inputs"] == [{"name": "dist", "path": "."}]


class TestLoader:
    def test_workflow_function(self, tmp_path):
        w = load_workflow(write(tmp_path, "a.py", GOOD))
        assert w.name == "demo"
        assert sorted(w.jobs) == ["build", "deploy", "lint"]

    def test_workflow_variable(self, tmp_path):
        assert load_workflow(write(tmp_path, "b.py", FAILING)).name == "demo"

    def test_imported_helper_is_not_a_definition(self, tmp_path):
        body = """
        from cipack import workflow, job, sh
        WORKFLOW = workflow("helper", job("a", sh("s", "true")))
        """
        assert load_workflow(write(tmp_path, "c.py", body)).name == "helper"

    def test_wrong_type(self, tmp_path):
        with pytest.raises(ValidationError):
            load_workflow(write(tmp_path, "d.py", "WORKFLOW = [1, 2]\n"))

    def test_not_python(self, tmp_path):
        path = tmp_path / "ci.yaml"
        path.write_text("jobs: {}")
        with pytest.raises(ValueError):
            load_workflow(path)
