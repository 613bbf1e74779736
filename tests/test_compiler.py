import json
import logging

import pytest

from cipack.compiler import compile_workflow
from cipack.errors import ConditionError, CycleError, UnknownDependencyError, ValidationError
from cipack.executors.docker import DockerExecutor
from cipack.executors.local import LocalExecutor
from cipack.model import Job, RetryPolicy, Step, Workflow

from conftest import FakeExecutor


def job(name, **kw):
    kw.setdefault("steps", [Step("s", "true")])
    return Job(name=name, **kw)


def wf(*jobs, **kw):
    return Workflow(name="ci", jobs=list(jobs), **kw)


class TestValidation:
    def test_empty_name(self):
        with pytest.raises(ValidationError):
            compile_workflow(Workflow(name="", jobs=[job("a")]))

    def test_no_jobs(self):
        with pytest.raises(ValidationError):
            compile_workflow(wf())

    def test_duplicate_job(self):
        with pytest.raises(ValidationError):
            wf(job("a"), job("a"))

    def test_key_must_match_name(self):
        with pytest.raises(ValidationError):
            compile_workflow(Workflow(name="ci", jobs={"a": job("b")}))

    @pytest.mark.parametrize("name", ["../up", "has space", "a/b", ".hidden"])
    def test_job_name_must_be_a_directory_name(self, name):
        with pytest.raises(ValidationError):
            compile_workflow(wf(job(name)))

    def test_job_without_steps(self):
        with pytest.raises(ValidationError):
            compile_workflow(wf(job("a", steps=[])))

    def test_duplicate_step_names(self):
        with pytest.raises(ValidationError):
            compile_workflow(wf(job("a", steps=[Step("s", "true"), Step("s", "false")])))

    def test_empty_command(self):
        with pytest.raises(ValidationError):
            compile_workflow(wf(job("a", steps=[Step("s", "  ")])))

    def test_bad_condition_fails_compile(self):
        with pytest.raises(ConditionError):
            compile_workflow(wf(job("a", condition="sucess()")))
        with pytest.raises(ConditionError):
            compile_workflow(wf(job("a", steps=[Step("s", "true", condition="env.X ==")])))

    def test_bad_timeout(self):
        with pytest.raises(ValidationError):
            compile_workflow(wf(job("a", timeout="forever")))

    def test_graph_errors(self):
        with pytest.raises(UnknownDependencyError):
            compile_workflow(wf(job("a", needs=["ghost"])))
        with pytest.raises(CycleError):
            compile_workflow(wf(job("a", needs=["b"]), job("b", needs=["a"])))

    def test_escaping_workdir(self):
        with pytest.raises(ValidationError):
            compile_workflow(wf(job("a", steps=[Step("s", "true", workdir="../x")])))


class TestArtifactValidation:
    def test_duplicate_outputs(self):
        with pytest.raises(ValidationError) as exc:
            compile_workflow(wf(job("a", outputs={"dist": "out"}), job("b", outputs={"dist": "build"})))
        assert "dist" in str(exc.value)

    def test_absolute_output_path(self):
        with pytest.raises(ValidationError):
            compile_workflow(wf(job("a", outputs={"dist": "/tmp/out"})))

    def test_input_without_producer(self):
        with pytest.raises(ValidationError):
            compile_workflow(wf(job("a", inputs=["dist"])))

    def test_input_from_non_ancestor_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="cipack"):
            compiled = compile_workflow(wf(job("a", outputs={"dist": "out"}), job("b", inputs=["dist"])))
        assert compiled.warnings
        assert "without needing it" in compiled.warnings[0]

    def test_input_from_ancestor_is_fine(self):
        compiled = compile_workflow(wf(
            job("a", outputs={"dist": "out"}),
            job("mid", needs=["a"]),
            job("b", needs=["mid"], inputs=["dist"]),
        ))
        assert compiled.warnings == []


class TestResolution:
    def test_retry_and_timeout_precedence(self):
        step_retry = RetryPolicy(max_attempts=5)
        job_retry = RetryPolicy(max_attempts=3)
        compiled = compile_workflow(wf(
            job("a", steps=[Step("own", "true", retry=step_retry, timeout="10s"), Step("inherit", "true")],
                retry=job_retry, timeout="5m"),
            job("b"),
            retry=RetryPolicy(max_attempts=2),
            timeout="1h",
        ))
        own, inherit = compiled.units["a"]
        assert own.retry is step_retry and own.timeout == 10
        assert inherit.retry is job_retry and inherit.timeout == 300
        (b,) = compiled.units["b"]
        assert b.retry.max_attempts == 2 and b.timeout == 3600

    def test_default_executor_is_local(self):
        compiled = compile_workflow(wf(job("a"), job("b")))
        assert list(compiled.executors) == ["local"]
        assert isinstance(compiled.executor_for("a"), LocalExecutor)
        assert compiled.executor_for("a") is compiled.executor_for("b")

    def test_units_by_executor(self):
        box = FakeExecutor("box")
        compiled = compile_workflow(wf(
            job("a", executor=box),
            job("b", steps=[Step("x", "true"), Step("y", "true")]),
            job("c", executor=FakeExecutor("box"), needs=["a"]),
        ))
        grouped = compiled.units_by_executor
        assert [u.job + "/" + u.name for u in grouped["box"]] == ["a/s", "c/s"]
        assert [u.job + "/" + u.name for u in grouped["local"]] == ["b/x", "b/y"]
        assert compiled.executor_for("c") is box

    def test_conflicting_executor_kinds(self):
        with pytest.raises(ValidationError):
            compile_workflow(wf(
                job("a", executor=LocalExecutor("shared")),
                job("b", executor=DockerExecutor("alpine", name="shared")),
            ))

    def test_conflicting_executor_settings(self):
        with pytest.raises(ValidationError) as exc:
            compile_workflow(wf(
                job("a", executor=DockerExecutor("alpine", name="x")),
                job("b", executor=DockerExecutor("python", name="x")),
            ))
        assert "different settings" in str(exc.value)

    def test_conflicting_local_settings(self):
        with pytest.raises(ValidationError):
            compile_workflow(wf(
                job("a"),
                job("b", executor=LocalExecutor(copy_repo=True)),
            ))

    def test_equal_settings_share_a_workspace(self):
        compiled = compile_workflow(wf(
            job("a", executor=DockerExecutor("alpine", name="x", env={"CI": "1"})),
            job("b", executor=DockerExecutor("alpine", name="x", env={"CI": "1"})),
        ))
        assert list(compiled.executors) == ["x"]
        assert compiled.executor_for("a") is compiled.executor_for("b")


class TestPlan:
    def test_to_dict_is_json(self):
        compiled = compile_workflow(wf(
            job("lint"), job("test"),
            job("build", needs=["lint", "test"], outputs={"dist": "out/"}, timeout="2m"),
        ))
        plan = json.loads(json.dumps(compiled.to_dict()))
        assert plan["workflow"] == "ci"
        assert plan["levels"] == [["lint", "test"], ["build"]]
        assert plan["executors"] == {"local": "local"}
        build = plan["jobs"]["build"]
        assert build["needs"] == ["lint", "test"]
        assert build["outputs"] == {"dist": "out/"}
        assert build["steps"][0]["timeout"] == "2m"
        assert build["steps"][0]["retry"]["max_attempts"] == 1
