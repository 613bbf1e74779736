import time

import pytest

from cipack.errors import ExecutorError
from cipack.executors.base import ExecutionContext
from cipack.executors.local import LocalExecutor
from cipack.model import RetryPolicy, Status, Step, Unit
from cipack.retry import DEFAULT_RETRY
from cipack.timeouts import TIMEOUT_EXIT_CODE


def unit(name, run, job="job", retry=DEFAULT_RETRY, timeout=None, **kw):
    return Unit(job=job, step=Step(name, run, **kw), retry=retry, timeout=timeout)


@pytest.fixture
def local(tmp_path):
    ex = LocalExecutor(workspace_root=tmp_path / "ws")
    ex.bind("run-1", runtime_env={})
    ex.setup_workspace([])
    yield ex
    ex.cleanup_workspace([])


@pytest.fixture
def ctx():
    return ExecutionContext(run_id="run-1", sleep=lambda s: None)


class TestWorkspace:
    def test_layout(self, local, tmp_path):
        assert local.workspace == (tmp_path / "ws" / "run-1" / "local").resolve()
        local.setup_job("build", [])
        assert local.job_dir("build").is_dir()

    def test_cleanup_removes_workspace(self, tmp_path):
        ex = LocalExecutor(workspace_root=tmp_path / "ws")
        ex.bind("run-2")
        ex.setup_workspace([])
        ws = ex.workspace
        ex.cleanup_workspace([])
        assert not ws.exists()
        assert not ws.parent.exists()

    def test_keep_workspace(self, tmp_path):
        ex = LocalExecutor(workspace_root=tmp_path / "ws")
        ex.bind("run-3", keep_workspace=True)
        ex.setup_workspace([])
        ws = ex.workspace
        ex.cleanup_workspace([])
        assert ws.exists()

    def test_setup_requires_bind(self, tmp_path):
        with pytest.raises(ExecutorError):
            LocalExecutor(workspace_root=tmp_path).setup_workspace([])

    def test_setup_is_idempotent(self, local):
        ws = local.workspace
        local.setup_workspace([])
        assert local.workspace == ws

    def test_job_env_file_outside_job_dir(self, local):
        local.setup_job("build", [])
        env_file = local.job_env_file("build")
        assert env_file.exists()
        assert local.job_dir("build") not in env_file.parents
        assert list(local.job_dir("build").iterdir()) == []
        local.cleanup_job("build")
        assert not env_file.exists()


class TestRunUnit:
    def test_runs_in_job_dir(self, local):
        local.setup_job("job", [])
        code = local.run_unit("job", unit("touch", "touch marker"), {}, None)
        assert code == 0
        assert (local.job_dir("job") / "marker").exists()

    def test_exit_code(self, local):
        local.setup_job("job", [])
        assert local.run_unit("job", unit("fail", "exit 3"), {}, None) == 3

    def test_env_exported(self, local):
        local.setup_job("job", [])
        code = local.run_unit("job", unit("env", 'test "$GREETING" = hello'), {"GREETING": "hello"}, None)
        assert code == 0

    def test_workdir(self, local):
        local.setup_job("job", [])
        (local.job_dir("job") / "sub").mkdir()
        local.run_unit("job", unit("touch", "touch here", workdir="sub"), {}, None)
        assert (local.job_dir("job") / "sub" / "here").exists()

    def test_missing_workdir_fails(self, local):
        local.setup_job("job", [])
        assert local.run_unit("job", unit("x", "true", workdir="nope"), {}, None) == 1

    def test_timeout_kills(self, local):
        local.setup_job("job", [])
        started = time.monotonic()
        code = local.run_unit("job", unit("sleep", "sleep 30"), {}, 0.5)
        assert code == TIMEOUT_EXIT_CODE
        assert time.monotonic() - started < 10

    def test_output_streamed_to_console(self, local):
        lines = []

        class Capture:
            def print_output(self, job, step, line):
                lines.append((job, step, line))

        local.console = Capture()
        local.setup_job("job", [])
        local.run_unit("job", unit("say", "echo one; echo two >&2"), {}, None)
        assert lines == [("job", "say", "one"), ("job", "say", "two")]


class TestExecuteJob:
    def test_job_env_file_carries_variables(self, local, ctx):
        local.setup_job("job", [])
        units = [
            unit("set", 'echo "VERSION=1.2.3" >> "$CIPACK_JOB_ENV"'),
            unit("use", 'test "$VERSION" = 1.2.3'),
        ]
        result = local.execute_job("job", units, {}, ctx)
        assert result.status == Status.SUCCESS

    def test_standard_variables(self, local, ctx):
        local.setup_job("job", [])
        units = [unit("vars", 'test "$CIPACK_JOB" = job && test "$CIPACK_RUN_ID" = run-1 && test "$(pwd -P)" = "$CIPACK_JOB_DIR"')]
        assert local.execute_job("job", units, {}, ctx).status == Status.SUCCESS

    def test_retry_counts_real_attempts(self, local, ctx):
        local.setup_job("job", [])
        policy = RetryPolicy(max_attempts=3, min_time=0, max_time=0)
        units = [unit("flaky", 'echo x >> attempts; test "$(wc -l < attempts)" -ge 3', retry=policy)]
        result = local.execute_job("job", units, {}, ctx)
        assert result.status == Status.SUCCESS
        assert result.steps[0].attempts == 3

    def test_failing_step_skips_rest(self, local, ctx):
        local.setup_job("job", [])
        units = [
            unit("fail", "exit 1"),
            unit("next", "touch should-not-exist"),
            unit("always", "touch cleanup", condition="always()"),
        ]
        result = local.execute_job("job", units, {}, ctx)
        assert result.status == Status.FAILURE
        assert [s.status for s in result.steps] == [Status.FAILURE, Status.SKIPPED, Status.SUCCESS]
        assert not (local.job_dir("job") / "should-not-exist").exists()
        assert (local.job_dir("job") / "cleanup").exists()
        assert result.failed_step.name == "fail"

    def test_step_timeout_is_failure(self, local, ctx):
        local.setup_job("job", [])
        result = local.execute_job("job", [unit("slow", "sleep 30", timeout=0.5)], {}, ctx)
        assert result.status == Status.FAILURE
        assert result.steps[0].exit_code == TIMEOUT_EXIT_CODE
        assert "timed out" in result.error


class TestArtifacts:
    def test_save_and_restore(self, local, tmp_path):
        from cipack.artifacts import ArtifactStore

        store = ArtifactStore(tmp_path / "store")
        local.setup_job("build", [])
        local.setup_job("deploy", [])
        (local.job_dir("build") / "out").mkdir()
        (local.job_dir("build") / "out" / "app").write_text("bits")

        local.save_artifact("dist", "out", "build", store)
        local.restore_artifact("dist", "vendor", "deploy", store)
        assert (local.job_dir("deploy") / "vendor" / "out" / "app").read_text() == "bits"


class TestCopyRepo:
    @pytest.fixture
    def source(self, tmp_path):
        src = tmp_path / "repo"
        (src / "pkg").mkdir(parents=True)
        (src / "pkg" / "mod.py").write_text("x = 1\n")
        (src / "setup.cfg").write_text("[metadata]\n")
        return src

    def executor(self, tmp_path, **kwargs):
        ex = LocalExecutor(workspace_root=tmp_path / "ws", **kwargs)
        ex.bind("run-1", runtime_env={})
        ex.setup_workspace([])
        return ex

    def test_disabled_by_default(self, tmp_path, source, monkeypatch):
        monkeypatch.chdir(source)
        ex = self.executor(tmp_path)
        ex.setup_job("build", [])
        assert list(ex.job_dir("build").iterdir()) == []

    def test_each_job_gets_a_copy(self, tmp_path, source):
        ex = self.executor(tmp_path, copy_repo=True, source=source)
        ex.setup_job("lint", [])
        ex.setup_job("test", [])
        for job in ("lint", "test"):
            assert (ex.job_dir(job) / "pkg" / "mod.py").read_text() == "x = 1\n"
        (ex.job_dir("lint") / "setup.cfg").unlink()
        assert (ex.job_dir("test") / "setup.cfg").exists()
        assert (source / "setup.cfg").exists()

    def test_defaults_to_current_directory(self, tmp_path, source, monkeypatch):
        monkeypatch.chdir(source)
        ex = self.executor(tmp_path, copy_repo=True)
        ex.setup_job("build", [])
        assert (ex.job_dir("build") / "setup.cfg").exists()

    def test_skips_run_directories_inside_source(self, source):
        ex = LocalExecutor(workspace_root=source / "ws", copy_repo=True, source=source)
        ex.bind("run-1", runtime_env={}, artifact_root=source / "artifacts")
        (source / "artifacts" / "dist").mkdir(parents=True)
        ex.setup_workspace([])
        ex.setup_job("build", [])
        copied = sorted(p.name for p in ex.job_dir("build").iterdir())
        assert copied == ["pkg", "setup.cfg"]

    def test_missing_source(self, tmp_path):
        ex = self.executor(tmp_path, copy_repo=True, source=tmp_path / "nope")
        with pytest.raises(ExecutorError) as exc:
            ex.setup_job("build", [])
        assert exc.value.hook == "setup_job"
