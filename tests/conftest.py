import threading
from collections import Counter
from pathlib import Path

import pytest

from cipack.errors import ExecutorError
from cipack.executors.base import Executor
from cipack.model import RetryPolicy
from cipack.ui.console import Console, set_console

# retries without real sleeping
NO_WAIT = RetryPolicy(max_attempts=1, min_time=0, max_time=0)


def no_wait(attempts):
    return RetryPolicy(max_attempts=attempts, min_time=0, max_time=0)


class FakeExecutor(Executor):
    """
    Records every hook call. Step exit codes come from `exit_codes`,
    keyed by "job/step"; a list is consumed one code per attempt.
    """

    kind = "fake"

    def __init__(self, name="fake", root=None, exit_codes=None, fail_setup=False, fail_setup_job=()):
        super().__init__(name)
        self.root = Path(root) if root else None
        self.exit_codes = dict(exit_codes or {})
        self.fail_setup = fail_setup
        self.fail_setup_job = set(fail_setup_job)
        self.calls = []
        self.invocations = Counter()
        self.envs = {}
        self.hook = None  # optional callable(job, step) run inside run_unit
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def hooks(self, name):
        return [c for c in self.calls if c[0] == name]

    def job_dir(self, job_name):
        return self.root / job_name

    def setup_workspace(self, units):
        self._record("setup_workspace", tuple(u.job + "/" + u.name for u in units))
        if self.fail_setup:
            raise ExecutorError(self.name, "setup_workspace", "boom")

    def cleanup_workspace(self, units):
        self._record("cleanup_workspace", len(units))

    def setup_job(self, job_name, units):
        self._record("setup_job", job_name)
        if job_name in self.fail_setup_job:
            raise ExecutorError(self.name, "setup_job", "no space left", job=job_name)
        if self.root is not None:
            self.job_dir(job_name).mkdir(parents=True, exist_ok=True)

    def cleanup_job(self, job_name):
        self._record("cleanup_job", job_name)

    def run_unit(self, job_name, unit, env, timeout):
        key = f"{job_name}/{unit.name}"
        with self._lock:
            self.invocations[key] += 1
            self.envs[key] = dict(env)
        self._record("run_unit", key)
        if self.hook is not None:
            self.hook(job_name, unit.name)
        code = self.exit_codes.get(key, 0)
        if isinstance(code, list):
            with self._lock:
                return code.pop(0) if code else 0
        return code

    def save_artifact(self, name, path, job_name, store):
        self._record("save_artifact", name, job_name)
        store.save(name, self.job_dir(job_name), path, job_name=job_name)

    def restore_artifact(self, name, path, job_name, store):
        self._record("restore_artifact", name, job_name)
        store.restore(name, self.job_dir(job_name), path, job_name=job_name)


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(show_output=False)
    set_console(console)
    yield console


@pytest.fixture
def run_kwargs(tmp_path):
    return {
        "run_id": "test-run",
        "artifact_root": tmp_path / "artifacts",
        "runtime_env": {},
        "sleep": lambda s: None,
    }
