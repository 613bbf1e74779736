# executors/base.py
from __future__ import annotations

import abc
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..conditions import ConditionContext, parse_condition
from ..env import resolve_step_env
from ..errors import ConditionError, ExecutorError, UnitError
from ..model import JobResult, Status, StepResult, Unit
from ..retry import RetryEvent, run_with_retry
from ..timeouts import TIMEOUT_EXIT_CODE, format_timeout
from ..ui.console import Console, get_console

if TYPE_CHECKING:
    from ..artifacts import ArtifactStore

log = logging.getLogger(__name__)

# seconds between SIGTERM and SIGKILL when stopping a unit
KILL_GRACE_SECONDS = 3.0


@dataclass
class ExecutionContext:
    """Run-scoped hooks handed to execute_job by the scheduler."""
    run_id: str
    is_cancelled: Callable[[], bool] = lambda: False
    sleep: Callable[[float], None] = time.sleep
    on_retry: Optional[Callable[[RetryEvent], None]] = None
    console: Console = field(default_factory=get_console)
    # dispatched after cancellation (an always/cancelled job): its steps run normally
    unwinding: bool = False

    def stopping(self) -> bool:
        """True when in-flight work should wind down."""
        return self.is_cancelled() and not self.unwinding


class Executor(abc.ABC):
    """
    Binds jobs to an execution environment through a lifecycle of hooks.

    Workspace level (once per executor name per run):
        setup_workspace(units) / cleanup_workspace(units)
    Job level (once per job):
        setup_job -> restore_artifact* -> execute_job -> save_artifact* -> cleanup_job

    Jobs whose executors share `name` share one workspace, but every job
    gets its own working directory inside it.
    """

    kind = "abstract"

    def __init__(self, name: str):
        if not name:
            raise ValueError("Executor name cannot be empty")
        self.name = name
        self.run_id: Optional[str] = None
        self.keep_workspace = False
        self.runtime_env: Mapping[str, str] = os.environ
        self.console: Console = get_console()
        self.artifact_root: Optional[Path] = None

    def bind(
        self,
        run_id: str,
        *,
        keep_workspace: bool = False,
        runtime_env: Optional[Mapping[str, str]] = None,
        console: Optional[Console] = None,
        artifact_root: Optional[Path] = None,
    ) -> None:
        """Receive run-scoped settings before setup_workspace."""
        self.run_id = run_id
        self.keep_workspace = keep_workspace
        self.artifact_root = artifact_root
        if runtime_env is not None:
            self.runtime_env = runtime_env
        if console is not None:
            self.console = console

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"

    def config(self) -> Dict[str, Any]:
        """
        Settings that define this executor besides its name. Two instances
        sharing a name must agree on them to share a workspace.
        """
        return {}

    # ---- workspace level ----

    @abc.abstractmethod
    def setup_workspace(self, units: Sequence[Unit]) -> None:
        """Provision the shared environment; receives every unit bound to this executor."""

    @abc.abstractmethod
    def cleanup_workspace(self, units: Sequence[Unit]) -> None:
        """Tear the shared environment down (unless keep_workspace)."""

    # ---- job level ----

    @abc.abstractmethod
    def setup_job(self, job_name: str, units: Sequence[Unit]) -> None:
        """Create the isolated working location for `job_name`."""

    @abc.abstractmethod
    def cleanup_job(self, job_name: str) -> None:
        """Tear down job-local state only."""

    @abc.abstractmethod
    def run_unit(self, job_name: str, unit: Unit, env: Mapping[str, str], timeout: Optional[float]) -> int:
        """Run one attempt of `unit` in the job's working location and return its exit code."""

    # ---- artifacts ----

    @abc.abstractmethod
    def save_artifact(self, name: str, path: str, job_name: str, store: "ArtifactStore") -> None:
        """Copy `path` (relative to the job root) into the host artifact store."""

    @abc.abstractmethod
    def restore_artifact(self, name: str, path: str, job_name: str, store: "ArtifactStore") -> None:
        """Copy artifact `name` from the host store to `path` under the job root."""

    # ---- optional ----

    def terminate(self) -> None:
        """Signal termination to every unit this executor is running."""

    def step_env(self, job_name: str, env: Dict[str, str]) -> Dict[str, str]:
        """Backend-specific variables added to each step's environment."""
        return env

    # ---- shared step loop ----

    def execute_job(
        self,
        job_name: str,
        units: Sequence[Unit],
        env: Mapping[str, str],
        ctx: ExecutionContext,
    ) -> JobResult:
        """
        Run the job's steps in order, each gated by its condition and wrapped
        in its retry policy.

        After the first failing step, later success() steps are skipped while
        failure()/always() steps still run; the job then ends failed. Steps
        skipped by their own condition are not failures.
        """
        console = ctx.console
        failed = False
        results: List[StepResult] = []

        for unit in units:
            step_env = self.step_env(job_name, resolve_step_env(env, unit.step.env, self.runtime_env))
            cancelled = ctx.is_cancelled()

            try:
                cond = parse_condition(unit.step.condition)
                if cancelled and not ctx.unwinding and not cond.runs_on_unwind:
                    results.append(StepResult(unit.name, Status.CANCELLED))
                    continue
                should_run = cond.evaluate(ConditionContext(failed=failed, cancelled=cancelled, env=step_env))
            except ConditionError as e:
                failed = True
                results.append(StepResult(unit.name, Status.FAILURE, error=str(e)))
                console.print_failure(f"{job_name}/{unit.name}", str(e))
                continue

            if not should_run:
                console.print_step_skipped(job_name, unit.name, unit.step.condition)
                results.append(StepResult(unit.name, Status.SKIPPED))
                continue

            console.print_step(job_name, unit.name)
            if unit.timeout is not None:
                log.debug("%s/%s timeout %s", job_name, unit.name, format_timeout(unit.timeout))

            started = time.monotonic()
            outcome = run_with_retry(
                lambda remaining, u=unit, e=step_env: self.run_unit(job_name, u, e, remaining),
                unit.retry,
                timeout=unit.timeout,
                sleep=ctx.sleep,
                on_event=ctx.on_retry,
                should_stop=ctx.stopping,
                name=f"{job_name}/{unit.name}",
            )
            duration = time.monotonic() - started

            if outcome.ok:
                results.append(StepResult(unit.name, Status.SUCCESS, 0, outcome.attempts, duration))
                continue

            if ctx.stopping():
                results.append(StepResult(unit.name, Status.CANCELLED, outcome.exit_code, outcome.attempts, duration))
                continue

            failed = True
            err = UnitError(job_name, unit.name, outcome.exit_code, outcome.attempts, outcome.timed_out)
            results.append(StepResult(unit.name, Status.FAILURE, outcome.exit_code, outcome.attempts, duration, str(err)))
            console.print_failure(f"{job_name}/{unit.name}", str(err), exit_code=outcome.exit_code)

        if failed:
            first = next(r for r in results if r.status == Status.FAILURE)
            return JobResult(job_name, Status.FAILURE, results, error=first.error)
        if any(r.status == Status.CANCELLED for r in results):
            return JobResult(job_name, Status.CANCELLED, results, error="cancelled")
        return JobResult(job_name, Status.SUCCESS, results)


class ProcessExecutor(Executor):
    """Executor whose units are child processes it can stop on timeout or cancellation."""

    def __init__(self, name: str):
        super().__init__(name)
        self._procs: set[subprocess.Popen] = set()
        self._lock = threading.RLock()

    def run_process(
        self,
        argv: List[str],
        *,
        job_name: str,
        step_name: str,
        timeout: Optional[float],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        on_stop: Optional[Callable[[], None]] = None,
    ) -> int:
        """
        Start `argv`, stream its output with a job/step prefix and wait for it.

        `on_stop` runs before the process is killed on timeout, for backends
        whose real work lives outside the child process.
        """
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            raise ExecutorError(self.name, "run_unit", str(e), job=job_name) from e

        with self._lock:
            self._procs.add(proc)

        def pump() -> None:
            assert proc.stdout is not None
            for line in proc.stdout:
                self.console.print_output(job_name, step_name, line.rstrip("\n"))

        reader = threading.Thread(target=pump, name=f"cipack-output-{job_name}", daemon=True)
        reader.start()
        try:
            try:
                return proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                log.warning(
                    "%s/%s timed out after %s", job_name, step_name, format_timeout(timeout),
                    extra={"event": "timeout", "job": job_name, "step": step_name},
                )
                if on_stop is not None:
                    on_stop()
                self._stop(proc)
                return TIMEOUT_EXIT_CODE
        finally:
            reader.join(timeout=KILL_GRACE_SECONDS)
            with self._lock:
                self._procs.discard(proc)

    def terminate(self) -> None:
        with self._lock:
            procs = list(self._procs)
        for proc in procs:
            self._stop(proc)

    @staticmethod
    def _stop(proc: subprocess.Popen) -> None:
        # kill the whole process group (sh -c children included)
        for sig in (signal.SIGTERM, signal.SIGKILL):
            if proc.poll() is not None:
                return
            try:
                os.killpg(proc.pid, sig)
            except (ProcessLookupError, PermissionError):
                return
            try:
                proc.wait(timeout=KILL_GRACE_SECONDS)
                return
            except subprocess.TimeoutExpired:
                continue
