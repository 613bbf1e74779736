# runner.py
from __future__ import annotations

import logging
import os
import signal
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Mapping, Optional, Set

from . import settings
from .artifacts import ArtifactStore
from .conditions import ConditionContext, parse_condition
from .env import resolve_job_env
from .errors import CancellationError, CipackError, ConditionError, EnvProviderError
from .executors.base import ExecutionContext, Executor
from .model import JobResult, JobRun, RunResult, Status
from .retry import RetryEvent
from .ui.console import Console, get_console

if TYPE_CHECKING:
    from .compiler import CompiledWorkflow

log = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Run state
# ----------------------------------------------------------------------

@dataclass
class RunState:
    """
    Mutable state of one run, owned by the coordinating thread.

    Job threads never touch it: results come back through futures and are
    applied between levels, so conditions always see a settled view.
    """
    jobs: Dict[str, JobRun]
    failed_jobs: Set[str] = field(default_factory=set)
    halted: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def condition_context(self, env: Mapping[str, str]) -> ConditionContext:
        return ConditionContext(failed=bool(self.failed_jobs), cancelled=self.cancelled, env=env)

    def record(self, name: str, status: Status, error: Optional[str] = None, continue_on_error: bool = False) -> None:
        self.jobs[name].finish(status, error)
        if status == Status.FAILURE:
            self.failed_jobs.add(name)
            if not continue_on_error:
                self.halted = True


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

class Scheduler:
    """
    Runs a compiled workflow level by level.

    Every job of a level is dispatched to a thread pool; the next level is
    evaluated only after each of them reached a terminal status.
    """

    def __init__(
        self,
        compiled: "CompiledWorkflow",
        *,
        run_id: Optional[str] = None,
        artifact_root: str | Path | None = None,
        keep_workspace: bool = False,
        max_workers: Optional[int] = None,
        runtime_env: Optional[Mapping[str, str]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        on_retry: Optional[Callable[[RetryEvent], None]] = None,
        console: Optional[Console] = None,
    ):
        self.compiled = compiled
        self.run_id = run_id or settings.run_id() or settings.new_run_id(compiled.name)
        self.artifact_root = Path(artifact_root) if artifact_root else settings.artifacts_dir(self.run_id)
        self.keep_workspace = keep_workspace or settings.keep_workspace()
        self.max_workers = max_workers or settings.max_workers()
        self.runtime_env = os.environ if runtime_env is None else runtime_env
        self.console = console or get_console()
        self.store = ArtifactStore(self.artifact_root)
        self.state = RunState(jobs={name: JobRun(name) for name in compiled.jobs})
        # executor name -> error, for workspaces that failed to come up
        self.broken: Dict[str, str] = {}
        self._ready: List[Executor] = []
        # every executor whose setup_workspace was called, even if it failed part way
        self._attempted: List[Executor] = []
        self._ctx = ExecutionContext(
            run_id=self.run_id,
            is_cancelled=self.state.cancel_event.is_set,
            on_retry=on_retry,
            console=self.console,
        )
        self._sleep = sleep
        # back-off waits end early when the run is cancelled
        self._ctx.sleep = sleep or self.state.cancel_event.wait

    # ---- public ----

    def cancel(self) -> None:
        """
        Mark the run cancelled and stop every running unit. Calling it again
        also stops units of jobs that were dispatched to unwind the run.
        """
        if self.state.cancelled:
            self._terminate_all()
            return
        log.warning("run %s cancelled", self.run_id, extra={"event": "run.cancelled", "run_id": self.run_id})
        self.console.print_info("\nCancelling run: stopping running steps...")
        self.state.cancel_event.set()
        self._terminate_all()

    def _terminate_all(self) -> None:
        for ex in self.compiled.executors.values():
            try:
                ex.terminate()
            except Exception:
                log.exception("terminate failed for executor %s", ex.name)

    def run(self) -> RunResult:
        compiled = self.compiled
        self.console.print_run_started(compiled.name, self.run_id, len(compiled.jobs), len(compiled.levels))
        log.info(
            "run started", extra={"event": "run.started", "run_id": self.run_id, "workflow": compiled.name},
        )

        previous = self._install_sigterm()
        cleanup_ran = False
        try:
            try:
                self._setup_workspaces()
            except KeyboardInterrupt:
                self.cancel()
                for name in compiled.executors:
                    if name not in self.broken and all(ex.name != name for ex in self._ready):
                        self.broken[name] = "run cancelled before workspace setup"
            for idx, level in enumerate(compiled.levels):
                self._run_level(idx, level)
        except KeyboardInterrupt:
            # interrupted between levels
            self.cancel()
            for level in compiled.levels:
                for name in level:
                    if not self.state.jobs[name].status.terminal:
                        self.state.record(name, Status.CANCELLED, "run cancelled")
        finally:
            self._cleanup_workspaces()
            cleanup_ran = True
            self._restore_sigterm(previous)

        result = RunResult(
            workflow=compiled.name,
            run_id=self.run_id,
            jobs=self.state.jobs,
            levels=compiled.levels,
            artifact_root=str(self.artifact_root),
            cancelled=self.state.cancelled,
            cleanup_ran=cleanup_ran,
        )
        self.console.print_results(result.statuses())
        log.info(
            "run finished", extra={"event": "run.finished", "run_id": self.run_id, "exit_code": result.exit_code},
        )
        return result

    # ---- signals ----

    def _install_sigterm(self):
        if threading.current_thread() is not threading.main_thread():
            return None
        try:
            return signal.signal(signal.SIGTERM, self._on_sigterm)
        except ValueError:
            return None

    def _on_sigterm(self, signum, frame) -> None:
        # runs between bytecodes of the main thread: no console or log output here
        self.state.cancel_event.set()
        self._terminate_all()

    def _restore_sigterm(self, previous) -> None:
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)

    # ---- workspaces ----

    def _setup_workspaces(self) -> None:
        grouped = self.compiled.units_by_executor
        for name, ex in self.compiled.executors.items():
            ex.bind(
                self.run_id, keep_workspace=self.keep_workspace, runtime_env=self.runtime_env,
                console=self.console, artifact_root=self.artifact_root,
            )
            self._attempted.append(ex)
            try:
                ex.setup_workspace(grouped[name])
            except CipackError as e:
                self.broken[name] = str(e)
                log.error(
                    "setup_workspace failed for executor %s: %s", name, e,
                    extra={"event": "workspace.failed", "executor": name},
                )
                self.console.print_failure(f"executor {name}", str(e), hint="Every job bound to it will fail.")
                continue
            self._ready.append(ex)

    def _cleanup_workspaces(self) -> None:
        grouped = self.compiled.units_by_executor
        errors = 0
        for ex in self._attempted:
            try:
                ex.cleanup_workspace(grouped[ex.name])
            except Exception as e:
                errors += 1
                log.error(
                    "cleanup_workspace failed for executor %s: %s", ex.name, e,
                    extra={"event": "workspace.cleanup_failed", "executor": ex.name},
                )
        self.console.print_cleanup([ex.name for ex in self._attempted], errors)

    # ---- levels ----

    def _run_level(self, idx: int, level: List[str]) -> None:
        dispatch: Dict[str, Dict[str, str]] = {}
        for name in level:
            env = self._admit(name)
            if env is not None:
                dispatch[name] = env
        if not dispatch:
            return

        self.console.print_level(idx, list(dispatch))
        workers = self.max_workers or len(dispatch)
        futures: Dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cipack-job") as pool:
            for name, env in dispatch.items():
                self.state.jobs[name].start()
                self.console.print_job_start(name)
                ctx = self._ctx
                if self.state.cancelled:
                    # jobs dispatched after cancellation are unwinding: their steps run to completion
                    ctx = replace(self._ctx, unwinding=True, sleep=self._sleep or time.sleep)
                futures[pool.submit(self._run_job, name, env, ctx)] = name
            self._wait(list(futures))

        # barrier passed: apply results
        for fut, name in futures.items():
            job = self.compiled.jobs[name]
            try:
                result = fut.result()
            except Exception as e:
                log.exception("job %s crashed", name)
                result = JobResult(name, Status.FAILURE, error=str(e))
            self.state.jobs[name].steps = result.steps
            self.state.record(name, result.status, result.error, job.continue_on_error)
            run = self.state.jobs[name]
            if result.status == Status.FAILURE:
                self.console.print_failure(name, result.error or "failed", is_job=True)
            else:
                self.console.print_job_result(name, result.status.value, run.duration)

    def _wait(self, futures: List[Future]) -> None:
        while True:
            try:
                wait(futures)
                return
            except KeyboardInterrupt:
                # keep waiting: in-flight jobs see the flag and wind down
                self.cancel()

    def _admit(self, name: str) -> Optional[Dict[str, str]]:
        """
        Decide whether `name` runs. Returns its resolved env if it does;
        otherwise records the terminal status and returns None.
        """
        compiled = self.compiled
        job = compiled.jobs[name]
        wf = compiled.workflow
        state = self.state

        try:
            env = resolve_job_env(wf.env, wf.env_from, job.env, job.env_from, self.runtime_env)
        except EnvProviderError as e:
            self._fail_before_start(name, str(e))
            return None

        try:
            cond = parse_condition(job.condition)
            if state.cancelled and not cond.runs_on_unwind:
                state.record(name, Status.CANCELLED, "run cancelled")
                self.console.print_job_skipped(name, "run cancelled")
                return None
            if state.halted and not cond.runs_on_unwind:
                state.record(name, Status.SKIPPED, "run halted after a failure")
                self.console.print_job_skipped(name, "run halted after a failure")
                return None
            if not cond.evaluate(state.condition_context(env)):
                state.record(name, Status.SKIPPED, f"condition: {job.condition}")
                self.console.print_job_skipped(name, f"condition: {job.condition}")
                return None
        except ConditionError as e:
            self._fail_before_start(name, str(e))
            return None

        executor_name = compiled.job_executor[name]
        if executor_name in self.broken:
            if state.cancelled:
                state.record(name, Status.CANCELLED, "run cancelled")
                return None
            self._fail_before_start(name, f"workspace of executor '{executor_name}' is unavailable: {self.broken[executor_name]}")
            return None
        return env

    def _fail_before_start(self, name: str, error: str) -> None:
        job = self.compiled.jobs[name]
        self.state.record(name, Status.FAILURE, error, job.continue_on_error)
        self.console.print_failure(name, error, is_job=True)

    # ---- one job (worker thread) ----

    def _run_job(self, name: str, env: Dict[str, str], ctx: ExecutionContext) -> JobResult:
        job = self.compiled.jobs[name]
        units = self.compiled.units[name]
        ex = self.compiled.executor_for(name)
        extra = {"job": name, "executor": ex.name, "run_id": self.run_id}

        log.info("job started", extra={"event": "job.started", **extra})
        result: Optional[JobResult] = None
        try:
            ex.setup_job(name, units)
            _raise_if_stopping(ctx, name, "before restoring inputs")
            for inp in job.inputs:
                ex.restore_artifact(inp.name, inp.path, name, self.store)
                self.console.print_artifact("RESTORED", inp.name, f"{name}:{inp.path}")
            _raise_if_stopping(ctx, name, "before its steps")

            result = ex.execute_job(name, units, env, ctx)

            if result.status == Status.SUCCESS:
                for artifact, path in job.outputs.items():
                    ex.save_artifact(artifact, path, name, self.store)
                    self.console.print_artifact("SAVED", artifact, f"{name}:{path}")
            return result
        except CancellationError as e:
            log.info("job cancelled: %s", e, extra={"event": "job.cancelled", **extra})
            steps = result.steps if result is not None else []
            return JobResult(name, Status.CANCELLED, steps, error=str(e))
        except CipackError as e:
            log.error("job failed: %s", e, extra={"event": "job.failed", **extra})
            steps = result.steps if result is not None else []
            status = Status.CANCELLED if ctx.stopping() else Status.FAILURE
            return JobResult(name, status, steps, error=str(e))
        finally:
            try:
                ex.cleanup_job(name)
            except Exception as e:
                log.warning(
                    "cleanup_job failed: %s", e, extra={"event": "job.cleanup_failed", **extra},
                )
            log.info("job finished", extra={"event": "job.finished", **extra})


def _raise_if_stopping(ctx: ExecutionContext, name: str, where: str) -> None:
    if ctx.stopping():
        raise CancellationError(f"job '{name}' stopped {where}: run cancelled")
