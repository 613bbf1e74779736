# compiler.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .artifacts import check_artifact_name, safe_relpath
from .conditions import parse_condition
from .dag import ancestors, compute_levels
from .errors import ValidationError
from .executors.base import Executor
from .executors.local import LocalExecutor
from .model import Job, RunResult, Unit, Workflow
from .retry import RetryEvent, resolve_retry
from .timeouts import format_timeout, parse_timeout, resolve_timeout

log = logging.getLogger(__name__)

_JOB_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")


@dataclass
class CompiledWorkflow:
    """
    A validated workflow, ready to run.

    Holds the execution levels, every job's units (retry and timeout
    resolved) and one canonical executor instance per executor name.
    """
    workflow: Workflow
    levels: List[List[str]]
    units: Dict[str, List[Unit]]
    executors: Dict[str, Executor]
    job_executor: Dict[str, str]
    warnings: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.workflow.name

    @property
    def jobs(self) -> Dict[str, Job]:
        return self.workflow.jobs

    def executor_for(self, job_name: str) -> Executor:
        return self.executors[self.job_executor[job_name]]

    @property
    def units_by_executor(self) -> Dict[str, List[Unit]]:
        """Every unit grouped by executor name, in level order."""
        grouped: Dict[str, List[Unit]] = {name: [] for name in self.executors}
        for level in self.levels:
            for job_name in level:
                grouped[self.job_executor[job_name]].extend(self.units[job_name])
        return grouped

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable plan."""
        jobs: Dict[str, Any] = {}
        for level in self.levels:
            for name in level:
                job = self.jobs[name]
                jobs[name] = {
                    "executor": self.job_executor[name],
                    "needs": list(job.needs),
                    "condition": job.condition,
                    "continue_on_error": job.continue_on_error,
                    "env": dict(job.env),
                    "inputs": [{"name": i.name, "path": i.path} for i in job.inputs],
                    "outputs": dict(job.outputs),
                    "steps": [
                        {
                            "name": u.name,
                            "run": u.step.run,
                            "condition": u.step.condition,
                            "workdir": u.step.workdir,
                            "timeout": format_timeout(u.timeout) if u.timeout is not None else None,
                            "retry": {
                                "max_attempts": u.retry.max_attempts,
                                "backoff": u.retry.backoff.value,
                                "min_time": u.retry.min_time,
                                "max_time": u.retry.max_time,
                            },
                        }
                        for u in self.units[name]
                    ],
                }
        return {
            "workflow": self.name,
            "levels": [list(level) for level in self.levels],
            "executors": {name: ex.kind for name, ex in self.executors.items()},
            "jobs": jobs,
        }

    def run(
        self,
        run_id: Optional[str] = None,
        artifact_root: str | Path | None = None,
        keep_workspace: bool = False,
        max_workers: Optional[int] = None,
        *,
        runtime_env: Optional[Mapping[str, str]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        on_retry: Optional[Callable[[RetryEvent], None]] = None,
    ) -> RunResult:
        """Execute every level in order and return the per-job results."""
        from .runner import Scheduler

        scheduler = Scheduler(
            self,
            run_id=run_id,
            artifact_root=artifact_root,
            keep_workspace=keep_workspace,
            max_workers=max_workers,
            runtime_env=runtime_env,
            sleep=sleep,
            on_retry=on_retry,
        )
        return scheduler.run()


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def _check_job(key: str, job: Job) -> None:
    if key != job.name:
        raise ValidationError(f"Job registered as '{key}' is named '{job.name}'")
    if not _JOB_NAME_RE.match(job.name):
        raise ValidationError(
            f"Invalid job name '{job.name}': use letters, digits, '_', '-' and '.'"
        )
    if not job.steps:
        raise ValidationError(f"Job '{job.name}' has no steps")

    seen: set[str] = set()
    for step in job.steps:
        if not step.name:
            raise ValidationError(f"Job '{job.name}' has a step without a name")
        if step.name in seen:
            raise ValidationError(f"Job '{job.name}' has duplicate step name '{step.name}'")
        seen.add(step.name)
        if not step.run or not step.run.strip():
            raise ValidationError(f"Step '{job.name}/{step.name}' has an empty command")
        if step.workdir:
            try:
                safe_relpath(step.workdir, what="workdir")
            except ValueError as e:
                raise ValidationError(f"Step '{job.name}/{step.name}': {e}") from e
        parse_condition(step.condition)
        parse_timeout(step.timeout)

    parse_condition(job.condition)
    parse_timeout(job.timeout)

    for name, path in job.outputs.items():
        try:
            check_artifact_name(name)
            safe_relpath(path, what="output path")
        except ValueError as e:
            raise ValidationError(f"Job '{job.name}' output '{name}': {e}") from e
    for inp in job.inputs:
        try:
            check_artifact_name(inp.name)
            safe_relpath(inp.path, what="input path")
        except ValueError as e:
            raise ValidationError(f"Job '{job.name}' input '{inp.name}': {e}") from e


def _check_artifacts(jobs: Mapping[str, Job]) -> List[str]:
    producers: Dict[str, str] = {}
    for name in sorted(jobs):
        for artifact in jobs[name].outputs:
            other = producers.get(artifact)
            if other is not None:
                raise ValidationError(
                    f"Artifact '{artifact}' is produced by both '{other}' and '{name}'"
                )
            producers[artifact] = name

    warnings: List[str] = []
    for name in sorted(jobs):
        deps = None
        for inp in jobs[name].inputs:
            producer = producers.get(inp.name)
            if producer is None:
                raise ValidationError(
                    f"Job '{name}' restores artifact '{inp.name}' but no job produces it"
                )
            if deps is None:
                deps = ancestors(jobs, name)
            if producer not in deps:
                warnings.append(
                    f"Job '{name}' restores '{inp.name}' from '{producer}' without needing it; "
                    "the artifact may not exist yet"
                )
    return warnings


def _bind_executors(jobs: Mapping[str, Job], levels: List[List[str]]):
    default = LocalExecutor()
    executors: Dict[str, Executor] = {}
    job_executor: Dict[str, str] = {}
    for level in levels:
        for name in level:
            ex = jobs[name].executor or default
            known = executors.get(ex.name)
            if known is None:
                executors[ex.name] = ex
            elif known is not ex:
                if type(known) is not type(ex):
                    raise ValidationError(
                        f"Executor name '{ex.name}' is used by both a {known.kind} "
                        f"and a {ex.kind} executor"
                    )
                if known.config() != ex.config():
                    raise ValidationError(
                        f"Executor name '{ex.name}' is used by two {ex.kind} executors with "
                        f"different settings (job '{name}'); give one of them another name"
                    )
                log.debug("job %s shares executor %s with an earlier job", name, ex.name)
            job_executor[name] = ex.name
    return executors, job_executor


def compile_workflow(workflow: Workflow) -> CompiledWorkflow:
    """
    Validate `workflow` and compute its execution plan.

    Raises ValidationError, GraphError or ConditionError; nothing is
    compiled partially.
    """
    if not workflow.name or not workflow.name.strip():
        raise ValidationError("Workflow name cannot be empty")
    if not workflow.jobs:
        raise ValidationError(f"Workflow '{workflow.name}' has no jobs")
    parse_timeout(workflow.timeout)

    for key, job in workflow.jobs.items():
        _check_job(key, job)

    levels = compute_levels(workflow.jobs)
    warnings = _check_artifacts(workflow.jobs)
    for w in warnings:
        log.warning(w, extra={"event": "compile.warning", "workflow": workflow.name})

    units: Dict[str, List[Unit]] = {}
    for name, job in workflow.jobs.items():
        units[name] = [
            Unit(
                job=name,
                step=step,
                retry=resolve_retry(step.retry, job.retry, workflow.retry),
                timeout=resolve_timeout(step.timeout, job.timeout, workflow.timeout),
            )
            for step in job.steps
        ]

    executors, job_executor = _bind_executors(workflow.jobs, levels)

    log.debug(
        "compiled %s: %d jobs in %d levels", workflow.name, len(workflow.jobs), len(levels),
        extra={"event": "compile.done", "workflow": workflow.name},
    )
    return CompiledWorkflow(
        workflow=workflow,
        levels=levels,
        units=units,
        executors=executors,
        job_executor=job_executor,
        warnings=warnings,
    )
