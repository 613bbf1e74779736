# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional


class CipackError(Exception):
    """Base class for every error raised by cipack."""


# ----------------------------------------------------------------------
# Compile-time errors
# ----------------------------------------------------------------------

class GraphError(CipackError):
    """The `needs` graph cannot be scheduled."""

    def __init__(self, message: str, job: str | None = None):
        super().__init__(message)
        self.job = job


class UnknownDependencyError(GraphError):
    def __init__(self, job: str, missing: str, known: list[str]):
        super().__init__(
            f"Job '{job}' needs missing job '{missing}'. Known jobs: {sorted(known)}",
            job=job,
        )
        self.missing = missing


class CycleError(GraphError):
    def __init__(self, job: str, path: list[str]):
        super().__init__(
            f"Dependency cycle detected at job '{job}': {' -> '.join(path)}",
            job=job,
        )
        self.path = path


class ValidationError(CipackError):
    """The workflow definition is structurally invalid."""


class ConditionError(CipackError):
    """A run condition could not be parsed or evaluated."""

    def __init__(self, condition: str, reason: str):
        super().__init__(f"Invalid condition {condition!r}: {reason}")
        self.condition = condition
        self.reason = reason


# ----------------------------------------------------------------------
# Run-time errors
# ----------------------------------------------------------------------

@dataclass
class UnitError(CipackError):
    """A step's unit exited non-zero after all its attempts."""
    job: str
    step: str
    exit_code: int
    attempts: int = 1
    timed_out: bool = False

    def __str__(self) -> str:
        if self.timed_out:
            return f"[{self.job}] step '{self.step}' timed out (exit={self.exit_code})"
        suffix = f" after {self.attempts} attempts" if self.attempts > 1 else ""
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}){suffix}"


@dataclass
class ExecutorError(CipackError):
    """
    A lifecycle hook failed.

    Workspace-level hooks fail every job bound to the executor,
    job-level hooks fail only `job`.
    """
    executor: str
    hook: str
    message: str
    job: Optional[str] = None
    details: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"executor '{self.executor}' {self.hook} failed: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class ArtifactError(CipackError):
    artifact: str
    message: str
    job: Optional[str] = None

    def __str__(self) -> str:
        where = f" (job={self.job})" if self.job else ""
        return f"artifact '{self.artifact}': {self.message}{where}"


class EnvProviderError(CipackError):
    """An environment provider could not produce its variables."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"env provider '{provider}': {message}")
        self.provider = provider


class CancellationError(CipackError):
    """The run was cancelled. Not a failure: jobs end with status `cancelled`."""
