# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Union

from .errors import ValidationError
from .timeouts import Timeout

if TYPE_CHECKING:
    from .env import EnvProvider
    from .executors.base import Executor


DEFAULT_CONDITION = "success()"


class Status(str, Enum):
    """Status of a job (or a step) within one run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (Status.PENDING, Status.RUNNING)


class Backoff(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    CONSTANT = "constant"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry configuration for a step.

    max_attempts=1 means a single attempt with no retry.
    Delays (seconds) are clamped to [min_time, max_time].
    """
    max_attempts: int = 1
    backoff: Backoff = Backoff.EXPONENTIAL
    min_time: float = 1.0
    max_time: float = 60.0

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "backoff", Backoff(self.backoff))
        except ValueError:
            valid = ", ".join(b.value for b in Backoff)
            raise ValidationError(f"Unknown backoff {self.backoff!r} (expected one of: {valid})")
        if self.max_attempts < 1:
            raise ValidationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.min_time < 0:
            raise ValidationError(f"min_time must be >= 0, got {self.min_time}")
        if self.max_time < self.min_time:
            raise ValidationError(
                f"max_time ({self.max_time}) must be >= min_time ({self.min_time})"
            )

    @property
    def enabled(self) -> bool:
        return self.max_attempts > 1


@dataclass(frozen=True)
class Step:
    """A single runnable unit (shell command) inside a job."""
    name: str
    run: str
    condition: str = DEFAULT_CONDITION
    env: Dict[str, str] = field(default_factory=dict)
    retry: Optional[RetryPolicy] = None
    timeout: Timeout = None
    workdir: str | None = None  # relative to the job directory


@dataclass(frozen=True)
class Unit:
    """A step bound to its job, with retry policy and timeout already resolved."""
    job: str
    step: Step
    retry: RetryPolicy
    timeout: Optional[float] = None

    @property
    def name(self) -> str:
        return self.step.name


@dataclass(frozen=True)
class ArtifactInput:
    """Restore artifact `name` to `path` (relative to the job root)."""
    name: str
    path: str = "."


@dataclass
class Job:
    """
    A pipeline job: ordered steps bound to an executor.

    `needs` lists jobs that must reach a terminal state before this one starts.
    `inputs` are restored before the steps run, `outputs` (artifact name ->
    path relative to the job root) are saved after them.
    """
    name: str
    steps: list[Step]
    executor: Optional["Executor"] = None
    needs: list[str] = field(default_factory=list)
    condition: str = DEFAULT_CONDITION
    continue_on_error: bool = False

    env: Dict[str, str] = field(default_factory=dict)
    env_from: List["EnvProvider"] = field(default_factory=list)

    inputs: List[Union[ArtifactInput, str]] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)

    retry: Optional[RetryPolicy] = None
    timeout: Timeout = None

    def __post_init__(self) -> None:
        self.inputs = [
            i if isinstance(i, ArtifactInput) else ArtifactInput(name=str(i))
            for i in self.inputs
        ]


@dataclass
class Workflow:
    """A named set of jobs plus workflow-level defaults."""
    name: str
    jobs: Dict[str, Job]
    env: Dict[str, str] = field(default_factory=dict)
    env_from: List["EnvProvider"] = field(default_factory=list)
    retry: Optional[RetryPolicy] = None
    timeout: Timeout = None

    def __post_init__(self) -> None:
        # accept a plain list of jobs
        if isinstance(self.jobs, (list, tuple)):
            by_name: Dict[str, Job] = {}
            for j in self.jobs:
                if j.name in by_name:
                    raise ValidationError(f"Duplicate job name: {j.name}")
                by_name[j.name] = j
            self.jobs = by_name


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: Status
    exit_code: Optional[int] = None
    attempts: int = 0
    duration: float = 0.0
    error: Optional[str] = None


@dataclass
class JobResult:
    """What an executor reports back from execute_job."""
    job: str
    status: Status
    steps: List[StepResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed_step(self) -> Optional[StepResult]:
        for s in self.steps:
            if s.status == Status.FAILURE:
                return s
        return None


@dataclass
class JobRun:
    """Per-job run state, created on dispatch and finalized on a terminal status."""
    name: str
    status: Status = Status.PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    steps: List[StepResult] = field(default_factory=list)

    def start(self) -> None:
        self.status = Status.RUNNING
        self.started_at = time.time()

    def finish(self, status: Status, error: Optional[str] = None) -> None:
        self.status = status
        self.error = error
        self.finished_at = time.time()

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass
class RunResult:
    workflow: str
    run_id: str
    jobs: Dict[str, JobRun]
    levels: List[List[str]]
    artifact_root: str
    cancelled: bool = False
    cleanup_ran: bool = False

    @property
    def failed_jobs(self) -> List[str]:
        return [n for n, r in self.jobs.items() if r.status == Status.FAILURE]

    @property
    def exit_code(self) -> int:
        ok = (Status.SUCCESS, Status.SKIPPED)
        return 0 if all(r.status in ok for r in self.jobs.values()) else 1

    def statuses(self) -> Dict[str, str]:
        return {n: r.status.value for n, r in self.jobs.items()}

