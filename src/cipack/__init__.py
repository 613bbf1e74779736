from .compiler import CompiledWorkflow, compile_workflow
from .dsl import JobBuilder, build, job, matrix, retry, sh, step, wf, workflow
from .env import from_file, required, static
from .executors import DockerExecutor, Executor, LocalExecutor
from .model import ArtifactInput, Backoff, Job, RetryPolicy, RunResult, Status, Step, Workflow

__all__ = [
    "compile_workflow", "CompiledWorkflow",
    "job", "sh", "step", "retry", "matrix", "wf", "workflow", "JobBuilder", "build",
    "static", "from_file", "required",
    "Executor", "LocalExecutor", "DockerExecutor",
    "ArtifactInput", "Backoff", "Job", "RetryPolicy", "RunResult", "Status", "Step", "Workflow",
]
