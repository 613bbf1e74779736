from .base import ExecutionContext, Executor, ProcessExecutor
from .docker import DockerExecutor
from .local import LocalExecutor

__all__ = ["ExecutionContext", "Executor", "ProcessExecutor", "LocalExecutor", "DockerExecutor"]
