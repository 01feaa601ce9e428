"""Process execution backends for the dispatcher."""

from task_scheduler.backend.base import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    ProcessExecutor,
    WorkerSpawner,
)
from task_scheduler.backend.processes import pid_is_alive
from task_scheduler.backend.spawner import SubprocessWorkerSpawner
from task_scheduler.backend.subprocess_executor import SubprocessExecutor

__all__ = [
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionStatus",
    "ProcessExecutor",
    "SubprocessExecutor",
    "SubprocessWorkerSpawner",
    "WorkerSpawner",
    "pid_is_alive",
]
