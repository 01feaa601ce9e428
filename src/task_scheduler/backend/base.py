"""Interfaces for process execution and worker spawning."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from task_scheduler.models import TaskMethod


class ExecutionStatus(str, Enum):
    """Normalized exit status of one execution."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(slots=True)
class ExecutionRequest:
    """Inputs required to execute one claimed task."""

    task_id: int
    command: str
    payload: Any
    timeout_seconds: int
    method: TaskMethod = TaskMethod.NORMAL
    verbose: bool = False
    environment: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ExecutionResult:
    """Execution outcome reported by a process executor."""

    exit_status: ExecutionStatus
    output: Any
    exit_code: int | None = None
    process_id: int | None = None
    stderr: str = ""


class ProcessExecutor(Protocol):
    """Protocol implemented by process execution services."""

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run to completion (or timeout) and return the outcome.

        A timeout is reported either as ``ExecutionStatus.TIMEOUT`` or by
        raising ``TaskTimeoutError``; the dispatcher records both as
        ``timeout``. ``SubprocessExecutor`` uses the former. Start failures
        raise ``ExecutionError``.
        """

    def start_detached(self, request: ExecutionRequest) -> int:
        """Start without waiting and return the process id."""


class WorkerSpawner(Protocol):
    """Starts one detached dispatcher process."""

    def spawn(self) -> int | None:
        """Start a worker; returns its pid, or ``None`` when this spawner's worker still runs."""
