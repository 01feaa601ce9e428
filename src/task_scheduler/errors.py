"""Error kinds raised by the task scheduler."""

from __future__ import annotations


class TaskSchedulerError(Exception):
    """Base class for scheduler errors."""


class ValidationError(TaskSchedulerError, ValueError):
    """Malformed or inconsistent task input; nothing was written."""

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


class NotFoundError(TaskSchedulerError, LookupError):
    """Referenced task id does not exist."""


class ExecutionError(TaskSchedulerError, RuntimeError):
    """Process execution could not start or crashed, with retryability hint."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class TaskTimeoutError(TaskSchedulerError, TimeoutError):
    """Execution exceeded its time bound."""
