"""Domain models for the task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

Payload = Union[None, bool, int, float, str, list["Payload"], dict[str, "Payload"]]


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    NEW = "new"
    WAITING_PARENT = "waiting_parent"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    DELETED = "deleted"
    ABORTED = "aborted"


class TaskMethod(str, Enum):
    """Execution strategy selected by the dispatcher."""

    BACKGROUND = "background"
    INTERNAL = "internal"
    NORMAL = "normal"
    FUNCTION = "function"


TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.TIMEOUT,
        TaskStatus.ABORTED,
        TaskStatus.DELETED,
    },
)
CLAIMABLE_STATUSES = (TaskStatus.NEW, TaskStatus.WAITING_PARENT)

DEFAULT_TIMEOUT_SECONDS = 30
MAX_TIMEOUT_SECONDS = 1800


@dataclass(slots=True)
class TaskDraft:
    """Input payload for inserting a task."""

    command: str
    method: TaskMethod | str = TaskMethod.NORMAL
    status: TaskStatus | str | None = TaskStatus.NEW
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    verbose: bool = False
    parent_id: int | None = None
    parallel: bool = False
    not_before: datetime | str | None = None
    data: Any = None
    results: Any = None
    description: str | None = None
    created_by: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task record."""

    id: int
    status: TaskStatus
    command: str
    method: TaskMethod
    timeout_seconds: int
    verbose: bool
    parent_id: int | None
    parallel: bool
    not_before: datetime | None
    data: Payload
    results: Payload
    pid: int | None
    worker_id: str | None
    executed_at: datetime | None
    time_spent: float | None
    description: str | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class ClaimedTask:
    """A task together with the token that proves ownership of its claim."""

    task: TaskView
    claim_token: str


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: int
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]
