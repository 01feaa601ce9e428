"""Use-case services for the task queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from task_scheduler.backend import WorkerSpawner, pid_is_alive
from task_scheduler.cascade import StatusCascadeEngine
from task_scheduler.errors import NotFoundError, ValidationError
from task_scheduler.models import (
    DEFAULT_TIMEOUT_SECONDS,
    TaskDetails,
    TaskDraft,
    TaskMethod,
    TaskStatus,
    TaskView,
)
from task_scheduler.repository import TaskStore
from task_scheduler.storage.common import utc_now
from task_scheduler.validator import check_payload

logger = logging.getLogger(__name__)

REPORTABLE_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT})


@dataclass(slots=True)
class SubmitTask:
    """High-level command to submit a task."""

    command: str
    method: TaskMethod | str = TaskMethod.NORMAL
    timeout_seconds: int | None = None
    parent_id: int | None = None
    parallel: bool = False
    not_before: datetime | str | None = None
    data: Any = None
    description: str | None = None
    verbose: bool = False
    created_by: str | None = None
    auto_dispatch: bool | None = None


class TaskSubmissionService:
    """Applies submission defaults, inserts the task and wakes a worker."""

    def __init__(
        self,
        *,
        store: TaskStore,
        spawner: WorkerSpawner | None = None,
        cascade: StatusCascadeEngine | None = None,
        default_timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        auto_dispatch: bool = True,
    ) -> None:
        self.store = store
        self.spawner = spawner
        self.cascade = cascade or StatusCascadeEngine(store)
        self.default_timeout_seconds = default_timeout_seconds
        self.auto_dispatch = auto_dispatch

    def submit(self, command: SubmitTask) -> TaskView:
        timeout_seconds = (
            self.default_timeout_seconds
            if command.timeout_seconds is None
            else command.timeout_seconds
        )
        draft = TaskDraft(
            command=command.command,
            method=command.method,
            status=self._initial_status(command),
            timeout_seconds=timeout_seconds,
            verbose=command.verbose,
            parent_id=command.parent_id,
            parallel=command.parallel,
            not_before=command.not_before,
            data=command.data,
            description=command.description,
            created_by=command.created_by,
        )
        task_id = self.store.insert(draft)
        if draft.status == TaskStatus.WAITING_PARENT:
            self._settle_if_parent_ended(draft.parent_id)
        task = self.store.get_by_id(task_id)
        if task is None:
            raise NotFoundError(f"Task not found after insert: {task_id}")

        if task.timeout_seconds == 0:
            logger.warning(
                "Task %s was submitted without a timeout; a synchronous run is unbounded",
                task_id,
            )
        logger.info(
            "Task submitted: task_id=%s command=%s status=%s",
            task_id,
            task.command,
            task.status.value,
        )

        auto_dispatch = (
            self.auto_dispatch if command.auto_dispatch is None else command.auto_dispatch
        )
        if auto_dispatch and self.spawner is not None:
            self.spawner.spawn()
        return task

    def _initial_status(self, command: SubmitTask) -> TaskStatus:
        if command.parent_id is None or command.parallel:
            return TaskStatus.NEW
        parent = self.store.get_by_id(command.parent_id)
        if parent is None or parent.status == TaskStatus.COMPLETED:
            # A missing parent is rejected by validation during insert.
            return TaskStatus.NEW
        return TaskStatus.WAITING_PARENT

    def _settle_if_parent_ended(self, parent_id: int | None) -> None:
        # Re-read after insert: the parent may have ended before or while the child was written.
        parent = self.store.get_by_id(parent_id) if parent_id is not None else None
        if parent is not None and parent.is_terminal:
            self.cascade.settle_children(parent.id, parent.status)


class TaskAdminService:
    """Operator actions and queries over existing tasks."""

    def __init__(self, *, store: TaskStore, cascade: StatusCascadeEngine | None = None) -> None:
        self.store = store
        self.cascade = cascade or StatusCascadeEngine(store)

    def reset(self, task_id: int) -> int:
        return self.cascade.reset(task_id)

    def abort(self, task_id: int) -> int:
        return self.cascade.abort(task_id)

    def fail(self, task_id: int) -> int:
        return self.cascade.fail(task_id)

    def delete(self, task_id: int) -> int:
        return self.cascade.delete(task_id)

    def get_status(self, task_id: int) -> TaskStatus:
        return self._require(task_id).status

    def list_by_status(
        self,
        statuses: list[TaskStatus],
        *,
        ready_only: bool = False,
    ) -> list[TaskView]:
        return self.store.list_by_status(statuses, ready_only=ready_only)

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[TaskView]:
        return self.store.list_tasks(status=status, limit=limit)

    def inspect(self, task_id: int) -> TaskDetails:
        details = self.store.get_task_details(task_id)
        if details is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return details

    def check_pid(self, task_id: int) -> bool:
        """Return whether the process recorded for the task is still running."""

        task = self._require(task_id)
        if task.pid is None:
            raise ValidationError(f"Task {task_id} has no recorded process id")
        return pid_is_alive(task.pid)

    def report(
        self,
        task_id: int,
        *,
        claim_token: str,
        status: TaskStatus,
        results: Any = None,
    ) -> bool:
        """Record the outcome a background process reports for its own task.

        Returns ``False`` when the claim is no longer current, for example
        because the task was aborted while the process was running.
        """

        if status not in REPORTABLE_STATUSES:
            raise ValidationError(
                f"Reported status must be one of "
                f"{sorted(item.value for item in REPORTABLE_STATUSES)}, got {status.value}",
            )
        check_payload(results, field_name="results")
        task = self._require(task_id)
        time_spent = None
        if task.executed_at is not None:
            time_spent = round(max(0.0, (utc_now() - task.executed_at).total_seconds()), 6)

        applied = self.store.finish_task(
            task_id=task_id,
            claim_token=claim_token,
            status=status,
            results=results,
            time_spent=time_spent,
            event_type="reported",
        )
        if not applied:
            logger.warning("Ignoring report for task %s: claim is no longer current", task_id)
            return False
        self.cascade.settle_children(task_id, status)
        return True

    def _require(self, task_id: int) -> TaskView:
        task = self.store.get_by_id(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task
