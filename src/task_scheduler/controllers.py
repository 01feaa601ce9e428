"""Controllers for task-scheduler CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from task_scheduler.backend import SubprocessExecutor, SubprocessWorkerSpawner
from task_scheduler.cascade import StatusCascadeEngine
from task_scheduler.config import Settings
from task_scheduler.errors import ValidationError
from task_scheduler.models import TaskStatus, TaskView
from task_scheduler.repository import TaskStore
from task_scheduler.services import SubmitTask, TaskAdminService, TaskSubmissionService
from task_scheduler.worker import TaskDispatcher


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for task submission."""

    db_path: Path | None
    command: str
    method: str
    timeout_seconds: int | None
    parent_id: int | None
    parallel: bool
    not_before: str | None
    data: str | None
    description: str | None
    verbose: bool
    auto_dispatch: bool | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for dispatcher execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = None
    min_id: int | None = None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for operations addressing one task."""

    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class ReportCommand:
    """CLI input for a background process reporting its outcome."""

    db_path: Path | None
    task_id: int
    claim_token: str
    status: str
    results: str | None


class TaskCliController:
    """Coordinates submission, dispatch and administration CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            service = TaskSubmissionService(
                store=store,
                spawner=SubprocessWorkerSpawner(
                    settings.db_path,
                    max_idle_polls=settings.dispatcher.max_idle_polls,
                ),
                default_timeout_seconds=settings.execution.default_timeout_seconds,
                auto_dispatch=settings.execution.auto_dispatch,
            )
            task = service.submit(
                SubmitTask(
                    command=command.command,
                    method=command.method,
                    timeout_seconds=command.timeout_seconds,
                    parent_id=command.parent_id,
                    parallel=command.parallel,
                    not_before=command.not_before,
                    data=_parse_json_option(command.data, "--data"),
                    description=command.description,
                    verbose=command.verbose,
                    created_by="cli",
                    auto_dispatch=command.auto_dispatch,
                ),
            )
        return [
            f"Task submitted: task_id={task.id} command={task.command} "
            f"method={task.method.value} status={task.status.value}",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            dispatcher = TaskDispatcher(
                store=store,
                executor=SubprocessExecutor(settings.execution.commands_root),
                worker_id=settings.dispatcher.worker_id,
                cascade=StatusCascadeEngine(store),
                poll_interval_seconds=settings.dispatcher.poll_interval_seconds,
                min_id=command.min_id,
                reap_dead_processes=settings.dispatcher.reap_dead_processes,
            )
            summary = (
                dispatcher.run_once()
                if command.once
                else dispatcher.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls or settings.dispatcher.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} timeouts={summary.timeouts} "
            f"detached={summary.detached} ignored={summary.ignored} "
            f"reaped={summary.reaped} idle_polls={summary.idle_polls}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _store(settings) as store:
            tasks = TaskAdminService(store=store).list_tasks(
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def inspect_task(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            details = TaskAdminService(store=store).inspect(command.task_id)

        task = details.task
        lines = [
            f"Task: {task.id}",
            f"Command: {task.command}",
            f"Method: {task.method.value}",
            f"Status: {task.status.value}",
            f"Parent: {task.parent_id if task.parent_id is not None else '-'}",
            f"Parallel: {task.parallel}",
            f"Timeout: {task.timeout_seconds}s",
            f"Not before: {task.not_before.isoformat() if task.not_before else '-'}",
            f"Description: {task.description or '-'}",
            f"Pid: {task.pid if task.pid is not None else '-'}",
            f"Worker: {task.worker_id or '-'}",
            f"Executed at: {task.executed_at.isoformat() if task.executed_at else '-'}",
            f"Time spent: {task.time_spent if task.time_spent is not None else '-'}",
            f"Data: {json.dumps(task.data, ensure_ascii=False)}",
            f"Results: {json.dumps(task.results, ensure_ascii=False)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def status(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            status = TaskAdminService(store=store).get_status(command.task_id)
        return [status.value]

    def reset(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            affected = TaskAdminService(store=store).reset(command.task_id)
        return [f"Task reset: task_id={command.task_id} affected={affected}"]

    def abort(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            affected = TaskAdminService(store=store).abort(command.task_id)
        return [f"Task aborted: task_id={command.task_id} affected={affected}"]

    def fail(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            affected = TaskAdminService(store=store).fail(command.task_id)
        return [f"Task failed: task_id={command.task_id} affected={affected}"]

    def delete(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            affected = TaskAdminService(store=store).delete(command.task_id)
        return [f"Task deleted: task_id={command.task_id} affected={affected}"]

    def report(self, command: ReportCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = _parse_status(command.status)
        if status is None:
            raise ValidationError("A status is required")
        with _store(settings) as store:
            applied = TaskAdminService(store=store).report(
                command.task_id,
                claim_token=command.claim_token,
                status=status,
                results=_parse_json_option(command.results, "--results"),
            )
        if not applied:
            return [f"Report ignored: task_id={command.task_id} claim is no longer current"]
        return [f"Report recorded: task_id={command.task_id} status={status.value}"]

    def check_pid(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            alive = TaskAdminService(store=store).check_pid(command.task_id)
        return [f"Process alive: task_id={command.task_id} alive={str(alive).lower()}"]


def _task_line(task: TaskView) -> str:
    parent = task.parent_id if task.parent_id is not None else "-"
    return (
        f"{task.id} command={task.command} method={task.method.value} "
        f"status={task.status.value} parent={parent} "
        f"created_at={task.created_at.isoformat()}"
    )


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value.strip().lower())
    except ValueError as error:
        raise ValidationError(f"Unsupported task status: {value!r}") from error


def _parse_json_option(value: str | None, option: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as error:
        raise ValidationError(f"{option} must be valid JSON: {error}") from error


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _store(settings: Settings) -> Iterator[TaskStore]:
    store = TaskStore(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.storage.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
