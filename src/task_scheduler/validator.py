"""Structural and cross-field validation of task records before they are written."""

from __future__ import annotations

import json
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from task_scheduler.errors import NotFoundError, ValidationError
from task_scheduler.models import (
    MAX_TIMEOUT_SECONDS,
    TaskDraft,
    TaskMethod,
    TaskStatus,
    TaskView,
)
from task_scheduler.storage.common import from_iso, to_db_datetime

COMMAND_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+(?:/[A-Za-z0-9_\-]+)*$")
COMMAND_MIN_CHARS = 2
COMMAND_MAX_CHARS = 32
DESCRIPTION_MIN_CHARS = 8
DESCRIPTION_MAX_CHARS = 2047

ParentLookup = Callable[[int], TaskView | None]


@dataclass(slots=True)
class ValidatedTask:
    """Task fields normalized to the storage representation."""

    command: str
    method: TaskMethod
    status: TaskStatus
    timeout_seconds: int
    verbose: bool
    parent_id: int | None
    parallel: bool
    not_before: datetime | None
    data_json: str | None
    results_json: str | None
    description: str | None
    created_by: str | None
    pid: int | None
    time_spent: float | None


def validate_task(task: TaskDraft | TaskView, *, lookup_parent: ParentLookup) -> ValidatedTask:
    """Validate a draft or an existing record and normalize it for storage.

    Field errors are collected and raised together as one ``ValidationError``.
    A ``parent_id`` that references no stored task raises ``NotFoundError``.
    """

    errors: list[str] = []

    command = _validate_command(task.command, errors)
    method = _coerce_enum(TaskMethod, task.method, "method", errors)
    status = (
        TaskStatus.NEW
        if task.status is None or task.status == ""
        else _coerce_enum(TaskStatus, task.status, "status", errors)
    )
    timeout_seconds = _validate_timeout(task.timeout_seconds, errors)
    not_before = _validate_not_before(task.not_before, errors)
    description = _validate_description(task.description, errors)
    pid = _validate_pid(getattr(task, "pid", None), errors)
    time_spent = _validate_time_spent(getattr(task, "time_spent", None), errors)

    data_json = _serialize_payload(task.data, "data", errors)
    results_json = _serialize_payload(task.results, "results", errors)

    parallel = bool(task.parallel)
    parent_id = task.parent_id
    if parent_id is not None and (isinstance(parent_id, bool) or not isinstance(parent_id, int)):
        errors.append(f"Invalid parent_id: {parent_id!r}")
        parent_id = None

    if parent_id is None and parallel:
        errors.append("Parallel was specified without parent_id")

    if errors:
        raise ValidationError("; ".join(errors), errors=errors)

    parent: TaskView | None = None
    if parent_id is not None:
        parent = lookup_parent(parent_id)
        if parent is None:
            raise NotFoundError(f"Parent task {parent_id} does not exist")
        own_id = getattr(task, "id", None)
        if own_id is not None and _is_ancestor_or_self(own_id, parent, lookup_parent):
            raise ValidationError(f"Task {own_id} cannot be a descendant of itself")
        if parallel and parent.method != TaskMethod.BACKGROUND:
            raise ValidationError(
                'Parallel tasks require a parent task running in method "background"',
            )

    return ValidatedTask(
        command=command,
        method=method,
        status=status,
        timeout_seconds=timeout_seconds,
        verbose=bool(task.verbose),
        parent_id=parent_id,
        parallel=parallel,
        not_before=not_before,
        data_json=data_json,
        results_json=results_json,
        description=description,
        created_by=task.created_by,
        pid=pid,
        time_spent=time_spent,
    )


def check_payload(value: Any, *, field_name: str = "data") -> None:
    """Raise ``ValidationError`` if value is not a plain JSON-shaped payload."""

    errors: list[str] = []
    _check_payload_value(value, field_name, errors)
    if errors:
        raise ValidationError("; ".join(errors), errors=errors)


def serialize_payload(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, allow_nan=False)


def deserialize_payload(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def _validate_command(value: object, errors: list[str]) -> str:
    if not isinstance(value, str) or not value.strip():
        errors.append("Please ensure that the task has a command specified")
        return ""
    command = value.strip()
    if len(command) < COMMAND_MIN_CHARS:
        errors.append(f"Task command must have at least {COMMAND_MIN_CHARS} characters")
    elif len(command) > COMMAND_MAX_CHARS:
        errors.append(f"Task command must have at most {COMMAND_MAX_CHARS} characters")
    if not COMMAND_PATTERN.match(command):
        errors.append(
            "Task command may only contain alphanumeric characters, '_', '-' "
            f"and '/' path separators, got {command!r}",
        )
    return command


def _coerce_enum(  # noqa: ANN202
    enum_type,  # noqa: ANN001
    value: object,
    field_name: str,
    errors: list[str],
):
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        errors.append(f"Invalid {field_name} {value!r}, expected one of: {allowed}")
        return next(iter(enum_type))


def _validate_timeout(value: object, errors: list[str]) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"Invalid timeout_seconds: {value!r}")
        return 0
    if not 0 <= value <= MAX_TIMEOUT_SECONDS:
        errors.append(
            f"Please specify a valid time limit (between 0 and {MAX_TIMEOUT_SECONDS} seconds)",
        )
    return value


def _validate_not_before(value: object, errors: list[str]) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_db_datetime(value)
    if isinstance(value, str):
        try:
            return to_db_datetime(from_iso(value))
        except ValueError:
            pass
    errors.append(f"Please specify a valid not_before date / time, got {value!r}")
    return None


def _validate_description(value: object, errors: list[str]) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        errors.append("Task description must be a string")
        return None
    if len(value) < DESCRIPTION_MIN_CHARS:
        errors.append(f"Please use at least {DESCRIPTION_MIN_CHARS} characters for the description")
    elif len(value) > DESCRIPTION_MAX_CHARS:
        errors.append(f"Please use at most {DESCRIPTION_MAX_CHARS} characters for the description")
    return value


def _validate_pid(value: object, errors: list[str]) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        errors.append(f"Please specify a valid pid (process id), got {value!r}")
        return None
    return value


def _validate_time_spent(value: object, errors: list[str]) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float) or value < 0:
        errors.append(f"Please specify a valid time spent, got {value!r}")
        return None
    return float(value)


def _serialize_payload(value: Any, field_name: str, errors: list[str]) -> str | None:
    before = len(errors)
    _check_payload_value(value, field_name, errors)
    if len(errors) != before:
        return None
    return serialize_payload(value)


def _check_payload_value(value: Any, path: str, errors: list[str]) -> None:
    stack: list[tuple[Any, str]] = [(value, path)]
    while stack:
        current, current_path = stack.pop()
        if current is None or isinstance(current, bool | int | str):
            continue
        if isinstance(current, float):
            if not math.isfinite(current):
                errors.append(f"Task {current_path} contains a non-finite number")
            continue
        if isinstance(current, list | tuple):
            stack.extend((item, f"{current_path}[{index}]") for index, item in enumerate(current))
            continue
        if isinstance(current, dict):
            for key, item in current.items():
                if not isinstance(key, str):
                    errors.append(f"Task {current_path} has a non-string key {key!r}")
                    continue
                stack.append((item, f"{current_path}.{key}"))
            continue
        errors.append(
            f"Task {current_path} has an unsupported data type: {type(current).__name__}",
        )


def _is_ancestor_or_self(task_id: int, parent: TaskView, lookup_parent: ParentLookup) -> bool:
    seen: set[int] = set()
    current: TaskView | None = parent
    while current is not None and current.id not in seen:
        if current.id == task_id:
            return True
        seen.add(current.id)
        current = lookup_parent(current.parent_id) if current.parent_id is not None else None
    return False
