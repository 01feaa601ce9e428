from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from task_scheduler.errors import NotFoundError, ValidationError
from task_scheduler.models import TaskDraft, TaskMethod, TaskStatus, TaskView
from task_scheduler.validator import check_payload, validate_task

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Validation"),
]


def _view(
    task_id: int,
    *,
    parent_id: int | None = None,
    method: TaskMethod = TaskMethod.NORMAL,
    status: TaskStatus = TaskStatus.NEW,
) -> TaskView:
    now = datetime.now(tz=UTC)
    return TaskView(
        id=task_id,
        status=status,
        command="demo",
        method=method,
        timeout_seconds=30,
        verbose=False,
        parent_id=parent_id,
        parallel=False,
        not_before=None,
        data=None,
        results=None,
        pid=None,
        worker_id=None,
        executed_at=None,
        time_spent=None,
        description=None,
        created_by=None,
        created_at=now,
        updated_at=now,
    )


def _lookup(*tasks: TaskView):
    by_id = {task.id: task for task in tasks}
    return by_id.get


def test_defaults_and_normalization() -> None:
    validated = validate_task(
        TaskDraft(
            command=" reports/daily ",
            status=None,
            not_before="2026-10-17T12:00:00+02:00",
            data={"items": [1, 2.5, "x", None, True]},
        ),
        lookup_parent=_lookup(),
    )

    assert validated.command == "reports/daily"
    assert validated.status == TaskStatus.NEW
    assert validated.method == TaskMethod.NORMAL
    assert validated.timeout_seconds == 30
    assert validated.not_before == datetime(2026, 10, 17, 10, 0)
    assert validated.data_json == '{"items": [1, 2.5, "x", null, true]}'


def test_timeout_upper_bound_is_inclusive() -> None:
    validated = validate_task(
        TaskDraft(command="demo", timeout_seconds=1800),
        lookup_parent=_lookup(),
    )
    assert validated.timeout_seconds == 1800

    with pytest.raises(ValidationError, match="valid time limit"):
        validate_task(TaskDraft(command="demo", timeout_seconds=1801), lookup_parent=_lookup())


def test_field_errors_are_collected_together() -> None:
    with pytest.raises(ValidationError) as error_info:
        validate_task(
            TaskDraft(
                command="x",
                method="sometimes",
                timeout_seconds=-1,
                description="short",
                not_before="next tuesday",
            ),
            lookup_parent=_lookup(),
        )

    errors = error_info.value.errors
    assert len(errors) == 5
    assert any("at least 2 characters" in message for message in errors)
    assert any("Invalid method" in message for message in errors)
    assert any("valid time limit" in message for message in errors)
    assert any("description" in message for message in errors)
    assert any("not_before" in message for message in errors)


@pytest.mark.parametrize("command", ["../escape", "/bin/sh", "rm -rf", "a" * 33, ""])
def test_rejects_unsafe_or_malformed_commands(command: str) -> None:
    with pytest.raises(ValidationError):
        validate_task(TaskDraft(command=command), lookup_parent=_lookup())


def test_parallel_requires_parent() -> None:
    with pytest.raises(ValidationError, match="without parent_id"):
        validate_task(TaskDraft(command="demo", parallel=True), lookup_parent=_lookup())


def test_parallel_requires_background_parent() -> None:
    normal_parent = _view(1)
    background_parent = _view(2, method=TaskMethod.BACKGROUND)
    lookup = _lookup(normal_parent, background_parent)

    with pytest.raises(ValidationError, match="background"):
        validate_task(TaskDraft(command="demo", parent_id=1, parallel=True), lookup_parent=lookup)

    validated = validate_task(
        TaskDraft(command="demo", parent_id=2, parallel=True),
        lookup_parent=lookup,
    )
    assert validated.parallel is True
    assert validated.parent_id == 2


def test_missing_parent_is_not_found() -> None:
    with pytest.raises(NotFoundError, match="Parent task 7"):
        validate_task(TaskDraft(command="demo", parent_id=7), lookup_parent=_lookup())


def test_rejects_parent_cycles_on_update() -> None:
    first = _view(1, parent_id=2)
    second = _view(2, parent_id=1)

    with pytest.raises(ValidationError, match="descendant of itself"):
        validate_task(first, lookup_parent=_lookup(first, second))

    with pytest.raises(ValidationError, match="descendant of itself"):
        validate_task(_view(3, parent_id=3), lookup_parent=_lookup(_view(3)))


def test_payload_rejects_non_json_values() -> None:
    with pytest.raises(ValidationError, match="unsupported data type: set"):
        check_payload({"tags": {"a", "b"}})
    with pytest.raises(ValidationError, match="non-finite"):
        check_payload([1.0, float("nan")], field_name="results")
    with pytest.raises(ValidationError, match="non-string key"):
        check_payload({1: "one"})

    check_payload({"nested": [{"deep": [None, False, 0, ""]}]})
