"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from task_scheduler.backend import ExecutionRequest, ExecutionResult, ExecutionStatus
from task_scheduler.models import TaskDraft
from task_scheduler.repository import TaskStore

ExecutionOutcome = ExecutionResult | Exception | Callable[[ExecutionRequest], ExecutionResult]

FAKE_DETACHED_PID = 424242


class FakeExecutor:
    """In-memory executor returning scripted outcomes per command."""

    def __init__(self, outcomes: dict[str, ExecutionOutcome] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.executed: list[ExecutionRequest] = []
        self.detached: list[ExecutionRequest] = []
        self.detach_error: Exception | None = None

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        self.executed.append(request)
        outcome = self.outcomes.get(
            request.command,
            ExecutionResult(exit_status=ExecutionStatus.SUCCESS, output={"ok": True}, exit_code=0),
        )
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(request)
        return outcome

    def start_detached(self, request: ExecutionRequest) -> int:
        self.detached.append(request)
        if self.detach_error is not None:
            raise self.detach_error
        return FAKE_DETACHED_PID


class FakeSpawner:
    def __init__(self) -> None:
        self.calls = 0

    def spawn(self) -> int | None:
        self.calls += 1
        return None


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[TaskStore]:
    task_store = TaskStore(tmp_path / "tasks.db")
    task_store.init_schema()
    yield task_store
    task_store.close()


@pytest.fixture()
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture()
def fake_spawner() -> FakeSpawner:
    return FakeSpawner()


def make_draft(command: str = "demo", **overrides: object) -> TaskDraft:
    return TaskDraft(command=command, **overrides)  # type: ignore[arg-type]
