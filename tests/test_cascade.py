from __future__ import annotations

import allure
import pytest

from conftest import make_draft
from task_scheduler.cascade import StatusCascadeEngine
from task_scheduler.errors import NotFoundError
from task_scheduler.models import TaskMethod, TaskStatus
from task_scheduler.repository import TaskStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Status Cascade"),
]


def _status(store: TaskStore, task_id: int) -> TaskStatus:
    task = store.get_by_id(task_id)
    assert task is not None
    return task.status


def test_abort_reaches_every_descendant(store: TaskStore) -> None:
    root = store.insert(make_draft("root", method=TaskMethod.BACKGROUND))
    child = store.insert(make_draft("child", parent_id=root, status="waiting_parent"))
    grandchild = store.insert(make_draft("grandchild", parent_id=child, status="waiting_parent"))
    unrelated = store.insert(make_draft("unrelated"))

    affected = StatusCascadeEngine(store).abort(root)

    assert affected == 3
    assert [_status(store, task_id) for task_id in (root, child, grandchild)] == [
        TaskStatus.ABORTED,
    ] * 3
    assert _status(store, unrelated) == TaskStatus.NEW


def test_reset_clears_results_across_subtree(store: TaskStore) -> None:
    root = store.insert(make_draft("root", status="failed", results={"error": "boom"}))
    child = store.insert(make_draft("child", parent_id=root, status="failed", results="partial"))

    affected = StatusCascadeEngine(store).reset(root)

    assert affected == 2
    for task_id in (root, child):
        task = store.get_by_id(task_id)
        assert task is not None
        assert task.status == TaskStatus.NEW
        assert task.results is None


def test_fail_and_delete_cascade(store: TaskStore) -> None:
    engine = StatusCascadeEngine(store)
    root = store.insert(make_draft("root"))
    children = [
        store.insert(make_draft(f"child-{index}", parent_id=root, status="waiting_parent"))
        for index in range(3)
    ]

    assert engine.fail(root) == 4
    assert {_status(store, task_id) for task_id in children} == {TaskStatus.FAILED}

    assert engine.delete(root) == 4
    assert {_status(store, task_id) for task_id in [root, *children]} == {TaskStatus.DELETED}
    assert store.claim_next() is None


def test_unknown_root_raises_not_found(store: TaskStore) -> None:
    with pytest.raises(NotFoundError):
        StatusCascadeEngine(store).abort(404)


def test_deep_chains_do_not_hit_recursion_limits(store: TaskStore) -> None:
    parent_id = store.insert(make_draft("link"))
    root = parent_id
    for _ in range(1_100):
        parent_id = store.insert(make_draft("link", parent_id=parent_id, status="waiting_parent"))

    assert StatusCascadeEngine(store).abort(root) == 1_101
    assert _status(store, parent_id) == TaskStatus.ABORTED


def test_settle_children_releases_on_completion(store: TaskStore) -> None:
    parent = store.insert(make_draft("parent"))
    waiting = store.insert(make_draft("waiting", parent_id=parent, status="waiting_parent"))
    already_new = store.insert(make_draft("already", parent_id=parent))
    store.write_status(parent, TaskStatus.COMPLETED)

    assert StatusCascadeEngine(store).settle_children(parent, TaskStatus.COMPLETED) == 1
    assert _status(store, waiting) == TaskStatus.NEW
    assert _status(store, already_new) == TaskStatus.NEW

    details = store.get_task_details(waiting)
    assert details is not None
    assert details.events[-1].event_type == "unblocked"


def test_settle_children_fails_waiting_subtree_on_failure(store: TaskStore) -> None:
    parent = store.insert(make_draft("parent", method=TaskMethod.BACKGROUND))
    waiting = store.insert(make_draft("waiting", parent_id=parent, status="waiting_parent"))
    nested = store.insert(make_draft("nested", parent_id=waiting, status="waiting_parent"))
    parallel = store.insert(make_draft("parallel", parent_id=parent, parallel=True))

    engine = StatusCascadeEngine(store)
    assert engine.settle_children(parent, TaskStatus.TIMEOUT) == 2
    assert _status(store, waiting) == TaskStatus.FAILED
    assert _status(store, nested) == TaskStatus.FAILED
    assert _status(store, parallel) == TaskStatus.NEW
    assert engine.settle_children(parent, TaskStatus.ABORTED) == 0


def test_settle_children_passes_abort_and_delete_down(store: TaskStore) -> None:
    aborted = store.insert(make_draft("aborted"))
    aborted_child = store.insert(make_draft("child", parent_id=aborted, status="waiting_parent"))
    deleted = store.insert(make_draft("deleted"))
    deleted_child = store.insert(make_draft("child", parent_id=deleted, status="waiting_parent"))
    store.write_status(aborted, TaskStatus.ABORTED)
    store.write_status(deleted, TaskStatus.DELETED)

    engine = StatusCascadeEngine(store)
    assert engine.settle_children(aborted, TaskStatus.ABORTED) == 1
    assert _status(store, aborted_child) == TaskStatus.ABORTED
    assert engine.settle_stranded() == 1
    assert _status(store, deleted_child) == TaskStatus.DELETED
    assert engine.settle_stranded() == 0
