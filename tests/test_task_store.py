from __future__ import annotations

import multiprocessing
import os
import threading
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from conftest import make_draft
from task_scheduler.errors import NotFoundError
from task_scheduler.models import TaskMethod, TaskStatus
from task_scheduler.repository import TaskStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Task Store"),
]


def _claim_until_empty(  # pragma: no cover - executed in child process
    db_path: str,
    worker_id: str,
    start_event: multiprocessing.synchronize.Event,
    result_queue: multiprocessing.queues.Queue[tuple[str, list[int]]],
) -> None:
    store = TaskStore(Path(db_path))
    claimed: list[int] = []
    try:
        start_event.wait(timeout=5)
        while True:
            task = store.claim_next(pid=os.getpid(), worker_id=worker_id)
            if task is None:
                break
            claimed.append(task.task.id)
    finally:
        result_queue.put((worker_id, claimed))
        store.close()


def test_insert_returns_id_and_round_trips_payload(store: TaskStore) -> None:
    task_id = store.insert(
        make_draft(
            "reports/daily",
            data={"day": "2026-10-17", "limits": [1, 2]},
            description="Daily report run",
        ),
    )

    task = store.get_by_id(task_id)
    assert isinstance(task_id, int)
    assert task is not None
    assert task.status == TaskStatus.NEW
    assert task.method == TaskMethod.NORMAL
    assert task.data == {"day": "2026-10-17", "limits": [1, 2]}
    assert task.results is None
    assert task.created_at.tzinfo is not None

    details = store.get_task_details(task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["submitted"]
    assert store.get_by_id(task_id + 100) is None


def test_claim_is_fifo_and_records_claim_fields(store: TaskStore) -> None:
    ids = [store.insert(make_draft(f"job-{index}")) for index in range(3)]

    claimed_ids = []
    for _ in ids:
        claimed = store.claim_next(pid=1234, worker_id="host:1")
        assert claimed is not None
        assert claimed.task.status == TaskStatus.PROCESSING
        assert claimed.task.pid == 1234
        assert claimed.task.worker_id == "host:1"
        assert claimed.task.executed_at is not None
        assert claimed.claim_token
        claimed_ids.append(claimed.task.id)

    assert claimed_ids == ids
    assert store.claim_next() is None


def test_claim_respects_not_before_and_min_id(store: TaskStore) -> None:
    now = datetime.now(tz=UTC)
    future_id = store.insert(make_draft("later", not_before=now + timedelta(hours=1)))
    past_id = store.insert(make_draft("earlier", not_before=now - timedelta(minutes=1)))
    newest_id = store.insert(make_draft("newest"))

    claimed = store.claim_next(min_id=past_id)
    assert claimed is not None
    assert claimed.task.id == newest_id

    claimed = store.claim_next()
    assert claimed is not None
    assert claimed.task.id == past_id

    assert store.claim_next() is None
    future = store.get_by_id(future_id)
    assert future is not None
    assert future.status == TaskStatus.NEW


def test_waiting_parent_is_claimable_only_after_parent_completes(store: TaskStore) -> None:
    parent_id = store.insert(make_draft("parent"))
    child_id = store.insert(make_draft("child", parent_id=parent_id, status="waiting_parent"))

    parent_claim = store.claim_next()
    assert parent_claim is not None
    assert parent_claim.task.id == parent_id
    assert store.claim_next() is None

    assert store.finish_task(
        task_id=parent_id,
        claim_token=parent_claim.claim_token,
        status=TaskStatus.COMPLETED,
        results="done",
        time_spent=0.5,
    )

    child_claim = store.claim_next()
    assert child_claim is not None
    assert child_claim.task.id == child_id


def test_deleted_and_terminal_tasks_are_never_claimed(store: TaskStore) -> None:
    deleted_id = store.insert(make_draft("deleted"))
    store.write_status(deleted_id, TaskStatus.DELETED)
    store.insert(make_draft("aborted", status="aborted"))

    assert store.claim_next() is None


def test_finish_task_is_guarded_by_claim(store: TaskStore) -> None:
    task_id = store.insert(make_draft("guarded"))
    claimed = store.claim_next(pid=99)
    assert claimed is not None

    assert not store.finish_task(
        task_id=task_id,
        claim_token="not-the-token",
        status=TaskStatus.COMPLETED,
        results=None,
        time_spent=None,
    )
    assert store.finish_task(
        task_id=task_id,
        claim_token=claimed.claim_token,
        status=TaskStatus.FAILED,
        results={"error": "boom"},
        time_spent=1.25,
    )
    assert not store.finish_task(
        task_id=task_id,
        claim_token=claimed.claim_token,
        status=TaskStatus.COMPLETED,
        results="late",
        time_spent=2.0,
    )

    task = store.get_by_id(task_id)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.results == {"error": "boom"}
    assert task.time_spent == 1.25
    assert task.pid is None

    details = store.get_task_details(task_id)
    assert details is not None
    event_types = [event.event_type for event in details.events]
    assert event_types.count("result_ignored") == 2
    assert event_types.count("failed") == 1


def test_update_rewrites_fields_and_requires_existing_task(store: TaskStore) -> None:
    task_id = store.insert(make_draft("editable", data={"v": 1}))
    task = store.get_by_id(task_id)
    assert task is not None

    updated = store.update(replace(task, data={"v": 2}, description="Edited by operator"))
    assert updated.data == {"v": 2}
    assert updated.description == "Edited by operator"
    assert updated.updated_at >= task.updated_at

    with pytest.raises(NotFoundError):
        store.update(replace(task, id=task_id + 50))


def test_write_status_returns_previous_and_raises_for_unknown(store: TaskStore) -> None:
    task_id = store.insert(make_draft("status"))
    assert store.write_status(task_id, TaskStatus.ABORTED) == TaskStatus.NEW
    assert store.write_status(task_id, TaskStatus.ABORTED) == TaskStatus.ABORTED

    with pytest.raises(NotFoundError):
        store.write_status(task_id + 1, TaskStatus.FAILED)


def test_listing_orders(store: TaskStore) -> None:
    now = datetime.now(tz=UTC)
    first = store.insert(make_draft("first"))
    second = store.insert(make_draft("second", not_before=now + timedelta(days=1)))
    third = store.insert(make_draft("third"))
    store.write_status(third, TaskStatus.FAILED)

    assert [task.id for task in store.list_tasks()] == [third, second, first]
    assert [task.id for task in store.list_tasks(status=TaskStatus.FAILED)] == [third]
    assert [task.id for task in store.list_by_status([TaskStatus.NEW])] == [first, second]
    assert [task.id for task in store.list_by_status([TaskStatus.NEW], ready_only=True)] == [
        first,
    ]
    assert list(store.list_children(first)) == []


def test_mark_dead_process_only_applies_to_matching_pid(store: TaskStore) -> None:
    task_id = store.insert(make_draft("orphan"))
    claimed = store.claim_next(pid=555)
    assert claimed is not None

    assert not store.mark_dead_process(task_id=task_id, pid=556, reason="gone")
    assert store.mark_dead_process(task_id=task_id, pid=555, reason="gone")

    task = store.get_by_id(task_id)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.results == {"error": "gone"}
    assert task.pid is None


def test_concurrent_claims_from_threads_never_overlap(store: TaskStore) -> None:
    task_ids = [store.insert(make_draft(f"job-{index}")) for index in range(30)]
    claimed: list[int] = []
    lock = threading.Lock()
    barrier = threading.Barrier(6)

    def _worker(worker_index: int) -> None:
        barrier.wait(timeout=5)
        while True:
            task = store.claim_next(worker_id=f"thread-{worker_index}")
            if task is None:
                return
            with lock:
                claimed.append(task.task.id)

    threads = [threading.Thread(target=_worker, args=(index,)) for index in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
        assert thread.is_alive() is False

    assert sorted(claimed) == task_ids
    assert len(set(claimed)) == len(claimed)


def test_concurrent_claims_across_processes_never_overlap(tmp_path: Path) -> None:
    db_path = tmp_path / "claims-race.db"
    store = TaskStore(db_path)
    store.init_schema()
    task_ids = [store.insert(make_draft(f"job-{index}")) for index in range(20)]
    store.close()

    context = multiprocessing.get_context("spawn")
    start_event = context.Event()
    result_queue: multiprocessing.queues.Queue[tuple[str, list[int]]] = context.Queue()
    processes = [
        context.Process(
            target=_claim_until_empty,
            args=(str(db_path), f"proc-{index}", start_event, result_queue),
        )
        for index in range(3)
    ]
    for process in processes:
        process.start()
    start_event.set()

    results = dict(result_queue.get(timeout=30) for _ in processes)
    for process in processes:
        process.join(timeout=10)
        assert process.exitcode == 0

    claimed = [task_id for ids in results.values() for task_id in ids]
    assert sorted(claimed) == task_ids
    assert len(set(claimed)) == len(claimed)


def test_single_eligible_task_is_claimed_exactly_once(store: TaskStore) -> None:
    task_id = store.insert(make_draft("only-one"))
    results: list[int | None] = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def _worker() -> None:
        barrier.wait(timeout=5)
        claimed = store.claim_next()
        with lock:
            results.append(claimed.task.id if claimed is not None else None)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert results.count(task_id) == 1
    assert results.count(None) == 7


def test_terminal_writes_are_idempotent_and_clear_pid(store: TaskStore) -> None:
    task_id = store.insert(make_draft("terminal"))
    claimed = store.claim_next(pid=321)
    assert claimed is not None
    before = store.get_by_id(task_id)
    assert before is not None
    assert before.pid == 321

    store.write_status(task_id, TaskStatus.FAILED)
    store.write_status(task_id, TaskStatus.FAILED)

    after = store.get_by_id(task_id)
    assert after is not None
    assert after.status == TaskStatus.FAILED
    assert after.pid is None
    assert after.id == before.id
    assert after.command == before.command
    assert after.created_at == before.created_at


def test_list_children_yields_direct_children_only(store: TaskStore) -> None:
    parent = store.insert(make_draft("parent", method=TaskMethod.BACKGROUND))
    first = store.insert(make_draft("first", parent_id=parent, status="waiting_parent"))
    second = store.insert(make_draft("second", parent_id=parent, parallel=True))
    grandchild = store.insert(make_draft("grandchild", parent_id=first, status="waiting_parent"))

    assert [child.id for child in store.list_children(parent)] == [first, second]
    assert [child.id for child in store.list_children(first)] == [grandchild]
    assert list(store.list_children(grandchild)) == []
    assert list(store.list_children(grandchild + 10)) == []


def test_list_stranded_parents_only_reports_ended_parents_with_waiters(store: TaskStore) -> None:
    failed = store.insert(make_draft("failed"))
    store.insert(make_draft("waiter", parent_id=failed, status="waiting_parent"))
    completed = store.insert(make_draft("completed"))
    store.insert(make_draft("released", parent_id=completed, status="waiting_parent"))
    running = store.insert(make_draft("running"))
    store.insert(make_draft("blocked", parent_id=running, status="waiting_parent"))
    childless = store.insert(make_draft("childless"))

    store.write_status(failed, TaskStatus.FAILED)
    store.write_status(completed, TaskStatus.COMPLETED)
    store.write_status(childless, TaskStatus.ABORTED)

    stranded = store.list_stranded_parents()
    assert [(task.id, task.status) for task in stranded] == [(failed, TaskStatus.FAILED)]
