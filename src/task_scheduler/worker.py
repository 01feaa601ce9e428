"""Dispatcher loop that claims queued tasks and executes them."""

from __future__ import annotations

import logging
import os
import signal
import socket
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from task_scheduler.backend import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    ProcessExecutor,
    pid_is_alive,
)
from task_scheduler.cascade import StatusCascadeEngine
from task_scheduler.errors import ExecutionError, TaskTimeoutError, ValidationError
from task_scheduler.models import (
    CLAIMABLE_STATUSES,
    ClaimedTask,
    TaskMethod,
    TaskStatus,
)
from task_scheduler.repository import TaskStore
from task_scheduler.validator import check_payload

logger = logging.getLogger(__name__)

STDERR_PREVIEW_CHARS = 2_000

_OUTCOME_STATUS = {
    ExecutionStatus.SUCCESS: TaskStatus.COMPLETED,
    ExecutionStatus.FAILURE: TaskStatus.FAILED,
    ExecutionStatus.TIMEOUT: TaskStatus.TIMEOUT,
}


@dataclass(slots=True)
class DispatchSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    timeouts: int = 0
    detached: int = 0
    ignored: int = 0
    reaped: int = 0
    idle_polls: int = 0

    def add(self, other: DispatchSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.timeouts += other.timeouts
        self.detached += other.detached
        self.ignored += other.ignored
        self.reaped += other.reaped
        self.idle_polls += other.idle_polls


class TaskDispatcher:
    """Consumes claimable tasks and executes them via the process executor."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        executor: ProcessExecutor,
        worker_id: str,
        cascade: StatusCascadeEngine | None = None,
        poll_interval_seconds: float = 2.0,
        min_id: int | None = None,
        reap_dead_processes: bool = False,
        pid: int | None = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.worker_id = worker_id
        self.cascade = cascade or StatusCascadeEngine(store)
        self.poll_interval_seconds = poll_interval_seconds
        self.min_id = min_id
        self.reap_dead_processes = reap_dead_processes
        self.pid = pid if pid is not None else os.getpid()
        self._stop_requested = False

    def run_once(self) -> DispatchSummary:
        """Process at most one task from the queue."""

        summary = DispatchSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        if self.reap_dead_processes:
            summary.reaped = self._reap_dead_processes()
        settled = self.cascade.settle_stranded()
        if settled:
            logger.warning("Settled %s tasks left waiting on parents that already ended", settled)

        claimed = self.store.claim_next(
            statuses=CLAIMABLE_STATUSES,
            in_flight_status=TaskStatus.PROCESSING,
            pid=self.pid,
            worker_id=self.worker_id,
            min_id=self.min_id,
        )
        if claimed is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        task = claimed.task
        logger.info(
            "Executing task %s command=%s method=%s",
            task.id,
            task.command,
            task.method.value,
        )
        if task.method == TaskMethod.BACKGROUND:
            self._start_background(claimed, summary)
        else:
            self._run_synchronous(claimed, summary)
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> DispatchSummary:
        """Run until the queue is idle or ``max_tasks`` were processed.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = DispatchSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self) -> None:
        self._stop_requested = True

    def _start_background(self, claimed: ClaimedTask, summary: DispatchSummary) -> None:
        task = claimed.task
        request = self._build_request(claimed)
        request.environment.update(
            {
                "TASK_SCHEDULER_CLAIM_TOKEN": claimed.claim_token,
                "TASK_SCHEDULER_DB_PATH": str(self.store.db_path),
            },
        )
        try:
            pid = self.executor.start_detached(request)
        except ExecutionError as error:
            self._record_outcome(
                claimed,
                status=TaskStatus.FAILED,
                results={"error": str(error), "transient": error.transient},
                time_spent=None,
                summary=summary,
            )
            return
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error starting background task %s", task.id)
            self._record_outcome(
                claimed,
                status=TaskStatus.FAILED,
                results={"error": f"Unexpected execution error: {error}"},
                time_spent=None,
                summary=summary,
            )
            return

        if self.store.attach_process(task_id=task.id, claim_token=claimed.claim_token, pid=pid):
            summary.detached = 1
        else:
            summary.ignored = 1

    def _run_synchronous(self, claimed: ClaimedTask, summary: DispatchSummary) -> None:
        task = claimed.task
        if task.timeout_seconds == 0:
            logger.warning(
                "Task %s has no timeout and may occupy worker %s indefinitely",
                task.id,
                self.worker_id,
            )

        started = time.monotonic()
        try:
            execution = self.executor.execute(self._build_request(claimed))
        except TaskTimeoutError as error:
            status = TaskStatus.TIMEOUT
            results: Any = {"error": str(error) or "Execution timed out"}
        except ExecutionError as error:
            status = TaskStatus.FAILED
            results = {"error": str(error), "transient": error.transient}
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error executing task %s", task.id)
            status = TaskStatus.FAILED
            results = {"error": f"Unexpected execution error: {error}"}
        else:
            status = _OUTCOME_STATUS[execution.exit_status]
            results = _results_for(execution)

        self._record_outcome(
            claimed,
            status=status,
            results=results,
            time_spent=round(time.monotonic() - started, 6),
            summary=summary,
        )

    def _record_outcome(
        self,
        claimed: ClaimedTask,
        *,
        status: TaskStatus,
        results: Any,
        time_spent: float | None,
        summary: DispatchSummary,
    ) -> None:
        task_id = claimed.task.id
        applied = self.store.finish_task(
            task_id=task_id,
            claim_token=claimed.claim_token,
            status=status,
            results=_storable(results),
            time_spent=time_spent,
        )
        if not applied:
            summary.ignored = 1
            return

        if status == TaskStatus.COMPLETED:
            summary.completed = 1
        elif status == TaskStatus.TIMEOUT:
            summary.timeouts = 1
        else:
            summary.failed = 1
        logger.info("Task %s finished with status %s", task_id, status.value)
        self.cascade.settle_children(task_id, status)

    def _build_request(self, claimed: ClaimedTask) -> ExecutionRequest:
        task = claimed.task
        return ExecutionRequest(
            task_id=task.id,
            command=task.command,
            payload=task.data,
            timeout_seconds=task.timeout_seconds,
            method=task.method,
            verbose=task.verbose,
        )

    def _reap_dead_processes(self) -> int:
        host = socket.gethostname()
        reaped = 0
        for task in self.store.list_by_status([TaskStatus.PROCESSING]):
            if task.pid is None or task.pid == self.pid:
                continue
            if _worker_host(task.worker_id) != host or pid_is_alive(task.pid):
                continue
            if self.store.mark_dead_process(
                task_id=task.id,
                pid=task.pid,
                reason=f"Process {task.pid} is no longer running",
            ):
                logger.warning("Task %s lost its process %s, marked failed", task.id, task.pid)
                reaped += 1
                self.cascade.settle_children(task.id, TaskStatus.FAILED)
        return reaped

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Received %s, stopping after the current task", name)
            self.request_stop()

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _results_for(execution: ExecutionResult) -> Any:
    if execution.exit_status == ExecutionStatus.SUCCESS:
        return execution.output
    return {
        "exit_status": execution.exit_status.value,
        "exit_code": execution.exit_code,
        "output": execution.output,
        "stderr": execution.stderr[-STDERR_PREVIEW_CHARS:],
    }


def _storable(results: Any) -> Any:
    try:
        check_payload(results, field_name="results")
    except ValidationError:
        return str(results)
    return results


def _worker_host(worker_id: str | None) -> str | None:
    if not worker_id or ":" not in worker_id:
        return None
    return worker_id.rsplit(":", 1)[0]
