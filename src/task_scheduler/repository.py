"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from task_scheduler.errors import NotFoundError
from task_scheduler.models import (
    CLAIMABLE_STATUSES,
    TERMINAL_STATUSES,
    ClaimedTask,
    Payload,
    TaskDetails,
    TaskDraft,
    TaskEventView,
    TaskMethod,
    TaskStatus,
    TaskView,
)
from task_scheduler.storage.alembic_runner import upgrade_head
from task_scheduler.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_scheduler.storage.sqlmodel_models import Task, TaskEvent
from task_scheduler.validator import deserialize_payload, serialize_payload, validate_task

logger = logging.getLogger(__name__)


class TaskStore:
    """Queue persistence facade.

    Every method opens its own session, so one store may be shared by threads
    and several stores (one per process) may point at the same database file.
    ``claim_next`` is the only operation relying on compare-and-set semantics.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.engine)

    def insert(self, draft: TaskDraft) -> int:
        """Validate and persist a new task, returning its id."""

        validated = validate_task(draft, lookup_parent=self.get_by_id)
        now = utc_now()
        with Session(self.engine) as session:
            row = Task(
                status=validated.status.value,
                command=validated.command,
                method=validated.method.value,
                timeout_seconds=validated.timeout_seconds,
                verbose=validated.verbose,
                parent_id=validated.parent_id,
                parallel=validated.parallel,
                not_before=validated.not_before,
                data=validated.data_json,
                results=validated.results_json,
                description=validated.description,
                created_by=validated.created_by,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            if row.id is None:
                raise RuntimeError("Task insert did not assign an id.")
            task_id = row.id
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="submitted",
                status_from=None,
                status_to=validated.status,
                details={
                    "command": validated.command,
                    "method": validated.method.value,
                    "parent_id": validated.parent_id,
                    "parallel": validated.parallel,
                },
            )
            session.commit()
        return task_id

    def update(self, task: TaskView) -> TaskView:
        """Full-record update of the mutable fields of an existing task."""

        validated = validate_task(task, lookup_parent=self.get_by_id)
        now = utc_now()
        keeps_claim = validated.status == TaskStatus.PROCESSING
        with Session(self.engine) as session:
            row = session.get(Task, task.id)
            if row is None:
                raise NotFoundError(f"Task not found: {task.id}")
            previous = TaskStatus(row.status)
            row.status = validated.status.value
            row.command = validated.command
            row.method = validated.method.value
            row.timeout_seconds = validated.timeout_seconds
            row.verbose = validated.verbose
            row.parent_id = validated.parent_id
            row.parallel = validated.parallel
            row.not_before = validated.not_before
            row.data = validated.data_json
            row.results = validated.results_json
            row.description = validated.description
            row.pid = validated.pid if keeps_claim else None
            row.claim_token = row.claim_token if keeps_claim else None
            row.executed_at = (
                to_db_datetime(task.executed_at) if task.executed_at is not None else None
            )
            row.time_spent = validated.time_spent
            row.updated_at = to_db_datetime(now)
            session.add(row)
            self._add_event(
                session=session,
                task_id=task.id,
                event_type="updated",
                status_from=previous,
                status_to=validated.status,
                details={},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def claim_next(  # noqa: PLR0913
        self,
        *,
        statuses: Iterable[TaskStatus] = CLAIMABLE_STATUSES,
        in_flight_status: TaskStatus = TaskStatus.PROCESSING,
        pid: int | None = None,
        worker_id: str | None = None,
        min_id: int | None = None,
    ) -> ClaimedTask | None:
        """Atomically claim the oldest eligible task.

        ``waiting_parent`` tasks are only eligible once their parent is
        ``completed``; tasks whose ``not_before`` lies in the future never are.
        """

        eligible = tuple(TaskStatus(status) for status in statuses)
        if not eligible:
            return None

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                statement = (
                    select(Task)
                    .where(
                        _eligibility_clause(eligible),
                        or_(
                            col(Task.not_before).is_(None),
                            col(Task.not_before) <= to_db_datetime(now),
                        ),
                    )
                    .order_by(col(Task.created_at).asc(), col(Task.id).asc())
                    .limit(1)
                )
                if min_id is not None:
                    statement = statement.where(col(Task.id) > min_id)
                candidate = session.exec(statement).one_or_none()
                if candidate is None:
                    return None

                claim_token = uuid4().hex
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.id) == candidate.id,
                        col(Task.status) == candidate.status,
                    )
                    .values(
                        status=in_flight_status.value,
                        pid=pid,
                        worker_id=worker_id,
                        claim_token=claim_token,
                        executed_at=to_db_datetime(now),
                        time_spent=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                self._add_event(
                    session=session,
                    task_id=candidate.id,
                    event_type="claimed",
                    status_from=TaskStatus(candidate.status),
                    status_to=in_flight_status,
                    details={"worker_id": worker_id, "pid": pid},
                )
                session.commit()
                claimed = session.exec(select(Task).where(Task.id == candidate.id)).one()
                return ClaimedTask(task=_to_task_view(claimed), claim_token=claim_token)

    def get_by_id(self, task_id: int) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def list_children(self, task_id: int) -> Iterator[TaskView]:
        """Yield tasks whose parent is ``task_id``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task).where(Task.parent_id == task_id).order_by(col(Task.id).asc()),
            ).all()
        for row in rows:
            yield _to_task_view(row)

    def list_by_status(
        self,
        statuses: Iterable[TaskStatus],
        *,
        ready_only: bool = False,
    ) -> list[TaskView]:
        """List tasks in the given statuses, oldest first."""

        values = [TaskStatus(status).value for status in statuses]
        with Session(self.engine) as session:
            statement = (
                select(Task)
                .where(col(Task.status).in_(values))
                .order_by(col(Task.created_at).asc(), col(Task.id).asc())
            )
            if ready_only:
                statement = statement.where(
                    or_(
                        col(Task.not_before).is_(None),
                        col(Task.not_before) <= to_db_datetime(utc_now()),
                    ),
                )
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, newest first, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(Task).order_by(col(Task.created_at).desc(), col(Task.id).desc()).limit(limit)
            )
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def write_status(
        self,
        task_id: int,
        status: TaskStatus,
        *,
        reset_results: bool = False,
    ) -> TaskStatus:
        """Write one task's status, clearing claim fields; return the previous status."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                raise NotFoundError(f"Task not found: {task_id}")
            previous = TaskStatus(row.status)
            row.status = status.value
            if status != TaskStatus.PROCESSING:
                row.pid = None
                row.claim_token = None
            if reset_results:
                row.results = None
            row.updated_at = to_db_datetime(now)
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="status_set",
                status_from=previous,
                status_to=status,
                details={"reset_results": reset_results},
            )
            session.commit()
            return previous

    def attach_process(self, *, task_id: int, claim_token: str, pid: int) -> bool:
        """Record the pid of a detached process running a claimed task."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.id) == task_id,
                    col(Task.status) == TaskStatus.PROCESSING.value,
                    col(Task.claim_token) == claim_token,
                )
                .values(pid=pid, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="detached",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.PROCESSING,
                details={"pid": pid},
            )
            session.commit()
            return True

    def finish_task(  # noqa: PLR0913
        self,
        *,
        task_id: int,
        claim_token: str,
        status: TaskStatus,
        results: Payload,
        time_spent: float | None,
        event_type: str | None = None,
    ) -> bool:
        """Write the terminal outcome of a claimed task.

        Applies only while the task is still ``processing`` under the same
        claim; otherwise the result is ignored and ``False`` is returned.
        """

        if status not in {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT}:
            raise ValueError(f"Unsupported terminal status: {status}")

        now = utc_now()
        results_json = serialize_payload(results)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.id) == task_id,
                    col(Task.status) == TaskStatus.PROCESSING.value,
                    col(Task.claim_token) == claim_token,
                )
                .values(
                    status=status.value,
                    results=results_json,
                    time_spent=time_spent,
                    pid=None,
                    claim_token=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                self._record_ignored_result(session=session, task_id=task_id, status=status)
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type or status.value,
                status_from=TaskStatus.PROCESSING,
                status_to=status,
                details={"time_spent": time_spent},
            )
            session.commit()
            return True

    def release_waiting_children(self, parent_id: int) -> list[int]:
        """Move ``waiting_parent`` children of a completed parent to ``new``."""

        released: list[int] = []
        now = utc_now()
        with Session(self.engine) as session:
            child_ids = session.exec(
                select(Task.id).where(
                    Task.parent_id == parent_id,
                    Task.status == TaskStatus.WAITING_PARENT.value,
                ),
            ).all()
            for child_id in child_ids:
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.id) == child_id,
                        col(Task.status) == TaskStatus.WAITING_PARENT.value,
                    )
                    .values(status=TaskStatus.NEW.value, updated_at=to_db_datetime(now)),
                )
                if result.rowcount != 1 or child_id is None:
                    continue
                released.append(child_id)
                self._add_event(
                    session=session,
                    task_id=child_id,
                    event_type="unblocked",
                    status_from=TaskStatus.WAITING_PARENT,
                    status_to=TaskStatus.NEW,
                    details={"parent_id": parent_id},
                )
            session.commit()
        return released

    def list_waiting_child_ids(self, parent_id: int) -> list[int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.id).where(
                    Task.parent_id == parent_id,
                    Task.status == TaskStatus.WAITING_PARENT.value,
                ),
            ).all()
        return [row for row in rows if row is not None]

    def list_stranded_parents(self) -> list[TaskView]:
        """Terminal, non-completed parents that still have ``waiting_parent`` children."""

        parent = aliased(Task)
        ended = [status.value for status in TERMINAL_STATUSES if status != TaskStatus.COMPLETED]
        with Session(self.engine) as session:
            parent_ids = session.exec(
                select(parent.id)
                .join(Task, col(Task.parent_id) == parent.id)
                .where(
                    Task.status == TaskStatus.WAITING_PARENT.value,
                    parent.status.in_(ended),
                )
                .distinct()
                .order_by(parent.id),
            ).all()
            rows = [session.get(Task, parent_id) for parent_id in parent_ids]
        return [_to_task_view(row) for row in rows if row is not None]

    def mark_dead_process(self, *, task_id: int, pid: int, reason: str) -> bool:
        """Fail a ``processing`` task whose recorded process no longer exists."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.id) == task_id,
                    col(Task.status) == TaskStatus.PROCESSING.value,
                    col(Task.pid) == pid,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    results=serialize_payload({"error": reason}),
                    pid=None,
                    claim_token=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="reaped",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.FAILED,
                details={"pid": pid, "reason": reason},
            )
            session.commit()
            return True

    def get_task_details(self, task_id: int) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.get(Task, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()
            view = _to_task_view(task)

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=(
                        TaskStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=view, events=events)

    def _record_ignored_result(
        self,
        *,
        session: Session,
        task_id: int,
        status: TaskStatus,
    ) -> None:
        row = session.get(Task, task_id)
        if row is None:
            return
        logger.warning(
            "Ignoring %s result for task %s in status %s",
            status.value,
            task_id,
            row.status,
        )
        self._add_event(
            session=session,
            task_id=task_id,
            event_type="result_ignored",
            status_from=TaskStatus(row.status),
            status_to=TaskStatus(row.status),
            details={"reported_status": status.value},
        )
        session.commit()

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: int,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _eligibility_clause(statuses: tuple[TaskStatus, ...]):  # noqa: ANN202
    plain = [status.value for status in statuses if status != TaskStatus.WAITING_PARENT]
    clauses = []
    if plain:
        clauses.append(col(Task.status).in_(plain))
    if TaskStatus.WAITING_PARENT in statuses:
        parent = aliased(Task)
        parent_completed = (
            sa_select(parent.id)
            .where(
                parent.id == Task.parent_id,
                parent.status == TaskStatus.COMPLETED.value,
            )
            .exists()
        )
        clauses.append(
            and_(col(Task.status) == TaskStatus.WAITING_PARENT.value, parent_completed),
        )
    return or_(*clauses)


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_task_view(row: Task) -> TaskView:
    if row.id is None:
        raise RuntimeError("Persisted task row has no id.")
    return TaskView(
        id=row.id,
        status=TaskStatus(row.status),
        command=row.command,
        method=TaskMethod(row.method),
        timeout_seconds=row.timeout_seconds,
        verbose=bool(row.verbose),
        parent_id=row.parent_id,
        parallel=bool(row.parallel),
        not_before=_optional_aware(row.not_before),
        data=deserialize_payload(row.data),
        results=deserialize_payload(row.results),
        pid=row.pid,
        worker_id=row.worker_id,
        executed_at=_optional_aware(row.executed_at),
        time_spent=row.time_spent,
        description=row.description,
        created_by=row.created_by,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
