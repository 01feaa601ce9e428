"""Status changes applied to a task and, transitively, to its descendants."""

from __future__ import annotations

import logging
from collections import deque

from task_scheduler.errors import NotFoundError
from task_scheduler.models import TaskStatus
from task_scheduler.repository import TaskStore

logger = logging.getLogger(__name__)


class StatusCascadeEngine:
    """Applies status writes over a task subtree using an explicit work queue."""

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def set_status(
        self,
        task_id: int,
        status: TaskStatus,
        *,
        reset_results: bool = False,
    ) -> int:
        """Write ``status`` to the task and all of its descendants.

        Returns the number of tasks written. Raises ``NotFoundError`` when the
        root task does not exist.
        """

        if self.store.get_by_id(task_id) is None:
            raise NotFoundError(f"Task not found: {task_id}")

        pending: deque[int] = deque([task_id])
        visited: set[int] = set()
        affected = 0
        while pending:
            current = pending.popleft()
            if current in visited:
                continue
            visited.add(current)
            try:
                self.store.write_status(current, status, reset_results=reset_results)
            except NotFoundError:
                if current == task_id:
                    raise
                continue
            affected += 1
            pending.extend(child.id for child in self.store.list_children(current))
        return affected

    def reset(self, task_id: int) -> int:
        logger.warning("Task %s and all its children are being reset", task_id)
        return self.set_status(task_id, TaskStatus.NEW, reset_results=True)

    def abort(self, task_id: int) -> int:
        logger.warning("Aborting task %s and all its children", task_id)
        return self.set_status(task_id, TaskStatus.ABORTED)

    def fail(self, task_id: int) -> int:
        logger.warning("Task %s failed, updating status for it and all its children", task_id)
        return self.set_status(task_id, TaskStatus.FAILED)

    def delete(self, task_id: int) -> int:
        logger.warning("Deleting task %s and all its children", task_id)
        return self.set_status(task_id, TaskStatus.DELETED)

    def settle_children(self, parent_id: int, parent_status: TaskStatus) -> int:
        """Propagate a parent's terminal outcome to children waiting on it.

        Completion releases ``waiting_parent`` children to ``new``. Failure or
        timeout fails them along with their own descendants; an aborted or
        deleted parent passes its own status down.
        """

        if parent_status == TaskStatus.COMPLETED:
            released = self.store.release_waiting_children(parent_id)
            if released:
                logger.info("Task %s completed, released children %s", parent_id, released)
            return len(released)

        child_status = _WAITING_CHILD_STATUS.get(parent_status)
        if child_status is None:
            return 0

        affected = 0
        for child_id in self.store.list_waiting_child_ids(parent_id):
            logger.warning(
                "Task %s ended with %s, setting waiting child %s to %s",
                parent_id,
                parent_status.value,
                child_id,
                child_status.value,
            )
            affected += self.set_status(child_id, child_status)
        return affected

    def settle_stranded(self) -> int:
        """Settle ``waiting_parent`` tasks left behind by parents that already ended."""

        affected = 0
        for parent in self.store.list_stranded_parents():
            affected += self.settle_children(parent.id, parent.status)
        return affected


_WAITING_CHILD_STATUS = {
    TaskStatus.FAILED: TaskStatus.FAILED,
    TaskStatus.TIMEOUT: TaskStatus.FAILED,
    TaskStatus.ABORTED: TaskStatus.ABORTED,
    TaskStatus.DELETED: TaskStatus.DELETED,
}
