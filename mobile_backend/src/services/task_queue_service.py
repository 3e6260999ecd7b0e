"""
Durable task queue service.

Database-backed queue with two consumption styles:
- PULL tasks are leased by workers (visibility timeout), processed and
  then deleted explicitly.
- PUSH tasks are leased by the push-task dispatcher, which POSTs their
  parameters to the task's URL and deletes them on success.

Leasing uses FOR UPDATE SKIP LOCKED on PostgreSQL so concurrent workers
never lease the same task during one lease window. Once a lease expires
the task is visible again: consumers must process idempotently.

Database connectivity errors during lease and delete are raised as
``TransientQueueError`` so callers can back off and retry.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import exc as sa_exc, inspect as sa_inspect, or_
from sqlalchemy.orm import Session

from mobile_backend.src.models import QueuedTask, TaskMethod
from mobile_backend.src.models.queued_task import QueueName
from mobile_backend.src.services.exceptions import TransientQueueError
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("services")

__all__ = ["TaskQueueService", "QueueName"]

# Errors that mean "the queue could not be reached", not "the task is bad"
_TRANSIENT_DB_ERRORS = (sa_exc.OperationalError, sa_exc.TimeoutError)


def _task_id(task: Union[QueuedTask, int]) -> int:
    # read from the identity key, never refreshed
    if isinstance(task, QueuedTask):
        return sa_inspect(task).identity[0]
    return task


class TaskQueueService:
    """
    Service for enqueueing, leasing and deleting queued tasks.

    Usage:
        >>> queue = TaskQueueService(db_session)
        >>> queue.add_pull(QueueName.NOTIFICATION_DELIVERY, {"alert": "hi", "devices": "[]"})
        >>> tasks = queue.lease_tasks(QueueName.NOTIFICATION_DELIVERY, 1800, 100)
        >>> queue.delete_tasks(tasks)
    """

    def __init__(self, db: Session):
        self.db = db
        self._is_sqlite = self._check_is_sqlite()

    def _check_is_sqlite(self) -> bool:
        """Check if the database backend is SQLite."""
        try:
            return self.db.bind.dialect.name == "sqlite"
        except AttributeError:
            return False

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def add_pull(self, queue_name: str, params: Dict[str, Any]) -> QueuedTask:
        """
        Add a task to a pull queue.

        Args:
            queue_name: Target queue
            params: Task parameters (string values, or lists of strings)

        Returns:
            The stored task (its ``name`` is the unique task name)
        """
        task = QueuedTask(
            queue_name=queue_name,
            method=TaskMethod.PULL,
            params=dict(params),
        )
        return self._add(task)

    def add_push(
        self,
        queue_name: str,
        url: str,
        params: Dict[str, Any],
        eta: Optional[datetime] = None,
    ) -> QueuedTask:
        """
        Add a task that will be POSTed to ``url`` by the dispatcher.

        Args:
            queue_name: Target queue
            url: Handler path (e.g. "/admin/push/device/cleanup")
            params: Form parameters; list values are sent as repeated fields
            eta: Earliest delivery time (default: now)
        """
        task = QueuedTask(
            queue_name=queue_name,
            method=TaskMethod.PUSH,
            url=url,
            params=dict(params),
            eta=eta or datetime.utcnow(),
        )
        return self._add(task)

    def _add(self, task: QueuedTask) -> QueuedTask:
        self.db.add(task)
        self.db.commit()
        self.db.refresh(task)

        logger.debug(
            "Task enqueued",
            extra={
                "task_name": task.name,
                "queue_name": task.queue_name,
                "method": task.method.value,
            }
        )
        return task

    # ------------------------------------------------------------------
    # Lease / delete
    # ------------------------------------------------------------------

    def lease_tasks(
        self,
        queue_name: str,
        lease_seconds: int,
        max_tasks: int,
        method: TaskMethod = TaskMethod.PULL,
    ) -> List[QueuedTask]:
        """
        Lease up to ``max_tasks`` visible tasks.

        A task is visible when its eta has passed and it is not under an
        unexpired lease.

        Raises:
            TransientQueueError: If the database could not be reached
        """
        now = datetime.utcnow()
        try:
            query = self.db.query(QueuedTask).filter(
                QueuedTask.queue_name == queue_name,
                QueuedTask.method == method,
                QueuedTask.eta <= now,
                or_(
                    QueuedTask.lease_expires_at.is_(None),
                    QueuedTask.lease_expires_at <= now,
                ),
            ).order_by(
                QueuedTask.eta.asc(),
                QueuedTask.id.asc(),
            ).limit(max_tasks)

            # FOR UPDATE SKIP LOCKED only on PostgreSQL (SQLite doesn't support it)
            if not self._is_sqlite:
                query = query.with_for_update(skip_locked=True)

            tasks = query.all()
            lease_expires_at = now + timedelta(seconds=lease_seconds)
            for task in tasks:
                task.lease_expires_at = lease_expires_at
                task.lease_count = (task.lease_count or 0) + 1

            self.db.commit()
        except _TRANSIENT_DB_ERRORS as e:
            self.db.rollback()
            raise TransientQueueError("lease", e) from e

        if tasks:
            logger.debug(
                "Leased tasks",
                extra={"queue_name": queue_name, "count": len(tasks)}
            )
        return tasks

    def delete_tasks(self, tasks: Iterable[Union[QueuedTask, int]]) -> int:
        """
        Delete tasks (or task ids) from their queue.

        Deleting a task that no longer exists is not an error.

        Returns:
            Number of rows actually deleted

        Raises:
            TransientQueueError: If the database could not be reached
        """
        ids = [_task_id(task) for task in tasks]
        if not ids:
            return 0

        try:
            deleted = self.db.query(QueuedTask).filter(
                QueuedTask.id.in_(ids)
            ).delete()
            self.db.commit()
        except _TRANSIENT_DB_ERRORS as e:
            self.db.rollback()
            raise TransientQueueError("delete", e) from e

        return deleted

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def list_tasks(self, queue_name: str) -> List[QueuedTask]:
        """All tasks of a queue, leased or not, oldest first."""
        return self.db.query(QueuedTask).filter(
            QueuedTask.queue_name == queue_name
        ).order_by(QueuedTask.id.asc()).all()

    def count(self, queue_name: Optional[str] = None) -> int:
        query = self.db.query(QueuedTask)
        if queue_name is not None:
            query = query.filter(QueuedTask.queue_name == queue_name)
        return query.count()
