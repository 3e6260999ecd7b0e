"""
ProcessedNotificationTask model for delivery deduplication.

A row is written after a notification task has been handed to the push
gateway. Workers consult it (behind the cache) so that a task re-leased
after a lease timeout is not delivered twice. Rows are purged by the
notification cleanup once they are older than the retention window.
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, String

from mobile_backend.src.models import Base


class ProcessedNotificationTask(Base):
    """
    Durable marker of a processed notification task.

    Attributes:
        task_name: Queue task name (tsk_xxx)
        processed_at: When processing finished
    """

    __tablename__ = "processed_notification_tasks"

    task_name = Column(String(64), primary_key=True)
    processed_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<ProcessedNotificationTask(task_name='{self.task_name}', "
            f"processed_at={self.processed_at})>"
        )
