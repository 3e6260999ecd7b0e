"""
QueuedTask model for the durable task queue.

Two kinds of queues share the table:
- PULL queues: workers lease tasks, process them, then delete them.
- PUSH queues: the push-task dispatcher leases tasks and POSTs their
  parameters to ``url``; a task is deleted once the endpoint accepted it.

A leased task is invisible until ``lease_expires_at`` passes, after which
it can be leased again. Delivery is therefore at-least-once.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, Enum, Index, Integer, String

from mobile_backend.src.models import Base
from mobile_backend.src.models.mixins import GuidMixin
from mobile_backend.src.models.types import JSONBType


class TaskMethod(str, enum.Enum):
    """
    How a task is consumed.

    - PULL: leased by a worker of the same process family
    - PUSH: delivered as an HTTP POST to ``url``
    """
    PULL = "pull"
    PUSH = "push"


class QueueName:
    """Queue names used by the push pipeline."""
    NOTIFICATION_DELIVERY = "notification-delivery"
    DEVICE_TOKEN_CLEANUP = "notification-device-token-cleanup"
    SUBSCRIPTION_REMOVAL = "subscription-removal"
    PROSPECTIVE_SEARCH = "prospective-search"


class QueuedTask(Base, GuidMixin):
    """
    A task waiting in a queue.

    Attributes:
        id: Primary key
        uuid / guid: Task name (tsk_xxx, inherited from GuidMixin)
        queue_name: Queue the task belongs to
        method: PULL or PUSH
        url: Target path for PUSH tasks
        params: String parameters (values may be lists for repeated params)
        created_at: Enqueue time
        eta: Earliest time the task may be leased
        lease_expires_at: End of the current lease (None = not leased)
        lease_count: Number of times the task was leased
    """

    __tablename__ = "queued_tasks"
    GUID_PREFIX = "tsk"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue_name = Column(String(100), nullable=False)
    method = Column(Enum(TaskMethod, native_enum=False), nullable=False)
    url = Column(String(500), nullable=True)
    params = Column(JSONBType, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    eta = Column(DateTime, default=datetime.utcnow, nullable=False)
    lease_expires_at = Column(DateTime, nullable=True)
    lease_count = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("ix_queued_tasks_queue_eta", "queue_name", "eta"),
    )

    @property
    def name(self) -> Optional[str]:
        """Unique task name."""
        return self.guid

    def is_leased(self, now: Optional[datetime] = None) -> bool:
        if self.lease_expires_at is None:
            return False
        return self.lease_expires_at > (now or datetime.utcnow())

    def __repr__(self) -> str:
        return (
            f"<QueuedTask(id={self.id}, queue='{self.queue_name}', "
            f"method={self.method}, lease_count={self.lease_count})>"
        )
