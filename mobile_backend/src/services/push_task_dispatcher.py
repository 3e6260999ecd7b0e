"""
Push-task dispatcher.

Delivers PUSH tasks to their internal HTTP handlers: each task's
parameters are POSTed form-encoded to its URL with the
``X-Task-Queue-Name`` header and the shared ``X-Task-Queue-Secret`` the
handlers require. A task is deleted once
its handler answers 2xx; otherwise it stays leased and is retried when
the lease expires.
"""

import threading
from typing import Callable, List, Optional, Sequence

import httpx
from sqlalchemy.orm import Session

from mobile_backend.src.config.settings import AppSettings
from mobile_backend.src.models import QueuedTask, TaskMethod
from mobile_backend.src.models.queued_task import QueueName
from mobile_backend.src.services.exceptions import TransientQueueError
from mobile_backend.src.services.task_queue_service import TaskQueueService
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("workers")

QUEUE_NAME_HEADER = "X-Task-Queue-Name"
QUEUE_SECRET_HEADER = "X-Task-Queue-Secret"
TASK_NAME_HEADER = "X-Task-Name"

PUSH_QUEUES = (
    QueueName.PROSPECTIVE_SEARCH,
    QueueName.DEVICE_TOKEN_CLEANUP,
    QueueName.SUBSCRIPTION_REMOVAL,
)

# A failed task becomes visible again after this many seconds
PUSH_LEASE_SECONDS = 60
PUSH_BATCH_SIZE = 50


class PushTaskDispatcher:
    """
    Leases PUSH tasks and POSTs them to their handlers.

    Usage:
        >>> client = httpx.Client(base_url=settings.task_dispatch_url)
        >>> dispatcher = PushTaskDispatcher(SessionLocal, client, settings, shutdown_event)
        >>> dispatcher.dispatch_once()
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        http_client: httpx.Client,
        settings: AppSettings,
        shutdown_event: Optional[threading.Event] = None,
        queues: Sequence[str] = PUSH_QUEUES,
    ):
        self.session_factory = session_factory
        self.http_client = http_client
        self.settings = settings
        self.shutdown_event = shutdown_event or threading.Event()
        self.queues = tuple(queues)
        self._thread: Optional[threading.Thread] = None

    def run(self) -> None:
        """Dispatch until shutdown."""
        logger.info("Push-task dispatcher started", extra={"queues": list(self.queues)})
        while not self.shutdown_event.is_set():
            try:
                dispatched = self.dispatch_once()
            except Exception as e:
                logger.error(f"Unexpected error in push-task dispatcher: {e}", exc_info=True)
                dispatched = 0
            if not dispatched:
                self.shutdown_event.wait(self.settings.idle_wait_seconds)
        logger.info("Push-task dispatcher stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self.run, name="push-task-dispatcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self.shutdown_event.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def dispatch_once(self) -> int:
        """
        Lease and deliver one batch from every queue.

        Returns:
            Number of tasks delivered and deleted
        """
        delivered = 0
        db = self.session_factory()
        try:
            task_queue = TaskQueueService(db)
            for queue_name in self.queues:
                if self.shutdown_event.is_set():
                    break
                try:
                    tasks = task_queue.lease_tasks(
                        queue_name,
                        PUSH_LEASE_SECONDS,
                        PUSH_BATCH_SIZE,
                        method=TaskMethod.PUSH,
                    )
                except TransientQueueError as e:
                    logger.warning(
                        "Transient failure when leasing push tasks",
                        extra={"queue_name": queue_name, "error": str(e)}
                    )
                    continue

                done: List[QueuedTask] = [
                    task for task in tasks if self._deliver(queue_name, task)
                ]
                if done:
                    try:
                        task_queue.delete_tasks(done)
                    except TransientQueueError as e:
                        # leases expire and the handlers are idempotent
                        logger.warning(
                            "Transient failure when deleting push tasks",
                            extra={"queue_name": queue_name, "error": str(e)}
                        )
                        continue
                delivered += len(done)
        finally:
            db.close()
        return delivered

    def _deliver(self, queue_name: str, task: QueuedTask) -> bool:
        task_name = task.name
        try:
            response = self.http_client.post(
                task.url,
                data=task.params or {},
                headers={
                    QUEUE_NAME_HEADER: queue_name,
                    QUEUE_SECRET_HEADER: self.settings.task_queue_secret,
                    TASK_NAME_HEADER: task_name,
                },
            )
        except httpx.HTTPError as e:
            logger.warning(
                "Push task delivery failed",
                extra={"task_name": task_name, "url": task.url, "error": str(e)}
            )
            return False

        if 200 <= response.status_code < 300:
            logger.debug("Push task delivered", extra={"task_name": task_name, "url": task.url})
            return True

        logger.warning(
            "Push task handler rejected the task",
            extra={
                "task_name": task_name,
                "url": task.url,
                "status_code": response.status_code,
                "lease_count": task.lease_count,
            }
        )
        return False
