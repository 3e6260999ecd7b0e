"""
Notification delivery workers.

Each worker loops over the notification-delivery queue:

1. Lease a batch of tasks (retrying transient queue errors with backoff)
2. Skip tasks already processed (cache first, then the durable markers)
3. Send each remaining task's alert to its devices over APNS
4. Queue invalid device tokens for cleanup
5. Mark every handled task processed, even when sending failed
6. Delete the handled tasks from the queue
7. Pause for a cooldown when the provider could not be reached

Delivery is at-least-once: a task whose lease expires before it is
deleted is leased again, and the processed markers keep it from being
sent twice.

Every sleep waits on the shared shutdown event, so stopping the pool
interrupts it and the worker exits between steps, never mid-task.
"""

import json
import random
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mobile_backend.src.config.settings import AppSettings
from mobile_backend.src.models import ProcessedNotificationTask, QueuedTask
from mobile_backend.src.models.queued_task import QueueName
from mobile_backend.src.services.exceptions import TransientQueueError
from mobile_backend.src.services.push.apns_sender import (
    STATUS_INVALID_TOKEN,
    ApnsCommunicationError,
    ApnsCredentialsError,
    ApnsSender,
    PushedNotification,
)
from mobile_backend.src.services.push.feedback_store import ApnsFeedbackStore
from mobile_backend.src.services.push_cleanup_service import enqueue_removing_device_tokens
from mobile_backend.src.services.task_queue_service import TaskQueueService
from mobile_backend.src.utils.cache import MemoryCache
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("workers")

# Pushed notifications are checked for errors about every this many sends
BATCH_NOTIFICATION_PROCESS_SIZE = 1000

# Visible text of every notification; the matched query travels hidden
ALERT_MESSAGE = "You receive a message"

MAX_BACKOFF_EXPONENT = 6


def processed_task_cache_key(task_name: str) -> str:
    return f"processed_task:{task_name}"


class DeliveryWorker:
    """
    One delivery loop over the notification-delivery queue.

    Args:
        session_factory: Returns a new Session; one is opened per batch
        apns_sender: Sender owned by this worker
        cache: Shared cache for processed-task markers
        settings: Lease, backoff and cooldown settings
        shutdown_event: Set to stop the worker
        task_queue_factory: Builds the queue service for a session
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        apns_sender: ApnsSender,
        cache: MemoryCache,
        settings: AppSettings,
        shutdown_event: threading.Event,
        task_queue_factory: Callable[[Session], TaskQueueService] = TaskQueueService,
        queue_name: str = QueueName.NOTIFICATION_DELIVERY,
    ):
        self.session_factory = session_factory
        self.apns_sender = apns_sender
        self.cache = cache
        self.settings = settings
        self.shutdown_event = shutdown_event
        self.task_queue_factory = task_queue_factory
        self.queue_name = queue_name

    @property
    def is_shutting_down(self) -> bool:
        return self.shutdown_event.is_set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run_polling(self) -> None:
        """Process batches until shutdown."""
        logger.info("Delivery worker started", extra={"queue_name": self.queue_name})
        while not self.is_shutting_down:
            try:
                tasks_processed = self.process_batch_of_tasks()
            except Exception as e:
                logger.error(
                    f"Unexpected error in delivery worker: {e}",
                    exc_info=True
                )
                tasks_processed = False

            if not tasks_processed:
                self.shutdown_event.wait(self.settings.idle_wait_seconds)
        logger.info("Instance is shutting down")

    def process_batch_of_tasks(self) -> bool:
        """
        Lease and process one batch.

        Returns:
            True if tasks were leased, False otherwise
        """
        db = self.session_factory()
        try:
            task_queue = self.task_queue_factory(db)
            tasks = self._lease_tasks(task_queue)
            if not tasks:
                return False
            self._process_leased_tasks(db, task_queue, tasks)
            return True
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Queue access with backoff
    # ------------------------------------------------------------------

    def backoff(self, attempt: int) -> bool:
        """
        Sleep 2**min(6, attempt) seconds plus up to one second of jitter.

        Returns:
            False if shutdown interrupted the sleep
        """
        exponent = min(MAX_BACKOFF_EXPONENT, attempt)
        delay = (1 << exponent) + random.uniform(0, 1)
        return not self.shutdown_event.wait(delay)

    def _lease_tasks(self, task_queue: TaskQueueService) -> List[QueuedTask]:
        attempt = 1
        while not self.is_shutting_down:
            try:
                return task_queue.lease_tasks(
                    self.queue_name,
                    self.settings.lease_seconds,
                    self.settings.lease_batch_size,
                )
            except TransientQueueError as e:
                logger.warning(
                    "Transient failure when leasing tasks",
                    extra={"queue_name": self.queue_name, "attempt": attempt, "error": str(e)}
                )
            if not self.backoff(attempt):
                break
            attempt += 1
        return []

    def _delete_tasks(self, task_queue: TaskQueueService, tasks: List[QueuedTask]) -> None:
        attempt = 1
        while True:
            try:
                task_queue.delete_tasks(tasks)
                return
            except TransientQueueError as e:
                logger.warning(
                    "Transient failure when deleting tasks",
                    extra={"queue_name": self.queue_name, "attempt": attempt, "error": str(e)}
                )
            if not self.backoff(attempt):
                return
            attempt += 1

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    def _process_leased_tasks(
        self,
        db: Session,
        task_queue: TaskQueueService,
        tasks: List[QueuedTask],
    ) -> None:
        # read before any commit expires the leased rows
        details = {id(task): (task.name, dict(task.params or {})) for task in tasks}
        already_processed = self.get_already_processed_task_names(
            db, [name for name, _ in details.values()]
        )

        handled: List[QueuedTask] = []
        pushed: Dict[str, List[PushedNotification]] = {}
        pushed_count = 0
        needs_cooldown = False

        for task in tasks:
            if self.is_shutting_down:
                break
            handled.append(task)

            task_name, params = details[id(task)]
            if task_name in already_processed:
                logger.info(
                    "Ignoring a task that has been already processed to avoid sending "
                    "duplicated notification",
                    extra={"task_name": task_name}
                )
                continue

            try:
                notifications = self._process_leased_task(task_name, params)
                if notifications:
                    pushed[task_name] = notifications
                    pushed_count += len(notifications)
                    if pushed_count >= BATCH_NOTIFICATION_PROCESS_SIZE:
                        pushed_count = 0
                        self._process_pushed_notifications(task_queue, pushed)
                        pushed = {}
            except ApnsCommunicationError as e:
                logger.warning(
                    "Sending push alert failed with a communication error",
                    extra={"task_name": task_name, "error": str(e)}
                )
                needs_cooldown = True
            except ApnsCredentialsError as e:
                logger.warning(
                    "Sending push alert failed with a credentials error",
                    extra={"task_name": task_name, "error": str(e)}
                )
                needs_cooldown = True
            finally:
                self.record_task_processed(db, task_name)

        self._delete_tasks(task_queue, handled)

        if pushed:
            self._process_pushed_notifications(task_queue, pushed)

        # All handled tasks are deleted, so pausing cannot cause a resend
        if needs_cooldown:
            self._cooldown()

    def _process_leased_task(
        self,
        task_name: str,
        params: dict,
    ) -> Optional[List[PushedNotification]]:
        alert = params.get("alert")
        devices = params.get("devices")

        try:
            device_tokens = json.loads(devices) if devices else None
        except (TypeError, ValueError):
            logger.warning(
                "Ignoring a task with invalid payload. This indicates a bug.",
                extra={"task_name": task_name}
            )
            return None

        if not alert:
            logger.warning("Ignoring a task with empty alert message", extra={"task_name": task_name})
            return None
        if not device_tokens or not isinstance(device_tokens, list):
            logger.warning(
                "Ignoring a task with no device tokens specified",
                extra={"task_name": task_name}
            )
            return None

        payload = self.apns_sender.create_payload(ALERT_MESSAGE, str(alert))
        return self.apns_sender.send_payload(payload, [str(token) for token in device_tokens])

    def _process_pushed_notifications(
        self,
        task_queue: TaskQueueService,
        pushed: Dict[str, List[PushedNotification]],
    ) -> None:
        self.apns_sender.flush_pending_responses()

        for task_name, notifications in pushed.items():
            invalid_tokens = []
            for notification in notifications:
                if notification.successful:
                    continue
                response = notification.response
                logger.warning(
                    "Notification to device wasn't successful",
                    extra={
                        "task_name": task_name,
                        "device_token": notification.device_token,
                        "status": response.status if response else None,
                        "error": response.message if response else str(notification.exception),
                    }
                )
                if response is not None and response.status == STATUS_INVALID_TOKEN:
                    invalid_tokens.append(notification.device_token)

            if invalid_tokens:
                enqueue_removing_device_tokens(task_queue, invalid_tokens)

    def _cooldown(self) -> None:
        logger.info("Pausing processing to recover from an exception")
        remaining = self.settings.cooldown_seconds
        step = self.settings.cooldown_step_seconds
        while remaining > 0:
            if self.shutdown_event.wait(min(step, remaining)):
                return
            remaining -= step

    # ------------------------------------------------------------------
    # Processed-task markers
    # ------------------------------------------------------------------

    def record_task_processed(self, db: Session, task_name: str) -> None:
        """Mark a task processed in the durable log, then the cache."""
        try:
            db.merge(ProcessedNotificationTask(
                task_name=task_name,
                processed_at=datetime.utcnow(),
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(
                "Failed to record processed task",
                extra={"task_name": task_name, "error": str(e)}
            )
        self.cache.set(
            processed_task_cache_key(task_name),
            1,
            ttl_seconds=self.settings.processed_task_cache_ttl,
        )

    def get_already_processed_task_names(self, db: Session, task_names: List[str]) -> Set[str]:
        """
        Names of tasks already marked processed.

        The cache is checked first; entries may have been evicted, so
        misses are looked up in the durable log.
        """
        keys = {processed_task_cache_key(name): name for name in task_names}
        hits = self.cache.get_many(keys.keys())
        processed = {keys[key] for key in hits}

        missing = [name for name in task_names if name not in processed]
        if missing:
            rows = db.query(ProcessedNotificationTask.task_name).filter(
                ProcessedNotificationTask.task_name.in_(missing)
            ).all()
            processed.update(row.task_name for row in rows)
        return processed


class DeliveryWorkerPool:
    """
    Runs delivery workers on daemon threads.

    Usage:
        >>> pool = DeliveryWorkerPool.from_settings(settings, SessionLocal, cache)
        >>> pool.start()
        >>> pool.stop(timeout=30)
    """

    def __init__(
        self,
        workers: List[DeliveryWorker],
        shutdown_event: threading.Event,
    ):
        self.workers = workers
        self.shutdown_event = shutdown_event
        self._threads: List[threading.Thread] = []

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        session_factory: Callable[[], Session],
        cache: MemoryCache,
        shutdown_event: Optional[threading.Event] = None,
    ) -> "DeliveryWorkerPool":
        """Build ``settings.delivery_workers`` workers, each with its own APNS connection."""
        shutdown_event = shutdown_event or threading.Event()
        feedback_store = ApnsFeedbackStore(session_factory)
        workers = [
            DeliveryWorker(
                session_factory=session_factory,
                apns_sender=ApnsSender.from_settings(settings, feedback_store),
                cache=cache,
                settings=settings,
                shutdown_event=shutdown_event,
            )
            for _ in range(settings.delivery_workers)
        ]
        return cls(workers, shutdown_event)

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.is_running:
            return
        self.shutdown_event.clear()
        self._threads = []
        for number, worker in enumerate(self.workers):
            thread = threading.Thread(
                target=worker.run_polling,
                name=f"delivery-worker-{number}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Delivery worker pool started", extra={"workers": len(self.workers)})

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal shutdown and wait for the workers to exit."""
        self.shutdown_event.set()
        for thread in self._threads:
            thread.join(timeout)
        for worker in self.workers:
            worker.apns_sender.stop_connection()
        logger.info("Delivery worker pool stopped")
