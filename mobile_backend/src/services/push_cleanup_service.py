"""
Cleanup of push delivery state.

Provides:
- Device removal for tokens the push provider reported invalid
- Purging of processed-task markers older than the retention window
- Polling of the provider's feedback channel for inactive devices

Design:
- Device removal skips records updated within the freshness window, since
  the device may have re-registered after the invalid-token report
- Processed-task markers are deleted in small batches until none remain
- Removal requests travel through the device-token cleanup queue so the
  worker that discovers invalid tokens never blocks on bookkeeping
"""

import json
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from mobile_backend.src.config.settings import AppSettings
from mobile_backend.src.models import ProcessedNotificationTask
from mobile_backend.src.models.queued_task import QueueName
from mobile_backend.src.services.device_subscription_service import DeviceSubscriptionService
from mobile_backend.src.services.push.apns_sender import (
    ApnsCommunicationError,
    ApnsCredentialsError,
    ApnsSender,
)
from mobile_backend.src.services.subscription_service import SubscriptionService
from mobile_backend.src.services.task_queue_service import TaskQueueService
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("services")

DEVICE_CLEANUP_URL = "/admin/push/device/cleanup"

# Processed-task markers deleted per batch
PROCESSED_TASK_DELETE_BATCH_SIZE = 5


def enqueue_removing_device_tokens(task_queue: TaskQueueService, device_tokens: List[str]) -> None:
    """Queue a device cleanup request for tokens reported invalid."""
    task_queue.add_push(
        QueueName.DEVICE_TOKEN_CLEANUP,
        DEVICE_CLEANUP_URL,
        {"devices": json.dumps(list(device_tokens))},
    )


def purge_processed_tasks(db: Session, settings: AppSettings, now: Optional[datetime] = None) -> int:
    """
    Delete processed-task markers older than the retention window.

    Markers exactly at the cutoff are kept.

    Returns:
        Number of markers deleted
    """
    now = now or datetime.utcnow()
    cutoff = now - settings.processed_task_retention
    logger.info(
        "Starting a job to clean up processed notification records",
        extra={"cutoff": cutoff.isoformat()}
    )

    total = 0
    while True:
        names = [
            row.task_name
            for row in db.query(ProcessedNotificationTask.task_name).filter(
                ProcessedNotificationTask.processed_at < cutoff
            ).limit(PROCESSED_TASK_DELETE_BATCH_SIZE).all()
        ]
        if not names:
            break

        db.query(ProcessedNotificationTask).filter(
            ProcessedNotificationTask.task_name.in_(names)
        ).delete()
        db.commit()
        total += len(names)

    logger.info(
        "Finished a job to clean up processed notification records",
        extra={"deleted": total}
    )
    return total


class PushCleanupService:
    """
    Service for removing stale push state.

    Usage:
        >>> service = PushCleanupService(db, settings, subscriptions,
        ...                              device_subscriptions, task_queue)
        >>> service.remove_devices(["a1b2..."])
        >>> service.cleanup_processed_tasks()
    """

    def __init__(
        self,
        db: Session,
        settings: AppSettings,
        subscriptions: SubscriptionService,
        device_subscriptions: DeviceSubscriptionService,
        task_queue: TaskQueueService,
    ):
        self.db = db
        self.settings = settings
        self.subscriptions = subscriptions
        self.device_subscriptions = device_subscriptions
        self.task_queue = task_queue

    def remove_devices(self, device_tokens: Iterable[str], now: Optional[datetime] = None) -> List[str]:
        """
        Remove devices and their continuous queries.

        A device is only removed when its record was last updated strictly
        before ``now - freshness_window``. Unknown devices are skipped.

        Returns:
            Tokens of the devices actually removed
        """
        now = now or datetime.utcnow()
        threshold = now - self.settings.freshness_window

        removed = []
        for token in device_tokens:
            if not token:
                continue
            record = self.device_subscriptions.get(token)
            if record is None:
                logger.debug("Device already removed", extra={"device_id": token})
                continue
            if record.updated_at is not None and record.updated_at >= threshold:
                logger.info(
                    "Skipping removal of recently registered device",
                    extra={"device_id": token, "updated_at": record.updated_at.isoformat()}
                )
                continue

            self.subscriptions.clear_subscription_and_device_entity([token])
            removed.append(token)

        if removed:
            logger.info("Removed devices", extra={"count": len(removed)})
        return removed

    def cleanup_processed_tasks(self, now: Optional[datetime] = None) -> int:
        """Delete processed-task markers older than the retention window."""
        return purge_processed_tasks(self.db, self.settings, now)

    def process_feedback(self, apns_sender: ApnsSender) -> int:
        """
        Queue removal of devices the provider reported inactive.

        Returns:
            Number of inactive devices found
        """
        try:
            tokens = apns_sender.feedback()
        except (ApnsCommunicationError, ApnsCredentialsError) as e:
            logger.warning(
                "Retrieving the list of inactive devices failed",
                extra={"error": str(e)}
            )
            return 0

        if tokens:
            logger.info("Inactive devices reported", extra={"count": len(tokens)})
            enqueue_removing_device_tokens(self.task_queue, tokens)
        return len(tokens)
