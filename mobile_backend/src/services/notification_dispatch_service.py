"""
Notification dispatch for matched continuous queries.

Called with the subscription ids a newly written record matched. For each
id the owning device is looked up and, when its subscriptions are still
active, notified:
- Android devices are sent a GCM message synchronously. A provider
  error removes the device's subscriptions; there is no queued retry.
- iOS devices get one notification-delivery task per subscription id,
  delivered later by the delivery workers over a persistent APNS
  connection. The hidden message of a task is its own subscription id, so
  a task never carries another device's token.

A device is inactive when an administrative clear-all happened after its
last subscription, or when no device record exists for it. Inactive
devices are cleaned up instead of notified.
"""

import json
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from mobile_backend.src.config.settings import AppSettings
from mobile_backend.src.models import DeviceSubscription, DeviceType
from mobile_backend.src.models.queued_task import QueueName
from mobile_backend.src.services.backend_config_service import BackendConfigService
from mobile_backend.src.services.device_subscription_service import DeviceSubscriptionService
from mobile_backend.src.services.push.gcm_sender import GcmSendError, GcmSender
from mobile_backend.src.services.subscription_ids import GCM_KEY_SUBID, extract_reg_id
from mobile_backend.src.services.subscription_service import SubscriptionService
from mobile_backend.src.services.task_queue_service import TaskQueueService
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("services")

PROSPECTIVE_SEARCH_URL = "/admin/push/prospective-search"


def enqueue_matched_subscriptions(task_queue: TaskQueueService, sub_ids: List[str]) -> None:
    """Queue matched subscription ids for dispatch (repeated ``id`` params)."""
    task_queue.add_push(
        QueueName.PROSPECTIVE_SEARCH,
        PROSPECTIVE_SEARCH_URL,
        {"id": list(sub_ids)},
    )


@dataclass
class DispatchSummary:
    """What a dispatch did with the matched subscription ids."""
    android_sent: List[str] = field(default_factory=list)
    android_failed: List[str] = field(default_factory=list)
    ios_enqueued: List[str] = field(default_factory=list)
    inactive: List[str] = field(default_factory=list)
    not_sent: List[str] = field(default_factory=list)
    task_names: List[str] = field(default_factory=list)


class NotificationDispatchService:
    """
    Fans matched subscription ids out to their devices.

    Usage:
        >>> service = NotificationDispatchService(db, settings, device_subscriptions,
        ...                                       subscriptions, backend_config,
        ...                                       task_queue, gcm_sender)
        >>> summary = service.dispatch(["abc:query:q1"])
    """

    def __init__(
        self,
        db: Session,
        settings: AppSettings,
        device_subscriptions: DeviceSubscriptionService,
        subscriptions: SubscriptionService,
        backend_config: BackendConfigService,
        task_queue: TaskQueueService,
        gcm_sender: Optional[GcmSender] = None,
    ):
        self.db = db
        self.settings = settings
        self.device_subscriptions = device_subscriptions
        self.subscriptions = subscriptions
        self.backend_config = backend_config
        self.task_queue = task_queue
        self.gcm_sender = gcm_sender

    def dispatch(self, sub_ids: Iterable[str]) -> DispatchSummary:
        """
        Notify the devices behind matched subscription ids.

        Returns:
            DispatchSummary of what happened to each id
        """
        summary = DispatchSummary()
        if not self.settings.push_enabled:
            logger.info("Couldn't send push notification because it is disabled")
            return summary

        for sub_id in sub_ids:
            if not sub_id:
                continue
            device_id = extract_reg_id(sub_id)
            record = self.device_subscriptions.get(device_id)

            if not self._is_subscription_active(record):
                self._clear_inactive(device_id, sub_id, record)
                summary.inactive.append(sub_id)
                continue

            if record.device_type == DeviceType.ANDROID:
                self._send_gcm_alert(sub_id, device_id, summary)
            else:
                summary.task_names.append(self._enqueue_ios_alert(sub_id, device_id))
                summary.ios_enqueued.append(sub_id)

        return summary

    def _is_subscription_active(self, record: Optional[DeviceSubscription]) -> bool:
        if record is None:
            return False
        last_delete_all = self.backend_config.get_last_subscription_delete_all_time()
        if last_delete_all is None:
            return True
        return record.updated_at is not None and record.updated_at > last_delete_all

    def _clear_inactive(
        self,
        device_id: str,
        sub_id: str,
        record: Optional[DeviceSubscription],
    ) -> None:
        logger.info(
            "Subscription is no longer active",
            extra={"subscription_id": sub_id, "device_known": record is not None}
        )
        if record is None:
            self.subscriptions.unsubscribe_subscription(sub_id)
        else:
            self.subscriptions.clear_subscription_and_device_entity([device_id])

    def _send_gcm_alert(self, sub_id: str, device_id: str, summary: DispatchSummary) -> None:
        if self.gcm_sender is None:
            logger.info("GCM is not sent: no GCM key configured", extra={"subscription_id": sub_id})
            summary.not_sent.append(sub_id)
            return

        try:
            result = self.gcm_sender.send(
                {GCM_KEY_SUBID: sub_id},
                device_id,
                retries=self.settings.gcm_send_retries,
            )
        except GcmSendError as e:
            logger.error(
                "GCM send failed",
                extra={"subscription_id": sub_id, "error": str(e)}
            )
            summary.not_sent.append(sub_id)
            return

        if result.success:
            logger.info("GCM sent", extra={"subscription_id": sub_id})
            summary.android_sent.append(sub_id)
            return

        logger.warning(
            "GCM error for subscription",
            extra={"subscription_id": sub_id, "error_code": result.error_code}
        )
        self.subscriptions.clear_subscription_and_device_entity([device_id])
        summary.android_failed.append(sub_id)

    def _enqueue_ios_alert(self, sub_id: str, device_token: str) -> str:
        task = self.task_queue.add_pull(
            QueueName.NOTIFICATION_DELIVERY,
            {"alert": sub_id, "devices": json.dumps([device_token])},
        )
        logger.info(
            "Push alert enqueued",
            extra={"task_name": task.name, "subscription_id": sub_id}
        )
        return task.name
