"""
Subscription lifecycle service.

Ties the device subscription registry to the continuous-match service:
tearing down every subscription of a device, explicit unsubscribes, the
administrative clear-all sweep, and the subscription-removal tasks the
sweep produces.

Unsubscribing from the continuous-match service is best-effort: a failed
unsubscribe is logged and not retried, since subscriptions also lapse on
their own.
"""

import json
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from mobile_backend.src.models import DeviceType
from mobile_backend.src.services import subscription_ids
from mobile_backend.src.services.backend_config_service import BackendConfigService
from mobile_backend.src.services.device_subscription_service import (
    DeviceSubscriptionService,
    SweepCursor,
)
from mobile_backend.src.services.exceptions import ValidationError
from mobile_backend.src.services.prospective_search_service import ProspectiveSearchService
from mobile_backend.src.services.subscription_ids import (
    DEFAULT_TOPIC,
    REQUEST_TYPE_DEVICE_SUB,
    REQUEST_TYPE_PSI_SUB,
)
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("services")


class SubscriptionService:
    """
    Service for subscription teardown and subscription-removal tasks.
    """

    def __init__(
        self,
        db: Session,
        device_subscriptions: DeviceSubscriptionService,
        prospective_search: ProspectiveSearchService,
        backend_config: BackendConfigService,
    ):
        self.db = db
        self.device_subscriptions = device_subscriptions
        self.prospective_search = prospective_search
        self.backend_config = backend_config

    # ------------------------------------------------------------------
    # Subscription id helpers
    # ------------------------------------------------------------------

    @staticmethod
    def get_mobile_type(sub_id: str) -> DeviceType:
        return subscription_ids.get_mobile_type(sub_id)

    @staticmethod
    def extract_reg_id(sub_id: str) -> str:
        return subscription_ids.extract_reg_id(sub_id)

    @staticmethod
    def construct_sub_id(reg_id: str, query_id: str) -> str:
        return subscription_ids.construct_sub_id(reg_id, query_id)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def clear_subscription_and_device_entity(self, device_ids: Iterable[str]) -> None:
        """
        Unsubscribe every continuous query of each device, then delete the
        device records.
        """
        for device_id in device_ids:
            for sub_id in sorted(self.device_subscriptions.get_subscription_ids(device_id)):
                self.unsubscribe_subscription(sub_id)
            self.device_subscriptions.delete(device_id)

            logger.info("Cleared device subscriptions", extra={"device_id": device_id})

    def unsubscribe_device(self, device_id: str) -> None:
        """
        Explicit unsubscribe of a device (prefixed or raw id).

        Raises:
            ValidationError: If device_id is empty
        """
        if not device_id:
            raise ValidationError("Device id cannot be empty", field="device_id")
        self.clear_subscription_and_device_entity([self.extract_reg_id(device_id)])

    def clear_all_subscription_and_device_entity(self) -> None:
        """Start the paged sweep of every device record."""
        self.device_subscriptions.enqueue_delete_all()
        logger.info("Enqueued clear-all of device subscriptions")

    def enqueue_delete_psi_subscriptions(self, sub_ids: Iterable[str]) -> int:
        return self.device_subscriptions.enqueue_delete_psi_subscriptions(sub_ids)

    # ------------------------------------------------------------------
    # Subscription-removal tasks
    # ------------------------------------------------------------------

    def process_removal_request(
        self,
        request_type: Optional[str],
        cursor: Optional[str] = None,
        timestamp: Optional[str] = None,
        sub_ids: Optional[str] = None,
    ) -> None:
        """
        Handle one subscription-removal task.

        Missing or malformed parameters are logged and the task is
        dropped; only an unknown ``type`` is rejected.

        Raises:
            ValidationError: If request_type is missing or unknown
        """
        if not request_type:
            raise ValidationError("Parameter 'type' cannot be empty", field="type")

        if request_type == REQUEST_TYPE_DEVICE_SUB:
            self._remove_device_subscriptions(cursor, timestamp)
        elif request_type == REQUEST_TYPE_PSI_SUB:
            self._remove_psi_subscriptions(sub_ids)
        else:
            raise ValidationError(f"Invalid value of parameter 'type': {request_type}", field="type")

    def _remove_psi_subscriptions(self, sub_ids_param: Optional[str]) -> None:
        if not sub_ids_param:
            logger.warning("Missing 'subIds' argument on task queue request. This indicates a bug")
            return

        try:
            sub_ids = json.loads(sub_ids_param)
        except ValueError:
            logger.warning(
                "Invalid format of 'subIds' argument on task queue request. This indicates a bug",
                extra={"sub_ids": sub_ids_param}
            )
            return
        if not isinstance(sub_ids, list):
            logger.warning(
                "Invalid format of 'subIds' argument on task queue request. This indicates a bug",
                extra={"sub_ids": sub_ids_param}
            )
            return

        for sub_id in sub_ids:
            self.unsubscribe_subscription(str(sub_id))

    def _remove_device_subscriptions(
        self,
        cursor_param: Optional[str],
        timestamp_param: Optional[str],
    ) -> None:
        if cursor_param is None:
            logger.warning("Missing 'cursor' argument on task queue request. This indicates a bug.")
            return

        if not timestamp_param:
            logger.warning("Missing 'timeStamp' argument on task queue request. This indicates a bug.")
            return

        try:
            cutoff = datetime.fromisoformat(timestamp_param)
            if cutoff.tzinfo is not None:
                cutoff = cutoff.astimezone(timezone.utc).replace(tzinfo=None)
            cursor = SweepCursor.from_token(cursor_param)
        except ValueError:
            logger.warning(
                "Invalid 'timeStamp' or 'cursor' argument on task queue request. This indicates a bug.",
                extra={"timestamp": timestamp_param, "cursor": cursor_param}
            )
            return

        # the marker and the sweep cutoff must agree, and a re-delivered
        # first page must not move the marker
        if cursor is None:
            self.backend_config.set_last_subscription_delete_all_time(cutoff)

        self.device_subscriptions.delete_all_continuously(cutoff, cursor)

    def unsubscribe_subscription(self, sub_id: str) -> None:
        """Remove one continuous query; failures are logged, not raised."""
        try:
            self.prospective_search.unsubscribe(DEFAULT_TOPIC, sub_id)
        except ValueError as e:
            logger.warning(
                "Unsubscribe from continuous queries failed",
                extra={"subscription_id": sub_id, "error": str(e)}
            )

