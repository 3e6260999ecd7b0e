"""
Device subscription registry.

Keeps, per push-registered device, the set of continuous-query
subscription ids it holds. The database is authoritative; the cache is a
read accelerator that may lose entries at any time. Writes go to the
database first and the cache second.

Bulk deletion (administrative clear-all) runs as a chain of queued tasks,
one page per task, so no single request has to delete an unbounded number
of rows. Each page carries a ``SweepCursor`` to the next one.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from mobile_backend.src.models import DeviceSubscription, DeviceType
from mobile_backend.src.models.queued_task import QueueName
from mobile_backend.src.services.subscription_ids import (
    REQUEST_TYPE_DEVICE_SUB,
    REQUEST_TYPE_PSI_SUB,
    SUBSCRIPTION_REMOVAL_URL,
    extract_reg_id,
)
from mobile_backend.src.services.task_queue_service import TaskQueueService
from mobile_backend.src.utils.cache import MemoryCache
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("services")

BATCH_DELETE_SIZE = 250


@dataclass(frozen=True)
class SweepCursor:
    """
    Opaque position in a device subscription sweep.

    The sweep walks device records in ``device_id`` order; the cursor holds
    the last device id of the previous page. Records of a page are deleted
    before the cursor is issued, so replaying a page is harmless.
    """
    after_device_id: str

    def to_token(self) -> str:
        payload = json.dumps({"after": self.after_device_id}).encode("utf-8")
        return base64.urlsafe_b64encode(payload).decode("ascii")

    @classmethod
    def from_token(cls, token: Optional[str]) -> Optional["SweepCursor"]:
        """
        Decode a cursor token. An empty token means "first page".

        Raises:
            ValueError: If the token is not a cursor issued by ``to_token``
        """
        if not token:
            return None
        try:
            payload = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
            return cls(after_device_id=str(payload["after"]))
        except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as e:
            raise ValueError(f"Invalid sweep cursor: {token!r}") from e


def _cache_key(device_id: str) -> str:
    return f"device_subscription:{device_id}"


def _snapshot(record: DeviceSubscription) -> dict:
    return {
        "device_id": record.device_id,
        "device_type": record.device_type.value,
        "subscription_ids_json": record.subscription_ids_json,
        "updated_at": record.updated_at,
    }


def _from_snapshot(snapshot: dict) -> DeviceSubscription:
    return DeviceSubscription(
        device_id=snapshot["device_id"],
        device_type=DeviceType(snapshot["device_type"]),
        subscription_ids_json=snapshot["subscription_ids_json"],
        updated_at=snapshot["updated_at"],
    )


class DeviceSubscriptionService:
    """
    Service for device subscription records.

    Handles:
    - Read-through lookups (cache, then database)
    - Idempotent subscription registration
    - Per-device deletion
    - Paged, resumable deletion of every record older than a cutoff
    """

    def __init__(
        self,
        db: Session,
        cache: MemoryCache,
        task_queue: Optional[TaskQueueService] = None,
        page_size: int = BATCH_DELETE_SIZE,
    ):
        self.db = db
        self.cache = cache
        self.task_queue = task_queue or TaskQueueService(db)
        self.page_size = page_size

    def get(self, device_id: str) -> Optional[DeviceSubscription]:
        """
        Get a device record, from the cache when possible.

        Records served from the cache are detached copies; use them for
        reading only.

        Raises:
            ValueError: If device_id is empty
        """
        if not device_id:
            raise ValueError("device_id cannot be empty")

        cached = self.cache.get(_cache_key(device_id))
        if cached is not None:
            return _from_snapshot(cached)

        record = self.db.get(DeviceSubscription, device_id)
        if record is not None:
            self.cache.set(_cache_key(device_id), _snapshot(record))
        return record

    def get_subscription_ids(self, device_id: str) -> Set[str]:
        """Subscription ids held by a device; empty when unknown."""
        if not device_id:
            return set()
        record = self.get(device_id)
        if record is None:
            return set()
        return record.subscription_ids

    def create(
        self,
        device_type: DeviceType,
        device_id: str,
        subscription_id: str,
    ) -> Optional[DeviceSubscription]:
        """
        Add a subscription id to a device record, creating it if needed.

        The device id may carry its platform prefix; it is stripped. Adding
        an id the record already holds changes nothing and returns the
        record as stored.

        Returns:
            The device record, or None when either id is empty
        """
        if not device_id or not subscription_id:
            return None

        raw_device_id = extract_reg_id(device_id)
        record = self.db.get(DeviceSubscription, raw_device_id)
        if record is None:
            record = DeviceSubscription(
                device_id=raw_device_id,
                device_type=device_type,
                subscription_ids_json="[]",
            )
            self.db.add(record)

        subscription_ids = record.subscription_ids
        if subscription_id in subscription_ids:
            return record

        subscription_ids.add(subscription_id)
        record.subscription_ids = subscription_ids
        record.device_type = device_type
        record.updated_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(record)

        self.cache.set(_cache_key(raw_device_id), _snapshot(record))
        logger.info(
            "Device subscription added",
            extra={
                "device_id": raw_device_id,
                "device_type": device_type.value,
                "subscription_count": len(subscription_ids),
            }
        )
        return record

    def delete(self, device_id: str) -> None:
        """
        Delete a device record (database, then cache). Missing records
        are ignored.

        Raises:
            ValueError: If device_id is empty
        """
        if not device_id:
            raise ValueError("device_id cannot be empty")

        self.db.query(DeviceSubscription).filter(
            DeviceSubscription.device_id == device_id
        ).delete()
        self.db.commit()
        self.cache.delete(_cache_key(device_id))

    def delete_all_continuously(
        self,
        cutoff: Optional[datetime],
        cursor: Optional[SweepCursor],
    ) -> Optional[SweepCursor]:
        """
        Delete one page of device records last updated at or before cutoff.

        When the page was full, a subscription-removal task for the next
        page is enqueued. The continuous-query subscriptions the deleted
        devices held are handed to subscription-removal tasks in chunks.

        Args:
            cutoff: Only records with updated_at <= cutoff are deleted
                (None = now)
            cursor: Position after the previous page (None = first page)

        Returns:
            The cursor of the next page, or None when the sweep is complete
        """
        cutoff = cutoff or datetime.utcnow()

        query = self.db.query(DeviceSubscription).filter(
            DeviceSubscription.updated_at <= cutoff
        )
        if cursor is not None:
            query = query.filter(DeviceSubscription.device_id > cursor.after_device_id)
        page = query.order_by(DeviceSubscription.device_id.asc()).limit(self.page_size).all()

        if not page:
            logger.info("Device subscription sweep complete", extra={"cutoff": cutoff.isoformat()})
            return None

        device_ids = [record.device_id for record in page]
        subscription_ids: List[str] = []
        for record in page:
            subscription_ids.extend(sorted(record.subscription_ids))

        self.db.query(DeviceSubscription).filter(
            DeviceSubscription.device_id.in_(device_ids)
        ).delete()
        self.db.commit()
        self.cache.delete_many(_cache_key(device_id) for device_id in device_ids)

        next_cursor = None
        if len(page) == self.page_size:
            next_cursor = SweepCursor(after_device_id=device_ids[-1])
            self.enqueue_delete_device_subscriptions(cutoff, next_cursor)

        if subscription_ids:
            self.enqueue_delete_psi_subscriptions(subscription_ids)

        logger.info(
            "Deleted device subscription page",
            extra={
                "deleted": len(device_ids),
                "subscription_ids": len(subscription_ids),
                "has_more": next_cursor is not None,
            }
        )
        return next_cursor

    def enqueue_delete_all(self) -> None:
        """Start a sweep of every device record (first page, cutoff now)."""
        self.enqueue_delete_device_subscriptions(datetime.utcnow(), None)

    def enqueue_delete_device_subscriptions(
        self,
        cutoff: datetime,
        cursor: Optional[SweepCursor],
    ) -> None:
        self.task_queue.add_push(
            QueueName.SUBSCRIPTION_REMOVAL,
            SUBSCRIPTION_REMOVAL_URL,
            {
                "type": REQUEST_TYPE_DEVICE_SUB,
                "timeStamp": cutoff.isoformat(),
                "cursor": cursor.to_token() if cursor else "",
            },
        )

    def enqueue_delete_psi_subscriptions(self, subscription_ids: Iterable[str]) -> int:
        """
        Enqueue continuous-query unsubscribes in chunks.

        Returns:
            Number of tasks enqueued
        """
        ids = list(subscription_ids)
        enqueued = 0
        for start in range(0, len(ids), BATCH_DELETE_SIZE):
            chunk = ids[start:start + BATCH_DELETE_SIZE]
            self.task_queue.add_push(
                QueueName.SUBSCRIPTION_REMOVAL,
                SUBSCRIPTION_REMOVAL_URL,
                {
                    "type": REQUEST_TYPE_PSI_SUB,
                    "subIds": json.dumps(chunk),
                },
            )
            enqueued += 1
        return enqueued
