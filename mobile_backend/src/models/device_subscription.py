"""
DeviceSubscription model for per-device continuous-query bookkeeping.

Maps a push-registered device to the set of continuous-query subscription
ids it holds, so that every subscription of a device can be torn down when
the device becomes invalid or when an administrator clears everything.

Concurrency:
    The subscription id set is stored as a serialized JSON array and
    updated with a read-modify-write cycle. Two concurrent registrations
    for the same device can overwrite each other (last writer wins). The
    set is a cleanup index, not an authority, so a lost id only delays its
    cleanup until the subscription expires.
"""

import enum
import json
from datetime import datetime
from typing import Iterable, Set

from sqlalchemy import Column, DateTime, Enum, String, Text

from mobile_backend.src.models import Base


class DeviceType(str, enum.Enum):
    """
    Push platform of a registered device.

    - ANDROID: GCM-style registration id
    - IOS: APNS device token (client ids carry the ``ios_`` prefix)
    """
    ANDROID = "android"
    IOS = "ios"


class DeviceSubscription(Base):
    """
    Subscription ids held by one device.

    Attributes:
        device_id: Raw device registration id or token (prefix stripped)
        device_type: Platform recorded at registration time
        subscription_ids_json: JSON array of unique subscription ids
        updated_at: Last time a new subscription id was added
    """

    __tablename__ = "device_subscriptions"

    device_id = Column(String(512), primary_key=True)
    device_type = Column(
        Enum(DeviceType, values_callable=lambda x: [e.value for e in x], native_enum=False),
        nullable=False,
    )
    subscription_ids_json = Column(Text, nullable=False, default="[]")
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    @property
    def subscription_ids(self) -> Set[str]:
        """Deserialized subscription id set."""
        if not self.subscription_ids_json:
            return set()
        return set(json.loads(self.subscription_ids_json))

    @subscription_ids.setter
    def subscription_ids(self, value: Iterable[str]) -> None:
        self.subscription_ids_json = json.dumps(sorted(set(value)))

    def __repr__(self) -> str:
        return (
            f"<DeviceSubscription(device_id='{self.device_id}', "
            f"type={self.device_type}, updated_at={self.updated_at})>"
        )
