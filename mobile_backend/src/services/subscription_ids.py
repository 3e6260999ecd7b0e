"""
Subscription id format and subscription-removal task constants.

A subscription id is ``<regId>:query:<queryId>``. iOS registration ids
carry the ``ios_`` prefix; Android ids carry none. The device id is the
registration id with the prefix removed.
"""

from mobile_backend.src.models import DeviceType


IOS_DEVICE_PREFIX = "ios_"
GCM_TYPEID_QUERY = "query"
GCM_KEY_SUBID = "subId"

# Continuous-query topic shared by every subscription
DEFAULT_TOPIC = "defaultTopic"

# Subscription-removal task types
REQUEST_TYPE_DEVICE_SUB = "deviceSubscriptionRequest"
REQUEST_TYPE_PSI_SUB = "PSISubscriptionRequest"
SUBSCRIPTION_REMOVAL_URL = "/admin/push/devicesubscription/delete"


def get_mobile_type(sub_id: str) -> DeviceType:
    """Platform of a registration or subscription id, from its prefix."""
    return DeviceType.IOS if sub_id.startswith(IOS_DEVICE_PREFIX) else DeviceType.ANDROID


def extract_reg_id(sub_id: str) -> str:
    """
    Device id of a subscription id (or of a prefixed registration id).

    Raises:
        ValueError: If sub_id is empty
    """
    if not sub_id:
        raise ValueError("subId cannot be empty")
    reg_id = sub_id.split(":")[0]
    if reg_id.startswith(IOS_DEVICE_PREFIX):
        reg_id = reg_id[len(IOS_DEVICE_PREFIX):]
    return reg_id


def construct_sub_id(reg_id: str, query_id: str) -> str:
    """
    Build the subscription id of a client query.

    Raises:
        ValueError: If either id is empty
    """
    if not reg_id or not query_id:
        raise ValueError("regId and queryId cannot be empty")
    return f"{reg_id}:{GCM_TYPEID_QUERY}:{query_id}"
