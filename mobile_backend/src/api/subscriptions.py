"""
Subscriptions API endpoints.

Lets a device drop every continuous query it registered, e.g. when the
user signs out of the app. Continuous queries are created through the
entities list endpoint with a FUTURE scope.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status

from mobile_backend.src.api.dependencies import (
    get_security_service,
    get_subscription_service,
    get_user_id,
)
from mobile_backend.src.services.exceptions import AuthorizationError, ValidationError
from mobile_backend.src.services.security_service import SecurityService
from mobile_backend.src.services.subscription_service import SubscriptionService
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/v1/subscriptions",
    tags=["Subscriptions"],
)


@router.delete(
    "/devices/{device_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Unsubscribe a device",
    description="Remove every continuous query of a device and its subscription record",
)
async def unsubscribe_device(
    device_id: str,
    user_id: Optional[str] = Depends(get_user_id),
    security: SecurityService = Depends(get_security_service),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> Response:
    """
    Unsubscribe a device.

    ``device_id`` may carry the ``ios_`` prefix used in registration ids.
    Unknown devices are accepted. Anonymous callers are rejected when
    anonymous access is disabled.
    """
    try:
        security.check_user_available(user_id)
        subscriptions.unsubscribe_device(device_id)
    except AuthorizationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.message)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    logger.info("Device unsubscribed", extra={"device_id": device_id, "user_id": user_id})
    return Response(status_code=status.HTTP_204_NO_CONTENT)
