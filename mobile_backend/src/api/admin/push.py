"""
Push administration and task-handler endpoints.

Provides:
- Administrative clear-all of device subscriptions
- Handlers for the internal push queues (device-token cleanup,
  subscription removal, prospective-search matches)
- Cron entry points for processed-notification cleanup and provider
  feedback polling

Task handlers require the ``X-Task-Queue-Name`` header and the shared
task queue secret; clear-all requires a super admin. Malformed task
parameters are logged and acknowledged with 200 so the task is not
retried; a retry could never succeed.
"""

import json
from typing import Callable, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Form, HTTPException, Request, status
from sqlalchemy.orm import Session

from mobile_backend.src.api.dependencies import (
    get_apns_sender,
    get_notification_dispatch_service,
    get_push_cleanup_service,
    get_session_factory,
    get_subscription_service,
    require_super_admin,
    require_task_queue,
)
from mobile_backend.src.config.settings import AppSettings, get_settings
from mobile_backend.src.schemas.push import (
    AcceptedResponse,
    DeviceCleanupResponse,
    DispatchResponse,
    FeedbackResponse,
)
from mobile_backend.src.services.exceptions import ValidationError
from mobile_backend.src.services.notification_dispatch_service import NotificationDispatchService
from mobile_backend.src.services.push.apns_sender import ApnsSender
from mobile_backend.src.services.push_cleanup_service import (
    PushCleanupService,
    purge_processed_tasks,
)
from mobile_backend.src.services.subscription_service import SubscriptionService
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(prefix="/push", tags=["Admin - Push"])


def _run_processed_task_cleanup(
    session_factory: Callable[[], Session],
    settings: AppSettings,
) -> None:
    db = session_factory()
    try:
        purge_processed_tasks(db, settings)
    except Exception as e:
        logger.error(f"Processed notification cleanup failed: {e}", exc_info=True)
    finally:
        db.close()


# ============================================================================
# Administration
# ============================================================================


@router.post(
    "/subscriptions/clear-all",
    response_model=AcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Clear all subscriptions",
    description="Start removal of every device subscription and continuous query",
)
async def clear_all_subscriptions(
    admin_user_id: str = Depends(require_super_admin),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> AcceptedResponse:
    """
    Start the clear-all sweep.

    Device records are deleted page by page through the subscription-removal
    queue. Subscriptions created after this call are kept.
    """
    logger.info("Clear-all requested", extra={"user_id": admin_user_id})
    subscriptions.clear_all_subscription_and_device_entity()
    return AcceptedResponse(message="Subscription removal started")


# ============================================================================
# Task Handlers
# ============================================================================


@router.post(
    "/device/cleanup",
    response_model=DeviceCleanupResponse,
    summary="Remove devices reported invalid",
)
async def cleanup_devices(
    devices: Optional[str] = Form(None),
    queue_name: str = Depends(require_task_queue),
    cleanup_service: PushCleanupService = Depends(get_push_cleanup_service),
) -> DeviceCleanupResponse:
    """Handle a device-token cleanup task (``devices`` is a JSON array)."""
    if not devices:
        logger.warning("Missing 'devices' argument on task queue request. This indicates a bug")
        return DeviceCleanupResponse()

    try:
        tokens = json.loads(devices)
    except ValueError:
        tokens = None
    if not isinstance(tokens, list):
        logger.warning(
            "Invalid format of 'devices' argument on task queue request. This indicates a bug",
            extra={"devices": devices}
        )
        return DeviceCleanupResponse()

    removed = cleanup_service.remove_devices(str(token) for token in tokens)
    return DeviceCleanupResponse(removed=removed)


@router.post(
    "/devicesubscription/delete",
    summary="Process a subscription-removal task",
)
async def delete_device_subscriptions(
    request: Request,
    queue_name: str = Depends(require_task_queue),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> dict:
    """
    Handle a subscription-removal task.

    ``type=deviceSubscriptionRequest`` deletes one sweep page (``cursor``,
    ``timeStamp``); ``type=PSISubscriptionRequest`` unsubscribes the JSON
    list in ``subIds``.
    """
    # cursor="" is the first page and must not collapse into a missing value
    form = await request.form()
    try:
        subscriptions.process_removal_request(
            form.get("type"),
            cursor=form.get("cursor"),
            timestamp=form.get("timeStamp"),
            sub_ids=form.get("subIds"),
        )
    except ValidationError as e:
        logger.warning(
            "Rejected subscription removal task",
            extra={"queue_name": queue_name, "error": e.message}
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    return {"status": "ok"}


@router.post(
    "/prospective-search",
    response_model=DispatchResponse,
    summary="Dispatch matched subscriptions",
)
def dispatch_matches(
    id: List[str] = Form(default=[]),
    queue_name: str = Depends(require_task_queue),
    dispatch_service: NotificationDispatchService = Depends(get_notification_dispatch_service),
) -> DispatchResponse:
    """
    Notify the devices behind matched subscription ids (repeated ``id``).

    Runs in the threadpool; Android sends block on GCM, retries included.
    """
    if not id:
        logger.warning("Missing 'id' argument on task queue request. This indicates a bug")
        return DispatchResponse()

    summary = dispatch_service.dispatch(id)
    return DispatchResponse.from_summary(summary)


# ============================================================================
# Cron Endpoints
# ============================================================================


@router.get(
    "/notifications/cleanup",
    response_model=AcceptedResponse,
    summary="Clean up processed notification records",
)
async def cleanup_processed_notifications(
    background_tasks: BackgroundTasks,
    queue_name: str = Depends(require_task_queue),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    settings: AppSettings = Depends(get_settings),
) -> AcceptedResponse:
    """Purge processed-task markers past retention, after the response is sent."""
    background_tasks.add_task(_run_processed_task_cleanup, session_factory, settings)
    return AcceptedResponse(message="Processed notification cleanup started")


@router.get(
    "/feedback",
    response_model=FeedbackResponse,
    summary="Poll provider feedback",
)
async def process_feedback(
    queue_name: str = Depends(require_task_queue),
    apns_sender: Optional[ApnsSender] = Depends(get_apns_sender),
    cleanup_service: PushCleanupService = Depends(get_push_cleanup_service),
) -> FeedbackResponse:
    """Queue removal of devices the provider reported inactive."""
    if apns_sender is None:
        logger.info("Feedback not processed: APNS is not configured")
        return FeedbackResponse(inactive_devices=0)

    return FeedbackResponse(inactive_devices=cleanup_service.process_feedback(apns_sender))
