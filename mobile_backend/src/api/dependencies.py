"""
Shared FastAPI dependencies for the mobile backend API.

Services are built per request from the request's database session and
the process-wide objects created at startup (cache, push senders) that
live on ``app.state``.

Caller identity:
    The authenticated user id arrives in the ``X-User-Id`` header, set by
    the authentication layer in front of this service. A missing header
    means an anonymous caller.

Internal endpoints:
    Handlers under ``/admin/push`` that consume queued tasks require the
    ``X-Task-Queue-Name`` header and the shared ``X-Task-Queue-Secret`` the
    push-task dispatcher sends. Administrative endpoints require a super
    admin user.
"""

import hmac
from functools import partial
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from mobile_backend.src.config.settings import AppSettings, get_settings
from mobile_backend.src.config.super_admins import is_super_admin
from mobile_backend.src.db.database import SessionLocal, get_db
from mobile_backend.src.services.backend_config_service import BackendConfigService
from mobile_backend.src.services.device_subscription_service import DeviceSubscriptionService
from mobile_backend.src.services.entity_service import EntityService
from mobile_backend.src.services.notification_dispatch_service import (
    NotificationDispatchService,
    enqueue_matched_subscriptions,
)
from mobile_backend.src.services.prospective_search_service import ProspectiveSearchService
from mobile_backend.src.services.push.apns_sender import ApnsSender
from mobile_backend.src.services.push.gcm_sender import GcmSender
from mobile_backend.src.services.push_cleanup_service import PushCleanupService
from mobile_backend.src.services.push_task_dispatcher import (
    QUEUE_NAME_HEADER,
    QUEUE_SECRET_HEADER,
)
from mobile_backend.src.services.query_service import QueryService
from mobile_backend.src.services.security_service import SecurityService
from mobile_backend.src.services.subscription_service import SubscriptionService
from mobile_backend.src.services.task_queue_service import TaskQueueService
from mobile_backend.src.utils.cache import MemoryCache
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("api")


# ============================================================================
# Application state
# ============================================================================


def get_session_factory() -> Callable[[], Session]:
    """Session factory for work that outlives the request session."""
    return SessionLocal


def get_memory_cache(request: Request) -> MemoryCache:
    """Get the process-wide cache from application state."""
    return request.app.state.cache


def get_gcm_sender(request: Request) -> Optional[GcmSender]:
    """GCM sender, or None when no server key is configured."""
    return getattr(request.app.state, "gcm_sender", None)


def get_apns_sender(request: Request) -> Optional[ApnsSender]:
    """APNS sender used for feedback polling, or None when not configured."""
    return getattr(request.app.state, "apns_sender", None)


# ============================================================================
# Caller identity
# ============================================================================


def get_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> Optional[str]:
    """Authenticated user id, or None for anonymous callers."""
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


def require_task_queue(
    x_task_queue_name: Optional[str] = Header(None, alias=QUEUE_NAME_HEADER),
    x_task_queue_secret: Optional[str] = Header(None, alias=QUEUE_SECRET_HEADER),
    settings: AppSettings = Depends(get_settings),
) -> str:
    """
    Reject calls that did not come from the push-task dispatcher.

    Raises:
        HTTPException 401: If the queue name is missing or the shared secret
            does not match
    """
    if not x_task_queue_name:
        logger.warning("Internal push endpoint called without a task queue header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Only task queue requests are accepted",
        )

    expected = settings.task_queue_secret.encode("utf-8")
    provided = (x_task_queue_secret or "").encode("utf-8")
    if not hmac.compare_digest(provided, expected):
        logger.warning(
            "Internal push endpoint called with an invalid task queue secret",
            extra={"queue_name": x_task_queue_name}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Only task queue requests are accepted",
        )
    return x_task_queue_name


def require_super_admin(
    user_id: Optional[str] = Depends(get_user_id),
    settings: AppSettings = Depends(get_settings),
) -> str:
    """
    Dependency that requires super admin privileges.

    Raises:
        HTTPException 401: If the caller is anonymous
        HTTPException 403: If the caller is not a super admin
    """
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    if not is_super_admin(user_id, settings):
        logger.warning("Admin endpoint called by a non-admin user", extra={"user_id": user_id})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super admin privileges required",
        )
    return user_id


# ============================================================================
# Services
# ============================================================================


def get_task_queue_service(db: Session = Depends(get_db)) -> TaskQueueService:
    """Create TaskQueueService instance with database session."""
    return TaskQueueService(db)


def get_security_service(settings: AppSettings = Depends(get_settings)) -> SecurityService:
    return SecurityService(settings)


def get_backend_config_service(
    db: Session = Depends(get_db),
    cache: MemoryCache = Depends(get_memory_cache),
) -> BackendConfigService:
    return BackendConfigService(db, cache)


def get_device_subscription_service(
    db: Session = Depends(get_db),
    cache: MemoryCache = Depends(get_memory_cache),
    task_queue: TaskQueueService = Depends(get_task_queue_service),
    settings: AppSettings = Depends(get_settings),
) -> DeviceSubscriptionService:
    """Create DeviceSubscriptionService sharing the request's task queue."""
    return DeviceSubscriptionService(db, cache, task_queue, page_size=settings.sweep_page_size)


def get_prospective_search_service(
    db: Session = Depends(get_db),
    task_queue: TaskQueueService = Depends(get_task_queue_service),
) -> ProspectiveSearchService:
    """
    Create ProspectiveSearchService whose matches are queued for dispatch.

    Matched subscription ids travel through the prospective-search queue
    so the write request never waits on push delivery.
    """
    return ProspectiveSearchService(db, on_match=partial(enqueue_matched_subscriptions, task_queue))


def get_subscription_service(
    db: Session = Depends(get_db),
    device_subscriptions: DeviceSubscriptionService = Depends(get_device_subscription_service),
    prospective_search: ProspectiveSearchService = Depends(get_prospective_search_service),
    backend_config: BackendConfigService = Depends(get_backend_config_service),
) -> SubscriptionService:
    return SubscriptionService(db, device_subscriptions, prospective_search, backend_config)


def get_entity_service(
    db: Session = Depends(get_db),
    security: SecurityService = Depends(get_security_service),
    prospective_search: ProspectiveSearchService = Depends(get_prospective_search_service),
) -> EntityService:
    return EntityService(db, security, prospective_search)


def get_query_service(
    db: Session = Depends(get_db),
    prospective_search: ProspectiveSearchService = Depends(get_prospective_search_service),
    device_subscriptions: DeviceSubscriptionService = Depends(get_device_subscription_service),
    security: SecurityService = Depends(get_security_service),
) -> QueryService:
    return QueryService(db, prospective_search, device_subscriptions, security)


def get_notification_dispatch_service(
    db: Session = Depends(get_db),
    settings: AppSettings = Depends(get_settings),
    device_subscriptions: DeviceSubscriptionService = Depends(get_device_subscription_service),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    backend_config: BackendConfigService = Depends(get_backend_config_service),
    task_queue: TaskQueueService = Depends(get_task_queue_service),
    gcm_sender: Optional[GcmSender] = Depends(get_gcm_sender),
) -> NotificationDispatchService:
    return NotificationDispatchService(
        db,
        settings,
        device_subscriptions,
        subscriptions,
        backend_config,
        task_queue,
        gcm_sender,
    )


def get_push_cleanup_service(
    db: Session = Depends(get_db),
    settings: AppSettings = Depends(get_settings),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    device_subscriptions: DeviceSubscriptionService = Depends(get_device_subscription_service),
    task_queue: TaskQueueService = Depends(get_task_queue_service),
) -> PushCleanupService:
    return PushCleanupService(db, settings, subscriptions, device_subscriptions, task_queue)
