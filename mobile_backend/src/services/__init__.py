"""
Service layer for business logic.

This module exports all service classes for use in API endpoints and
background workers.
"""

from mobile_backend.src.services.exceptions import (
    ServiceError,
    NotFoundError,
    ValidationError,
    AuthorizationError,
    TransientQueueError,
)
from mobile_backend.src.services.task_queue_service import TaskQueueService
from mobile_backend.src.services.backend_config_service import BackendConfigService
from mobile_backend.src.services.device_subscription_service import (
    DeviceSubscriptionService,
    SweepCursor,
)
from mobile_backend.src.services.prospective_search_service import ProspectiveSearchService
from mobile_backend.src.services.subscription_service import SubscriptionService
from mobile_backend.src.services.security_service import SecurityService
from mobile_backend.src.services.entity_service import EntityService
from mobile_backend.src.services.query_service import QueryService
# Push delivery
from mobile_backend.src.services.notification_dispatch_service import (
    DispatchSummary,
    NotificationDispatchService,
)
from mobile_backend.src.services.push_cleanup_service import PushCleanupService
from mobile_backend.src.services.delivery_worker import DeliveryWorker, DeliveryWorkerPool
from mobile_backend.src.services.push_task_dispatcher import PushTaskDispatcher

__all__ = [
    "ServiceError",
    "NotFoundError",
    "ValidationError",
    "AuthorizationError",
    "TransientQueueError",
    "TaskQueueService",
    "BackendConfigService",
    "DeviceSubscriptionService",
    "SweepCursor",
    "ProspectiveSearchService",
    "SubscriptionService",
    "SecurityService",
    "EntityService",
    "QueryService",
    # Push delivery
    "DispatchSummary",
    "NotificationDispatchService",
    "PushCleanupService",
    "DeliveryWorker",
    "DeliveryWorkerPool",
    "PushTaskDispatcher",
]
