"""
SQLAlchemy models for the mobile backend.

This module provides the declarative base class and imports all models
to ensure they are registered with SQLAlchemy's metadata.
"""

from sqlalchemy.orm import declarative_base

# Create the declarative base class
# All models will inherit from this Base class
Base = declarative_base()


# Import all models here so they are registered with Base.metadata
# This is required for Alembic autogenerate to detect models

# Queryable records
from mobile_backend.src.models.cloud_entity import CloudEntity, EntityProperty

# Subscription bookkeeping
from mobile_backend.src.models.device_subscription import DeviceSubscription, DeviceType
from mobile_backend.src.models.prospective_subscription import ProspectiveSubscription
from mobile_backend.src.models.backend_configuration import BackendConfiguration

# Task queue and delivery
from mobile_backend.src.models.queued_task import QueuedTask, TaskMethod
from mobile_backend.src.models.processed_notification_task import ProcessedNotificationTask
from mobile_backend.src.models.apns_feedback_token import ApnsFeedbackToken

# Export Base and all models
__all__ = [
    "Base",
    "CloudEntity",
    "EntityProperty",
    "DeviceSubscription",
    "DeviceType",
    "ProspectiveSubscription",
    "BackendConfiguration",
    "QueuedTask",
    "TaskMethod",
    "ProcessedNotificationTask",
    "ApnsFeedbackToken",
]
