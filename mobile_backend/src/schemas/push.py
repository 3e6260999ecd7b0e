"""
Pydantic schemas for the push administration and task-handler endpoints.

Response bodies of these endpoints are read by the push-task dispatcher
(only the status code matters to it) and by operators calling the cron
endpoints by hand.
"""

from typing import List

from pydantic import BaseModel, Field


# ============================================================================
# Task Handler Responses
# ============================================================================


class DeviceCleanupResponse(BaseModel):
    """Devices removed by a device-token cleanup task."""

    removed: List[str] = Field(default_factory=list)


class DispatchResponse(BaseModel):
    """
    What a dispatch did with matched subscription ids.

    Every id lands in exactly one list.
    """

    android_sent: List[str] = Field(default_factory=list)
    android_failed: List[str] = Field(default_factory=list)
    ios_enqueued: List[str] = Field(default_factory=list)
    inactive: List[str] = Field(default_factory=list)
    not_sent: List[str] = Field(default_factory=list)
    task_names: List[str] = Field(
        default_factory=list,
        description="Notification-delivery tasks created for iOS devices, one per subscription id",
    )

    @classmethod
    def from_summary(cls, summary) -> "DispatchResponse":
        return cls(
            android_sent=summary.android_sent,
            android_failed=summary.android_failed,
            ios_enqueued=summary.ios_enqueued,
            inactive=summary.inactive,
            not_sent=summary.not_sent,
            task_names=summary.task_names,
        )


class FeedbackResponse(BaseModel):
    """Inactive devices reported by the provider and queued for removal."""

    inactive_devices: int = Field(..., ge=0)


class AcceptedResponse(BaseModel):
    """Acknowledgement for work that continues in the background."""

    message: str
