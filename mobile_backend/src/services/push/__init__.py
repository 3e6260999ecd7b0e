"""
Push gateway adapters (GCM-style for Android, APNS-style for iOS).
"""

from mobile_backend.src.services.push.apns_sender import (
    ApnsCommunicationError,
    ApnsCredentialsError,
    ApnsSender,
    PushedNotification,
    ResponsePacket,
)
from mobile_backend.src.services.push.feedback_store import ApnsFeedbackStore
from mobile_backend.src.services.push.gcm_sender import GcmResult, GcmSendError, GcmSender

__all__ = [
    "ApnsCommunicationError",
    "ApnsCredentialsError",
    "ApnsFeedbackStore",
    "ApnsSender",
    "PushedNotification",
    "ResponsePacket",
    "GcmResult",
    "GcmSendError",
    "GcmSender",
]
