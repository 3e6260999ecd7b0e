"""
ApnsFeedbackToken model for the provider feedback channel.

Device tokens the push gateway rejected as invalid (status 8) are written
here by whichever process delivered the notification. Feedback polling
drains the table and queues the tokens for device cleanup, so the table
only ever holds tokens reported since the last poll.
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, String

from mobile_backend.src.models import Base


class ApnsFeedbackToken(Base):
    """
    Device token reported invalid by APNS.

    Attributes:
        device_token: Hex device token
        reported_at: Last time the gateway rejected the token
    """

    __tablename__ = "apns_feedback_tokens"

    device_token = Column(String(200), primary_key=True)
    reported_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ApnsFeedbackToken(device_token='{self.device_token}', "
            f"reported_at={self.reported_at})>"
        )
