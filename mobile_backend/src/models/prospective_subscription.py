"""
ProspectiveSubscription model for registered continuous queries.

Each row is one standing query: future records written to ``topic`` that
satisfy ``query`` (interpreted with ``schema``) produce a match for
``subscription_id``.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, String, Text

from mobile_backend.src.models import Base
from mobile_backend.src.models.types import JSONBType


class ProspectiveSubscription(Base):
    """
    A standing continuous query.

    Attributes:
        topic: Document topic the query listens on
        subscription_id: "<regId>:query:<queryId>"
        query: Continuous-query string
        schema: Property name to field type ("STRING", "INT32", "DOUBLE", "BOOLEAN")
        expires_at: Expiry (None = never expires)
        created_at: Registration timestamp
    """

    __tablename__ = "prospective_subscriptions"

    topic = Column(String(100), primary_key=True)
    subscription_id = Column(String(1024), primary_key=True)
    query = Column(Text, nullable=False)
    schema = Column(JSONBType, nullable=False, default=dict)
    expires_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.utcnow())

    def __repr__(self) -> str:
        return (
            f"<ProspectiveSubscription(topic='{self.topic}', "
            f"subscription_id='{self.subscription_id}')>"
        )
