"""
BackendConfiguration model for runtime markers.

Holds the single "Current" row with the time of the last administrative
clear-all of subscriptions. Devices whose bookkeeping predates the marker
are treated as inactive by notification dispatch.
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, String

from mobile_backend.src.models import Base


CURRENT_CONFIGURATION = "Current"


class BackendConfiguration(Base):
    """
    Runtime configuration row.

    Attributes:
        name: Row name (always "Current")
        last_subscription_delete_all_at: Time of the last clear-all (None = never)
        updated_at: Last modification timestamp
    """

    __tablename__ = "backend_configuration"

    name = Column(String(50), primary_key=True, default=CURRENT_CONFIGURATION)
    last_subscription_delete_all_at = Column(DateTime, nullable=True)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<BackendConfiguration(name='{self.name}', "
            f"last_subscription_delete_all_at={self.last_subscription_delete_all_at})>"
        )
