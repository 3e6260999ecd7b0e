"""
Backend runtime configuration service.

Reads and writes the "Current" BackendConfiguration row. Only the
clear-all marker is kept there: the time the last administrative
"clear all subscriptions" sweep started.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from mobile_backend.src.models import BackendConfiguration
from mobile_backend.src.models.backend_configuration import CURRENT_CONFIGURATION
from mobile_backend.src.utils.cache import MemoryCache
from mobile_backend.src.utils.logging_config import get_logger


logger = get_logger("services")

CACHE_KEY = "backend_configuration:last_subscription_delete_all_at"

# Cache sentinel for "row exists but no clear-all happened yet"
_NEVER = "never"


class BackendConfigService:
    """Access to runtime configuration markers."""

    def __init__(self, db: Session, cache: MemoryCache):
        self.db = db
        self.cache = cache

    def get_last_subscription_delete_all_time(self) -> Optional[datetime]:
        """
        Time of the last clear-all, or None if it never happened.
        """
        cached = self.cache.get(CACHE_KEY)
        if cached is not None:
            return None if cached == _NEVER else cached

        config = self.db.get(BackendConfiguration, CURRENT_CONFIGURATION)
        value = config.last_subscription_delete_all_at if config else None
        self.cache.set(CACHE_KEY, value if value is not None else _NEVER)
        return value

    def set_last_subscription_delete_all_time(self, timestamp: datetime) -> None:
        """Record the start of a clear-all (store first, then cache)."""
        config = self.db.get(BackendConfiguration, CURRENT_CONFIGURATION)
        if config is None:
            config = BackendConfiguration(name=CURRENT_CONFIGURATION)
            self.db.add(config)
        config.last_subscription_delete_all_at = timestamp
        self.db.commit()

        self.cache.set(CACHE_KEY, timestamp)
        logger.info(
            "Recorded subscription clear-all marker",
            extra={"timestamp": timestamp.isoformat()}
        )
