"""
Admin API module.

Contains endpoints for push administration:
- Clear-all of device subscriptions
- Internal task-queue handlers and cron entry points
"""

from mobile_backend.src.api.admin.push import router as push_router

__all__ = ["push_router"]
