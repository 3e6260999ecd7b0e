"""
Configuration module for the mobile backend.

Provides centralized, environment-driven settings for push delivery,
worker pool sizing and subscription bookkeeping, plus super admin
authorization.
"""

from mobile_backend.src.config.settings import AppSettings, get_settings
from mobile_backend.src.config.super_admins import generate_user_hash, is_super_admin

__all__ = [
    "AppSettings",
    "get_settings",
    "generate_user_hash",
    "is_super_admin",
]
