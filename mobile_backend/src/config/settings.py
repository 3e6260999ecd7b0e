"""
Application settings configuration for the mobile backend.

Centralized settings loaded from environment variables.
"""

import secrets
from datetime import timedelta
from functools import lru_cache
from typing import Set

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class AppSettings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment Variables:
        MOBILE_BACKEND_PUSH_ENABLED: Master switch for push notifications (default: False)
        MOBILE_BACKEND_GCM_KEY: GCM/FCM server key used for Android pushes
        MOBILE_BACKEND_GCM_URL: GCM send endpoint
        MOBILE_BACKEND_GCM_SEND_RETRIES: Synchronous retries per Android message (default: 3)
        MOBILE_BACKEND_APNS_CERT_PATH: PEM client certificate for APNS
        MOBILE_BACKEND_APNS_KEY_PATH: PEM private key for the APNS certificate
        MOBILE_BACKEND_APNS_TOPIC: iOS bundle identifier (apns-topic header)
        MOBILE_BACKEND_APNS_PRODUCTION: Use the production APNS gateway (default: False)
        MOBILE_BACKEND_DELIVERY_WORKERS: Parallel delivery workers (default: 8)
        MOBILE_BACKEND_LEASE_SECONDS: Lease duration for notification tasks (default: 1800)
        MOBILE_BACKEND_LEASE_BATCH_SIZE: Tasks leased per batch (default: 100)
        MOBILE_BACKEND_IDLE_WAIT_SECONDS: Sleep when nothing was leased (default: 2.5)
        MOBILE_BACKEND_COOLDOWN_SECONDS: Pause after a provider communication error (default: 300)
        MOBILE_BACKEND_PROCESSED_TASK_CACHE_TTL: Cache TTL of processed-task markers (default: 7200)
        MOBILE_BACKEND_PROCESSED_TASK_RETENTION_HOURS: Durable marker retention (default: 12)
        MOBILE_BACKEND_FRESHNESS_WINDOW_HOURS: Device re-registration grace period (default: 4)
        MOBILE_BACKEND_SWEEP_PAGE_SIZE: Device records deleted per sweep page (default: 250)
        MOBILE_BACKEND_TASK_DISPATCH_URL: Base URL push tasks are POSTed to
        MOBILE_BACKEND_START_WORKERS: Start background workers with the web app (default: False)
        MOBILE_BACKEND_CACHE_MAX_ENTRIES: In-process cache capacity (default: 10000)
        MOBILE_BACKEND_ALLOW_ANONYMOUS: Accept requests without X-User-Id (default: True)
        MOBILE_BACKEND_SUPER_ADMIN_HASHES: Comma-separated SHA-256 hashes of admin user ids
        MOBILE_BACKEND_TASK_QUEUE_SECRET: Shared secret between the task dispatcher and the
            internal push handlers (default: random per process)
    """

    # Push notifications
    push_enabled: bool = Field(
        default=False,
        validation_alias="MOBILE_BACKEND_PUSH_ENABLED",
    )

    gcm_key: str = Field(
        default="",
        validation_alias="MOBILE_BACKEND_GCM_KEY",
        description="Server key for the GCM/FCM legacy HTTP API"
    )

    gcm_url: str = Field(
        default="https://fcm.googleapis.com/fcm/send",
        validation_alias="MOBILE_BACKEND_GCM_URL",
    )

    gcm_send_retries: int = Field(
        default=3,
        validation_alias="MOBILE_BACKEND_GCM_SEND_RETRIES",
        ge=0,
        le=10,
    )

    apns_cert_path: str = Field(
        default="",
        validation_alias="MOBILE_BACKEND_APNS_CERT_PATH",
        description="PEM client certificate used to authenticate with APNS"
    )

    apns_key_path: str = Field(
        default="",
        validation_alias="MOBILE_BACKEND_APNS_KEY_PATH",
    )

    apns_topic: str = Field(
        default="",
        validation_alias="MOBILE_BACKEND_APNS_TOPIC",
        description="iOS bundle identifier sent as the apns-topic header"
    )

    apns_production: bool = Field(
        default=False,
        validation_alias="MOBILE_BACKEND_APNS_PRODUCTION",
    )

    # Delivery worker pool
    delivery_workers: int = Field(
        default=8,
        validation_alias="MOBILE_BACKEND_DELIVERY_WORKERS",
        ge=1,
        le=64,
    )

    lease_seconds: int = Field(
        default=30 * 60,
        validation_alias="MOBILE_BACKEND_LEASE_SECONDS",
        ge=1,
    )

    lease_batch_size: int = Field(
        default=100,
        validation_alias="MOBILE_BACKEND_LEASE_BATCH_SIZE",
        ge=1,
        le=1000,
    )

    idle_wait_seconds: float = Field(
        default=2.5,
        validation_alias="MOBILE_BACKEND_IDLE_WAIT_SECONDS",
        ge=0,
    )

    cooldown_seconds: float = Field(
        default=300,
        validation_alias="MOBILE_BACKEND_COOLDOWN_SECONDS",
        ge=0,
    )

    cooldown_step_seconds: float = Field(
        default=10,
        validation_alias="MOBILE_BACKEND_COOLDOWN_STEP_SECONDS",
        gt=0,
    )

    processed_task_cache_ttl: int = Field(
        default=2 * 60 * 60,
        validation_alias="MOBILE_BACKEND_PROCESSED_TASK_CACHE_TTL",
        ge=1,
    )

    processed_task_retention_hours: int = Field(
        default=12,
        validation_alias="MOBILE_BACKEND_PROCESSED_TASK_RETENTION_HOURS",
        ge=1,
    )

    # Subscription bookkeeping
    freshness_window_hours: int = Field(
        default=4,
        validation_alias="MOBILE_BACKEND_FRESHNESS_WINDOW_HOURS",
        ge=0,
    )

    sweep_page_size: int = Field(
        default=250,
        validation_alias="MOBILE_BACKEND_SWEEP_PAGE_SIZE",
        ge=1,
        le=1000,
    )

    # Push-style task queue delivery
    task_dispatch_url: str = Field(
        default="http://127.0.0.1:8000",
        validation_alias="MOBILE_BACKEND_TASK_DISPATCH_URL",
        description="Base URL the push-task dispatcher POSTs internal tasks to"
    )

    start_workers: bool = Field(
        default=False,
        validation_alias="MOBILE_BACKEND_START_WORKERS",
        description="Run the delivery pool and task dispatcher inside the web process"
    )

    cache_max_entries: int = Field(
        default=10000,
        validation_alias="MOBILE_BACKEND_CACHE_MAX_ENTRIES",
        ge=1,
    )

    allow_anonymous: bool = Field(
        default=True,
        validation_alias="MOBILE_BACKEND_ALLOW_ANONYMOUS",
    )

    super_admin_hashes: str = Field(
        default="",
        validation_alias="MOBILE_BACKEND_SUPER_ADMIN_HASHES",
        description="Comma-separated SHA-256 hashes of user ids allowed on /admin endpoints"
    )

    # A dispatcher in another process must be configured with the same value
    task_queue_secret: str = Field(
        default_factory=lambda: secrets.token_urlsafe(32),
        validation_alias="MOBILE_BACKEND_TASK_QUEUE_SECRET",
        min_length=16,
    )

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    @field_validator("apns_topic")
    @classmethod
    def validate_apns_topic(cls, v: str) -> str:
        """Bundle identifiers never contain whitespace."""
        if v and any(ch.isspace() for ch in v):
            raise ValueError("MOBILE_BACKEND_APNS_TOPIC must be a bundle identifier")
        return v

    @property
    def gcm_configured(self) -> bool:
        """Check if a GCM server key is available."""
        return bool(self.gcm_key and self.gcm_key.strip())

    @property
    def apns_configured(self) -> bool:
        """Check if an APNS client certificate is available."""
        return bool(self.apns_cert_path)

    @property
    def apns_host(self) -> str:
        """APNS gateway matching the configured environment."""
        if self.apns_production:
            return "https://api.push.apple.com"
        return "https://api.sandbox.push.apple.com"

    @property
    def super_admin_hash_set(self) -> Set[str]:
        return {entry.strip() for entry in self.super_admin_hashes.split(",") if entry.strip()}

    @property
    def freshness_window(self) -> timedelta:
        return timedelta(hours=self.freshness_window_hours)

    @property
    def processed_task_retention(self) -> timedelta:
        return timedelta(hours=self.processed_task_retention_hours)


@lru_cache()
def get_settings() -> AppSettings:
    """
    Get cached application settings instance.

    Returns:
        AppSettings: Configured application settings from environment
    """
    return AppSettings()
