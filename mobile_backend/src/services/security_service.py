"""
Access checks for client queries.

Decides which kinds a client may read and which namespace a kind lives
in. Kinds whose name starts with ``[private]`` are stored per user; every
other kind is shared.
"""

from typing import Optional

from mobile_backend.src.config.settings import AppSettings
from mobile_backend.src.services.exceptions import AuthorizationError, ValidationError


KIND_PREFIX_PRIVATE = "[private]"
NAMESPACE_DEFAULT = ""
USER_ID_PREFIX = "USER:"
ANONYMOUS_USER_ID = USER_ID_PREFIX + "<anonymous>"

# Kinds used by the backend itself
SYSTEM_KINDS = frozenset({
    "_BackendConfiguration",
    "_DeviceSubscription",
    "_ProcessedNotificationsTasks",
    "GoogleCloudEndpointConfiguration",
})


class SecurityService:
    """Kind accessibility and namespace resolution."""

    def __init__(self, settings: AppSettings):
        self.settings = settings

    def check_kind_accessible(self, kind_name: Optional[str]) -> None:
        """
        Raises:
            ValidationError: If the kind is empty or reserved for the backend
        """
        if not kind_name:
            raise ValidationError("Kind name cannot be empty", field="kindName")
        if kind_name in SYSTEM_KINDS or kind_name.startswith("_"):
            raise ValidationError(
                f"Kind {kind_name} is not accessible",
                field="kindName",
            )

    def check_user_available(self, user_id: Optional[str]) -> None:
        """
        Raises:
            AuthorizationError: If the call is anonymous and anonymous
                access is disabled
        """
        if user_id:
            return
        if not self.settings.allow_anonymous:
            raise AuthorizationError("Unauthenticated calls are not allowed")

    @staticmethod
    def is_private_kind(kind_name: str) -> bool:
        return kind_name.startswith(KIND_PREFIX_PRIVATE)

    def namespace_for(self, kind_name: str, user_id: Optional[str]) -> str:
        """Namespace of a kind for a caller: their user id for private kinds."""
        if self.is_private_kind(kind_name):
            return user_id or ANONYMOUS_USER_ID
        return NAMESPACE_DEFAULT
