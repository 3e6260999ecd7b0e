"""
Super admin authorization configuration.

Super admin status is determined by comparing user id hashes against the
configurable set in ``MOBILE_BACKEND_SUPER_ADMIN_HASHES``.

Usage:
    from mobile_backend.src.config.super_admins import is_super_admin

    if is_super_admin(user_id, settings):
        # Grant access to /admin endpoints
        ...

Configuration:
    Set MOBILE_BACKEND_SUPER_ADMIN_HASHES to a comma-separated list of
    SHA-256 user id hashes::

        export MOBILE_BACKEND_SUPER_ADMIN_HASHES="hash1,hash2"

    Generate a hash with ``generate_user_hash("USER:alice")``.
"""

import hashlib
from typing import Optional

from mobile_backend.src.config.settings import AppSettings


def generate_user_hash(user_id: str) -> str:
    """
    Generate the SHA-256 hash of a user id.

    Args:
        user_id: User id as resolved by the authentication layer

    Returns:
        SHA-256 hex digest of the stripped user id
    """
    return hashlib.sha256(user_id.strip().encode("utf-8")).hexdigest()


def is_super_admin(user_id: Optional[str], settings: AppSettings) -> bool:
    """Check if a user id belongs to a super admin."""
    if not user_id:
        return False
    return generate_user_hash(user_id) in settings.super_admin_hash_set
