"""
Identity guard for core entry points
"""
from typing import Optional

from packages.common.errors import AuthenticationRequiredError


def require_user_id(user_id: Optional[str]) -> str:
    """
    Reject calls without an authenticated user.

    Args:
        user_id: Opaque user id from the identity provider (may be None/blank)

    Returns:
        The user id, stripped

    Raises:
        AuthenticationRequiredError: If no user id is present
    """
    if user_id is None or not str(user_id).strip():
        raise AuthenticationRequiredError("Authentication required")
    return str(user_id).strip()
