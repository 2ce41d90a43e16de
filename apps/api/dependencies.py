"""
Shared FastAPI dependencies
"""
from fastapi import Request

from packages.common.identity import require_user_id


def get_current_user_id(request: Request) -> str:
    """Authenticated user id set by IdentityMiddleware (401 when missing)"""
    return require_user_id(getattr(request.state, "user_id", None))
