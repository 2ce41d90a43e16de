"""
Identity middleware.

The identity provider (Cloudflare Access in production) sits in front of
the API and forwards the authenticated user in a header. This middleware
copies it onto request.state.user_id; routes reject requests without one.
"""
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger()


class IdentityMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str, dev_user_id: str = None):
        super().__init__(app)
        self.header_name = header_name
        self.dev_user_id = dev_user_id

    async def dispatch(self, request: Request, call_next):
        user_id = request.headers.get(self.header_name)
        if not user_id and self.dev_user_id:
            # Local development without the access proxy
            user_id = self.dev_user_id

        request.state.user_id = user_id.strip() if user_id and user_id.strip() else None
        structlog.contextvars.bind_contextvars(user_id=request.state.user_id)
        try:
            return await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("user_id")
