"""Security middleware for FastAPI - session validation and tenant context."""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from auth.config import AuthConfig
from auth.session import SessionManager
from auth.exceptions import AuthError, SessionExpiredError
from api.base import error_response, ErrorCodes
from utils.tenant_context import set_current_tenant_id, clear_current_tenant_id


class AuthMiddleware(BaseHTTPMiddleware):
    """Middleware that validates session and sets tenant context.

    For protected routes:
    1. Extracts session token from the session cookie
    2. Validates session via SessionManager
    3. Sets user_id in request.state and tenant context (for RLS)
    4. Clears context after request completes

    Public paths bypass authentication entirely. The Stripe webhook is
    public because it authenticates by signature instead.
    """

    PUBLIC_PATHS = [
        "/auth/logout",
        "/webhooks/stripe",
        "/health",
        "/docs",
        "/openapi.json",
    ]

    def __init__(self, app, session_manager: SessionManager, config: AuthConfig | None = None):
        super().__init__(app)
        self._session_manager = session_manager
        self._cookie_name = (config or AuthConfig()).session_cookie_name

    def _is_public_path(self, path: str) -> bool:
        """Check if path is in public paths list."""
        for public_path in self.PUBLIC_PATHS:
            if path == public_path or path.startswith(public_path + "/"):
                return True
        return False

    async def dispatch(self, request: Request, call_next):
        """Process request through middleware."""
        path = request.url.path

        # Skip auth for public paths
        if self._is_public_path(path):
            return await call_next(request)

        session_token = request.cookies.get(self._cookie_name)

        if not session_token:
            return JSONResponse(
                status_code=401,
                content=error_response(
                    ErrorCodes.NOT_AUTHENTICATED,
                    "Authentication required",
                ).model_dump(mode="json"),
            )

        try:
            session = self._session_manager.validate_session(session_token)
        except SessionExpiredError:
            return JSONResponse(
                status_code=401,
                content=error_response(
                    ErrorCodes.SESSION_EXPIRED,
                    "Session has expired",
                ).model_dump(mode="json"),
            )
        except AuthError:
            return JSONResponse(
                status_code=401,
                content=error_response(
                    ErrorCodes.NOT_AUTHENTICATED,
                    "Invalid session",
                ).model_dump(mode="json"),
            )

        # Set tenant context for RLS
        set_current_tenant_id(session.user_id)
        request.state.user_id = session.user_id
        request.state.session = session

        try:
            response = await call_next(request)
            return response
        finally:
            # Always clear context
            clear_current_tenant_id()
