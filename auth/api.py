"""HTTP routes for the current session."""

from fastapi import APIRouter, Request, Response

from auth.config import AuthConfig
from auth.session import SessionManager
from api.base import success_response


def create_auth_router(session_manager: SessionManager, config: AuthConfig) -> APIRouter:
    """Create auth router with injected session manager."""
    router = APIRouter(tags=["auth"])

    @router.get("/session")
    def current_session(request: Request):
        """Who the caller is and when their session expires."""
        session = request.state.session
        return success_response({
            "user_id": str(session.user_id),
            "expires_at": session.expires_at.isoformat(),
        })

    @router.post("/logout")
    def logout(request: Request, response: Response):
        """Revoke the session and clear its cookie. Safe without a session."""
        token = request.cookies.get(config.session_cookie_name)
        if token:
            session_manager.revoke_session(token)
        response.delete_cookie(config.session_cookie_name)
        return success_response({"logged_out": True})

    return router
