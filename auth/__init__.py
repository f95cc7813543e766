"""Session validation for the invoicing API."""

from auth.exceptions import (
    AuthError,
    InvalidTokenError,
    SessionExpiredError,
)
from auth.types import Session
from auth.config import AuthConfig
from auth.session import SessionManager
from auth.security_middleware import AuthMiddleware
from auth.api import create_auth_router
