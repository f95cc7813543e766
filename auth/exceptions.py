"""Typed exceptions for auth failures."""


class AuthError(Exception):
    """Base class for authentication/authorization errors."""


class InvalidTokenError(AuthError):
    """Session token is malformed or its stored record is unreadable."""


class SessionExpiredError(AuthError):
    """Session has expired and user must re-authenticate."""
