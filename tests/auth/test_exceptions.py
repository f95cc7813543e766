"""Tests for auth/exceptions.py - Typed exceptions for auth failures."""

import pytest

from auth.exceptions import AuthError, InvalidTokenError, SessionExpiredError


class TestExceptionInheritance:
    """All auth exceptions should inherit from AuthError."""

    def test_invalid_token_inherits(self):
        assert issubclass(InvalidTokenError, AuthError)

    def test_session_expired_inherits(self):
        assert issubclass(SessionExpiredError, AuthError)

    def test_can_be_caught_as_auth_error(self):
        with pytest.raises(AuthError, match="expired"):
            raise SessionExpiredError("Session expired")
