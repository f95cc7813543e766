"""Session configuration."""

from pydantic import BaseModel, Field


class AuthConfig(BaseModel):
    """
    Session configuration.

    Sessions are issued by the identity service and validated here; all
    durations are in hours.
    """

    session_expiry_hours: int = Field(
        default=2160,  # 90 days
        description="Session lifetime in hours",
        ge=1,
        le=2160,
    )
    session_extend_on_activity: bool = Field(
        default=True,
        description="Whether to extend session expiry on activity",
    )
    session_cookie_name: str = Field(
        default="session_token",
        description="Cookie carrying the session token",
        min_length=1,
    )
