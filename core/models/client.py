"""Client (invoice recipient) domain models."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator


class ClientCreate(BaseModel):
    """Data required to create a client."""

    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    company: str | None = Field(None, max_length=100)
    phone: str | None = Field(None, max_length=20)
    address: str | None = Field(None, max_length=500)
    notes: str | None = Field(None, max_length=5000)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        """Emails are unique per tenant case-insensitively."""
        return value.lower()


class ClientUpdate(BaseModel):
    """Data that can be updated on a client. All fields optional."""

    name: str | None = Field(None, min_length=1, max_length=100)
    email: EmailStr | None = None
    company: str | None = Field(None, max_length=100)
    phone: str | None = Field(None, max_length=20)
    address: str | None = Field(None, max_length=500)
    notes: str | None = Field(None, max_length=5000)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str | None) -> str | None:
        return value.lower() if value else value


class Client(BaseModel):
    """Full client entity as stored."""

    id: UUID
    user_id: UUID
    name: str
    email: str
    company: str | None
    phone: str | None
    address: str | None
    notes: str | None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ClientStats(BaseModel):
    """Billing summary for one client, in cents."""

    total_invoices: int = 0
    total_billed_cents: int = 0
    total_paid_cents: int = 0
    outstanding_cents: int = 0
