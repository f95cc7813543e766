"""Audit trail entry model."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class AuditEntry(BaseModel):
    """
    One append-only audit record.

    ``user_id`` is None for processor-level entries that could not be tied to
    a tenant. ``action`` is create/update/delete or a named billing action.
    """

    id: UUID
    user_id: UUID | None = None
    entity_type: str
    entity_id: UUID | None = None
    action: str
    changes: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = {"from_attributes": True}
