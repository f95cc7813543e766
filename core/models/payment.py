"""Payment record models. Payments are append-only history rows."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class PaymentStatus(str, Enum):
    """Outcome of a payment attempt."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Payment(BaseModel):
    """
    One payment attempt against an invoice.

    (invoice_id, external_ref) is unique, so a redelivered processor
    confirmation can never record the same charge twice.
    """

    id: UUID
    invoice_id: UUID
    user_id: UUID
    amount_cents: int
    payment_method: str
    external_ref: str | None = None
    status: PaymentStatus
    notes: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}
