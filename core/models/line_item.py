"""Invoice line item domain models.

Prices are stored in cents (integer); $10.00 = 1000 cents. Quantities are
decimals with two fractional digits (1.5 hours, 0.25 units).
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field


class LineItemInput(BaseModel):
    """
    One line as submitted by a caller.

    ``unit_price`` is in major units (dollars) exactly as entered; it is
    converted to cents and range-checked by the invoice service before any
    state changes. ``price`` is accepted as an alias.
    """

    description: str = Field(..., min_length=1, max_length=200)
    quantity: Decimal = Decimal("1")
    unit_price: Decimal = Field(..., validation_alias=AliasChoices("unit_price", "price"))


class LineItem(BaseModel):
    """Full line item entity as stored. Owned by exactly one invoice."""

    id: UUID
    invoice_id: UUID
    description: str
    quantity: Decimal
    unit_price_cents: int
    amount_cents: int
    position: int
    created_at: datetime

    model_config = {"from_attributes": True}
