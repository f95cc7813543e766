"""Invoice domain models.

All amounts are stored in cents (integer) to avoid floating point issues.
$10.00 = 1000 cents. Tax rate is a percentage with two decimals (10.00 = 10%).
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from core.models.line_item import LineItem, LineItemInput


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status."""

    DRAFT = "draft"
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED)


class InvoiceCreate(BaseModel):
    """Data required to create an invoice."""

    client_id: UUID
    items: list[LineItemInput] = Field(default_factory=list, max_length=200)
    issue_date: date | None = None
    due_date: date | None = None
    tax_rate: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    status: InvoiceStatus = InvoiceStatus.PENDING
    notes: str | None = Field(None, max_length=5000)
    terms: str | None = Field(None, max_length=5000)


class InvoiceItemsReplace(BaseModel):
    """Full replacement of an invoice's items, optionally with new tax/discount."""

    items: list[LineItemInput] = Field(..., max_length=200)
    tax_rate: Decimal | None = None
    discount_amount: Decimal | None = None


class InvoiceUpdate(BaseModel):
    """Non-financial fields that can change while the invoice is open."""

    due_date: date | None = None
    notes: str | None = Field(None, max_length=5000)
    terms: str | None = Field(None, max_length=5000)


class Invoice(BaseModel):
    """Full invoice entity as stored."""

    id: UUID
    user_id: UUID
    client_id: UUID
    invoice_number: str
    status: InvoiceStatus
    issue_date: date
    due_date: date
    subtotal_cents: int
    tax_rate: Decimal
    tax_amount_cents: int
    discount_cents: int
    total_cents: int
    paid_amount_cents: int | None = None
    paid_at: datetime | None = None
    payment_method: str | None = None
    external_payment_ref: str | None = None
    payment_intent_id: str | None = None
    reminder_count: int = 0
    reminder_sent_at: datetime | None = None
    sent_at: datetime | None = None
    cancelled_at: datetime | None = None
    notes: str | None = None
    terms: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @property
    def is_paid(self) -> bool:
        """Whether invoice is paid."""
        return self.status == InvoiceStatus.PAID

    @property
    def balance_due_cents(self) -> int:
        """Remaining amount to be paid in cents."""
        return max(self.total_cents - (self.paid_amount_cents or 0), 0)

    def is_overdue(self, today: date) -> bool:
        """Due date has passed and the invoice is still awaiting payment."""
        return self.status == InvoiceStatus.PENDING and today > self.due_date

    def effective_status(self, today: date) -> InvoiceStatus:
        """Stored status with the overdue predicate applied."""
        return InvoiceStatus.OVERDUE if self.is_overdue(today) else self.status

    def as_of(self, today: date) -> "Invoice":
        """Copy whose ``status`` is the effective status on ``today``."""
        status = self.effective_status(today)
        if status == self.status:
            return self
        return self.model_copy(update={"status": status})


class InvoiceDetail(Invoice):
    """Invoice together with its ordered line items."""

    items: list[LineItem] = Field(default_factory=list)


class InvoiceStats(BaseModel):
    """Per-tenant invoice totals in cents, with overdue computed on read."""

    total_invoices: int = 0
    total_revenue_cents: int = 0
    pending_amount_cents: int = 0
    overdue_amount_cents: int = 0
    by_status: dict[str, int] = Field(
        default_factory=lambda: {status.value: 0 for status in InvoiceStatus}
    )
