"""
Invoice lifecycle: totals arithmetic and the status state machine.

Pure functions only. Services load state, ask this module whether a change
is allowed and what the derived numbers are, then persist the result.

    draft ──send──> pending ──(due date passes)──> overdue
      │               │  │                            │
      │               │  └────────mark paid───────────┤──> paid      (terminal)
      └──cancel───────┴───────────cancel──────────────┴──> cancelled (terminal)
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from core import money
from core.exceptions import (
    AlreadyPaidError,
    InvalidStateTransitionError,
    InvoiceImmutableError,
    ValidationFailureError,
)
from core.models import Invoice, InvoiceStatus, LineItemInput

_ALLOWED_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.PENDING, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.OVERDUE, InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
}

INITIAL_STATUSES = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.PENDING})
REMINDABLE_STATUSES = frozenset({InvoiceStatus.PENDING, InvoiceStatus.OVERDUE})


@dataclass(frozen=True)
class PricedLine:
    """A validated line item ready to be stored."""

    description: str
    quantity: Decimal
    unit_price_cents: int
    amount_cents: int
    position: int


@dataclass(frozen=True)
class InvoiceTotals:
    """Derived invoice amounts, all in cents."""

    subtotal_cents: int
    tax_rate: Decimal
    tax_amount_cents: int
    discount_cents: int
    total_cents: int


def price_lines(items: list[LineItemInput]) -> list[PricedLine]:
    """
    Validate and price submitted items, preserving submission order as position.

    Raises:
        ValidationFailureError: on any malformed quantity or price
    """
    lines = []
    for position, item in enumerate(items):
        quantity = money.parse_quantity(item.quantity, field=f"items[{position}].quantity")
        unit_price_cents = money.parse_amount(item.unit_price, field=f"items[{position}].unit_price")
        lines.append(PricedLine(
            description=item.description.strip(),
            quantity=quantity,
            unit_price_cents=unit_price_cents,
            amount_cents=money.line_amount_cents(quantity, unit_price_cents),
            position=position,
        ))
    return lines


def compute_totals(
    lines: list[PricedLine],
    tax_rate: Decimal | int | float | str,
    discount_amount: Decimal | int | float | str,
) -> InvoiceTotals:
    """
    Derive subtotal, tax and total.

    subtotal and tax are each rounded once from the exact sum of
    quantity x unit price; total is then exact integer arithmetic, so
    total == subtotal + tax - discount always holds.

    Raises:
        ValidationFailureError: bad rate/discount, or discount larger than
            subtotal + tax (total would go negative)
    """
    rate = money.parse_tax_rate(tax_rate)
    discount_cents = money.parse_amount(discount_amount, field="discount_amount")

    exact = money.exact_subtotal((line.quantity, line.unit_price_cents) for line in lines)
    subtotal_cents = money.round_half_up(exact)
    tax_amount_cents = money.tax_cents(exact, rate)

    if discount_cents > subtotal_cents + tax_amount_cents:
        raise ValidationFailureError(
            "discount_amount cannot exceed subtotal plus tax", field="discount_amount"
        )

    return InvoiceTotals(
        subtotal_cents=subtotal_cents,
        tax_rate=rate,
        tax_amount_cents=tax_amount_cents,
        discount_cents=discount_cents,
        total_cents=subtotal_cents + tax_amount_cents - discount_cents,
    )


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    """Whether the transition table allows current -> target."""
    return target in _ALLOWED_TRANSITIONS[current]


def ensure_transition(invoice: Invoice, target: InvoiceStatus, today: date) -> InvoiceStatus:
    """
    Check that ``invoice`` may move to ``target``.

    The overdue predicate is applied first, so a pending invoice past its due
    date is treated as overdue. Returns the effective current status.

    Raises:
        InvalidStateTransitionError: transition not in the table
    """
    current = invoice.effective_status(today)
    if not can_transition(current, target):
        raise InvalidStateTransitionError(invoice.id, current.value, target.value)
    return current


def ensure_initial_status(status: InvoiceStatus, line_count: int) -> None:
    """Invoices start as draft or pending; pending requires at least one item."""
    if status not in INITIAL_STATUSES:
        raise InvalidStateTransitionError(
            None, "new", status.value,
            message=f"Invoices can only be created as draft or pending, not '{status.value}'",
        )
    if status == InvoiceStatus.PENDING and line_count == 0:
        raise ValidationFailureError("A pending invoice needs at least one line item", field="items")


def ensure_sendable(invoice: Invoice, line_count: int, today: date) -> InvoiceStatus:
    """
    Check that ``invoice`` can be emailed to its client.

    Drafts move to pending; pending and overdue invoices may be re-sent
    without a status change. Returns the status after sending.
    """
    current = invoice.effective_status(today)
    if current == InvoiceStatus.DRAFT:
        if line_count == 0:
            raise ValidationFailureError("Cannot send an invoice without line items", field="items")
        return InvoiceStatus.PENDING
    if current in REMINDABLE_STATUSES:
        return invoice.status
    raise InvalidStateTransitionError(
        invoice.id, current.value, InvoiceStatus.PENDING.value,
        message=f"Invoice {invoice.id} is {current.value} and cannot be sent",
    )


def ensure_remindable(invoice: Invoice, today: date) -> None:
    """Reminders go out only for invoices awaiting payment."""
    current = invoice.effective_status(today)
    if current == InvoiceStatus.PAID:
        raise AlreadyPaidError(invoice.id, "remind")
    if current not in REMINDABLE_STATUSES:
        raise InvalidStateTransitionError(
            invoice.id, current.value, current.value,
            message=f"Invoice {invoice.id} is {current.value}; only pending or overdue invoices can be reminded",
        )


def ensure_mutable(invoice: Invoice) -> None:
    """
    Items, tax and discount can change only while the invoice is open.

    Raises:
        InvoiceImmutableError: invoice is paid
        InvalidStateTransitionError: invoice is cancelled
    """
    if invoice.status == InvoiceStatus.PAID:
        raise InvoiceImmutableError(invoice.id)
    if invoice.status == InvoiceStatus.CANCELLED:
        raise InvalidStateTransitionError(
            invoice.id, InvoiceStatus.CANCELLED.value, InvoiceStatus.CANCELLED.value,
            message=f"Invoice {invoice.id} is cancelled and cannot be modified",
        )


def ensure_deletable(invoice: Invoice) -> None:
    """Paid invoices are permanent records."""
    if invoice.status == InvoiceStatus.PAID:
        raise InvoiceImmutableError(invoice.id, message=f"Invoice {invoice.id} is paid and cannot be deleted")


def find_overdue(invoices: list[Invoice], today: date) -> list[UUID]:
    """IDs of stored-pending invoices whose due date has passed."""
    return [invoice.id for invoice in invoices if invoice.is_overdue(today)]
