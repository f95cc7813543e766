"""
Domain events for invoicing.

Immutable event objects that represent state changes in the invoicing domain.
A service publishes what happened and handlers react without the publisher
knowing who's listening.

Event Categories:
- InvoiceEvent: Invoice lifecycle (create, send, paid, cancel)
- SubscriptionEvent: Subscription state reported by the payment processor

Events carry the full domain object so handlers don't need to re-fetch state.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from utils.timezone import now_utc


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    """Base class for all invoicing domain events."""
    event_id: str = field(default_factory=lambda: str(uuid4()))
    occurred_at: datetime = field(default_factory=now_utc)


# =============================================================================
# INVOICE EVENTS
# =============================================================================


@dataclass(frozen=True)
class InvoiceEvent(DomainEvent):
    """Events related to invoice lifecycle."""
    pass


@dataclass(frozen=True)
class InvoiceCreated(InvoiceEvent):
    """A new invoice was created as draft or pending."""
    invoice: Any = None  # Invoice, Any to avoid circular import

    @classmethod
    def create(cls, invoice: Any) -> "InvoiceCreated":
        return cls(invoice=invoice)


@dataclass(frozen=True)
class InvoiceSent(InvoiceEvent):
    """Invoice was emailed to its client."""
    invoice: Any = None

    @classmethod
    def create(cls, invoice: Any) -> "InvoiceSent":
        return cls(invoice=invoice)


@dataclass(frozen=True)
class InvoicePaid(InvoiceEvent):
    """Invoice moved to paid, manually or through a reconciled payment."""
    invoice: Any = None
    external_ref: str | None = None

    @classmethod
    def create(cls, invoice: Any, external_ref: str | None = None) -> "InvoicePaid":
        return cls(invoice=invoice, external_ref=external_ref)


@dataclass(frozen=True)
class InvoiceCancelled(InvoiceEvent):
    """Invoice was cancelled."""
    invoice: Any = None

    @classmethod
    def create(cls, invoice: Any) -> "InvoiceCancelled":
        return cls(invoice=invoice)


# =============================================================================
# SUBSCRIPTION EVENTS
# =============================================================================


@dataclass(frozen=True)
class SubscriptionEvent(DomainEvent):
    """Events related to the tenant's plan subscription."""
    pass


@dataclass(frozen=True)
class SubscriptionPastDue(SubscriptionEvent):
    """A renewal charge failed and the subscription is now past due."""
    user_id: UUID | None = None
    processor_invoice_id: str | None = None

    @classmethod
    def create(cls, user_id: UUID, processor_invoice_id: str | None = None) -> "SubscriptionPastDue":
        return cls(user_id=user_id, processor_invoice_id=processor_invoice_id)
