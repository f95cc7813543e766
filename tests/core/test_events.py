"""Tests for domain event models."""

from dataclasses import FrozenInstanceError
from datetime import timedelta
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from core.events import (
    DomainEvent,
    InvoiceCancelled,
    InvoiceCreated,
    InvoiceEvent,
    InvoicePaid,
    InvoiceSent,
    SubscriptionEvent,
    SubscriptionPastDue,
)
from core.models import Invoice, InvoiceStatus
from utils.timezone import now_utc, today_utc


@pytest.fixture
def _invoice():
    now = now_utc()
    return Invoice(
        id=uuid4(), user_id=uuid4(), client_id=uuid4(),
        invoice_number="INV-2026-0003",
        status=InvoiceStatus.PAID,
        issue_date=today_utc(), due_date=today_utc() + timedelta(days=14),
        subtotal_cents=5000, tax_rate=Decimal("0"), tax_amount_cents=0,
        discount_cents=0, total_cents=5000, paid_amount_cents=5000,
        created_at=now, updated_at=now,
    )


class TestDomainEventBase:

    def test_event_id_is_unique_uuid_string(self, _invoice):
        first = InvoiceCreated.create(invoice=_invoice)
        second = InvoiceCreated.create(invoice=_invoice)

        UUID(first.event_id)
        assert first.event_id != second.event_id

    def test_occurred_at_is_utc(self, _invoice):
        event = InvoiceSent.create(invoice=_invoice)

        assert event.occurred_at.tzinfo is not None
        assert event.occurred_at.utcoffset() == timedelta(0)

    def test_events_are_frozen(self, _invoice):
        event = InvoicePaid.create(invoice=_invoice)

        with pytest.raises(FrozenInstanceError):
            event.external_ref = "changed"


class TestHierarchy:

    @pytest.mark.parametrize("cls", [InvoiceCreated, InvoiceSent, InvoicePaid, InvoiceCancelled])
    def test_invoice_events(self, cls, _invoice):
        event = cls.create(invoice=_invoice)

        assert isinstance(event, InvoiceEvent)
        assert isinstance(event, DomainEvent)
        assert event.invoice is _invoice

    def test_subscription_past_due(self):
        user_id = uuid4()
        event = SubscriptionPastDue.create(user_id=user_id, processor_invoice_id="in_1")

        assert isinstance(event, SubscriptionEvent)
        assert event.user_id == user_id
        assert event.processor_invoice_id == "in_1"

    def test_invoice_paid_carries_external_ref(self, _invoice):
        assert InvoicePaid.create(invoice=_invoice).external_ref is None
        assert InvoicePaid.create(invoice=_invoice, external_ref="pi_9").external_ref == "pi_9"
