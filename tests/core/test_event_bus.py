"""Tests for EventBus."""

import logging
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from core.event_bus import EventBus
from core.events import InvoiceCreated, InvoicePaid, SubscriptionPastDue
from core.models import Invoice, InvoiceStatus
from utils.timezone import now_utc, today_utc


# =============================================================================
# FIXTURES: lightweight in-memory stubs, no store needed
# =============================================================================


@pytest.fixture
def _invoice():
    now = now_utc()
    return Invoice(
        id=uuid4(), user_id=uuid4(), client_id=uuid4(),
        invoice_number="INV-2026-0001",
        status=InvoiceStatus.PENDING,
        issue_date=today_utc(), due_date=today_utc() + timedelta(days=30),
        subtotal_cents=10000, tax_rate=Decimal("0"), tax_amount_cents=0,
        discount_cents=0, total_cents=10000,
        created_at=now, updated_at=now,
    )


# =============================================================================
# SUBSCRIBE AND PUBLISH
# =============================================================================


class TestSubscribeAndPublish:

    def test_single_handler_receives_the_exact_event_object(self, _invoice):
        bus = EventBus()
        received = []
        bus.subscribe("InvoiceCreated", received.append)

        event = InvoiceCreated.create(invoice=_invoice)
        bus.publish(event)

        assert len(received) == 1
        assert received[0] is event

    def test_subscribe_by_class(self, _invoice):
        bus = EventBus()
        received = []
        bus.subscribe(InvoicePaid, received.append)

        bus.publish(InvoicePaid.create(invoice=_invoice, external_ref="pi_1"))

        assert received[0].external_ref == "pi_1"

    def test_handlers_called_in_subscription_order(self, _invoice):
        bus = EventBus()
        calls = []
        bus.subscribe(InvoiceCreated, lambda e: calls.append("first"))
        bus.subscribe(InvoiceCreated, lambda e: calls.append("second"))

        bus.publish(InvoiceCreated.create(invoice=_invoice))

        assert calls == ["first", "second"]

    def test_only_matching_type_is_delivered(self, _invoice):
        bus = EventBus()
        received = []
        bus.subscribe(InvoicePaid, received.append)

        bus.publish(InvoiceCreated.create(invoice=_invoice))

        assert received == []

    def test_publish_without_subscribers_is_noop(self):
        EventBus().publish(SubscriptionPastDue.create(user_id=uuid4()))


class TestUnsubscribe:

    def test_unsubscribe_removes_handler(self, _invoice):
        bus = EventBus()
        received = []
        bus.subscribe(InvoiceCreated, received.append)

        assert bus.unsubscribe(InvoiceCreated, received.append) is True
        assert bus.handler_count(InvoiceCreated) == 0

        bus.publish(InvoiceCreated.create(invoice=_invoice))
        assert received == []

    def test_unsubscribe_unknown_returns_false(self):
        assert EventBus().unsubscribe("InvoicePaid", print) is False


class TestHandlerFailures:

    def test_failing_handler_does_not_stop_others(self, _invoice, caplog):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(InvoicePaid, broken)
        bus.subscribe(InvoicePaid, received.append)

        with caplog.at_level(logging.ERROR, logger="core.event_bus"):
            bus.publish(InvoicePaid.create(invoice=_invoice))

        assert len(received) == 1
        assert "broken" in caplog.text
        assert "InvoicePaid" in caplog.text

    def test_failing_handler_does_not_raise(self, _invoice):
        bus = EventBus()
        bus.subscribe(InvoicePaid, lambda e: 1 / 0)

        bus.publish(InvoicePaid.create(invoice=_invoice))
