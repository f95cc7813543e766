"""Tests for lifecycle - invoice totals and the status state machine."""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from core import lifecycle
from core.exceptions import (
    AlreadyPaidError,
    InvalidStateTransitionError,
    InvoiceImmutableError,
    ValidationFailureError,
)
from core.models import Invoice, InvoiceStatus, LineItemInput
from utils.timezone import now_utc

TODAY = date(2026, 3, 15)


def make_invoice(status=InvoiceStatus.PENDING, due_date=TODAY + timedelta(days=30), **overrides) -> Invoice:
    now = now_utc()
    data = {
        "id": uuid4(),
        "user_id": uuid4(),
        "client_id": uuid4(),
        "invoice_number": "INV-2026-0001",
        "status": status,
        "issue_date": TODAY,
        "due_date": due_date,
        "subtotal_cents": 10000,
        "tax_rate": Decimal("0"),
        "tax_amount_cents": 0,
        "discount_cents": 0,
        "total_cents": 10000,
        "created_at": now,
        "updated_at": now,
        **overrides,
    }
    return Invoice(**data)


class TestPriceLines:

    def test_prices_in_submission_order(self):
        lines = lifecycle.price_lines([
            LineItemInput(description="  Design ", quantity="1.5", unit_price="80"),
            LineItemInput(description="Hosting", unit_price="20.00"),
        ])

        assert [line.position for line in lines] == [0, 1]
        assert lines[0].description == "Design"
        assert lines[0].quantity == Decimal("1.50")
        assert lines[0].unit_price_cents == 8000
        assert lines[0].amount_cents == 12000
        assert lines[1].quantity == Decimal("1.00")

    def test_bad_item_names_its_position(self):
        with pytest.raises(ValidationFailureError) as exc_info:
            lifecycle.price_lines([
                LineItemInput(description="Ok", unit_price="1"),
                LineItemInput(description="Bad", quantity="0", unit_price="1"),
            ])
        assert exc_info.value.field == "items[1].quantity"


class TestComputeTotals:

    def test_subtotal_tax_and_total(self):
        """100 x 1 + 12.50 x 2 at 10% tax: 125.00 + 12.50 = 132.50."""
        lines = lifecycle.price_lines([
            LineItemInput(description="A", quantity="1", unit_price="100"),
            LineItemInput(description="B", quantity="2", unit_price="12.50"),
        ])

        totals = lifecycle.compute_totals(lines, "10", "0")

        assert totals.subtotal_cents == 12500
        assert totals.tax_amount_cents == 1250
        assert totals.total_cents == 13250

    def test_total_identity_holds_with_discount(self):
        lines = lifecycle.price_lines([LineItemInput(description="A", quantity="3", unit_price="33.33")])

        totals = lifecycle.compute_totals(lines, "7.25", "5.00")

        assert totals.total_cents == totals.subtotal_cents + totals.tax_amount_cents - totals.discount_cents

    def test_discount_larger_than_subtotal_plus_tax_rejected(self):
        lines = lifecycle.price_lines([LineItemInput(description="A", unit_price="10")])

        with pytest.raises(ValidationFailureError, match="discount"):
            lifecycle.compute_totals(lines, "10", "11.01")

    def test_discount_equal_to_subtotal_plus_tax_allowed(self):
        lines = lifecycle.price_lines([LineItemInput(description="A", unit_price="10")])

        assert lifecycle.compute_totals(lines, "10", "11.00").total_cents == 0

    def test_no_lines_is_zero(self):
        totals = lifecycle.compute_totals([], "0", "0")
        assert totals.subtotal_cents == totals.total_cents == 0


class TestTransitions:

    @pytest.mark.parametrize("current,target", [
        (InvoiceStatus.DRAFT, InvoiceStatus.PENDING),
        (InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED),
        (InvoiceStatus.PENDING, InvoiceStatus.PAID),
        (InvoiceStatus.PENDING, InvoiceStatus.OVERDUE),
        (InvoiceStatus.OVERDUE, InvoiceStatus.PAID),
        (InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED),
    ])
    def test_allowed(self, current, target):
        assert lifecycle.can_transition(current, target)

    @pytest.mark.parametrize("target", list(InvoiceStatus))
    def test_terminal_statuses_are_absorbing(self, target):
        assert not lifecycle.can_transition(InvoiceStatus.PAID, target)
        assert not lifecycle.can_transition(InvoiceStatus.CANCELLED, target)

    def test_draft_cannot_be_paid(self):
        assert not lifecycle.can_transition(InvoiceStatus.DRAFT, InvoiceStatus.PAID)

    def test_ensure_transition_applies_overdue_first(self):
        invoice = make_invoice(due_date=TODAY - timedelta(days=1))

        assert lifecycle.ensure_transition(invoice, InvoiceStatus.PAID, TODAY) == InvoiceStatus.OVERDUE

    def test_ensure_transition_rejects(self):
        invoice = make_invoice(status=InvoiceStatus.CANCELLED)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            lifecycle.ensure_transition(invoice, InvoiceStatus.PAID, TODAY)
        assert exc_info.value.current == "cancelled"
        assert exc_info.value.requested == "paid"


class TestGuards:

    def test_initial_status_must_be_draft_or_pending(self):
        with pytest.raises(InvalidStateTransitionError):
            lifecycle.ensure_initial_status(InvoiceStatus.PAID, 1)

    def test_pending_needs_items(self):
        with pytest.raises(ValidationFailureError):
            lifecycle.ensure_initial_status(InvoiceStatus.PENDING, 0)
        lifecycle.ensure_initial_status(InvoiceStatus.DRAFT, 0)

    def test_send_draft_moves_to_pending(self):
        assert lifecycle.ensure_sendable(make_invoice(InvoiceStatus.DRAFT), 1, TODAY) == InvoiceStatus.PENDING

    def test_send_empty_draft_rejected(self):
        with pytest.raises(ValidationFailureError):
            lifecycle.ensure_sendable(make_invoice(InvoiceStatus.DRAFT), 0, TODAY)

    def test_resend_keeps_status(self):
        assert lifecycle.ensure_sendable(make_invoice(), 1, TODAY) == InvoiceStatus.PENDING

    def test_send_paid_rejected(self):
        with pytest.raises(InvalidStateTransitionError):
            lifecycle.ensure_sendable(make_invoice(InvoiceStatus.PAID), 1, TODAY)

    def test_remind_paid_is_already_paid(self):
        with pytest.raises(AlreadyPaidError):
            lifecycle.ensure_remindable(make_invoice(InvoiceStatus.PAID), TODAY)

    def test_remind_draft_rejected(self):
        with pytest.raises(InvalidStateTransitionError):
            lifecycle.ensure_remindable(make_invoice(InvoiceStatus.DRAFT), TODAY)

    def test_paid_is_immutable(self):
        with pytest.raises(InvoiceImmutableError):
            lifecycle.ensure_mutable(make_invoice(InvoiceStatus.PAID))

    def test_cancelled_cannot_be_edited(self):
        with pytest.raises(InvalidStateTransitionError):
            lifecycle.ensure_mutable(make_invoice(InvoiceStatus.CANCELLED))

    def test_paid_cannot_be_deleted(self):
        with pytest.raises(InvoiceImmutableError, match="deleted"):
            lifecycle.ensure_deletable(make_invoice(InvoiceStatus.PAID))
        lifecycle.ensure_deletable(make_invoice(InvoiceStatus.CANCELLED))


class TestFindOverdue:

    def test_only_pending_past_due(self):
        late = make_invoice(due_date=TODAY - timedelta(days=1))
        due_today = make_invoice(due_date=TODAY)
        late_draft = make_invoice(InvoiceStatus.DRAFT, due_date=TODAY - timedelta(days=1))

        assert lifecycle.find_overdue([late, due_today, late_draft], TODAY) == [late.id]
