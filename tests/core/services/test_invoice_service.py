"""Tests for InvoiceService."""

import threading
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4

import pytest

from clients.email_client import EmailGatewayError
from core.exceptions import (
    AlreadyPaidError,
    ConflictError,
    EntitlementExceededError,
    InvalidStateTransitionError,
    InvoiceImmutableError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationFailureError,
)
from core.models import (
    ClientCreate,
    InvoiceCreate,
    InvoiceItemsReplace,
    InvoiceStatus,
    InvoiceUpdate,
    PaymentStatus,
)
from core.stores.base import DuplicateKeyError
from utils.tenant_context import tenant_context
from utils.timezone import today_utc


MIXED_ITEMS = [
    {"description": "Retainer", "quantity": "1", "unit_price": "100"},
    {"description": "Support hours", "quantity": "2", "unit_price": "12.50"},
]


@pytest.fixture
def past_due(create_invoice):
    """Pending invoice whose due date passed ten days ago."""
    today = today_utc()
    return create_invoice(issue_date=today - timedelta(days=40), due_date=today - timedelta(days=10))


# =============================================================================
# CREATE
# =============================================================================


class TestInvoiceCreate:

    def test_computes_totals(self, create_invoice):
        """125.00 subtotal at 10% tax is 132.50."""
        invoice = create_invoice(items=MIXED_ITEMS, tax_rate="10")

        assert invoice.subtotal_cents == 12500
        assert invoice.tax_amount_cents == 1250
        assert invoice.discount_cents == 0
        assert invoice.total_cents == 13250
        assert invoice.tax_rate == Decimal("10.00")

    def test_items_keep_submission_order(self, create_invoice):
        invoice = create_invoice(items=MIXED_ITEMS)

        assert [i.description for i in invoice.items] == ["Retainer", "Support hours"]
        assert [i.position for i in invoice.items] == [0, 1]
        assert invoice.items[1].amount_cents == 2500

    def test_discount_applied(self, create_invoice):
        invoice = create_invoice(items=MIXED_ITEMS, tax_rate="10", discount_amount="2.50")

        assert invoice.total_cents == 13000

    def test_number_uses_issue_year(self, create_invoice):
        first = create_invoice(issue_date=date(2025, 12, 30), due_date=date(2026, 1, 29))
        second = create_invoice(issue_date=date(2026, 1, 2), due_date=date(2026, 2, 1))

        assert first.invoice_number == "INV-2025-0001"
        assert second.invoice_number == "INV-2026-0002"

    def test_due_date_defaults_to_payment_terms(self, create_invoice):
        invoice = create_invoice(issue_date=date(2026, 1, 1))

        assert invoice.due_date == date(2026, 1, 31)

    def test_due_before_issue_rejected(self, create_invoice, store):
        with pytest.raises(ValidationFailureError, match="due_date"):
            create_invoice(issue_date=date(2026, 1, 10), due_date=date(2026, 1, 9))
        assert store.invoices == {}

    def test_pending_without_items_rejected(self, create_invoice):
        with pytest.raises(ValidationFailureError):
            create_invoice(items=[])

    def test_draft_without_items_allowed(self, create_invoice):
        invoice = create_invoice(items=[], status="draft")

        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.total_cents == 0

    def test_cannot_create_as_paid(self, create_invoice):
        with pytest.raises(InvalidStateTransitionError):
            create_invoice(status="paid")

    def test_bad_price_changes_nothing(self, create_invoice, store, tenant):
        with pytest.raises(ValidationFailureError):
            create_invoice(items=[{"description": "X", "unit_price": "-5"}])

        assert store.invoices == {}
        assert store.counters[tenant.id] == 0

    def test_unknown_client(self, as_tenant, invoice_service, sample_client):
        with pytest.raises(NotFoundError):
            invoice_service.create(InvoiceCreate(
                client_id=uuid4(), items=[{"description": "X", "unit_price": "1"}],
            ))

    def test_other_tenants_client_not_usable(self, invoice_service, sample_client, tenant_b):
        with tenant_context(tenant_b.id):
            with pytest.raises(NotFoundError):
                invoice_service.create(InvoiceCreate(
                    client_id=sample_client.id, items=[{"description": "X", "unit_price": "1"}],
                ))

    def test_logs_audit_entry(self, create_invoice, audit):
        invoice = create_invoice()

        history = audit.get_entity_history("invoice", invoice.id)

        assert history[0].action == "create"
        assert history[0].changes["created"]["invoice_number"] == invoice.invoice_number
        assert history[0].changes["created"]["total_cents"] == 10000


class TestPlanLimits:

    def test_free_plan_allows_five_per_month(self, create_invoice):
        """The fifth invoice is allowed; the sixth is denied."""
        for _ in range(5):
            create_invoice()

        with pytest.raises(EntitlementExceededError) as exc_info:
            create_invoice()
        assert exc_info.value.upgrade_to == "pro"

    def test_pro_plan_unlimited(self, pro_tenant, create_invoice):
        for _ in range(7):
            create_invoice()


class TestNumberAllocation:

    def test_retries_after_collision(self, create_invoice, store):
        original = store.create_invoice
        calls = []

        def flaky(*args):
            calls.append(args)
            if len(calls) == 1:
                raise DuplicateKeyError("invoices_user_id_invoice_number_key")
            return original(*args)

        with patch.object(store, "create_invoice", side_effect=flaky):
            invoice = create_invoice()

        assert len(calls) == 2
        assert invoice.invoice_number.endswith("-0001")

    def test_gives_up_after_three_attempts(self, create_invoice, store):
        with patch.object(store, "create_invoice", side_effect=DuplicateKeyError("invoices_user_id_invoice_number_key")) as mock:
            with pytest.raises(ConflictError):
                create_invoice()

        assert mock.call_count == 3

    def test_concurrent_creates_get_distinct_numbers(self, pro_tenant, invoice_service, sample_client):
        numbers = []
        errors = []
        barrier = threading.Barrier(10)

        def create():
            with tenant_context(pro_tenant.id):
                barrier.wait()
                try:
                    numbers.append(invoice_service.create(InvoiceCreate(
                        client_id=sample_client.id,
                        issue_date=date(2026, 5, 1),
                        items=[{"description": "Work", "unit_price": "10"}],
                    )).invoice_number)
                except Exception as e:
                    errors.append(e)

        threads = [threading.Thread(target=create) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(numbers) == [f"INV-2026-{n:04d}" for n in range(1, 11)]


# =============================================================================
# READ
# =============================================================================


class TestInvoiceRead:

    def test_get_returns_items(self, create_invoice, invoice_service):
        created = create_invoice(items=MIXED_ITEMS)

        invoice = invoice_service.get(created.id)

        assert invoice.invoice_number == created.invoice_number
        assert len(invoice.items) == 2

    def test_overdue_computed_on_read(self, past_due, invoice_service, store):
        assert invoice_service.get(past_due.id).status == InvoiceStatus.OVERDUE
        assert store.invoices[past_due.id].status == InvoiceStatus.PENDING

    def test_not_yet_overdue_on_due_date(self, create_invoice, invoice_service):
        invoice = create_invoice(due_date=today_utc())

        assert invoice_service.get(invoice.id).status == InvoiceStatus.PENDING

    def test_missing_invoice(self, as_tenant, invoice_service):
        with pytest.raises(NotFoundError):
            invoice_service.get(uuid4())

    def test_other_tenant_cannot_see(self, create_invoice, invoice_service, tenant_b):
        invoice = create_invoice()

        with tenant_context(tenant_b.id):
            with pytest.raises(NotFoundError):
                invoice_service.get(invoice.id)

    def test_list_filters_by_effective_status(self, past_due, create_invoice, invoice_service):
        create_invoice()

        overdue, total = invoice_service.list_all(status=InvoiceStatus.OVERDUE)
        pending, _ = invoice_service.list_all(status=InvoiceStatus.PENDING)

        assert total == 1
        assert overdue[0].id == past_due.id
        assert overdue[0].status == InvoiceStatus.OVERDUE
        assert past_due.id not in [i.id for i in pending]

    def test_list_by_client_and_page(self, pro_tenant, create_invoice, invoice_service, client_service):
        for _ in range(3):
            create_invoice()
        other = client_service.create(ClientCreate(name="Other", email="other@example.com"))
        create_invoice(client_id=other.id)

        page, total = invoice_service.list_all(client_id=other.id)
        first_page, all_total = invoice_service.list_all(limit=2)

        assert total == 1
        assert page[0].client_id == other.id
        assert all_total == 4
        assert len(first_page) == 2

    def test_stats(self, past_due, create_invoice, invoice_service):
        paid = create_invoice()
        invoice_service.mark_paid(paid.id)
        create_invoice(status="draft", items=[])

        stats = invoice_service.stats()

        assert stats.total_invoices == 3
        assert stats.total_revenue_cents == 10000
        assert stats.overdue_amount_cents == 10000
        assert stats.pending_amount_cents == 0
        assert stats.by_status["draft"] == 1


# =============================================================================
# EDIT
# =============================================================================


class TestReplaceItems:

    def test_recomputes_totals_keeping_tax(self, create_invoice, invoice_service):
        invoice = create_invoice(tax_rate="10")

        updated = invoice_service.replace_items(invoice.id, InvoiceItemsReplace(items=MIXED_ITEMS))

        assert updated.subtotal_cents == 12500
        assert updated.tax_amount_cents == 1250
        assert updated.total_cents == 13250
        assert len(updated.items) == 2

    def test_new_discount(self, create_invoice, invoice_service):
        invoice = create_invoice()

        updated = invoice_service.replace_items(
            invoice.id, InvoiceItemsReplace(items=MIXED_ITEMS, discount_amount="25"),
        )

        assert updated.total_cents == 10000

    def test_paid_invoice_is_immutable(self, create_invoice, invoice_service):
        invoice = create_invoice()
        invoice_service.mark_paid(invoice.id)

        with pytest.raises(InvoiceImmutableError):
            invoice_service.replace_items(invoice.id, InvoiceItemsReplace(items=MIXED_ITEMS))

    def test_pending_needs_items(self, create_invoice, invoice_service):
        invoice = create_invoice()

        with pytest.raises(ValidationFailureError):
            invoice_service.replace_items(invoice.id, InvoiceItemsReplace(items=[]))

    def test_audits_total_change(self, create_invoice, invoice_service, audit):
        invoice = create_invoice()

        invoice_service.replace_items(invoice.id, InvoiceItemsReplace(items=MIXED_ITEMS))

        latest = audit.get_entity_history("invoice", invoice.id)[0]
        assert latest.action == "update"
        assert latest.changes["total_cents"] == {"old": 10000, "new": 12500}


class TestUpdate:

    def test_updates_notes_and_due_date(self, create_invoice, invoice_service):
        invoice = create_invoice(issue_date=date(2026, 1, 1))

        updated = invoice_service.update(invoice.id, InvoiceUpdate(notes="PO 4411", due_date=date(2026, 2, 15)))

        assert updated.notes == "PO 4411"
        assert updated.due_date == date(2026, 2, 15)

    def test_due_before_issue_rejected(self, create_invoice, invoice_service):
        invoice = create_invoice(issue_date=date(2026, 1, 10))

        with pytest.raises(ValidationFailureError):
            invoice_service.update(invoice.id, InvoiceUpdate(due_date=date(2026, 1, 1)))

    def test_cancelled_cannot_be_edited(self, create_invoice, invoice_service):
        invoice = create_invoice()
        invoice_service.cancel(invoice.id)

        with pytest.raises(InvalidStateTransitionError):
            invoice_service.update(invoice.id, InvoiceUpdate(notes="late edit"))

    def test_empty_update_is_noop(self, create_invoice, invoice_service, audit):
        invoice = create_invoice()

        invoice_service.update(invoice.id, InvoiceUpdate())

        assert len(audit.get_entity_history("invoice", invoice.id)) == 1


# =============================================================================
# DELIVERY
# =============================================================================


class TestSend:

    def test_free_plan_cannot_send(self, create_invoice, invoice_service, email):
        invoice = create_invoice()

        with pytest.raises(EntitlementExceededError):
            invoice_service.send(invoice.id)
        email.send_invoice_email.assert_not_called()

    def test_sends_draft_and_moves_to_pending(self, pro_tenant, create_invoice, invoice_service, email):
        invoice = create_invoice(status="draft")

        sent = invoice_service.send(invoice.id)

        assert sent.status == InvoiceStatus.PENDING
        assert sent.sent_at is not None
        kwargs = email.send_invoice_email.call_args.kwargs
        assert kwargs["to"] == "accounts@wayne.example.com"
        assert kwargs["issuer_name"] == "Acme Consulting"
        assert kwargs["amount_due"] == "$100.00"
        assert kwargs["pdf"].startswith(b"%PDF")
        assert kwargs["reply_to"] == "owner@acme.example.com"

    def test_resend_pending(self, pro_tenant, create_invoice, invoice_service):
        invoice = create_invoice()

        assert invoice_service.send(invoice.id).status == InvoiceStatus.PENDING

    def test_email_failure_leaves_draft(self, pro_tenant, create_invoice, invoice_service, email, store):
        invoice = create_invoice(status="draft")
        email.send_invoice_email.side_effect = EmailGatewayError("gateway down")

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            invoice_service.send(invoice.id)

        assert exc_info.value.collaborator == "email_gateway"
        assert store.invoices[invoice.id].status == InvoiceStatus.DRAFT
        assert store.invoices[invoice.id].sent_at is None

    def test_paid_cannot_be_sent(self, pro_tenant, create_invoice, invoice_service):
        invoice = create_invoice()
        invoice_service.mark_paid(invoice.id)

        with pytest.raises(InvalidStateTransitionError):
            invoice_service.send(invoice.id)

    def test_empty_draft_cannot_be_sent(self, pro_tenant, create_invoice, invoice_service):
        invoice = create_invoice(status="draft", items=[])

        with pytest.raises(ValidationFailureError):
            invoice_service.send(invoice.id)

    def test_without_gateway(self, pro_tenant, create_invoice, invoice_service):
        invoice = create_invoice(status="draft")
        invoice_service.email = None

        with pytest.raises(UpstreamUnavailableError):
            invoice_service.send(invoice.id)


class TestRemind:

    def test_counts_reminders(self, pro_tenant, create_invoice, invoice_service, email):
        invoice = create_invoice()

        invoice_service.remind(invoice.id)
        reminded = invoice_service.remind(invoice.id)

        assert reminded.reminder_count == 2
        assert reminded.reminder_sent_at is not None
        assert email.send_reminder_email.call_args.kwargs["overdue"] is False

    def test_overdue_reminder(self, pro_tenant, past_due, invoice_service, email):
        reminded = invoice_service.remind(past_due.id)

        assert reminded.status == InvoiceStatus.OVERDUE
        assert email.send_reminder_email.call_args.kwargs["overdue"] is True

    def test_paid_is_already_paid(self, pro_tenant, create_invoice, invoice_service):
        invoice = create_invoice()
        invoice_service.mark_paid(invoice.id)

        with pytest.raises(AlreadyPaidError):
            invoice_service.remind(invoice.id)

    def test_draft_cannot_be_reminded(self, pro_tenant, create_invoice, invoice_service):
        invoice = create_invoice(status="draft")

        with pytest.raises(InvalidStateTransitionError):
            invoice_service.remind(invoice.id)

    def test_free_plan_cannot_remind(self, create_invoice, invoice_service):
        invoice = create_invoice()

        with pytest.raises(EntitlementExceededError):
            invoice_service.remind(invoice.id)


class TestRenderPdf:

    def test_returns_filename_and_bytes(self, create_invoice, invoice_service):
        invoice = create_invoice()

        filename, pdf = invoice_service.render_pdf(invoice.id)

        assert filename == f"{invoice.invoice_number}.pdf"
        assert pdf.startswith(b"%PDF")


# =============================================================================
# PAYMENT / CLOSE
# =============================================================================


class TestMarkPaid:

    def test_defaults_to_total(self, create_invoice, invoice_service):
        invoice = create_invoice(items=MIXED_ITEMS, tax_rate="10")

        paid = invoice_service.mark_paid(invoice.id)

        assert paid.status == InvoiceStatus.PAID
        assert paid.paid_amount_cents == 13250
        assert paid.payment_method == "manual"
        assert paid.paid_at is not None

    def test_records_completed_payment(self, create_invoice, invoice_service):
        invoice = create_invoice()

        invoice_service.mark_paid(invoice.id, amount="80.00", payment_method="bank_transfer", notes="wire")

        payments = invoice_service.payments(invoice.id)
        assert len(payments) == 1
        assert payments[0].amount_cents == 8000
        assert payments[0].status == PaymentStatus.COMPLETED
        assert payments[0].notes == "wire"

    def test_same_reference_is_idempotent(self, create_invoice, invoice_service, email):
        invoice = create_invoice()

        first = invoice_service.mark_paid(invoice.id, external_ref="bank-123")
        second = invoice_service.mark_paid(invoice.id, external_ref="bank-123")

        assert second.paid_at == first.paid_at
        assert len(invoice_service.payments(invoice.id)) == 1
        assert email.send_receipt_email.call_count == 1

    def test_second_payment_rejected(self, create_invoice, invoice_service):
        invoice = create_invoice()
        invoice_service.mark_paid(invoice.id, external_ref="bank-123")

        with pytest.raises(AlreadyPaidError):
            invoice_service.mark_paid(invoice.id, external_ref="bank-456")
        with pytest.raises(AlreadyPaidError):
            invoice_service.mark_paid(invoice.id)

    def test_overdue_can_be_paid(self, past_due, invoice_service, audit):
        invoice_service.mark_paid(past_due.id)

        latest = audit.get_entity_history("invoice", past_due.id)[0]
        assert latest.changes["status"] == {"old": "overdue", "new": "paid"}

    def test_draft_cannot_be_paid(self, create_invoice, invoice_service):
        invoice = create_invoice(status="draft")

        with pytest.raises(InvalidStateTransitionError):
            invoice_service.mark_paid(invoice.id)

    def test_cancelled_cannot_be_paid(self, create_invoice, invoice_service, store):
        invoice = create_invoice()
        invoice_service.cancel(invoice.id)

        with pytest.raises(InvalidStateTransitionError):
            invoice_service.mark_paid(invoice.id)
        assert store.list_payments(invoice.user_id, invoice.id) == []

    @pytest.mark.parametrize("method", ["", "   ", "x" * 51])
    def test_payment_method_validated(self, create_invoice, invoice_service, method):
        invoice = create_invoice()

        with pytest.raises(ValidationFailureError):
            invoice_service.mark_paid(invoice.id, payment_method=method)

    def test_negative_amount_rejected(self, create_invoice, invoice_service):
        invoice = create_invoice()

        with pytest.raises(ValidationFailureError):
            invoice_service.mark_paid(invoice.id, amount="-1")

    def test_missing_invoice(self, as_tenant, invoice_service):
        with pytest.raises(NotFoundError):
            invoice_service.mark_paid(uuid4())

    def test_publishes_receipt(self, create_invoice, invoice_service, email):
        invoice = create_invoice()

        invoice_service.mark_paid(invoice.id)

        kwargs = email.send_receipt_email.call_args.kwargs
        assert kwargs["to"] == "accounts@wayne.example.com"
        assert kwargs["amount_paid"] == "$100.00"


class TestCancel:

    def test_cancels_pending(self, create_invoice, invoice_service):
        invoice = create_invoice()

        cancelled = invoice_service.cancel(invoice.id)

        assert cancelled.status == InvoiceStatus.CANCELLED
        assert cancelled.cancelled_at is not None

    def test_cancels_draft_and_overdue(self, create_invoice, past_due, invoice_service):
        draft = create_invoice(status="draft")

        assert invoice_service.cancel(draft.id).status == InvoiceStatus.CANCELLED
        assert invoice_service.cancel(past_due.id).status == InvoiceStatus.CANCELLED

    def test_paid_is_absorbing(self, create_invoice, invoice_service, store):
        """A manually paid invoice cannot be cancelled afterwards."""
        invoice = create_invoice()
        invoice_service.mark_paid(invoice.id)

        with pytest.raises(InvalidStateTransitionError):
            invoice_service.cancel(invoice.id)
        assert store.invoices[invoice.id].status == InvoiceStatus.PAID

    def test_cancel_twice_rejected(self, create_invoice, invoice_service):
        invoice = create_invoice()
        invoice_service.cancel(invoice.id)

        with pytest.raises(InvalidStateTransitionError):
            invoice_service.cancel(invoice.id)

    def test_payment_landing_mid_cancel_wins(self, create_invoice, invoice_service, store):
        """If a payment settles between cancel's read and write, the invoice stays paid."""
        invoice = create_invoice()
        original = store.update_invoice

        def pay_first(user_id, invoice_id, fields, expected_statuses=None):
            invoice_service.mark_paid(invoice_id, external_ref="pi_race")
            return original(user_id, invoice_id, fields, expected_statuses)

        with patch.object(store, "update_invoice", side_effect=pay_first):
            with pytest.raises(AlreadyPaidError):
                invoice_service.cancel(invoice.id)

        assert store.invoices[invoice.id].status == InvoiceStatus.PAID


class TestDelete:

    def test_deletes_open_invoice(self, create_invoice, invoice_service):
        invoice = create_invoice(status="draft")

        assert invoice_service.delete(invoice.id) is True
        with pytest.raises(NotFoundError):
            invoice_service.get(invoice.id)

    def test_paid_cannot_be_deleted(self, create_invoice, invoice_service):
        invoice = create_invoice()
        invoice_service.mark_paid(invoice.id)

        with pytest.raises(InvoiceImmutableError):
            invoice_service.delete(invoice.id)

    def test_cancelled_can_be_deleted(self, create_invoice, invoice_service, audit):
        invoice = create_invoice()
        invoice_service.cancel(invoice.id)

        invoice_service.delete(invoice.id)

        assert audit.get_entity_history("invoice", invoice.id)[0].action == "delete"


class TestMarkOverdue:

    def test_persists_overdue_status(self, past_due, create_invoice, invoice_service, store):
        create_invoice()

        marked = invoice_service.mark_overdue()

        assert [i.id for i in marked] == [past_due.id]
        assert store.invoices[past_due.id].status == InvoiceStatus.OVERDUE

    def test_repeatable(self, past_due, invoice_service):
        invoice_service.mark_overdue()

        assert invoice_service.mark_overdue() == []

    def test_overdue_then_paid(self, past_due, invoice_service):
        invoice_service.mark_overdue()

        assert invoice_service.mark_paid(past_due.id).status == InvoiceStatus.PAID
