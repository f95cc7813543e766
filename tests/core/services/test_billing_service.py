"""Tests for BillingService - Stripe is mocked, state lives in the in-memory store."""

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from clients.stripe_client import PaymentProcessorError
from core.exceptions import (
    AlreadyPaidError,
    InvalidStateTransitionError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationFailureError,
)
from core.models import InvoiceStatus, PlanTier, SubscriptionStatus, SubscriptionUpsert


@pytest.fixture
def subscribed(store, pro_tenant):
    """Pro tenant backed by an active Stripe subscription."""
    store.update_tenant(pro_tenant.id, {"stripe_customer_id": "cus_1", "stripe_subscription_id": "sub_1"})
    return store.upsert_subscription(SubscriptionUpsert(
        user_id=pro_tenant.id,
        stripe_subscription_id="sub_1",
        stripe_customer_id="cus_1",
        plan=PlanTier.PRO,
        status=SubscriptionStatus.ACTIVE,
    ))


class TestCheckout:

    def test_creates_customer_on_first_use(self, as_tenant, tenant, billing_service, stripe, store):
        session = billing_service.create_checkout_session("pro", "monthly")

        assert session["session_id"] == "cs_test_1"
        stripe.create_customer.assert_called_once_with(str(tenant.id), "owner@acme.example.com", "Ada Owner")
        assert store.tenants[tenant.id].stripe_customer_id == "cus_new"

        kwargs = stripe.create_checkout_session.call_args.kwargs
        assert kwargs["customer_id"] == "cus_new"
        assert kwargs["price_id"] == "price_pro_monthly"
        assert kwargs["metadata"] == {"user_id": str(tenant.id), "plan": "pro"}
        assert "{CHECKOUT_SESSION_ID}" in kwargs["success_url"]

    def test_reuses_existing_customer(self, as_tenant, tenant, billing_service, stripe, store):
        store.update_tenant(tenant.id, {"stripe_customer_id": "cus_existing"})

        billing_service.create_checkout_session(PlanTier.PRO, "yearly")

        stripe.create_customer.assert_not_called()
        assert stripe.create_checkout_session.call_args.kwargs["customer_id"] == "cus_existing"

    def test_does_not_change_plan(self, as_tenant, tenant, billing_service, store):
        billing_service.create_checkout_session("pro")

        assert store.tenants[tenant.id].plan == PlanTier.FREE

    @pytest.mark.parametrize("plan,period", [
        ("platinum", "monthly"),
        ("free", "monthly"),
        ("pro", "weekly"),
        ("business", "yearly"),  # no price configured
    ])
    def test_rejects_bad_input(self, as_tenant, billing_service, stripe, plan, period):
        with pytest.raises(ValidationFailureError):
            billing_service.create_checkout_session(plan, period)
        stripe.create_checkout_session.assert_not_called()

    def test_processor_failure(self, as_tenant, billing_service, stripe):
        stripe.create_checkout_session.side_effect = PaymentProcessorError("card network down")

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            billing_service.create_checkout_session("pro")
        assert exc_info.value.collaborator == "payment_processor"

    def test_without_processor(self, as_tenant, billing_service):
        billing_service.stripe = None

        with pytest.raises(UpstreamUnavailableError):
            billing_service.create_checkout_session("pro")


class TestInvoicePayment:

    def test_creates_intent_for_balance(self, create_invoice, billing_service, stripe, store, tenant):
        invoice = create_invoice()

        result = billing_service.create_invoice_payment(invoice.id)

        assert result == {
            "client_secret": "pi_test_1_secret_abc",
            "payment_intent_id": "pi_test_1",
            "amount_cents": 10000,
        }
        kwargs = stripe.create_payment_intent.call_args.kwargs
        assert kwargs["amount_cents"] == 10000
        assert kwargs["metadata"] == {
            "invoice_id": str(invoice.id),
            "user_id": str(tenant.id),
            "invoice_number": invoice.invoice_number,
        }
        assert kwargs["receipt_email"] == "accounts@wayne.example.com"
        assert store.invoices[invoice.id].payment_intent_id == "pi_test_1"
        assert store.invoices[invoice.id].status == InvoiceStatus.PENDING

    def test_paid_invoice(self, create_invoice, billing_service, invoice_service, stripe):
        invoice = create_invoice()
        invoice_service.mark_paid(invoice.id)

        with pytest.raises(AlreadyPaidError):
            billing_service.create_invoice_payment(invoice.id)
        stripe.create_payment_intent.assert_not_called()

    @pytest.mark.parametrize("cancel", [False, True])
    def test_draft_or_cancelled(self, create_invoice, billing_service, invoice_service, cancel):
        invoice = create_invoice(status="draft")
        if cancel:
            invoice_service.cancel(invoice.id)

        with pytest.raises(InvalidStateTransitionError):
            billing_service.create_invoice_payment(invoice.id)

    def test_zero_total(self, create_invoice, billing_service):
        invoice = create_invoice(items=[{"description": "Goodwill", "unit_price": "0"}])

        with pytest.raises(ValidationFailureError):
            billing_service.create_invoice_payment(invoice.id)

    def test_unknown_invoice(self, as_tenant, billing_service):
        with pytest.raises(NotFoundError):
            billing_service.create_invoice_payment(uuid4())


class TestSubscription:

    def test_free_tenant_without_subscription(self, as_tenant, billing_service):
        result = billing_service.get_subscription()

        assert result["plan"] == PlanTier.FREE
        assert result["subscription"] is None

    def test_reports_active_subscription(self, subscribed, as_tenant, billing_service):
        result = billing_service.get_subscription()

        assert result["plan"] == PlanTier.PRO
        assert result["subscription"].stripe_subscription_id == "sub_1"

    def test_cancel_at_period_end(self, subscribed, as_tenant, billing_service, stripe, store, audit):
        updated = billing_service.cancel_subscription()

        stripe.set_cancel_at_period_end.assert_called_once_with("sub_1", True)
        assert updated.cancel_at is not None
        assert updated.cancel_scheduled
        assert store.tenants[subscribed.user_id].plan == PlanTier.PRO
        entry = audit.get_entity_history("subscription", subscribed.id)[0]
        assert entry.changes == {"cancel_at_period_end": {"old": False, "new": True}}

    def test_resume(self, subscribed, as_tenant, billing_service, stripe):
        billing_service.cancel_subscription()

        resumed = billing_service.resume_subscription()

        stripe.set_cancel_at_period_end.assert_called_with("sub_1", False)
        assert resumed.cancel_at is None

    def test_nothing_to_cancel(self, as_tenant, billing_service):
        with pytest.raises(NotFoundError):
            billing_service.cancel_subscription()

    def test_cancel_processor_failure(self, subscribed, as_tenant, billing_service, stripe, store):
        stripe.set_cancel_at_period_end.side_effect = PaymentProcessorError("timeout")

        with pytest.raises(UpstreamUnavailableError):
            billing_service.cancel_subscription()
        assert store.get_subscription_by_external_id("sub_1").cancel_at is None


class TestBillingHistory:

    def test_without_customer_is_empty(self, as_tenant, billing_service, stripe):
        assert billing_service.billing_history() == []
        stripe.list_invoices.assert_not_called()

    def test_lists_processor_invoices(self, subscribed, as_tenant, billing_service, stripe):
        [entry] = billing_service.billing_history()

        stripe.list_invoices.assert_called_once_with("cus_1")
        assert entry["id"] == "in_1"
        assert entry["number"] == "ACME-0001"
        assert entry["amount_cents"] == 1900
        assert entry["status"] == "paid"
        assert entry["date"] == datetime(2026, 9, 1, tzinfo=timezone.utc)
        assert entry["pdf_url"] == "https://pay.stripe.test/in_1.pdf"
        assert entry["hosted_url"] == "https://pay.stripe.test/in_1"

    def test_processor_failure(self, subscribed, as_tenant, billing_service, stripe):
        stripe.list_invoices.side_effect = PaymentProcessorError("timeout")

        with pytest.raises(UpstreamUnavailableError):
            billing_service.billing_history()


class TestPaymentMethodSetup:

    def test_creates_setup_intent(self, subscribed, as_tenant, billing_service, stripe):
        result = billing_service.create_payment_method_setup()

        stripe.create_setup_intent.assert_called_once_with("cus_1")
        assert result["client_secret"] == "seti_test_1_secret_abc"

    def test_without_customer(self, as_tenant, billing_service, stripe):
        with pytest.raises(NotFoundError, match="Billing account"):
            billing_service.create_payment_method_setup()
        stripe.create_setup_intent.assert_not_called()

    def test_processor_failure(self, subscribed, as_tenant, billing_service, stripe):
        stripe.create_setup_intent.side_effect = PaymentProcessorError("card network down")

        with pytest.raises(UpstreamUnavailableError):
            billing_service.create_payment_method_setup()
