"""
Billing service: subscription checkout and online invoice payment.

Everything here starts a flow at the payment processor. The results come
back later as webhook events and are applied by the reconciliation
service; nothing in this module changes plan or payment state directly.
"""

import logging
from uuid import UUID

from clients.stripe_client import PaymentProcessorError, StripeClient
from core.audit import AuditAction, AuditLogger
from core.config import BillingConfig
from core.exceptions import (
    AlreadyPaidError,
    InvalidStateTransitionError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationFailureError,
)
from core.models import InvoiceStatus, PlanTier, Subscription, SubscriptionStatus, Tenant
from core.services.plan_guard import PlanGuard
from core.stores.base import BillingStore, ClientStore, InvoiceStore
from utils.tenant_context import get_current_tenant_id
from utils.timezone import from_unix, today_utc

logger = logging.getLogger(__name__)

BILLING_PERIODS = ("monthly", "yearly")
PAID_PLANS = (PlanTier.PRO, PlanTier.BUSINESS)


class BillingService:
    """Starts checkout, invoice payment and subscription changes at Stripe."""

    def __init__(
        self,
        billing: BillingStore,
        invoices: InvoiceStore,
        clients: ClientStore,
        plans: PlanGuard,
        audit: AuditLogger,
        stripe: StripeClient | None,
        price_ids: dict[str, str],
        config: BillingConfig | None = None,
    ):
        """
        Args:
            price_ids: Stripe price per "<plan>_<period>" key, e.g. "pro_monthly"
        """
        self.billing = billing
        self.invoices = invoices
        self.clients = clients
        self.plans = plans
        self.audit = audit
        self.stripe = stripe
        self.price_ids = price_ids
        self.config = config or BillingConfig()

    def _processor(self) -> StripeClient:
        if self.stripe is None:
            raise UpstreamUnavailableError("payment_processor", "payments are not configured")
        return self.stripe

    def _ensure_customer(self, tenant: Tenant) -> str:
        if tenant.stripe_customer_id:
            return tenant.stripe_customer_id

        customer_id = self._processor().create_customer(str(tenant.id), tenant.email, tenant.name)
        self.billing.update_tenant(tenant.id, {"stripe_customer_id": customer_id})
        return customer_id

    def create_checkout_session(self, plan: PlanTier | str, billing_period: str = "monthly") -> dict:
        """
        Start a hosted checkout for a paid plan.

        Creates the Stripe customer on first use. The plan itself changes
        only when the checkout webhook arrives.

        Returns:
            {"checkout_url", "session_id"}

        Raises:
            ValidationFailureError: unknown plan or billing period
            UpstreamUnavailableError: Stripe call failed
        """
        try:
            tier = PlanTier(plan)
        except ValueError:
            raise ValidationFailureError(f"Unknown plan '{plan}'", field="plan")
        if tier not in PAID_PLANS:
            raise ValidationFailureError(f"Plan '{tier.value}' cannot be purchased", field="plan")
        if billing_period not in BILLING_PERIODS:
            raise ValidationFailureError(
                f"billing_period must be one of {', '.join(BILLING_PERIODS)}", field="billing_period"
            )

        price_id = self.price_ids.get(f"{tier.value}_{billing_period}")
        if not price_id:
            raise ValidationFailureError(
                f"No price configured for {tier.value} {billing_period}", field="billing_period"
            )

        user_id = get_current_tenant_id()
        tenant = self.plans.tenant(user_id)
        metadata = {"user_id": str(user_id), "plan": tier.value}

        try:
            customer_id = self._ensure_customer(tenant)
            session = self._processor().create_checkout_session(
                customer_id=customer_id,
                price_id=price_id,
                metadata=metadata,
                success_url=self.config.checkout_success_url,
                cancel_url=self.config.checkout_cancel_url,
            )
        except PaymentProcessorError as e:
            raise UpstreamUnavailableError("payment_processor", str(e))

        logger.info(f"Checkout {session['session_id']} started for {user_id} ({tier.value} {billing_period})")
        return session

    def create_invoice_payment(self, invoice_id: UUID) -> dict:
        """
        Create a payment intent so the client can pay an invoice online.

        The intent carries invoice_id and user_id in its metadata; the
        payment_intent.succeeded webhook uses them to mark the invoice paid.

        Returns:
            {"client_secret", "payment_intent_id", "amount_cents"}

        Raises:
            AlreadyPaidError: invoice is paid
            InvalidStateTransitionError: invoice is a draft or cancelled
            UpstreamUnavailableError: Stripe call failed
        """
        user_id = get_current_tenant_id()
        invoice = self.invoices.get_invoice(user_id, invoice_id)
        if invoice is None:
            raise NotFoundError("invoice", invoice_id)

        status = invoice.effective_status(today_utc())
        if status == InvoiceStatus.PAID:
            raise AlreadyPaidError(invoice_id, "create_payment")
        if status not in (InvoiceStatus.PENDING, InvoiceStatus.OVERDUE):
            raise InvalidStateTransitionError(
                invoice_id, status.value, InvoiceStatus.PAID.value,
                message=f"Invoice {invoice.invoice_number} is {status.value} and cannot be paid online",
            )
        if invoice.balance_due_cents <= 0:
            raise ValidationFailureError("Invoice has nothing to pay", field="total")

        client = self.clients.get_client(user_id, invoice.client_id)
        try:
            intent = self._processor().create_payment_intent(
                amount_cents=invoice.balance_due_cents,
                metadata={
                    "invoice_id": str(invoice.id),
                    "user_id": str(user_id),
                    "invoice_number": invoice.invoice_number,
                },
                description=f"Invoice {invoice.invoice_number}",
                receipt_email=client.email if client else None,
            )
        except PaymentProcessorError as e:
            raise UpstreamUnavailableError("payment_processor", str(e))

        self.invoices.update_invoice(user_id, invoice_id, {"payment_intent_id": intent["payment_intent_id"]})
        return {**intent, "amount_cents": invoice.balance_due_cents}

    def get_subscription(self) -> dict:
        """
        Current plan and the subscription backing it.

        Returns:
            {"plan": effective plan, "subscription": Subscription or None}
        """
        user_id = get_current_tenant_id()
        tenant = self.plans.tenant(user_id)
        active = self._active_subscription(user_id)
        return {
            "plan": self.plans.plan(tenant),
            "plan_expires_at": tenant.plan_expires_at,
            "subscription": active or self.billing.get_current_subscription(user_id),
        }

    def _active_subscription(self, user_id: UUID) -> Subscription | None:
        return next(
            (s for s in self.billing.list_subscriptions(user_id) if s.status.grants_plan and s.stripe_subscription_id),
            None,
        )

    def _set_cancel_at_period_end(self, cancel: bool) -> Subscription:
        user_id = get_current_tenant_id()
        if cancel:
            subscription = self._active_subscription(user_id)
        else:
            subscription = next(
                (
                    s for s in self.billing.list_subscriptions(user_id)
                    if s.stripe_subscription_id and s.status != SubscriptionStatus.CANCELLED
                ),
                None,
            )
        if subscription is None:
            raise NotFoundError("subscription")

        try:
            result = self._processor().set_cancel_at_period_end(subscription.stripe_subscription_id, cancel)
        except PaymentProcessorError as e:
            raise UpstreamUnavailableError("payment_processor", str(e))

        updated = self.billing.update_subscription(
            subscription.stripe_subscription_id,
            {"cancel_at": from_unix(result.get("cancel_at")) if cancel else None},
        ) or subscription

        self.audit.log_change(
            entity_type="subscription",
            entity_id=subscription.id,
            action=AuditAction.UPDATE,
            changes={"cancel_at_period_end": {"old": not cancel, "new": cancel}},
        )
        return updated

    def cancel_subscription(self) -> Subscription:
        """
        Cancel the active subscription at the end of its current period.

        The tenant keeps its plan until the processor reports the
        subscription deleted.
        """
        return self._set_cancel_at_period_end(True)

    def resume_subscription(self) -> Subscription:
        """Undo a scheduled cancellation."""
        return self._set_cancel_at_period_end(False)

    def billing_history(self) -> list[dict]:
        """
        Subscription invoices Stripe has issued to the tenant, newest first.

        A tenant that never started a checkout has no Stripe customer and
        therefore no history.

        Raises:
            UpstreamUnavailableError: Stripe call failed
        """
        tenant = self.plans.tenant(get_current_tenant_id())
        if not tenant.stripe_customer_id:
            return []

        try:
            invoices = self._processor().list_invoices(tenant.stripe_customer_id)
        except PaymentProcessorError as e:
            raise UpstreamUnavailableError("payment_processor", str(e))

        return [
            {
                "id": inv["id"],
                "number": inv["number"],
                "amount_cents": inv["amount_paid"],
                "status": inv["status"],
                "date": from_unix(inv["created"]),
                "pdf_url": inv["invoice_pdf"],
                "hosted_url": inv["hosted_invoice_url"],
            }
            for inv in invoices
        ]

    def create_payment_method_setup(self) -> dict:
        """
        Start replacing the card on file.

        Returns:
            {"client_secret", "setup_intent_id"} for the frontend's card form

        Raises:
            NotFoundError: tenant has no Stripe customer yet
            UpstreamUnavailableError: Stripe call failed
        """
        tenant = self.plans.tenant(get_current_tenant_id())
        if not tenant.stripe_customer_id:
            raise NotFoundError("billing_account")

        try:
            return self._processor().create_setup_intent(tenant.stripe_customer_id)
        except PaymentProcessorError as e:
            raise UpstreamUnavailableError("payment_processor", str(e))
