"""
Payment reconciliation: applies verified Stripe events to local state.

Each event is applied at most once. The processed-event table is checked
first and written last, so an event that fails midway is not recorded and
Stripe's redelivery retries it. Effects are idempotent on their own as
well (subscription upsert by external id, payment uniqueness per invoice
and payment intent), which covers two deliveries racing each other.

Tenant-less outcomes (unknown tenant, foreign payment intent) are logged
and acknowledged; they are never errors, since redelivery would not fix
them.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from core.audit import AuditLogger, BillingAuditAction
from core.event_bus import EventBus
from core.events import SubscriptionPastDue
from core.exceptions import AlreadyPaidError, InvalidStateTransitionError
from core.models import (
    InvoiceStatus,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    SubscriptionUpsert,
    Tenant,
)
from core.payment_events import (
    PROVIDER,
    CheckoutCompleted,
    PaymentSucceeded,
    ProcessorInvoicePaid,
    ProcessorInvoicePaymentFailed,
    ReconcilableEvent,
    SubscriptionChanged,
    SubscriptionDeleted,
    UnknownEvent,
)
from core.services.invoice_service import InvoiceService
from core.stores.base import BillingStore, InvoiceStore
from utils.tenant_context import tenant_context
from utils.timezone import now_utc, today_utc

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """What reconciling one event did."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    TENANT_NOT_FOUND = "tenant_not_found"
    ALREADY_PAID = "already_paid"
    INVOICE_NOT_PAYABLE = "invoice_not_payable"


@dataclass(frozen=True)
class ReconciliationResult:
    event_id: str
    event_type: str
    outcome: Outcome
    user_id: UUID | None = None


class ReconciliationService:
    """Dispatches parsed processor events to their effects."""

    def __init__(
        self,
        billing: BillingStore,
        invoices: InvoiceStore,
        invoice_service: InvoiceService,
        audit: AuditLogger,
        event_bus: EventBus,
    ):
        self.billing = billing
        self.invoices = invoices
        self.invoice_service = invoice_service
        self.audit = audit
        self.event_bus = event_bus

        self._handlers = {
            CheckoutCompleted: self._checkout_completed,
            SubscriptionChanged: self._subscription_changed,
            SubscriptionDeleted: self._subscription_deleted,
            ProcessorInvoicePaid: self._processor_invoice_paid,
            ProcessorInvoicePaymentFailed: self._processor_invoice_payment_failed,
            PaymentSucceeded: self._payment_succeeded,
        }

    def reconcile(self, event: ReconcilableEvent) -> ReconciliationResult:
        """
        Apply one verified event.

        Args:
            event: Output of ``parse_payment_event``

        Returns:
            ReconciliationResult describing what happened. Exceptions from
            stores propagate and leave the event unrecorded.
        """
        if event.event_id and self.billing.is_webhook_processed(PROVIDER, event.event_id):
            logger.info(f"Stripe event {event.event_id} ({event.event_type}) already processed")
            return ReconciliationResult(event.event_id, event.event_type, Outcome.DUPLICATE)

        handler = self._handlers.get(type(event))
        if handler is None:
            reason = event.reason if isinstance(event, UnknownEvent) else "no handler"
            logger.info(f"Ignoring Stripe event {event.event_id} ({event.event_type}): {reason}")
            result = ReconciliationResult(event.event_id, event.event_type, Outcome.IGNORED)
        else:
            outcome, user_id = handler(event)
            result = ReconciliationResult(event.event_id, event.event_type, outcome, user_id)

        if event.event_id and not self.billing.mark_webhook_processed(PROVIDER, event.event_id, event.event_type):
            logger.info(f"Stripe event {event.event_id} was recorded by a concurrent delivery")

        logger.info(f"Reconciled Stripe event {event.event_id} ({event.event_type}): {result.outcome.value}")
        return result

    # =========================================================================
    # TENANT RESOLUTION
    # =========================================================================

    def _resolve_tenant(self, user_id: UUID | None, customer_id: str | None) -> Tenant | None:
        """metadata.user_id first, then the processor customer id."""
        if user_id is not None:
            tenant = self.billing.get_tenant(user_id)
            if tenant is not None:
                return tenant
        if customer_id:
            return self.billing.find_tenant_by_customer(customer_id)
        return None

    def _cancel_other_active(self, tenant_id: UUID, keep: Subscription) -> None:
        """A tenant has at most one active subscription; the newest wins."""
        for other in self.billing.list_subscriptions(tenant_id):
            if other.id != keep.id and other.status.grants_plan and other.stripe_subscription_id:
                self.billing.update_subscription(
                    other.stripe_subscription_id,
                    {"status": SubscriptionStatus.CANCELLED, "cancelled_at": now_utc()},
                )
                logger.info(f"Subscription {other.stripe_subscription_id} superseded by {keep.stripe_subscription_id}")

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def _checkout_completed(self, event: CheckoutCompleted):
        tenant = self._resolve_tenant(event.user_id, event.customer_id)
        if tenant is None:
            logger.warning(f"Checkout {event.event_id}: no tenant for user {event.user_id} / customer {event.customer_id}")
            return Outcome.TENANT_NOT_FOUND, None

        fields = {"plan": event.plan}
        if event.subscription_id:
            fields["stripe_subscription_id"] = event.subscription_id
        if event.customer_id and not tenant.stripe_customer_id:
            fields["stripe_customer_id"] = event.customer_id
        self.billing.update_tenant(tenant.id, fields)

        self.audit.log_change(
            entity_type="tenant",
            entity_id=tenant.id,
            action=BillingAuditAction.CHECKOUT_COMPLETED,
            changes={
                "plan": {"old": tenant.plan.value, "new": event.plan.value},
                "stripe_subscription_id": event.subscription_id,
            },
            user_id=tenant.id,
        )
        logger.info(f"Tenant {tenant.id} upgraded to {event.plan.value}")
        return Outcome.APPLIED, tenant.id

    def _subscription_changed(self, event: SubscriptionChanged):
        tenant = self._resolve_tenant(event.user_id, event.customer_id)
        if tenant is None:
            logger.warning(f"Subscription {event.subscription_id}: no tenant for customer {event.customer_id}")
            return Outcome.TENANT_NOT_FOUND, None

        subscription = self.billing.upsert_subscription(SubscriptionUpsert(
            user_id=tenant.id,
            stripe_subscription_id=event.subscription_id,
            stripe_customer_id=event.customer_id,
            plan=event.plan,
            status=event.status,
            current_period_start=event.current_period_start,
            current_period_end=event.current_period_end,
            cancel_at=event.cancel_at,
        ))

        if event.status.grants_plan:
            fields = {
                "plan": event.plan,
                "plan_expires_at": event.current_period_end,
                "stripe_subscription_id": event.subscription_id,
            }
            if event.customer_id and not tenant.stripe_customer_id:
                fields["stripe_customer_id"] = event.customer_id
            self.billing.update_tenant(tenant.id, fields)
            self._cancel_other_active(tenant.id, subscription)

        self.audit.log_change(
            entity_type="subscription",
            entity_id=subscription.id,
            action=BillingAuditAction.SUBSCRIPTION_UPDATED,
            changes={
                "stripe_subscription_id": event.subscription_id,
                "status": event.status.value,
                "plan": event.plan.value,
            },
            user_id=tenant.id,
        )
        return Outcome.APPLIED, tenant.id

    def _subscription_deleted(self, event: SubscriptionDeleted):
        subscription = self.billing.update_subscription(
            event.subscription_id,
            {"status": SubscriptionStatus.CANCELLED, "cancelled_at": now_utc()},
        )
        owner = event.user_id or (subscription.user_id if subscription else None)
        tenant = self._resolve_tenant(owner, event.customer_id)
        if tenant is None:
            logger.warning(f"Deleted subscription {event.subscription_id}: no tenant for customer {event.customer_id}")
            return Outcome.TENANT_NOT_FOUND, None

        # A replacement subscription may already be linked; only the linked one downgrades.
        if tenant.stripe_subscription_id in (None, event.subscription_id):
            self.billing.update_tenant(tenant.id, {
                "plan": PlanTier.FREE,
                "plan_expires_at": None,
                "stripe_subscription_id": None,
            })
            logger.info(f"Tenant {tenant.id} downgraded to free")

        self.audit.log_change(
            entity_type="subscription",
            entity_id=subscription.id if subscription else None,
            action=BillingAuditAction.SUBSCRIPTION_CANCELLED,
            changes={"stripe_subscription_id": event.subscription_id},
            user_id=tenant.id,
        )
        return Outcome.APPLIED, tenant.id

    def _processor_invoice_paid(self, event: ProcessorInvoicePaid):
        tenant = self._resolve_tenant(None, event.customer_id)
        self.audit.log_change(
            entity_type="subscription",
            entity_id=None,
            action=BillingAuditAction.SUBSCRIPTION_PAYMENT_SUCCEEDED,
            changes={
                "processor_invoice_id": event.processor_invoice_id,
                "amount_paid_cents": event.amount_paid_cents,
                "customer": event.customer_id,
            },
            user_id=tenant.id if tenant else None,
        )
        return Outcome.APPLIED, tenant.id if tenant else None

    def _processor_invoice_payment_failed(self, event: ProcessorInvoicePaymentFailed):
        tenant = self._resolve_tenant(None, event.customer_id)

        if event.subscription_id:
            targets = [event.subscription_id]
        elif tenant is not None:
            targets = [
                s.stripe_subscription_id for s in self.billing.list_subscriptions(tenant.id)
                if s.status.grants_plan and s.stripe_subscription_id
            ]
        else:
            targets = []

        for subscription_id in targets:
            updated = self.billing.update_subscription(subscription_id, {"status": SubscriptionStatus.PAST_DUE})
            if tenant is None and updated is not None:
                tenant = self.billing.get_tenant(updated.user_id)

        self.audit.log_change(
            entity_type="subscription",
            entity_id=None,
            action=BillingAuditAction.SUBSCRIPTION_PAYMENT_FAILED,
            changes={
                "processor_invoice_id": event.processor_invoice_id,
                "customer": event.customer_id,
                "subscriptions": targets,
            },
            user_id=tenant.id if tenant else None,
        )

        if tenant is None:
            logger.warning(f"Payment failure {event.processor_invoice_id}: no tenant for customer {event.customer_id}")
            return Outcome.TENANT_NOT_FOUND, None

        self.event_bus.publish(SubscriptionPastDue.create(
            user_id=tenant.id, processor_invoice_id=event.processor_invoice_id,
        ))
        return Outcome.APPLIED, tenant.id

    # =========================================================================
    # INVOICE PAYMENTS
    # =========================================================================

    def _payment_after_paid(self, event: PaymentSucceeded) -> None:
        logger.warning(
            f"Payment {event.payment_intent_id} received for invoice {event.invoice_id}, "
            f"which is already paid; refund may be needed"
        )
        self.audit.log_change(
            entity_type="invoice",
            entity_id=event.invoice_id,
            action=BillingAuditAction.PAYMENT_AFTER_PAID,
            changes={"payment_intent_id": event.payment_intent_id, "amount_cents": event.amount_cents},
            user_id=event.user_id,
        )

    def _payment_succeeded(self, event: PaymentSucceeded):
        if self.billing.get_tenant(event.user_id) is None:
            logger.warning(f"Payment {event.payment_intent_id}: tenant {event.user_id} not found")
            return Outcome.TENANT_NOT_FOUND, None

        with tenant_context(event.user_id):
            invoice = self.invoices.get_invoice(event.user_id, event.invoice_id)
            if invoice is None:
                logger.warning(f"Payment {event.payment_intent_id}: invoice {event.invoice_id} not found")
                return Outcome.IGNORED, event.user_id

            if invoice.status == InvoiceStatus.PAID:
                payments = self.invoices.list_payments(event.user_id, invoice.id)
                if any(p.external_ref == event.payment_intent_id for p in payments):
                    return Outcome.DUPLICATE, event.user_id
                self._payment_after_paid(event)
                return Outcome.ALREADY_PAID, event.user_id

            status = invoice.effective_status(today_utc())
            if status not in (InvoiceStatus.PENDING, InvoiceStatus.OVERDUE):
                logger.warning(f"Payment {event.payment_intent_id} for {status.value} invoice {invoice.id}")
                self.audit.log_change(
                    entity_type="invoice",
                    entity_id=invoice.id,
                    action=BillingAuditAction.PAYMENT_NOT_APPLIED,
                    changes={
                        "payment_intent_id": event.payment_intent_id,
                        "amount_cents": event.amount_cents,
                        "status": status.value,
                    },
                    user_id=event.user_id,
                )
                return Outcome.INVOICE_NOT_PAYABLE, event.user_id

            try:
                self.invoice_service.mark_paid(
                    invoice.id,
                    payment_method=PROVIDER,
                    external_ref=event.payment_intent_id,
                    amount_cents=event.amount_cents,
                )
            except AlreadyPaidError:
                self._payment_after_paid(event)
                return Outcome.ALREADY_PAID, event.user_id
            except InvalidStateTransitionError as e:
                logger.warning(f"Payment {event.payment_intent_id} not applied: {e.message}")
                return Outcome.INVOICE_NOT_PAYABLE, event.user_id

            self.audit.log_change(
                entity_type="invoice",
                entity_id=invoice.id,
                action=BillingAuditAction.INVOICE_PAYMENT_RECEIVED,
                changes={
                    "payment_intent_id": event.payment_intent_id,
                    "amount_cents": event.amount_cents,
                    "event_id": event.event_id,
                },
                user_id=event.user_id,
            )
        logger.info(f"Invoice {invoice.invoice_number} paid via Stripe ({event.payment_intent_id})")
        return Outcome.APPLIED, event.user_id
