"""
Payment processor events as a closed set of tagged variants.

Stripe delivers loosely-typed JSON. ``parse_payment_event`` turns a verified
event payload into exactly one of the dataclasses below, pulling out only the
fields reconciliation acts on. Anything unrecognised, or recognised but
missing the fields needed to act, becomes ``UnknownEvent`` and is
acknowledged without effect.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union
from uuid import UUID

from core.models import PlanTier, SubscriptionStatus
from utils.timezone import from_unix

logger = logging.getLogger(__name__)

PROVIDER = "stripe"

# Stripe subscription statuses that have no local counterpart collapse onto
# the nearest local status.
_SUBSCRIPTION_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}


@dataclass(frozen=True, kw_only=True)
class PaymentEvent:
    """Fields shared by every processor event."""
    event_id: str
    event_type: str


@dataclass(frozen=True, kw_only=True)
class CheckoutCompleted(PaymentEvent):
    """Hosted checkout finished; the tenant bought ``plan``."""
    user_id: UUID | None
    plan: PlanTier
    customer_id: str | None = None
    subscription_id: str | None = None


@dataclass(frozen=True, kw_only=True)
class SubscriptionChanged(PaymentEvent):
    """Subscription created or updated at the processor."""
    subscription_id: str
    customer_id: str | None
    user_id: UUID | None
    plan: PlanTier
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at: datetime | None = None


@dataclass(frozen=True, kw_only=True)
class SubscriptionDeleted(PaymentEvent):
    """Subscription ended at the processor."""
    subscription_id: str
    customer_id: str | None
    user_id: UUID | None = None


@dataclass(frozen=True, kw_only=True)
class ProcessorInvoicePaid(PaymentEvent):
    """A subscription invoice (the processor's, not ours) was paid."""
    processor_invoice_id: str
    customer_id: str | None
    amount_paid_cents: int


@dataclass(frozen=True, kw_only=True)
class ProcessorInvoicePaymentFailed(PaymentEvent):
    """A subscription renewal charge failed."""
    processor_invoice_id: str
    customer_id: str | None
    subscription_id: str | None = None


@dataclass(frozen=True, kw_only=True)
class PaymentSucceeded(PaymentEvent):
    """One of our invoices was paid through a payment intent."""
    payment_intent_id: str
    invoice_id: UUID
    user_id: UUID
    amount_cents: int


@dataclass(frozen=True, kw_only=True)
class UnknownEvent(PaymentEvent):
    """Anything reconciliation does not act on."""
    reason: str = "unhandled event type"


ReconcilableEvent = Union[
    CheckoutCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    ProcessorInvoicePaid,
    ProcessorInvoicePaymentFailed,
    PaymentSucceeded,
    UnknownEvent,
]


def _uuid_or_none(value: Any) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _plan_or_default(value: Any, default: PlanTier = PlanTier.PRO) -> PlanTier:
    try:
        return PlanTier(value) if value else default
    except ValueError:
        return default


def _cents(value: Any) -> int | None:
    """Whole non-negative minor units, or None for anything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return None


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return from_unix(value)
    except (OverflowError, OSError, ValueError):
        return None


def _customer_id(obj: dict[str, Any]) -> str | None:
    customer = obj.get("customer")
    # Expanded customers arrive as objects
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


def _checkout_completed(base: dict[str, Any], obj: dict[str, Any]) -> ReconcilableEvent:
    metadata = _metadata(obj)
    return CheckoutCompleted(
        **base,
        user_id=_uuid_or_none(metadata.get("user_id")),
        plan=_plan_or_default(metadata.get("plan")),
        customer_id=_customer_id(obj),
        subscription_id=obj.get("subscription"),
    )


def _subscription_changed(base: dict[str, Any], obj: dict[str, Any]) -> ReconcilableEvent:
    metadata = _metadata(obj)
    raw_status = obj.get("status")
    status = _SUBSCRIPTION_STATUS_MAP.get(raw_status) if isinstance(raw_status, str) else None
    if status is None or not obj.get("id"):
        return UnknownEvent(**base, reason=f"unrecognised subscription status {raw_status!r}")
    return SubscriptionChanged(
        **base,
        subscription_id=obj["id"],
        customer_id=_customer_id(obj),
        user_id=_uuid_or_none(metadata.get("user_id")),
        plan=_plan_or_default(metadata.get("plan")),
        status=status,
        current_period_start=_timestamp(obj.get("current_period_start")),
        current_period_end=_timestamp(obj.get("current_period_end")),
        cancel_at=_timestamp(obj.get("cancel_at")),
    )


def _subscription_deleted(base: dict[str, Any], obj: dict[str, Any]) -> ReconcilableEvent:
    if not obj.get("id"):
        return UnknownEvent(**base, reason="subscription id missing")
    metadata = _metadata(obj)
    return SubscriptionDeleted(
        **base,
        subscription_id=obj["id"],
        customer_id=_customer_id(obj),
        user_id=_uuid_or_none(metadata.get("user_id")),
    )


def _invoice_paid(base: dict[str, Any], obj: dict[str, Any]) -> ReconcilableEvent:
    amount = _cents(obj.get("amount_paid") or 0)
    if amount is None:
        return UnknownEvent(**base, reason="amount_paid is not a whole number of cents")
    return ProcessorInvoicePaid(
        **base,
        processor_invoice_id=obj.get("id", ""),
        customer_id=_customer_id(obj),
        amount_paid_cents=amount,
    )


def _invoice_payment_failed(base: dict[str, Any], obj: dict[str, Any]) -> ReconcilableEvent:
    return ProcessorInvoicePaymentFailed(
        **base,
        processor_invoice_id=obj.get("id", ""),
        customer_id=_customer_id(obj),
        subscription_id=obj.get("subscription"),
    )


def _payment_intent_succeeded(base: dict[str, Any], obj: dict[str, Any]) -> ReconcilableEvent:
    metadata = _metadata(obj)
    invoice_id = _uuid_or_none(metadata.get("invoice_id"))
    user_id = _uuid_or_none(metadata.get("user_id"))
    if invoice_id is None:
        # Not one of ours; subscription charges also produce payment intents
        return UnknownEvent(**base, reason="payment intent has no invoice_id metadata")
    if user_id is None or not obj.get("id"):
        return UnknownEvent(**base, reason="payment intent missing user_id or id")
    amount = _cents(obj.get("amount_received") or obj.get("amount") or 0)
    if amount is None:
        return UnknownEvent(**base, reason="payment intent amount is not a whole number of cents")
    return PaymentSucceeded(
        **base,
        payment_intent_id=obj["id"],
        invoice_id=invoice_id,
        user_id=user_id,
        amount_cents=amount,
    )


_PARSERS = {
    "checkout.session.completed": _checkout_completed,
    "customer.subscription.created": _subscription_changed,
    "customer.subscription.updated": _subscription_changed,
    "customer.subscription.deleted": _subscription_deleted,
    "invoice.paid": _invoice_paid,
    "invoice.payment_failed": _invoice_payment_failed,
    "payment_intent.succeeded": _payment_intent_succeeded,
}


def parse_payment_event(payload: dict[str, Any]) -> ReconcilableEvent:
    """
    Convert a verified Stripe event payload into a tagged variant.

    Args:
        payload: Event as delivered, with ``id``, ``type`` and ``data.object``

    Returns:
        One of the variants in ``ReconcilableEvent``. Never raises on
        unexpected content; unusable payloads become ``UnknownEvent``.
    """
    if not isinstance(payload, dict):
        logger.warning("Ignoring event payload of type %s", type(payload).__name__)
        return UnknownEvent(event_id="", event_type="", reason="payload is not an object")

    base = {
        "event_id": str(payload.get("id") or ""),
        "event_type": str(payload.get("type") or ""),
    }
    data = payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    parser = _PARSERS.get(base["event_type"])

    if parser is None:
        return UnknownEvent(**base)
    if not isinstance(obj, dict):
        logger.warning("Event %s (%s) has no data.object", base["event_id"], base["event_type"])
        return UnknownEvent(**base, reason="data.object missing")
    return parser(base, obj)
