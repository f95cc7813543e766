"""
Stripe client for subscriptions, invoice payments and webhook verification.

Every call passes the secret key explicitly instead of setting the
module-global ``stripe.api_key``. Stripe SDK errors are wrapped in
PaymentProcessorError so callers depend on this module, not on the SDK.
"""

import json
import logging
from typing import Any, Dict, List

import stripe
from stripe import SignatureVerificationError, StripeError

logger = logging.getLogger(__name__)

API_VERSION = "2024-06-20"


class PaymentProcessorError(Exception):
    """Stripe API call failed."""


class WebhookVerificationError(Exception):
    """Webhook payload or signature is invalid. Never retried."""


class StripeClient:
    """Thin wrapper around the Stripe SDK."""

    def __init__(self, secret_key: str, webhook_secret: str, currency: str = "usd"):
        if not secret_key:
            raise ValueError("secret_key is required")
        if not webhook_secret:
            raise ValueError("webhook_secret is required")

        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self.currency = currency
        self.stripe = stripe

    def _options(self) -> Dict[str, Any]:
        return {"api_key": self._secret_key, "stripe_version": API_VERSION}

    def verify_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header and return the event as a dict.

        Raises:
            WebhookVerificationError: bad signature or malformed payload
        """
        try:
            event = self.stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise WebhookVerificationError("Invalid webhook payload") from e
        except SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise WebhookVerificationError("Invalid webhook signature") from e

        logger.debug(f"Verified Stripe webhook {event['id']}: {event['type']}")
        # The signature covers the raw bytes; hand reconciliation plain JSON.
        return json.loads(payload)

    def create_customer(self, user_id: str, email: str, name: str | None = None) -> str:
        """Create a Stripe customer for a tenant. Returns the customer id."""
        try:
            customer = self.stripe.Customer.create(
                email=email,
                name=name,
                metadata={"user_id": user_id},
                **self._options(),
            )
        except StripeError as e:
            raise PaymentProcessorError(f"Customer creation failed: {e}") from e

        logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
        return customer.id

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, str]:
        """Hosted checkout for a subscription. Metadata is copied onto the subscription."""
        try:
            session = self.stripe.checkout.Session.create(
                customer=customer_id,
                mode="subscription",
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                subscription_data={"metadata": metadata},
                payment_method_types=["card"],
                **self._options(),
            )
        except StripeError as e:
            raise PaymentProcessorError(f"Checkout session creation failed: {e}") from e

        logger.info(f"Created Stripe checkout session {session.id} for customer {customer_id}")
        return {"checkout_url": session.url, "session_id": session.id}

    def create_payment_intent(
        self,
        amount_cents: int,
        metadata: Dict[str, str],
        description: str,
        receipt_email: str | None = None,
    ) -> Dict[str, str]:
        """Payment intent for one of our invoices. ``metadata`` must carry invoice_id and user_id."""
        try:
            intent = self.stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=self.currency,
                metadata=metadata,
                description=description,
                receipt_email=receipt_email,
                automatic_payment_methods={"enabled": True},
                **self._options(),
            )
        except StripeError as e:
            raise PaymentProcessorError(f"Payment intent creation failed: {e}") from e

        logger.info(f"Created payment intent {intent.id} for invoice {metadata.get('invoice_id')}")
        return {"client_secret": intent.client_secret, "payment_intent_id": intent.id}

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> Dict[str, Any]:
        """Schedule (or unschedule) cancellation at the end of the current period."""
        try:
            subscription = self.stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=cancel,
                **self._options(),
            )
        except StripeError as e:
            raise PaymentProcessorError(f"Subscription update failed: {e}") from e

        logger.info(f"Subscription {subscription_id} cancel_at_period_end={cancel}")
        return {
            "id": subscription.id,
            "status": subscription.status,
            "cancel_at": subscription.get("cancel_at"),
            "current_period_end": subscription.get("current_period_end"),
        }

    def list_invoices(self, customer_id: str, limit: int = 24) -> List[Dict[str, Any]]:
        """Most recent subscription invoices Stripe issued to a customer."""
        try:
            invoices = self.stripe.Invoice.list(customer=customer_id, limit=limit, **self._options())
        except StripeError as e:
            raise PaymentProcessorError(f"Invoice listing failed: {e}") from e

        return [
            {
                "id": inv["id"],
                "number": inv.get("number"),
                "amount_paid": inv.get("amount_paid") or 0,
                "status": inv.get("status"),
                "created": inv.get("created"),
                "invoice_pdf": inv.get("invoice_pdf"),
                "hosted_invoice_url": inv.get("hosted_invoice_url"),
            }
            for inv in invoices.data
        ]

    def create_setup_intent(self, customer_id: str) -> Dict[str, str]:
        """Setup intent for saving a new card on the customer."""
        try:
            intent = self.stripe.SetupIntent.create(
                customer=customer_id,
                payment_method_types=["card"],
                **self._options(),
            )
        except StripeError as e:
            raise PaymentProcessorError(f"Setup intent creation failed: {e}") from e

        logger.info(f"Created setup intent {intent.id} for customer {customer_id}")
        return {"client_secret": intent.client_secret, "setup_intent_id": intent.id}
