"""
Handler for InvoicePaid events.

On invoice payment, emails a receipt to the client. Runs after the payment
has been committed, so a delivery failure is logged and the invoice stays
paid.
"""

import logging
from typing import Callable

from clients.email_client import EmailGatewayClient, EmailGatewayError
from core.events import InvoicePaid
from core.money import format_cents
from core.stores.base import BillingStore, ClientStore

logger = logging.getLogger(__name__)


def handle_invoice_paid(
    clients: ClientStore,
    billing: BillingStore,
    email: EmailGatewayClient,
    currency_symbol: str = "$",
) -> Callable:
    """
    Factory that returns an InvoicePaid handler.

    Args:
        clients: Store to look up the invoice's client
        billing: Store to look up the issuing tenant
        email: Gateway used to send the receipt
        currency_symbol: Symbol for the amount in the receipt

    Returns:
        Handler callable that emails a payment receipt
    """

    def handler(event: InvoicePaid):
        invoice = event.invoice
        client = clients.get_client(invoice.user_id, invoice.client_id)
        tenant = billing.get_tenant(invoice.user_id)
        if client is None or tenant is None:
            logger.warning(f"Skipping receipt for invoice {invoice.id}: client or tenant missing")
            return

        try:
            email.send_receipt_email(
                to=client.email,
                client_name=client.name,
                issuer_name=tenant.display_name,
                invoice_number=invoice.invoice_number,
                amount_paid=format_cents(invoice.paid_amount_cents or invoice.total_cents, currency_symbol),
                reply_to=tenant.email,
            )
        except EmailGatewayError as e:
            logger.error(f"Receipt for invoice {invoice.invoice_number} not sent: {e}")

    return handler
