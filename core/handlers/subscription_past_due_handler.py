"""
Handler for SubscriptionPastDue events.

Tells the tenant their renewal charge failed and where to fix it.
"""

import logging
from typing import Callable

from clients.email_client import EmailGatewayClient, EmailGatewayError
from core.config import BillingConfig
from core.events import SubscriptionPastDue
from core.stores.base import BillingStore

logger = logging.getLogger(__name__)


def handle_subscription_past_due(
    billing: BillingStore,
    email: EmailGatewayClient,
    config: BillingConfig,
) -> Callable:
    """
    Factory that returns a SubscriptionPastDue handler.

    Args:
        billing: Store to look up the tenant
        email: Gateway used to send the notice
        config: Provides the billing page URL

    Returns:
        Handler callable that emails a past-due notice to the tenant
    """

    def handler(event: SubscriptionPastDue):
        tenant = billing.get_tenant(event.user_id)
        if tenant is None:
            logger.warning(f"Past-due notice skipped: tenant {event.user_id} not found")
            return

        try:
            email.send_past_due_notice(to=tenant.email, name=tenant.name, billing_url=config.billing_url)
        except EmailGatewayError as e:
            logger.error(f"Past-due notice for tenant {tenant.id} not sent: {e}")

    return handler
