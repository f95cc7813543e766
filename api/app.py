"""
Application wiring.

``build_services`` composes stores, clients and services into the dict the
routers take; ``create_app`` assembles the FastAPI app around it.
``create_production_app`` loads secrets from Vault and wires PostgreSQL,
Valkey, the email gateway and Stripe. Serve it with any ASGI server's
factory mode.
"""

import logging

from fastapi import FastAPI

from api.actions import create_actions_router
from api.base import success_response
from api.data import create_data_router
from api.errors import register_error_handlers
from api.invoices import create_invoices_router
from api.middleware import RequestIDMiddleware
from api.webhooks import create_webhooks_router
from auth.api import create_auth_router
from auth.config import AuthConfig
from auth.security_middleware import AuthMiddleware
from auth.session import SessionManager
from clients.email_client import EmailGatewayClient
from clients.stripe_client import StripeClient
from core.audit import AuditLogger
from core.config import BillingConfig
from core.documents import InvoiceDocumentRenderer
from core.event_bus import EventBus
from core.events import InvoicePaid, SubscriptionPastDue
from core.handlers.invoice_payment_handler import handle_invoice_paid
from core.handlers.subscription_past_due_handler import handle_subscription_past_due
from core.services.billing_service import BillingService
from core.services.client_service import ClientService
from core.services.invoice_service import InvoiceService
from core.services.plan_guard import PlanGuard
from core.services.reconciliation_service import ReconciliationService
from core.stores.base import AuditStore, BillingStore, ClientStore, InvoiceStore

logger = logging.getLogger(__name__)


def build_services(
    clients: ClientStore,
    invoices: InvoiceStore,
    billing: BillingStore,
    audit_store: AuditStore,
    email: EmailGatewayClient | None = None,
    stripe: StripeClient | None = None,
    price_ids: dict[str, str] | None = None,
    config: BillingConfig | None = None,
) -> dict:
    """
    Compose services and subscribe event handlers.

    Returns:
        Dict with "invoice", "client", "billing", "reconciliation", "audit"
        and "event_bus"
    """
    config = config or BillingConfig()
    event_bus = EventBus()
    audit = AuditLogger(audit_store)
    plans = PlanGuard(billing)

    invoice_service = InvoiceService(
        invoices=invoices,
        clients=clients,
        plans=plans,
        audit=audit,
        event_bus=event_bus,
        renderer=InvoiceDocumentRenderer(currency_symbol=config.currency_symbol),
        email=email,
        config=config,
    )

    if email is not None:
        event_bus.subscribe(InvoicePaid, handle_invoice_paid(clients, billing, email, config.currency_symbol))
        event_bus.subscribe(SubscriptionPastDue, handle_subscription_past_due(billing, email, config))

    return {
        "invoice": invoice_service,
        "client": ClientService(clients, invoices, plans, audit),
        "billing": BillingService(
            billing=billing,
            invoices=invoices,
            clients=clients,
            plans=plans,
            audit=audit,
            stripe=stripe,
            price_ids=price_ids or {},
            config=config,
        ),
        "reconciliation": ReconciliationService(billing, invoices, invoice_service, audit, event_bus),
        "audit": audit,
        "event_bus": event_bus,
    }


def create_app(
    services: dict,
    session_manager: SessionManager,
    stripe: StripeClient | None = None,
    auth_config: AuthConfig | None = None,
) -> FastAPI:
    """FastAPI app with auth middleware, error handlers and all routes."""
    auth_config = auth_config or AuthConfig()

    app = FastAPI(title="Invoicing API")
    app.add_middleware(AuthMiddleware, session_manager=session_manager, config=auth_config)
    app.add_middleware(RequestIDMiddleware)
    register_error_handlers(app)

    app.include_router(create_auth_router(session_manager, auth_config), prefix="/auth")
    app.include_router(create_data_router(services), prefix="/api")
    app.include_router(create_actions_router(services), prefix="/api")
    app.include_router(create_invoices_router(services), prefix="/api")
    app.include_router(create_webhooks_router(stripe, services["reconciliation"]), prefix="/webhooks")

    @app.get("/health")
    async def health():
        return success_response({"status": "ok"}).model_dump(mode="json")

    return app


def create_production_app() -> FastAPI:
    """Wire the app against Vault-configured infrastructure."""
    from clients.postgres_client import PostgresClient
    from clients.valkey_client import ValkeyClient
    from clients.vault_client import (
        get_admin_database_url,
        get_database_url,
        get_email_config,
        get_stripe_config,
        get_valkey_url,
    )
    from core.stores.postgres import (
        PostgresAuditStore,
        PostgresBillingStore,
        PostgresClientStore,
        PostgresInvoiceStore,
    )

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    postgres = PostgresClient(get_database_url())
    admin_postgres = PostgresClient(get_admin_database_url())
    config = BillingConfig()

    email = EmailGatewayClient(**get_email_config())
    stripe_config = get_stripe_config()
    stripe = StripeClient(
        secret_key=stripe_config["secret_key"],
        webhook_secret=stripe_config["webhook_secret"],
        currency=config.currency,
    )
    price_ids = {
        key.removesuffix("_price_id"): value
        for key, value in stripe_config.items()
        if key.endswith("_price_id") and value
    }

    services = build_services(
        clients=PostgresClientStore(postgres),
        invoices=PostgresInvoiceStore(postgres),
        billing=PostgresBillingStore(admin_postgres),
        audit_store=PostgresAuditStore(admin_postgres),
        email=email,
        stripe=stripe,
        price_ids=price_ids,
        config=config,
    )
    session_manager = SessionManager(ValkeyClient(get_valkey_url()), AuthConfig())

    logger.info("Invoicing API wired against PostgreSQL, Valkey and Stripe")
    return create_app(services, session_manager, stripe=stripe)
