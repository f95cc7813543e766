"""Shared test fixtures for the invoicing test suite."""

import pytest
from pathlib import Path
from unittest.mock import Mock

from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
# override=True ensures .env takes precedence over shell env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module._vault_client_instance = None
vault_module._secret_cache.clear()

from api.app import build_services
from clients.email_client import EmailGatewayClient
from clients.stripe_client import StripeClient
from core.models import ClientCreate, InvoiceCreate, PlanTier
from core.stores.memory import InMemoryStore
from utils.tenant_context import clear_current_tenant_id, tenant_context


PRICE_IDS = {
    "pro_monthly": "price_pro_monthly",
    "pro_yearly": "price_pro_yearly",
    "business_monthly": "price_business_monthly",
}


# =============================================================================
# TENANT CONTEXT FIXTURES
# =============================================================================


@pytest.fixture(autouse=True)
def reset_tenant_context():
    """Ensure clean tenant context before and after each test."""
    clear_current_tenant_id()
    yield
    clear_current_tenant_id()


# =============================================================================
# STORE FIXTURES
# =============================================================================


@pytest.fixture
def store() -> InMemoryStore:
    """Fresh in-memory store standing in for every table."""
    return InMemoryStore()


@pytest.fixture
def tenant(store):
    """Primary tenant on the free plan."""
    return store.insert_tenant("owner@acme.example.com", "Ada Owner", business_name="Acme Consulting")


@pytest.fixture
def tenant_b(store):
    """Secondary tenant (for isolation tests)."""
    return store.insert_tenant("owner@globex.example.com", "Hank Scorpio", business_name="Globex")


@pytest.fixture
def pro_tenant(store, tenant):
    """The primary tenant upgraded to Pro."""
    return store.update_tenant(tenant.id, {"plan": PlanTier.PRO})


@pytest.fixture
def as_tenant(tenant):
    """Act as the primary tenant for the duration of the test."""
    with tenant_context(tenant.id):
        yield tenant.id


@pytest.fixture
def as_tenant_b(tenant_b):
    with tenant_context(tenant_b.id):
        yield tenant_b.id


# =============================================================================
# COLLABORATOR FIXTURES
# =============================================================================


@pytest.fixture
def email():
    """Email gateway that accepts everything."""
    return Mock(spec=EmailGatewayClient)


@pytest.fixture
def stripe():
    """Stripe client with canned responses."""
    mock = Mock(spec=StripeClient)
    mock.create_customer.return_value = "cus_new"
    mock.create_checkout_session.return_value = {
        "checkout_url": "https://checkout.stripe.test/c/cs_test_1",
        "session_id": "cs_test_1",
    }
    mock.create_payment_intent.return_value = {
        "client_secret": "pi_test_1_secret_abc",
        "payment_intent_id": "pi_test_1",
    }
    mock.set_cancel_at_period_end.return_value = {
        "id": "sub_1",
        "status": "active",
        "cancel_at": 1893456000,
        "current_period_end": 1893456000,
    }
    mock.list_invoices.return_value = [{
        "id": "in_1",
        "number": "ACME-0001",
        "amount_paid": 1900,
        "status": "paid",
        "created": 1788220800,
        "invoice_pdf": "https://pay.stripe.test/in_1.pdf",
        "hosted_invoice_url": "https://pay.stripe.test/in_1",
    }]
    mock.create_setup_intent.return_value = {
        "client_secret": "seti_test_1_secret_abc",
        "setup_intent_id": "seti_test_1",
    }
    return mock


# =============================================================================
# SERVICE FIXTURES
# =============================================================================


@pytest.fixture
def services(store, email, stripe):
    return build_services(
        clients=store,
        invoices=store,
        billing=store,
        audit_store=store,
        email=email,
        stripe=stripe,
        price_ids=PRICE_IDS,
    )


@pytest.fixture
def invoice_service(services):
    return services["invoice"]


@pytest.fixture
def client_service(services):
    return services["client"]


@pytest.fixture
def billing_service(services):
    return services["billing"]


@pytest.fixture
def reconciliation(services):
    return services["reconciliation"]


@pytest.fixture
def audit(services):
    return services["audit"]


# =============================================================================
# DATA FIXTURES
# =============================================================================


@pytest.fixture
def sample_client(as_tenant, client_service):
    return client_service.create(ClientCreate(
        name="Wayne Enterprises",
        email="Accounts@Wayne.example.com",
        company="Wayne Enterprises",
    ))


@pytest.fixture
def create_invoice(as_tenant, invoice_service, sample_client):
    """Factory creating a pending invoice (2 x 50.00) for the sample client."""

    def _create(**overrides):
        data = {
            "client_id": sample_client.id,
            "items": [{"description": "Consulting", "quantity": "2", "unit_price": "50.00"}],
            **overrides,
        }
        return invoice_service.create(InvoiceCreate(**data))

    return _create
