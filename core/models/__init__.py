"""Core domain models."""

from core.models.tenant import Tenant, PlanTier
from core.models.client import Client, ClientCreate, ClientUpdate, ClientStats
from core.models.line_item import LineItem, LineItemInput
from core.models.invoice import (
    Invoice, InvoiceCreate, InvoiceDetail, InvoiceItemsReplace,
    InvoiceStats, InvoiceStatus, InvoiceUpdate,
)
from core.models.payment import Payment, PaymentStatus
from core.models.subscription import Subscription, SubscriptionStatus, SubscriptionUpsert
from core.models.audit_entry import AuditEntry

__all__ = [
    # Tenant
    "Tenant", "PlanTier",
    # Client
    "Client", "ClientCreate", "ClientUpdate", "ClientStats",
    # LineItem
    "LineItem", "LineItemInput",
    # Invoice
    "Invoice", "InvoiceCreate", "InvoiceDetail", "InvoiceItemsReplace",
    "InvoiceStats", "InvoiceStatus", "InvoiceUpdate",
    # Payment
    "Payment", "PaymentStatus",
    # Subscription
    "Subscription", "SubscriptionStatus", "SubscriptionUpsert",
    # Audit
    "AuditEntry",
]
