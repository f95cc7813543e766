"""Persistence interfaces and their PostgreSQL and in-memory implementations."""

from core.stores.base import (
    AuditStore,
    BillingStore,
    ClientStore,
    DuplicateKeyError,
    InvoiceQuery,
    InvoiceStore,
    NewInvoice,
    Settlement,
)
from core.stores.memory import InMemoryStore

__all__ = [
    "AuditStore", "BillingStore", "ClientStore", "InvoiceStore",
    "DuplicateKeyError", "InvoiceQuery", "NewInvoice", "Settlement",
    "InMemoryStore",
]
