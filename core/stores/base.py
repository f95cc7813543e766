"""
Persistence interfaces.

Services depend on these ABCs; ``core.stores.postgres`` implements them over
psycopg2 with row level security and ``core.stores.memory`` keeps everything
in process (tests, local runs). Every tenant-scoped method takes the tenant's
``user_id`` explicitly.

Conditional writes take ``expected_statuses``: the write only happens if the
invoice's stored status is still one of them, and the method returns None
otherwise. Services use this to make check-then-act safe against a
concurrent payment landing between their read and their write.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Iterable
from uuid import UUID

from core.lifecycle import InvoiceTotals, PricedLine
from core.models import (
    AuditEntry,
    Client,
    ClientCreate,
    ClientStats,
    Invoice,
    InvoiceDetail,
    InvoiceStats,
    InvoiceStatus,
    Payment,
    Subscription,
    SubscriptionUpsert,
    Tenant,
)


class DuplicateKeyError(Exception):
    """A unique constraint rejected the write."""

    def __init__(self, constraint: str):
        self.constraint = constraint
        super().__init__(f"Duplicate key violates {constraint}")


@dataclass(frozen=True)
class NewInvoice:
    """Everything needed to insert an invoice except its number."""

    client_id: UUID
    status: InvoiceStatus
    issue_date: date
    due_date: date
    totals: InvoiceTotals
    notes: str | None = None
    terms: str | None = None


@dataclass(frozen=True)
class Settlement:
    """Paid fields and the completed Payment Record that goes with them."""

    amount_cents: int
    payment_method: str
    paid_at: datetime
    external_ref: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class InvoiceQuery:
    """
    List filter. ``status`` is matched against the effective status on
    ``today``, so OVERDUE also finds stored-pending invoices past due.
    """

    today: date
    status: InvoiceStatus | None = None
    client_id: UUID | None = None
    limit: int = 50
    offset: int = 0


# Called with the locked invoice and whether a completed payment with the same
# external reference already exists. Returns the settlement to apply, None for
# a no-op, or raises to abort.
SettlementDecision = Callable[[Invoice, bool], Settlement | None]


class ClientStore(ABC):
    """Tenant-scoped client records."""

    @abstractmethod
    def insert_client(self, user_id: UUID, data: ClientCreate) -> Client:
        """Raises DuplicateKeyError on (user_id, email)."""

    @abstractmethod
    def get_client(self, user_id: UUID, client_id: UUID) -> Client | None: ...

    @abstractmethod
    def find_client_by_email(self, user_id: UUID, email: str) -> Client | None: ...

    @abstractmethod
    def list_clients(self, user_id: UUID, search: str | None = None, include_inactive: bool = False) -> list[Client]:
        """Ordered by name. ``search`` matches name, email or company case-insensitively."""

    @abstractmethod
    def update_client(self, user_id: UUID, client_id: UUID, fields: dict[str, Any]) -> Client | None:
        """Raises DuplicateKeyError on (user_id, email)."""

    @abstractmethod
    def delete_client(self, user_id: UUID, client_id: UUID) -> bool: ...

    @abstractmethod
    def count_active_clients(self, user_id: UUID) -> int: ...


class InvoiceStore(ABC):
    """Tenant-scoped invoices, their line items and payment records."""

    @abstractmethod
    def create_invoice(
        self,
        user_id: UUID,
        invoice: NewInvoice,
        lines: list[PricedLine],
        format_number: Callable[[date, int], str],
    ) -> InvoiceDetail:
        """
        Allocate the tenant's next ordinal and insert invoice plus items.

        Allocation and insertion commit together or not at all.

        Raises:
            DuplicateKeyError: the formatted number already exists for the tenant
        """

    @abstractmethod
    def get_invoice(self, user_id: UUID, invoice_id: UUID) -> Invoice | None: ...

    @abstractmethod
    def get_invoice_detail(self, user_id: UUID, invoice_id: UUID) -> InvoiceDetail | None: ...

    @abstractmethod
    def list_invoices(self, user_id: UUID, query: InvoiceQuery) -> tuple[list[Invoice], int]:
        """Page of invoices, newest first, plus the total matching count."""

    @abstractmethod
    def replace_items(
        self,
        user_id: UUID,
        invoice_id: UUID,
        lines: list[PricedLine],
        totals: InvoiceTotals,
        expected_statuses: Iterable[InvoiceStatus],
    ) -> InvoiceDetail | None: ...

    @abstractmethod
    def update_invoice(
        self,
        user_id: UUID,
        invoice_id: UUID,
        fields: dict[str, Any],
        expected_statuses: Iterable[InvoiceStatus] | None = None,
    ) -> Invoice | None: ...

    @abstractmethod
    def delete_invoice(self, user_id: UUID, invoice_id: UUID, expected_statuses: Iterable[InvoiceStatus]) -> bool:
        """Delete invoice with its items and payment records."""

    @abstractmethod
    def settle_invoice(self, user_id: UUID, invoice_id: UUID, external_ref: str | None, decide: SettlementDecision) -> tuple[Invoice, bool] | None:
        """
        Mark an invoice paid under the invoice's row lock.

        Returns (invoice, applied), or None if the invoice does not exist.
        ``applied`` is False when ``decide`` returned None.
        """

    @abstractmethod
    def list_payments(self, user_id: UUID, invoice_id: UUID) -> list[Payment]: ...

    @abstractmethod
    def count_invoices_since(self, user_id: UUID, since: datetime) -> int: ...

    @abstractmethod
    def overdue_candidates(self, user_id: UUID, today: date) -> list[Invoice]:
        """Stored-pending invoices with due_date before ``today``."""

    @abstractmethod
    def invoice_stats(self, user_id: UUID, today: date) -> InvoiceStats: ...

    @abstractmethod
    def client_stats(self, user_id: UUID, client_id: UUID) -> ClientStats: ...

    @abstractmethod
    def client_has_invoices(self, user_id: UUID, client_id: UUID) -> bool: ...


class BillingStore(ABC):
    """
    Tenants, subscriptions and processed webhook events.

    Not tenant-scoped: reconciliation has to find a tenant from a processor
    customer id before any tenant context exists.
    """

    @abstractmethod
    def insert_tenant(self, email: str, name: str, business_name: str | None = None) -> Tenant: ...

    @abstractmethod
    def get_tenant(self, user_id: UUID) -> Tenant | None: ...

    @abstractmethod
    def find_tenant_by_customer(self, customer_id: str) -> Tenant | None: ...

    @abstractmethod
    def update_tenant(self, user_id: UUID, fields: dict[str, Any]) -> Tenant | None: ...

    @abstractmethod
    def upsert_subscription(self, data: SubscriptionUpsert) -> Subscription:
        """Insert or update by stripe_subscription_id."""

    @abstractmethod
    def get_subscription_by_external_id(self, subscription_id: str) -> Subscription | None: ...

    @abstractmethod
    def get_current_subscription(self, user_id: UUID) -> Subscription | None:
        """Most recently updated subscription for the tenant."""

    @abstractmethod
    def list_subscriptions(self, user_id: UUID) -> list[Subscription]:
        """All subscriptions for the tenant, most recently updated first."""

    @abstractmethod
    def update_subscription(self, subscription_id: str, fields: dict[str, Any]) -> Subscription | None: ...

    @abstractmethod
    def is_webhook_processed(self, provider: str, event_id: str) -> bool: ...

    @abstractmethod
    def mark_webhook_processed(self, provider: str, event_id: str, event_type: str) -> bool:
        """Record the event. Returns False if it was already recorded."""


class AuditStore(ABC):
    """Append-only audit entries."""

    @abstractmethod
    def append(self, entry: AuditEntry) -> None: ...

    @abstractmethod
    def entity_history(self, entity_type: str, entity_id: UUID) -> list[AuditEntry]:
        """Newest first."""

    @abstractmethod
    def tenant_activity(self, user_id: UUID, limit: int = 100) -> list[AuditEntry]:
        """Newest first."""
