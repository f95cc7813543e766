"""
In-process store.

Implements every store interface over plain dicts. Used by the test suite and
for running the API locally without PostgreSQL. Invoice numbering is
serialised with a lock per tenant, payments with a lock per invoice, and
all dict access goes through one re-entrant lock.
"""

import threading
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Callable, Iterable
from uuid import UUID, uuid4

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
    LineItem,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionUpsert,
    Tenant,
)
from core.stores.base import (
    AuditStore,
    BillingStore,
    ClientStore,
    DuplicateKeyError,
    InvoiceQuery,
    InvoiceStore,
    NewInvoice,
    SettlementDecision,
)
from utils.timezone import now_utc


def _totals_fields(totals: InvoiceTotals) -> dict[str, Any]:
    return {
        "subtotal_cents": totals.subtotal_cents,
        "tax_rate": totals.tax_rate,
        "tax_amount_cents": totals.tax_amount_cents,
        "discount_cents": totals.discount_cents,
        "total_cents": totals.total_cents,
    }


def _received(invoice: Invoice) -> int:
    """Amount collected on a paid invoice; the total when none was recorded."""
    return invoice.total_cents if invoice.paid_amount_cents is None else invoice.paid_amount_cents

class InMemoryStore(ClientStore, InvoiceStore, BillingStore, AuditStore):
    """All stores in one object, sharing state the way tables share a database."""

    def __init__(self):
        self._lock = threading.RLock()
        self._tenant_locks: dict[UUID, threading.Lock] = defaultdict(threading.Lock)
        self._invoice_locks: dict[UUID, threading.Lock] = defaultdict(threading.Lock)

        self.tenants: dict[UUID, Tenant] = {}
        self.clients: dict[UUID, Client] = {}
        self.invoices: dict[UUID, Invoice] = {}
        self.line_items: dict[UUID, list[LineItem]] = {}
        self.payments: list[Payment] = []
        self.subscriptions: dict[UUID, Subscription] = {}
        self.processed_events: dict[tuple[str, str], str] = {}
        self.audit_entries: list[AuditEntry] = []
        self.counters: dict[UUID, int] = defaultdict(int)

    def _tenant_lock(self, user_id: UUID) -> threading.Lock:
        with self._lock:
            return self._tenant_locks[user_id]

    def _invoice_lock(self, invoice_id: UUID) -> threading.Lock:
        with self._lock:
            return self._invoice_locks[invoice_id]

    # =========================================================================
    # CLIENTS
    # =========================================================================

    def _email_taken(self, user_id: UUID, email: str, exclude: UUID | None = None) -> bool:
        return any(
            c.user_id == user_id and c.email == email and c.id != exclude
            for c in self.clients.values()
        )

    def insert_client(self, user_id: UUID, data: ClientCreate) -> Client:
        with self._lock:
            if self._email_taken(user_id, data.email):
                raise DuplicateKeyError("clients_user_id_email_key")
            now = now_utc()
            client = Client(
                id=uuid4(), user_id=user_id, created_at=now, updated_at=now,
                is_active=True, **data.model_dump(),
            )
            self.clients[client.id] = client
            return client

    def get_client(self, user_id: UUID, client_id: UUID) -> Client | None:
        client = self.clients.get(client_id)
        return client if client is not None and client.user_id == user_id else None

    def find_client_by_email(self, user_id: UUID, email: str) -> Client | None:
        email = email.lower()
        return next(
            (c for c in self.clients.values() if c.user_id == user_id and c.email == email),
            None,
        )

    def list_clients(self, user_id: UUID, search: str | None = None, include_inactive: bool = False) -> list[Client]:
        needle = search.lower() if search else None
        with self._lock:
            clients = [
                c for c in self.clients.values()
                if c.user_id == user_id and (include_inactive or c.is_active)
            ]
        if needle:
            clients = [
                c for c in clients
                if needle in c.name.lower() or needle in c.email or needle in (c.company or "").lower()
            ]
        return sorted(clients, key=lambda c: c.name.lower())

    def update_client(self, user_id: UUID, client_id: UUID, fields: dict[str, Any]) -> Client | None:
        with self._lock:
            client = self.get_client(user_id, client_id)
            if client is None:
                return None
            if "email" in fields and self._email_taken(user_id, fields["email"], exclude=client_id):
                raise DuplicateKeyError("clients_user_id_email_key")
            updated = client.model_copy(update={**fields, "updated_at": now_utc()})
            self.clients[client_id] = updated
            return updated

    def delete_client(self, user_id: UUID, client_id: UUID) -> bool:
        with self._lock:
            if self.get_client(user_id, client_id) is None:
                return False
            del self.clients[client_id]
            return True

    def count_active_clients(self, user_id: UUID) -> int:
        with self._lock:
            return sum(1 for c in self.clients.values() if c.user_id == user_id and c.is_active)

    # =========================================================================
    # INVOICES
    # =========================================================================

    def _build_items(self, invoice_id: UUID, lines: list[PricedLine]) -> list[LineItem]:
        now = now_utc()
        return [
            LineItem(
                id=uuid4(),
                invoice_id=invoice_id,
                description=line.description,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                amount_cents=line.amount_cents,
                position=line.position,
                created_at=now,
            )
            for line in lines
        ]

    def _detail(self, invoice: Invoice) -> InvoiceDetail:
        return InvoiceDetail(**invoice.model_dump(), items=list(self.line_items.get(invoice.id, [])))

    def create_invoice(
        self,
        user_id: UUID,
        invoice: NewInvoice,
        lines: list[PricedLine],
        format_number: Callable[[date, int], str],
    ) -> InvoiceDetail:
        with self._tenant_lock(user_id):
            with self._lock:
                self.counters[user_id] += 1
                number = format_number(invoice.issue_date, self.counters[user_id])
                if any(i.user_id == user_id and i.invoice_number == number for i in self.invoices.values()):
                    raise DuplicateKeyError("invoices_user_id_invoice_number_key")

                now = now_utc()
                stored = Invoice(
                    id=uuid4(),
                    user_id=user_id,
                    client_id=invoice.client_id,
                    invoice_number=number,
                    status=invoice.status,
                    issue_date=invoice.issue_date,
                    due_date=invoice.due_date,
                    notes=invoice.notes,
                    terms=invoice.terms,
                    created_at=now,
                    updated_at=now,
                    **_totals_fields(invoice.totals),
                )
                self.invoices[stored.id] = stored
                self.line_items[stored.id] = self._build_items(stored.id, lines)
                return self._detail(stored)

    def get_invoice(self, user_id: UUID, invoice_id: UUID) -> Invoice | None:
        invoice = self.invoices.get(invoice_id)
        return invoice if invoice is not None and invoice.user_id == user_id else None

    def get_invoice_detail(self, user_id: UUID, invoice_id: UUID) -> InvoiceDetail | None:
        with self._lock:
            invoice = self.get_invoice(user_id, invoice_id)
            return self._detail(invoice) if invoice is not None else None

    def list_invoices(self, user_id: UUID, query: InvoiceQuery) -> tuple[list[Invoice], int]:
        with self._lock:
            matches = [
                i for i in self.invoices.values()
                if i.user_id == user_id
                and (query.client_id is None or i.client_id == query.client_id)
                and (query.status is None or i.effective_status(query.today) == query.status)
            ]
        matches.sort(key=lambda i: (i.created_at, i.invoice_number), reverse=True)
        return matches[query.offset:query.offset + query.limit], len(matches)

    def _write_if(self, user_id: UUID, invoice_id: UUID, expected: Iterable[InvoiceStatus] | None) -> Invoice | None:
        invoice = self.get_invoice(user_id, invoice_id)
        if invoice is None:
            return None
        if expected is not None and invoice.status not in set(expected):
            return None
        return invoice

    def replace_items(
        self,
        user_id: UUID,
        invoice_id: UUID,
        lines: list[PricedLine],
        totals: InvoiceTotals,
        expected_statuses: Iterable[InvoiceStatus],
    ) -> InvoiceDetail | None:
        with self._lock:
            invoice = self._write_if(user_id, invoice_id, expected_statuses)
            if invoice is None:
                return None
            updated = invoice.model_copy(update={**_totals_fields(totals), "updated_at": now_utc()})
            self.invoices[invoice_id] = updated
            self.line_items[invoice_id] = self._build_items(invoice_id, lines)
            return self._detail(updated)

    def update_invoice(
        self,
        user_id: UUID,
        invoice_id: UUID,
        fields: dict[str, Any],
        expected_statuses: Iterable[InvoiceStatus] | None = None,
    ) -> Invoice | None:
        with self._lock:
            invoice = self._write_if(user_id, invoice_id, expected_statuses)
            if invoice is None:
                return None
            updated = invoice.model_copy(update={**fields, "updated_at": now_utc()})
            self.invoices[invoice_id] = updated
            return updated

    def delete_invoice(self, user_id: UUID, invoice_id: UUID, expected_statuses: Iterable[InvoiceStatus]) -> bool:
        with self._lock:
            if self._write_if(user_id, invoice_id, expected_statuses) is None:
                return False
            del self.invoices[invoice_id]
            self._invoice_locks.pop(invoice_id, None)
            self.line_items.pop(invoice_id, None)
            self.payments = [p for p in self.payments if p.invoice_id != invoice_id]
            return True

    def settle_invoice(
        self,
        user_id: UUID,
        invoice_id: UUID,
        external_ref: str | None,
        decide: SettlementDecision,
    ) -> tuple[Invoice, bool] | None:
        with self._invoice_lock(invoice_id), self._lock:
            invoice = self.get_invoice(user_id, invoice_id)
            if invoice is None:
                return None
            already_recorded = external_ref is not None and any(
                p.invoice_id == invoice_id
                and p.external_ref == external_ref
                and p.status == PaymentStatus.COMPLETED
                for p in self.payments
            )

            settlement = decide(invoice, already_recorded)
            if settlement is None:
                return invoice, False

            if settlement.external_ref is not None and any(
                p.invoice_id == invoice_id and p.external_ref == settlement.external_ref
                for p in self.payments
            ):
                raise DuplicateKeyError("payments_invoice_id_external_ref_key")

            updated = invoice.model_copy(update={
                "status": InvoiceStatus.PAID,
                "paid_at": settlement.paid_at,
                "paid_amount_cents": settlement.amount_cents,
                "payment_method": settlement.payment_method,
                "external_payment_ref": settlement.external_ref,
                "updated_at": now_utc(),
            })
            self.invoices[invoice_id] = updated
            self.payments.append(Payment(
                id=uuid4(),
                invoice_id=invoice_id,
                user_id=user_id,
                amount_cents=settlement.amount_cents,
                payment_method=settlement.payment_method,
                external_ref=settlement.external_ref,
                status=PaymentStatus.COMPLETED,
                notes=settlement.notes,
                created_at=settlement.paid_at,
            ))
            return updated, True

    def list_payments(self, user_id: UUID, invoice_id: UUID) -> list[Payment]:
        with self._lock:
            return [p for p in self.payments if p.user_id == user_id and p.invoice_id == invoice_id]

    def count_invoices_since(self, user_id: UUID, since: datetime) -> int:
        with self._lock:
            return sum(1 for i in self.invoices.values() if i.user_id == user_id and i.created_at >= since)

    def overdue_candidates(self, user_id: UUID, today: date) -> list[Invoice]:
        with self._lock:
            return [i for i in self.invoices.values() if i.user_id == user_id and i.is_overdue(today)]

    def invoice_stats(self, user_id: UUID, today: date) -> InvoiceStats:
        stats = InvoiceStats()
        with self._lock:
            invoices = [i for i in self.invoices.values() if i.user_id == user_id]
        for invoice in invoices:
            status = invoice.effective_status(today)
            stats.total_invoices += 1
            stats.by_status[status.value] += 1
            if status == InvoiceStatus.PAID:
                stats.total_revenue_cents += _received(invoice)
            elif status == InvoiceStatus.PENDING:
                stats.pending_amount_cents += invoice.total_cents
            elif status == InvoiceStatus.OVERDUE:
                stats.overdue_amount_cents += invoice.total_cents
        return stats

    def client_stats(self, user_id: UUID, client_id: UUID) -> ClientStats:
        stats = ClientStats()
        with self._lock:
            invoices = [
                i for i in self.invoices.values()
                if i.user_id == user_id and i.client_id == client_id and i.status != InvoiceStatus.CANCELLED
            ]
        for invoice in invoices:
            stats.total_invoices += 1
            stats.total_billed_cents += invoice.total_cents
            if invoice.status == InvoiceStatus.PAID:
                stats.total_paid_cents += _received(invoice)
            elif invoice.status in (InvoiceStatus.PENDING, InvoiceStatus.OVERDUE):
                stats.outstanding_cents += invoice.total_cents
        return stats

    def client_has_invoices(self, user_id: UUID, client_id: UUID) -> bool:
        with self._lock:
            return any(i.user_id == user_id and i.client_id == client_id for i in self.invoices.values())

    # =========================================================================
    # BILLING
    # =========================================================================

    def insert_tenant(self, email: str, name: str, business_name: str | None = None) -> Tenant:
        now = now_utc()
        tenant = Tenant(
            id=uuid4(), email=email.lower(), name=name, business_name=business_name,
            created_at=now, updated_at=now,
        )
        with self._lock:
            self.tenants[tenant.id] = tenant
        return tenant

    def get_tenant(self, user_id: UUID) -> Tenant | None:
        return self.tenants.get(user_id)

    def find_tenant_by_customer(self, customer_id: str) -> Tenant | None:
        with self._lock:
            return next((t for t in self.tenants.values() if t.stripe_customer_id == customer_id), None)

    def update_tenant(self, user_id: UUID, fields: dict[str, Any]) -> Tenant | None:
        with self._lock:
            tenant = self.tenants.get(user_id)
            if tenant is None:
                return None
            updated = tenant.model_copy(update={**fields, "updated_at": now_utc()})
            self.tenants[user_id] = updated
            return updated

    def upsert_subscription(self, data: SubscriptionUpsert) -> Subscription:
        with self._lock:
            existing = self.get_subscription_by_external_id(data.stripe_subscription_id)
            now = now_utc()
            if existing is not None:
                subscription = existing.model_copy(update={**data.model_dump(), "updated_at": now})
            else:
                subscription = Subscription(id=uuid4(), created_at=now, updated_at=now, **data.model_dump())
            self.subscriptions[subscription.id] = subscription
            return subscription

    def get_subscription_by_external_id(self, subscription_id: str) -> Subscription | None:
        with self._lock:
            return next(
                (s for s in self.subscriptions.values() if s.stripe_subscription_id == subscription_id),
                None,
            )

    def get_current_subscription(self, user_id: UUID) -> Subscription | None:
        with self._lock:
            owned = [s for s in self.subscriptions.values() if s.user_id == user_id]
        return max(owned, key=lambda s: s.updated_at, default=None)

    def list_subscriptions(self, user_id: UUID) -> list[Subscription]:
        with self._lock:
            owned = [s for s in self.subscriptions.values() if s.user_id == user_id]
        return sorted(owned, key=lambda s: s.updated_at, reverse=True)

    def update_subscription(self, subscription_id: str, fields: dict[str, Any]) -> Subscription | None:
        with self._lock:
            subscription = self.get_subscription_by_external_id(subscription_id)
            if subscription is None:
                return None
            updated = subscription.model_copy(update={**fields, "updated_at": now_utc()})
            self.subscriptions[updated.id] = updated
            return updated

    def is_webhook_processed(self, provider: str, event_id: str) -> bool:
        return (provider, event_id) in self.processed_events

    def mark_webhook_processed(self, provider: str, event_id: str, event_type: str) -> bool:
        with self._lock:
            if (provider, event_id) in self.processed_events:
                return False
            self.processed_events[(provider, event_id)] = event_type
            return True

    # =========================================================================
    # AUDIT
    # =========================================================================

    def append(self, entry: AuditEntry) -> None:
        with self._lock:
            self.audit_entries.append(entry)

    def entity_history(self, entity_type: str, entity_id: UUID) -> list[AuditEntry]:
        with self._lock:
            entries = [
                e for e in self.audit_entries
                if e.entity_type == entity_type and e.entity_id == entity_id
            ]
        return list(reversed(entries))

    def tenant_activity(self, user_id: UUID, limit: int = 100) -> list[AuditEntry]:
        with self._lock:
            entries = [e for e in self.audit_entries if e.user_id == user_id]
        return list(reversed(entries))[:limit]
