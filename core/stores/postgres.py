"""
PostgreSQL stores.

Tenant-scoped stores run every statement inside ``tenant_context(user_id)``
so row level security sees the same tenant the caller passed in. The
billing store is given a client connected as invoicing_admin (BYPASSRLS):
reconciliation looks tenants up by processor customer id before it knows
which tenant it is acting for.
"""

import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Iterable
from uuid import UUID, uuid4

import psycopg2.errors
from psycopg2.extras import Json

from clients.postgres_client import PostgresClient
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
from utils.tenant_context import tenant_context
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_CLIENT_COLUMNS = {"name", "email", "company", "phone", "address", "notes", "is_active"}
_INVOICE_COLUMNS = {
    "status", "due_date", "notes", "terms", "paid_at", "paid_amount_cents", "payment_method",
    "external_payment_ref", "payment_intent_id", "reminder_count", "reminder_sent_at", "sent_at", "cancelled_at",
}
_TENANT_COLUMNS = {
    "name", "business_name", "address", "phone", "plan", "plan_expires_at",
    "stripe_customer_id", "stripe_subscription_id", "payment_terms_days",
}
_SUBSCRIPTION_COLUMNS = {
    "plan", "status", "current_period_start", "current_period_end", "cancel_at", "cancelled_at",
}


def _set_clause(fields: dict[str, Any], allowed: set[str]) -> tuple[str, list[Any]]:
    """SET fragment for an UPDATE, restricted to known columns."""
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Cannot update columns: {sorted(unknown)}")
    assignments = [f"{column} = %s" for column in fields] + ["updated_at = %s"]
    values = [value.value if isinstance(value, Enum) else value for value in fields.values()]
    return ", ".join(assignments), values + [now_utc()]


def _statuses(expected: Iterable[InvoiceStatus]) -> list[str]:
    return [status.value for status in expected]


def _effective_status_condition(status: InvoiceStatus, today: date) -> tuple[str, list[Any]]:
    """WHERE fragment matching the effective (overdue-on-read) status."""
    if status == InvoiceStatus.OVERDUE:
        return "(status = 'overdue' OR (status = 'pending' AND due_date < %s))", [today]
    if status == InvoiceStatus.PENDING:
        return "(status = 'pending' AND due_date >= %s)", [today]
    return "status = %s", [status.value]


def _duplicate(exc: psycopg2.errors.UniqueViolation) -> DuplicateKeyError:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or "unique constraint"
    return DuplicateKeyError(constraint)


class PostgresClientStore(ClientStore):
    """Clients table."""

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def insert_client(self, user_id: UUID, data: ClientCreate) -> Client:
        now = now_utc()
        try:
            with tenant_context(user_id):
                row = self.postgres.execute_single(
                    """
                    INSERT INTO clients (id, user_id, name, email, company, phone, address, notes,
                                         is_active, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, TRUE, %s, %s)
                    RETURNING *
                    """,
                    (uuid4(), user_id, data.name, data.email, data.company, data.phone,
                     data.address, data.notes, now, now),
                )
        except psycopg2.errors.UniqueViolation as exc:
            raise _duplicate(exc) from exc
        return Client.model_validate(row)

    def get_client(self, user_id: UUID, client_id: UUID) -> Client | None:
        with tenant_context(user_id):
            row = self.postgres.execute_single(
                "SELECT * FROM clients WHERE id = %s AND user_id = %s", (client_id, user_id)
            )
        return Client.model_validate(row) if row else None

    def find_client_by_email(self, user_id: UUID, email: str) -> Client | None:
        with tenant_context(user_id):
            row = self.postgres.execute_single(
                "SELECT * FROM clients WHERE user_id = %s AND email = %s", (user_id, email.lower())
            )
        return Client.model_validate(row) if row else None

    def list_clients(self, user_id: UUID, search: str | None = None, include_inactive: bool = False) -> list[Client]:
        conditions = ["user_id = %s"]
        params: list[Any] = [user_id]
        if not include_inactive:
            conditions.append("is_active = TRUE")
        if search:
            pattern = f"%{search}%"
            conditions.append("(name ILIKE %s OR email ILIKE %s OR company ILIKE %s)")
            params.extend([pattern, pattern, pattern])

        with tenant_context(user_id):
            rows = self.postgres.execute(
                f"SELECT * FROM clients WHERE {' AND '.join(conditions)} ORDER BY lower(name)",
                tuple(params),
            )
        return [Client.model_validate(row) for row in rows]

    def update_client(self, user_id: UUID, client_id: UUID, fields: dict[str, Any]) -> Client | None:
        assignments, values = _set_clause(fields, _CLIENT_COLUMNS)
        try:
            with tenant_context(user_id):
                row = self.postgres.execute_single(
                    f"UPDATE clients SET {assignments} WHERE id = %s AND user_id = %s RETURNING *",
                    (*values, client_id, user_id),
                )
        except psycopg2.errors.UniqueViolation as exc:
            raise _duplicate(exc) from exc
        return Client.model_validate(row) if row else None

    def delete_client(self, user_id: UUID, client_id: UUID) -> bool:
        with tenant_context(user_id):
            rows = self.postgres.execute(
                "DELETE FROM clients WHERE id = %s AND user_id = %s RETURNING id", (client_id, user_id)
            )
        return bool(rows)

    def count_active_clients(self, user_id: UUID) -> int:
        with tenant_context(user_id):
            return self.postgres.execute_scalar(
                "SELECT COUNT(*) FROM clients WHERE user_id = %s AND is_active = TRUE", (user_id,)
            ) or 0


class PostgresInvoiceStore(InvoiceStore):
    """Invoices, invoice_items, payments and invoice_counters tables."""

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def _insert_items(self, cur, user_id: UUID, invoice_id: UUID, lines: list[PricedLine]) -> list[LineItem]:
        items = []
        now = now_utc()
        for line in lines:
            cur.execute(
                """
                INSERT INTO invoice_items (id, invoice_id, user_id, description, quantity,
                                           unit_price_cents, amount_cents, position, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (uuid4(), invoice_id, user_id, line.description, line.quantity,
                 line.unit_price_cents, line.amount_cents, line.position, now),
            )
            items.append(LineItem.model_validate(cur.fetchone()))
        return items

    def create_invoice(
        self,
        user_id: UUID,
        invoice: NewInvoice,
        lines: list[PricedLine],
        format_number: Callable[[date, int], str],
    ) -> InvoiceDetail:
        totals = invoice.totals
        now = now_utc()
        try:
            with tenant_context(user_id), self.postgres.transaction() as cur:
                # Row lock on the counter serialises creations for this tenant until commit
                cur.execute(
                    """
                    INSERT INTO invoice_counters (user_id, last_ordinal) VALUES (%s, 1)
                    ON CONFLICT (user_id) DO UPDATE SET last_ordinal = invoice_counters.last_ordinal + 1
                    RETURNING last_ordinal
                    """,
                    (user_id,),
                )
                ordinal = cur.fetchone()["last_ordinal"]
                cur.execute(
                    """
                    INSERT INTO invoices (id, user_id, client_id, invoice_number, status, issue_date,
                                          due_date, subtotal_cents, tax_rate, tax_amount_cents,
                                          discount_cents, total_cents, notes, terms,
                                          created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (uuid4(), user_id, invoice.client_id, format_number(invoice.issue_date, ordinal),
                     invoice.status.value, invoice.issue_date, invoice.due_date,
                     totals.subtotal_cents, totals.tax_rate, totals.tax_amount_cents,
                     totals.discount_cents, totals.total_cents, invoice.notes, invoice.terms, now, now),
                )
                stored = Invoice.model_validate(cur.fetchone())
                items = self._insert_items(cur, user_id, stored.id, lines)
        except psycopg2.errors.UniqueViolation as exc:
            # The rolled-back transaction also undid the counter bump; burn the
            # colliding ordinal so the next attempt moves past it.
            with tenant_context(user_id):
                self.postgres.execute(
                    "UPDATE invoice_counters SET last_ordinal = last_ordinal + 1 WHERE user_id = %s",
                    (user_id,),
                )
            raise _duplicate(exc) from exc

        return InvoiceDetail(**stored.model_dump(), items=items)

    def get_invoice(self, user_id: UUID, invoice_id: UUID) -> Invoice | None:
        with tenant_context(user_id):
            row = self.postgres.execute_single(
                "SELECT * FROM invoices WHERE id = %s AND user_id = %s", (invoice_id, user_id)
            )
        return Invoice.model_validate(row) if row else None

    def get_invoice_detail(self, user_id: UUID, invoice_id: UUID) -> InvoiceDetail | None:
        invoice = self.get_invoice(user_id, invoice_id)
        if invoice is None:
            return None
        with tenant_context(user_id):
            rows = self.postgres.execute(
                "SELECT * FROM invoice_items WHERE invoice_id = %s ORDER BY position", (invoice_id,)
            )
        return InvoiceDetail(**invoice.model_dump(), items=[LineItem.model_validate(r) for r in rows])

    def list_invoices(self, user_id: UUID, query: InvoiceQuery) -> tuple[list[Invoice], int]:
        conditions = ["user_id = %s"]
        params: list[Any] = [user_id]
        if query.client_id is not None:
            conditions.append("client_id = %s")
            params.append(query.client_id)
        if query.status is not None:
            condition, values = _effective_status_condition(query.status, query.today)
            conditions.append(condition)
            params.extend(values)
        where = " AND ".join(conditions)

        with tenant_context(user_id):
            total = self.postgres.execute_scalar(f"SELECT COUNT(*) FROM invoices WHERE {where}", tuple(params))
            rows = self.postgres.execute(
                f"""
                SELECT * FROM invoices WHERE {where}
                ORDER BY created_at DESC, invoice_number DESC
                LIMIT %s OFFSET %s
                """,
                (*params, query.limit, query.offset),
            )
        return [Invoice.model_validate(row) for row in rows], total or 0

    def replace_items(
        self,
        user_id: UUID,
        invoice_id: UUID,
        lines: list[PricedLine],
        totals: InvoiceTotals,
        expected_statuses: Iterable[InvoiceStatus],
    ) -> InvoiceDetail | None:
        with tenant_context(user_id), self.postgres.transaction() as cur:
            cur.execute(
                """
                UPDATE invoices
                SET subtotal_cents = %s, tax_rate = %s, tax_amount_cents = %s,
                    discount_cents = %s, total_cents = %s, updated_at = %s
                WHERE id = %s AND user_id = %s AND status = ANY(%s)
                RETURNING *
                """,
                (totals.subtotal_cents, totals.tax_rate, totals.tax_amount_cents,
                 totals.discount_cents, totals.total_cents, now_utc(),
                 invoice_id, user_id, _statuses(expected_statuses)),
            )
            row = cur.fetchone()
            if row is None:
                return None
            cur.execute("DELETE FROM invoice_items WHERE invoice_id = %s", (invoice_id,))
            items = self._insert_items(cur, user_id, invoice_id, lines)
        return InvoiceDetail(**Invoice.model_validate(row).model_dump(), items=items)

    def update_invoice(
        self,
        user_id: UUID,
        invoice_id: UUID,
        fields: dict[str, Any],
        expected_statuses: Iterable[InvoiceStatus] | None = None,
    ) -> Invoice | None:
        assignments, values = _set_clause(fields, _INVOICE_COLUMNS)
        query = f"UPDATE invoices SET {assignments} WHERE id = %s AND user_id = %s"
        params = [*values, invoice_id, user_id]
        if expected_statuses is not None:
            query += " AND status = ANY(%s)"
            params.append(_statuses(expected_statuses))

        with tenant_context(user_id):
            row = self.postgres.execute_single(query + " RETURNING *", tuple(params))
        return Invoice.model_validate(row) if row else None

    def delete_invoice(self, user_id: UUID, invoice_id: UUID, expected_statuses: Iterable[InvoiceStatus]) -> bool:
        # invoice_items and payments cascade
        with tenant_context(user_id):
            rows = self.postgres.execute(
                "DELETE FROM invoices WHERE id = %s AND user_id = %s AND status = ANY(%s) RETURNING id",
                (invoice_id, user_id, _statuses(expected_statuses)),
            )
        return bool(rows)

    def settle_invoice(
        self,
        user_id: UUID,
        invoice_id: UUID,
        external_ref: str | None,
        decide: SettlementDecision,
    ) -> tuple[Invoice, bool] | None:
        try:
            with tenant_context(user_id), self.postgres.transaction() as cur:
                cur.execute(
                    "SELECT * FROM invoices WHERE id = %s AND user_id = %s FOR UPDATE",
                    (invoice_id, user_id),
                )
                row = cur.fetchone()
                if row is None:
                    return None
                invoice = Invoice.model_validate(row)

                already_recorded = False
                if external_ref is not None:
                    cur.execute(
                        """
                        SELECT 1 FROM payments
                        WHERE invoice_id = %s AND external_ref = %s AND status = 'completed'
                        """,
                        (invoice_id, external_ref),
                    )
                    already_recorded = cur.fetchone() is not None

                settlement = decide(invoice, already_recorded)
                if settlement is None:
                    return invoice, False

                cur.execute(
                    """
                    UPDATE invoices
                    SET status = 'paid', paid_at = %s, paid_amount_cents = %s, payment_method = %s,
                        external_payment_ref = %s, updated_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (settlement.paid_at, settlement.amount_cents, settlement.payment_method,
                     settlement.external_ref, now_utc(), invoice_id),
                )
                updated = Invoice.model_validate(cur.fetchone())
                cur.execute(
                    """
                    INSERT INTO payments (id, invoice_id, user_id, amount_cents, payment_method,
                                          external_ref, status, notes, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, 'completed', %s, %s)
                    """,
                    (uuid4(), invoice_id, user_id, settlement.amount_cents, settlement.payment_method,
                     settlement.external_ref, settlement.notes, settlement.paid_at),
                )
                return updated, True
        except psycopg2.errors.UniqueViolation as exc:
            raise _duplicate(exc) from exc

    def list_payments(self, user_id: UUID, invoice_id: UUID) -> list[Payment]:
        with tenant_context(user_id):
            rows = self.postgres.execute(
                "SELECT * FROM payments WHERE invoice_id = %s AND user_id = %s ORDER BY created_at",
                (invoice_id, user_id),
            )
        return [Payment.model_validate(row) for row in rows]

    def count_invoices_since(self, user_id: UUID, since: datetime) -> int:
        with tenant_context(user_id):
            return self.postgres.execute_scalar(
                "SELECT COUNT(*) FROM invoices WHERE user_id = %s AND created_at >= %s", (user_id, since)
            ) or 0

    def overdue_candidates(self, user_id: UUID, today: date) -> list[Invoice]:
        with tenant_context(user_id):
            rows = self.postgres.execute(
                "SELECT * FROM invoices WHERE user_id = %s AND status = 'pending' AND due_date < %s",
                (user_id, today),
            )
        return [Invoice.model_validate(row) for row in rows]

    def invoice_stats(self, user_id: UUID, today: date) -> InvoiceStats:
        with tenant_context(user_id):
            rows = self.postgres.execute(
                """
                WITH effective AS (
                    SELECT CASE WHEN status = 'pending' AND due_date < %s THEN 'overdue'
                                ELSE status END AS status,
                           total_cents, paid_amount_cents
                    FROM invoices WHERE user_id = %s
                )
                SELECT status, COUNT(*) AS count,
                       COALESCE(SUM(total_cents), 0) AS total_cents,
                       COALESCE(SUM(COALESCE(paid_amount_cents, total_cents)), 0) AS paid_cents
                FROM effective GROUP BY status
                """,
                (today, user_id),
            )

        stats = InvoiceStats()
        for row in rows:
            status = InvoiceStatus(row["status"])
            stats.total_invoices += row["count"]
            stats.by_status[status.value] = row["count"]
            if status == InvoiceStatus.PAID:
                stats.total_revenue_cents = int(row["paid_cents"])
            elif status == InvoiceStatus.PENDING:
                stats.pending_amount_cents = int(row["total_cents"])
            elif status == InvoiceStatus.OVERDUE:
                stats.overdue_amount_cents = int(row["total_cents"])
        return stats

    def client_stats(self, user_id: UUID, client_id: UUID) -> ClientStats:
        with tenant_context(user_id):
            row = self.postgres.execute_single(
                """
                SELECT COUNT(*) AS total_invoices,
                       COALESCE(SUM(total_cents), 0) AS total_billed_cents,
                       COALESCE(SUM(COALESCE(paid_amount_cents, total_cents))
                                FILTER (WHERE status = 'paid'), 0) AS total_paid_cents,
                       COALESCE(SUM(total_cents)
                                FILTER (WHERE status IN ('pending', 'overdue')), 0) AS outstanding_cents
                FROM invoices
                WHERE user_id = %s AND client_id = %s AND status <> 'cancelled'
                """,
                (user_id, client_id),
            )
        return ClientStats.model_validate(row) if row else ClientStats()

    def client_has_invoices(self, user_id: UUID, client_id: UUID) -> bool:
        with tenant_context(user_id):
            return bool(self.postgres.execute_scalar(
                "SELECT EXISTS (SELECT 1 FROM invoices WHERE user_id = %s AND client_id = %s)",
                (user_id, client_id),
            ))


class PostgresBillingStore(BillingStore):
    """users, subscriptions and processed_webhook_events tables, via the admin connection."""

    def __init__(self, admin_postgres: PostgresClient):
        self.postgres = admin_postgres

    def insert_tenant(self, email: str, name: str, business_name: str | None = None) -> Tenant:
        now = now_utc()
        try:
            row = self.postgres.execute_single(
                """
                INSERT INTO users (id, email, name, business_name, plan, created_at, updated_at)
                VALUES (%s, %s, %s, %s, 'free', %s, %s)
                RETURNING *
                """,
                (uuid4(), email.lower(), name, business_name, now, now),
            )
        except psycopg2.errors.UniqueViolation as exc:
            raise _duplicate(exc) from exc
        return Tenant.model_validate(row)

    def get_tenant(self, user_id: UUID) -> Tenant | None:
        row = self.postgres.execute_single("SELECT * FROM users WHERE id = %s", (user_id,))
        return Tenant.model_validate(row) if row else None

    def find_tenant_by_customer(self, customer_id: str) -> Tenant | None:
        row = self.postgres.execute_single(
            "SELECT * FROM users WHERE stripe_customer_id = %s", (customer_id,)
        )
        return Tenant.model_validate(row) if row else None

    def update_tenant(self, user_id: UUID, fields: dict[str, Any]) -> Tenant | None:
        assignments, values = _set_clause(fields, _TENANT_COLUMNS)
        row = self.postgres.execute_single(
            f"UPDATE users SET {assignments} WHERE id = %s RETURNING *", (*values, user_id)
        )
        return Tenant.model_validate(row) if row else None

    def upsert_subscription(self, data: SubscriptionUpsert) -> Subscription:
        now = now_utc()
        row = self.postgres.execute_single(
            """
            INSERT INTO subscriptions (id, user_id, stripe_subscription_id, stripe_customer_id, plan,
                                       status, current_period_start, current_period_end, cancel_at,
                                       created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (stripe_subscription_id) DO UPDATE SET
                stripe_customer_id = EXCLUDED.stripe_customer_id,
                plan = EXCLUDED.plan,
                status = EXCLUDED.status,
                current_period_start = EXCLUDED.current_period_start,
                current_period_end = EXCLUDED.current_period_end,
                cancel_at = EXCLUDED.cancel_at,
                updated_at = EXCLUDED.updated_at
            RETURNING *
            """,
            (uuid4(), data.user_id, data.stripe_subscription_id, data.stripe_customer_id,
             data.plan.value, data.status.value, data.current_period_start,
             data.current_period_end, data.cancel_at, now, now),
        )
        return Subscription.model_validate(row)

    def get_subscription_by_external_id(self, subscription_id: str) -> Subscription | None:
        row = self.postgres.execute_single(
            "SELECT * FROM subscriptions WHERE stripe_subscription_id = %s", (subscription_id,)
        )
        return Subscription.model_validate(row) if row else None

    def get_current_subscription(self, user_id: UUID) -> Subscription | None:
        row = self.postgres.execute_single(
            "SELECT * FROM subscriptions WHERE user_id = %s ORDER BY updated_at DESC LIMIT 1",
            (user_id,),
        )
        return Subscription.model_validate(row) if row else None

    def list_subscriptions(self, user_id: UUID) -> list[Subscription]:
        rows = self.postgres.execute(
            "SELECT * FROM subscriptions WHERE user_id = %s ORDER BY updated_at DESC", (user_id,)
        )
        return [Subscription.model_validate(row) for row in rows]

    def update_subscription(self, subscription_id: str, fields: dict[str, Any]) -> Subscription | None:
        assignments, values = _set_clause(fields, _SUBSCRIPTION_COLUMNS)
        row = self.postgres.execute_single(
            f"UPDATE subscriptions SET {assignments} WHERE stripe_subscription_id = %s RETURNING *",
            (*values, subscription_id),
        )
        return Subscription.model_validate(row) if row else None

    def is_webhook_processed(self, provider: str, event_id: str) -> bool:
        return bool(self.postgres.execute_scalar(
            "SELECT EXISTS (SELECT 1 FROM processed_webhook_events WHERE provider = %s AND event_id = %s)",
            (provider, event_id),
        ))

    def mark_webhook_processed(self, provider: str, event_id: str, event_type: str) -> bool:
        rows = self.postgres.execute(
            """
            INSERT INTO processed_webhook_events (provider, event_id, event_type, processed_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (provider, event_id) DO NOTHING
            RETURNING event_id
            """,
            (provider, event_id, event_type, now_utc()),
        )
        return bool(rows)


class PostgresAuditStore(AuditStore):
    """audit_log table. It has no RLS so entries without a tenant can be written."""

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def append(self, entry: AuditEntry) -> None:
        self.postgres.execute(
            """
            INSERT INTO audit_log (id, user_id, entity_type, entity_id, action, changes, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (entry.id, entry.user_id, entry.entity_type, entry.entity_id, entry.action,
             Json(entry.changes), entry.created_at),
        )

    def entity_history(self, entity_type: str, entity_id: UUID) -> list[AuditEntry]:
        rows = self.postgres.execute(
            """
            SELECT id, user_id, entity_type, entity_id, action, changes, created_at
            FROM audit_log
            WHERE entity_type = %s AND entity_id = %s
            ORDER BY created_at DESC
            """,
            (entity_type, entity_id),
        )
        return [AuditEntry.model_validate(row) for row in rows]

    def tenant_activity(self, user_id: UUID, limit: int = 100) -> list[AuditEntry]:
        rows = self.postgres.execute(
            """
            SELECT id, user_id, entity_type, entity_id, action, changes, created_at
            FROM audit_log
            WHERE user_id = %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (user_id, limit),
        )
        return [AuditEntry.model_validate(row) for row in rows]
