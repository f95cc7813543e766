"""
Invoice service for the invoice lifecycle.

Creates invoices with numbered, priced line items and moves them through
draft -> pending -> paid, with overdue and cancelled on the side. All
decisions about what is allowed live in core.lifecycle; this service loads
state, asks, persists, audits and publishes.

Writes that depend on the current status are conditional on that status
still being current, so a payment landing concurrently is never
overwritten.
"""

import logging
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from clients.email_client import EmailGatewayClient, EmailGatewayError
from core import lifecycle, money
from core.audit import AuditAction, AuditLogger, compute_changes
from core.config import BillingConfig
from core.documents import DocumentRenderError, InvoiceDocumentRenderer
from core.entitlements import Action, UsageCounts
from core.event_bus import EventBus
from core.events import InvoiceCancelled, InvoiceCreated, InvoicePaid, InvoiceSent
from core.exceptions import (
    AlreadyPaidError,
    ConflictError,
    InvalidStateTransitionError,
    InvoiceImmutableError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationFailureError,
)
from core.models import (
    Client,
    Invoice,
    InvoiceCreate,
    InvoiceDetail,
    InvoiceItemsReplace,
    InvoiceStats,
    InvoiceStatus,
    InvoiceUpdate,
    Payment,
)
from core.numbering import MAX_ALLOCATION_ATTEMPTS, format_invoice_number
from core.services.plan_guard import PlanGuard
from core.stores.base import (
    ClientStore,
    DuplicateKeyError,
    InvoiceQuery,
    InvoiceStore,
    NewInvoice,
    Settlement,
)
from utils.tenant_context import get_current_tenant_id
from utils.timezone import now_utc, start_of_month, today_utc

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (InvoiceStatus.DRAFT, InvoiceStatus.PENDING, InvoiceStatus.OVERDUE)
_MAX_PAYMENT_METHOD_LENGTH = 50


def _totals_snapshot(invoice: Invoice) -> dict:
    return {
        "subtotal_cents": invoice.subtotal_cents,
        "tax_rate": str(invoice.tax_rate),
        "tax_amount_cents": invoice.tax_amount_cents,
        "discount_cents": invoice.discount_cents,
        "total_cents": invoice.total_cents,
    }


class InvoiceService:
    """Service for invoice operations."""

    def __init__(
        self,
        invoices: InvoiceStore,
        clients: ClientStore,
        plans: PlanGuard,
        audit: AuditLogger,
        event_bus: EventBus,
        renderer: InvoiceDocumentRenderer,
        email: EmailGatewayClient | None = None,
        config: BillingConfig | None = None,
    ):
        self.invoices = invoices
        self.clients = clients
        self.plans = plans
        self.audit = audit
        self.event_bus = event_bus
        self.renderer = renderer
        self.email = email
        self.config = config or BillingConfig()

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def _load(self, invoice_id: UUID) -> Invoice:
        invoice = self.invoices.get_invoice(get_current_tenant_id(), invoice_id)
        if invoice is None:
            raise NotFoundError("invoice", invoice_id)
        return invoice

    def _load_detail(self, invoice_id: UUID) -> InvoiceDetail:
        detail = self.invoices.get_invoice_detail(get_current_tenant_id(), invoice_id)
        if detail is None:
            raise NotFoundError("invoice", invoice_id)
        return detail

    def _client(self, user_id: UUID, client_id: UUID) -> Client:
        client = self.clients.get_client(user_id, client_id)
        if client is None:
            raise NotFoundError("client", client_id)
        return client

    def _lost_race(self, invoice_id: UUID, requested: InvoiceStatus) -> Exception:
        """Error for a conditional write that found the status had moved on."""
        latest = self.invoices.get_invoice(get_current_tenant_id(), invoice_id)
        if latest is None:
            return NotFoundError("invoice", invoice_id)
        if latest.status == InvoiceStatus.PAID:
            return AlreadyPaidError(invoice_id, requested.value)
        return InvalidStateTransitionError(invoice_id, latest.status.value, requested.value)

    def get(self, invoice_id: UUID, today: date | None = None) -> InvoiceDetail:
        """Invoice with items. ``status`` is the effective status (overdue computed on read)."""
        return self._load_detail(invoice_id).as_of(today or today_utc())

    def list_all(
        self,
        status: InvoiceStatus | None = None,
        client_id: UUID | None = None,
        limit: int | None = None,
        offset: int = 0,
        today: date | None = None,
    ) -> tuple[list[Invoice], int]:
        """
        Page of invoices, newest first.

        Args:
            status: Effective status filter; OVERDUE includes pending invoices past due
            client_id: Only invoices for this client
            limit: Page size (clamped to the configured maximum)
            offset: Rows to skip

        Returns:
            (invoices on this page, total matching count)
        """
        today = today or today_utc()
        limit = min(max(limit or self.config.default_page_size, 1), self.config.max_page_size)
        query = InvoiceQuery(
            today=today, status=status, client_id=client_id, limit=limit, offset=max(offset, 0)
        )
        page, total = self.invoices.list_invoices(get_current_tenant_id(), query)
        return [invoice.as_of(today) for invoice in page], total

    def stats(self, today: date | None = None) -> InvoiceStats:
        """Counts and amounts per effective status."""
        return self.invoices.invoice_stats(get_current_tenant_id(), today or today_utc())

    def payments(self, invoice_id: UUID) -> list[Payment]:
        """Payment records for an invoice, oldest first."""
        invoice = self._load(invoice_id)
        return self.invoices.list_payments(invoice.user_id, invoice.id)

    # =========================================================================
    # CREATE / EDIT
    # =========================================================================

    def create(self, data: InvoiceCreate) -> InvoiceDetail:
        """
        Create an invoice with its line items and a freshly allocated number.

        Raises:
            EntitlementExceededError: free plan monthly quota reached
            NotFoundError: client does not exist for this tenant
            InvalidStateTransitionError: initial status is not draft or pending
            ValidationFailureError: bad amounts, or pending without items
            ConflictError: number allocation kept colliding
        """
        user_id = get_current_tenant_id()
        tenant = self.plans.require(
            user_id,
            Action.CREATE_INVOICE,
            UsageCounts(invoices_this_month=self.invoices.count_invoices_since(user_id, start_of_month())),
        )
        self._client(user_id, data.client_id)

        lifecycle.ensure_initial_status(data.status, len(data.items))
        lines = lifecycle.price_lines(data.items)
        totals = lifecycle.compute_totals(lines, data.tax_rate, data.discount_amount)

        issue_date = data.issue_date or today_utc()
        due_date = data.due_date or issue_date + timedelta(days=tenant.payment_terms_days)
        if due_date < issue_date:
            raise ValidationFailureError("due_date cannot be before issue_date", field="due_date")

        new_invoice = NewInvoice(
            client_id=data.client_id,
            status=data.status,
            issue_date=issue_date,
            due_date=due_date,
            totals=totals,
            notes=data.notes,
            terms=data.terms,
        )

        for attempt in range(1, MAX_ALLOCATION_ATTEMPTS + 1):
            try:
                detail = self.invoices.create_invoice(user_id, new_invoice, lines, format_invoice_number)
                break
            except DuplicateKeyError as e:
                logger.warning(f"Invoice number collision for {user_id} (attempt {attempt}): {e.constraint}")
        else:
            raise ConflictError(
                f"Could not allocate an invoice number after {MAX_ALLOCATION_ATTEMPTS} attempts",
                user_id=user_id,
            )

        self.audit.log_change(
            entity_type="invoice",
            entity_id=detail.id,
            action=AuditAction.CREATE,
            changes={"created": {
                "invoice_number": detail.invoice_number,
                "client_id": str(detail.client_id),
                "status": detail.status.value,
                "items": len(detail.items),
                **_totals_snapshot(detail),
            }},
        )
        self.event_bus.publish(InvoiceCreated.create(invoice=detail))
        logger.info(f"Invoice {detail.invoice_number} created for {user_id}")
        return detail

    def replace_items(self, invoice_id: UUID, data: InvoiceItemsReplace) -> InvoiceDetail:
        """
        Replace all line items and recompute totals.

        Tax rate and discount keep their current values unless provided.

        Raises:
            InvoiceImmutableError: invoice is paid
            InvalidStateTransitionError: invoice is cancelled
            ValidationFailureError: bad amounts, or no items on a non-draft invoice
        """
        current = self._load(invoice_id)
        lifecycle.ensure_mutable(current)

        if not data.items and current.status != InvoiceStatus.DRAFT:
            raise ValidationFailureError(
                f"A {current.status.value} invoice needs at least one line item", field="items"
            )

        lines = lifecycle.price_lines(data.items)
        totals = lifecycle.compute_totals(
            lines,
            data.tax_rate if data.tax_rate is not None else current.tax_rate,
            data.discount_amount if data.discount_amount is not None
            else money.cents_to_decimal(current.discount_cents),
        )

        updated = self.invoices.replace_items(
            current.user_id, invoice_id, lines, totals, expected_statuses=(current.status,)
        )
        if updated is None:
            latest = self.invoices.get_invoice(current.user_id, invoice_id)
            if latest is not None and latest.status == InvoiceStatus.PAID:
                raise InvoiceImmutableError(invoice_id)
            raise self._lost_race(invoice_id, current.status)

        changes = compute_changes(_totals_snapshot(current), _totals_snapshot(updated))
        changes["items"] = {"new": len(updated.items)}
        self.audit.log_change(
            entity_type="invoice",
            entity_id=invoice_id,
            action=AuditAction.UPDATE,
            changes=changes,
        )
        return updated

    def update(self, invoice_id: UUID, data: InvoiceUpdate) -> Invoice:
        """
        Update due date, notes or terms on an open invoice.

        Raises:
            InvoiceImmutableError: invoice is paid
            InvalidStateTransitionError: invoice is cancelled
        """
        current = self._load(invoice_id)
        lifecycle.ensure_mutable(current)

        fields = data.model_dump(exclude_unset=True)
        if not fields:
            return current
        if fields.get("due_date") is not None and fields["due_date"] < current.issue_date:
            raise ValidationFailureError("due_date cannot be before issue_date", field="due_date")
        if "due_date" in fields and fields["due_date"] is None:
            del fields["due_date"]

        updated = self.invoices.update_invoice(
            current.user_id, invoice_id, fields, expected_statuses=(current.status,)
        )
        if updated is None:
            raise self._lost_race(invoice_id, current.status)

        changes = compute_changes(current.model_dump(mode="json"), updated.model_dump(mode="json"))
        if changes:
            self.audit.log_change(
                entity_type="invoice",
                entity_id=invoice_id,
                action=AuditAction.UPDATE,
                changes=changes,
            )
        return updated

    # =========================================================================
    # DELIVERY
    # =========================================================================

    def _require_email(self) -> EmailGatewayClient:
        if self.email is None:
            raise UpstreamUnavailableError("email_gateway", "email delivery is not configured")
        return self.email

    def render_pdf(self, invoice_id: UUID) -> tuple[str, bytes]:
        """
        Render the invoice to PDF.

        Returns:
            (filename, pdf bytes)

        Raises:
            UpstreamUnavailableError: rendering failed
        """
        detail = self.get(invoice_id)
        tenant = self.plans.tenant(detail.user_id)
        client = self._client(detail.user_id, detail.client_id)
        try:
            pdf = self.renderer.render(detail, tenant, client)
        except DocumentRenderError as e:
            raise UpstreamUnavailableError("pdf_renderer", str(e))
        return f"{detail.invoice_number}.pdf", pdf

    def send(self, invoice_id: UUID) -> Invoice:
        """
        Email the invoice PDF to the client. Drafts become pending.

        State changes only after the email was accepted by the gateway.

        Raises:
            EntitlementExceededError: plan does not include sending
            InvalidStateTransitionError: invoice is paid or cancelled
            ValidationFailureError: draft has no items
            UpstreamUnavailableError: PDF or email delivery failed
        """
        user_id = get_current_tenant_id()
        tenant = self.plans.require(user_id, Action.SEND_INVOICE)
        detail = self._load_detail(invoice_id)
        today = today_utc()
        new_status = lifecycle.ensure_sendable(detail, len(detail.items), today)

        email = self._require_email()
        client = self._client(user_id, detail.client_id)
        try:
            pdf = self.renderer.render(detail.as_of(today), tenant, client)
        except DocumentRenderError as e:
            raise UpstreamUnavailableError("pdf_renderer", str(e))

        try:
            email.send_invoice_email(
                to=client.email,
                client_name=client.name,
                issuer_name=tenant.display_name,
                invoice_number=detail.invoice_number,
                amount_due=money.format_cents(detail.balance_due_cents, self.config.currency_symbol),
                due_date=detail.due_date,
                pdf=pdf,
                reply_to=tenant.email,
            )
        except EmailGatewayError as e:
            raise UpstreamUnavailableError("email_gateway", str(e))

        now = now_utc()
        updated = self.invoices.update_invoice(
            user_id, invoice_id, {"status": new_status, "sent_at": now},
            expected_statuses=(detail.status,),
        )
        if updated is None:
            raise self._lost_race(invoice_id, new_status)

        self.audit.log_change(
            entity_type="invoice",
            entity_id=invoice_id,
            action=AuditAction.UPDATE,
            changes={
                "status": {"old": detail.status.value, "new": new_status.value},
                "sent_at": {"old": detail.sent_at.isoformat() if detail.sent_at else None,
                            "new": now.isoformat()},
            },
        )
        self.event_bus.publish(InvoiceSent.create(invoice=updated))
        return updated.as_of(today)

    def remind(self, invoice_id: UUID) -> Invoice:
        """
        Email a payment reminder for a pending or overdue invoice.

        Raises:
            EntitlementExceededError: plan does not include reminders
            AlreadyPaidError: invoice is paid
            InvalidStateTransitionError: invoice is draft or cancelled
            UpstreamUnavailableError: email delivery failed
        """
        user_id = get_current_tenant_id()
        tenant = self.plans.require(user_id, Action.REMIND_INVOICE)
        invoice = self._load(invoice_id)
        today = today_utc()
        lifecycle.ensure_remindable(invoice, today)

        email = self._require_email()
        client = self._client(user_id, invoice.client_id)
        try:
            email.send_reminder_email(
                to=client.email,
                client_name=client.name,
                issuer_name=tenant.display_name,
                invoice_number=invoice.invoice_number,
                amount_due=money.format_cents(invoice.balance_due_cents, self.config.currency_symbol),
                due_date=invoice.due_date,
                overdue=invoice.effective_status(today) == InvoiceStatus.OVERDUE,
                reply_to=tenant.email,
            )
        except EmailGatewayError as e:
            raise UpstreamUnavailableError("email_gateway", str(e))

        now = now_utc()
        updated = self.invoices.update_invoice(
            user_id, invoice_id,
            {"reminder_count": invoice.reminder_count + 1, "reminder_sent_at": now},
            expected_statuses=(invoice.status,),
        )
        if updated is None:
            raise self._lost_race(invoice_id, invoice.status)

        self.audit.log_change(
            entity_type="invoice",
            entity_id=invoice_id,
            action=AuditAction.UPDATE,
            changes={"reminder_count": {"old": invoice.reminder_count, "new": updated.reminder_count}},
        )
        return updated.as_of(today)

    # =========================================================================
    # PAYMENT / CLOSE
    # =========================================================================

    def mark_paid(
        self,
        invoice_id: UUID,
        amount: Decimal | int | float | str | None = None,
        payment_method: str = "manual",
        external_ref: str | None = None,
        notes: str | None = None,
        amount_cents: int | None = None,
    ) -> Invoice:
        """
        Mark an invoice paid and append a completed payment record.

        Idempotent per external reference: if a completed payment with
        ``external_ref`` already exists for this invoice, nothing changes and
        the current invoice is returned.

        Args:
            invoice_id: Invoice to settle
            amount: Amount received in major units; defaults to the invoice total
            payment_method: Free-form tag ("manual", "bank_transfer", "stripe")
            external_ref: Processor or bank reference for the payment
            notes: Stored on the payment record
            amount_cents: Amount already in cents (processor events); wins over ``amount``

        Raises:
            NotFoundError: invoice not found
            AlreadyPaidError: invoice is already paid by another payment
            InvalidStateTransitionError: invoice is draft or cancelled
            ValidationFailureError: bad amount or method
        """
        user_id = get_current_tenant_id()
        if amount_cents is None and amount is not None:
            amount_cents = money.parse_amount(amount, field="amount")
        if amount_cents is not None and amount_cents < 0:
            raise ValidationFailureError("amount cannot be negative", field="amount")

        payment_method = (payment_method or "").strip()
        if not payment_method or len(payment_method) > _MAX_PAYMENT_METHOD_LENGTH:
            raise ValidationFailureError(
                f"payment_method must be 1-{_MAX_PAYMENT_METHOD_LENGTH} characters", field="payment_method"
            )

        today = today_utc()
        paid_at = now_utc()
        previous: list[InvoiceStatus] = []

        def decide(invoice: Invoice, already_recorded: bool) -> Settlement | None:
            if already_recorded:
                return None
            if invoice.status == InvoiceStatus.PAID:
                raise AlreadyPaidError(invoice.id, "mark_paid")
            previous.append(lifecycle.ensure_transition(invoice, InvoiceStatus.PAID, today))
            return Settlement(
                amount_cents=amount_cents if amount_cents is not None else invoice.total_cents,
                payment_method=payment_method,
                paid_at=paid_at,
                external_ref=external_ref,
                notes=notes,
            )

        try:
            result = self.invoices.settle_invoice(user_id, invoice_id, external_ref, decide)
        except DuplicateKeyError:
            raise ConflictError(
                f"Payment {external_ref} is already recorded for invoice {invoice_id}",
                invoice_id=invoice_id, external_ref=external_ref,
            )
        if result is None:
            raise NotFoundError("invoice", invoice_id)

        invoice, applied = result
        if not applied:
            logger.info(f"Payment {external_ref} already recorded for invoice {invoice_id}; no change")
            return invoice

        self.audit.log_change(
            entity_type="invoice",
            entity_id=invoice_id,
            action=AuditAction.UPDATE,
            changes={
                "status": {"old": previous[0].value, "new": InvoiceStatus.PAID.value},
                "paid_amount_cents": {"old": None, "new": invoice.paid_amount_cents},
                "payment_method": {"old": None, "new": invoice.payment_method},
                "external_payment_ref": {"old": None, "new": external_ref},
            },
        )
        self.event_bus.publish(InvoicePaid.create(invoice=invoice, external_ref=external_ref))
        logger.info(f"Invoice {invoice.invoice_number} paid ({invoice.payment_method})")
        return invoice

    def cancel(self, invoice_id: UUID) -> Invoice:
        """
        Cancel an unpaid invoice.

        Raises:
            InvalidStateTransitionError: invoice is paid or already cancelled
        """
        current = self._load(invoice_id)
        lifecycle.ensure_transition(current, InvoiceStatus.CANCELLED, today_utc())

        now = now_utc()
        updated = self.invoices.update_invoice(
            current.user_id, invoice_id,
            {"status": InvoiceStatus.CANCELLED, "cancelled_at": now},
            expected_statuses=(current.status,),
        )
        if updated is None:
            raise self._lost_race(invoice_id, InvoiceStatus.CANCELLED)

        self.audit.log_change(
            entity_type="invoice",
            entity_id=invoice_id,
            action=AuditAction.UPDATE,
            changes={"status": {"old": current.status.value, "new": InvoiceStatus.CANCELLED.value}},
        )
        self.event_bus.publish(InvoiceCancelled.create(invoice=updated))
        return updated

    def delete(self, invoice_id: UUID) -> bool:
        """
        Delete an invoice with its items and payment records.

        Raises:
            InvoiceImmutableError: invoice is paid
        """
        current = self._load(invoice_id)
        lifecycle.ensure_deletable(current)

        deleted = self.invoices.delete_invoice(current.user_id, invoice_id, expected_statuses=_OPEN_STATUSES + (InvoiceStatus.CANCELLED,))
        if not deleted:
            latest = self.invoices.get_invoice(current.user_id, invoice_id)
            if latest is None:
                raise NotFoundError("invoice", invoice_id)
            lifecycle.ensure_deletable(latest)
            raise self._lost_race(invoice_id, latest.status)

        self.audit.log_change(
            entity_type="invoice",
            entity_id=invoice_id,
            action=AuditAction.DELETE,
            changes={"deleted": {
                "invoice_number": current.invoice_number,
                "status": current.status.value,
                "total_cents": current.total_cents,
            }},
        )
        return True

    def mark_overdue(self, today: date | None = None) -> list[Invoice]:
        """
        Persist the overdue status for pending invoices past their due date.

        Reads already report these invoices as overdue; this makes the stored
        status agree. Safe to run repeatedly.
        """
        user_id = get_current_tenant_id()
        today = today or today_utc()
        marked = []
        candidates = self.invoices.overdue_candidates(user_id, today)
        for invoice_id in lifecycle.find_overdue(candidates, today):
            updated = self.invoices.update_invoice(
                user_id, invoice_id, {"status": InvoiceStatus.OVERDUE},
                expected_statuses=(InvoiceStatus.PENDING,),
            )
            if updated is None:
                continue
            self.audit.log_change(
                entity_type="invoice",
                entity_id=invoice_id,
                action=AuditAction.UPDATE,
                changes={"status": {"old": InvoiceStatus.PENDING.value, "new": InvoiceStatus.OVERDUE.value}},
            )
            marked.append(updated)

        if marked:
            logger.info(f"Marked {len(marked)} invoices overdue for {user_id}")
        return marked
