"""Typed exceptions for invoicing and billing failures.

Every error carries a machine-readable ``code`` that the API layer maps to an
HTTP status, a human message, and the ids relevant to the failure.
"""

from typing import Any
from uuid import UUID


class InvoicingError(Exception):
    """Base class for domain errors."""

    code = "INVOICING_ERROR"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = {
            key: str(value) if isinstance(value, UUID) else value
            for key, value in context.items()
            if value is not None
        }
        super().__init__(message)


class NotFoundError(InvoicingError):
    """Referenced entity does not exist or belongs to another tenant."""

    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: UUID | str | None = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        label = entity_type.replace("_", " ").capitalize()
        message = f"{label} {entity_id} not found" if entity_id else f"{label} not found"
        super().__init__(message, entity_type=entity_type, entity_id=entity_id)


class InvalidStateTransitionError(InvoicingError):
    """Requested status change is not allowed from the current status."""

    code = "INVALID_STATUS_TRANSITION"

    def __init__(
        self,
        invoice_id: UUID | None,
        current: str,
        requested: str,
        message: str | None = None,
    ):
        self.invoice_id = invoice_id
        self.current = current
        self.requested = requested
        super().__init__(
            message or f"Invoice cannot move from '{current}' to '{requested}'",
            invoice_id=invoice_id,
            current_status=current,
            requested_status=requested,
        )


class AlreadyPaidError(InvalidStateTransitionError):
    """Action requires an unpaid invoice but the invoice is paid."""

    code = "INVOICE_ALREADY_PAID"

    def __init__(self, invoice_id: UUID | None, requested: str):
        super().__init__(
            invoice_id,
            current="paid",
            requested=requested,
            message=f"Invoice {invoice_id} is already paid",
        )


class InvoiceImmutableError(InvoicingError):
    """Items or financial fields changed on an invoice that no longer allows it."""

    code = "INVOICE_IMMUTABLE"

    def __init__(self, invoice_id: UUID | None, message: str | None = None):
        self.invoice_id = invoice_id
        super().__init__(
            message or f"Invoice {invoice_id} is paid and cannot be modified",
            invoice_id=invoice_id,
        )


class EntitlementExceededError(InvoicingError):
    """Plan limit reached or action not included in the tenant's plan."""

    code = "PLAN_LIMIT"

    def __init__(self, plan: str, action: str, message: str, upgrade_to: str | None = "pro"):
        self.plan = plan
        self.action = action
        self.upgrade_to = upgrade_to
        super().__init__(message, plan=plan, action=action, upgrade_to=upgrade_to)


class ConflictError(InvoicingError):
    """Duplicate key or allocation race that could not be resolved."""

    code = "CONFLICT"


class ValidationFailureError(InvoicingError):
    """Malformed monetary, quantity or rate input. Raised before any state changes."""

    code = "VALIDATION_FAILURE"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message, field=field)


class UpstreamUnavailableError(InvoicingError):
    """A collaborator (renderer, email gateway, payment processor) failed."""

    code = "UPSTREAM_UNAVAILABLE"

    def __init__(self, collaborator: str, detail: str):
        self.collaborator = collaborator
        super().__init__(f"{collaborator} unavailable: {detail}", collaborator=collaborator)
