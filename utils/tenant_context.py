"""Propagate the authenticated tenant through the call stack using contextvars.

The tenant is the issuing user account. Every store query and every audit
entry is scoped to the tenant found here; PostgresClient also copies it into
``app.current_user_id`` so row level security filters rows in the database.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from uuid import UUID

_current_tenant_id: ContextVar[UUID | None] = ContextVar("current_tenant_id", default=None)


def get_current_tenant_id() -> UUID:
    """
    Get current tenant ID from context.

    Raises RuntimeError if no tenant context is set. Tenant-scoped code
    running outside an authenticated request (or a reconciliation that
    resolved its tenant) is a bug.
    """
    tenant_id = _current_tenant_id.get()
    if tenant_id is None:
        raise RuntimeError(
            "No tenant context set. This usually means you're calling "
            "tenant-scoped code outside of an authenticated request."
        )
    return tenant_id


def peek_current_tenant_id() -> UUID | None:
    """Current tenant ID, or None when running without tenant context."""
    return _current_tenant_id.get()


def set_current_tenant_id(tenant_id: UUID) -> None:
    """Set current tenant ID. Called by auth middleware after validating the session."""
    _current_tenant_id.set(tenant_id)


def clear_current_tenant_id() -> None:
    """
    Clear tenant context.

    Must be called in a finally block to prevent context leakage between
    requests handled on the same thread.
    """
    _current_tenant_id.set(None)


@contextmanager
def tenant_context(tenant_id: UUID):
    """
    Temporarily act as ``tenant_id``.

    Used by tests, by webhook reconciliation once the event's tenant is
    resolved, and by sweeps that iterate over tenants. The previous tenant
    (if any) is restored on exit.

    Example:
        with tenant_context(tenant_id):
            invoice_service.mark_overdue()
    """
    previous = _current_tenant_id.get()
    set_current_tenant_id(tenant_id)
    try:
        yield
    finally:
        if previous is None:
            clear_current_tenant_id()
        else:
            set_current_tenant_id(previous)
