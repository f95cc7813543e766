"""
Client service for CRUD operations.

Handles the client lifecycle: create, read, update, delete. Clients that
are referenced by invoices are deactivated instead of deleted so invoice
history stays intact.
"""

import logging
from uuid import UUID

from core.audit import AuditAction, AuditLogger, compute_changes
from core.entitlements import Action, UsageCounts
from core.exceptions import ConflictError, NotFoundError
from core.models import Client, ClientCreate, ClientStats, ClientUpdate
from core.services.plan_guard import PlanGuard
from core.stores.base import ClientStore, DuplicateKeyError, InvoiceStore
from utils.tenant_context import get_current_tenant_id

logger = logging.getLogger(__name__)


class ClientService:
    """Service for client operations."""

    def __init__(
        self,
        clients: ClientStore,
        invoices: InvoiceStore,
        plans: PlanGuard,
        audit: AuditLogger,
    ):
        self.clients = clients
        self.invoices = invoices
        self.plans = plans
        self.audit = audit

    def _duplicate_email(self, email: str) -> ConflictError:
        return ConflictError(f"A client with email {email} already exists", email=email)

    def create(self, data: ClientCreate) -> Client:
        """
        Create a new client.

        Raises:
            EntitlementExceededError: free plan already has its maximum active clients
            ConflictError: another client of this tenant has the same email
        """
        user_id = get_current_tenant_id()
        self.plans.require(
            user_id,
            Action.CREATE_CLIENT,
            UsageCounts(active_clients=self.clients.count_active_clients(user_id)),
        )

        if self.clients.find_client_by_email(user_id, data.email) is not None:
            raise self._duplicate_email(data.email)

        try:
            client = self.clients.insert_client(user_id, data)
        except DuplicateKeyError:
            raise self._duplicate_email(data.email)

        self.audit.log_change(
            entity_type="client",
            entity_id=client.id,
            action=AuditAction.CREATE,
            changes={"created": data.model_dump(mode="json", exclude_none=True)},
        )
        return client

    def get(self, client_id: UUID) -> Client:
        """Raises NotFoundError if the client does not belong to the tenant."""
        client = self.clients.get_client(get_current_tenant_id(), client_id)
        if client is None:
            raise NotFoundError("client", client_id)
        return client

    def get_with_stats(self, client_id: UUID) -> tuple[Client, ClientStats]:
        """Client plus billed / paid / outstanding totals across its invoices."""
        client = self.get(client_id)
        return client, self.invoices.client_stats(client.user_id, client.id)

    def list_all(self, search: str | None = None, include_inactive: bool = False) -> list[Client]:
        """Active clients ordered by name, optionally filtered by name, email or company."""
        search = search.strip() if search else None
        return self.clients.list_clients(get_current_tenant_id(), search or None, include_inactive)

    def update(self, client_id: UUID, data: ClientUpdate) -> Client:
        """
        Update client fields that were explicitly provided.

        Raises:
            NotFoundError: client not found
            ConflictError: new email collides with another client
        """
        current = self.get(client_id)
        fields = data.model_dump(exclude_unset=True)
        if not fields:
            return current

        new_email = fields.get("email")
        if new_email and new_email != current.email:
            existing = self.clients.find_client_by_email(current.user_id, new_email)
            if existing is not None and existing.id != client_id:
                raise self._duplicate_email(new_email)

        try:
            updated = self.clients.update_client(current.user_id, client_id, fields)
        except DuplicateKeyError:
            raise self._duplicate_email(new_email)
        if updated is None:
            raise NotFoundError("client", client_id)

        changes = compute_changes(current.model_dump(mode="json"), updated.model_dump(mode="json"))
        if changes:
            self.audit.log_change(
                entity_type="client",
                entity_id=client_id,
                action=AuditAction.UPDATE,
                changes=changes,
            )
        return updated

    def delete(self, client_id: UUID) -> bool:
        """
        Remove a client.

        Returns:
            True if the row was deleted, False if it was only deactivated
            because invoices still reference it.
        """
        current = self.get(client_id)

        if self.invoices.client_has_invoices(current.user_id, client_id):
            if current.is_active:
                self.clients.update_client(current.user_id, client_id, {"is_active": False})
                self.audit.log_change(
                    entity_type="client",
                    entity_id=client_id,
                    action=AuditAction.UPDATE,
                    changes={"is_active": {"old": True, "new": False}},
                )
            logger.info(f"Client {client_id} has invoices; deactivated instead of deleted")
            return False

        self.clients.delete_client(current.user_id, client_id)
        self.audit.log_change(
            entity_type="client",
            entity_id=client_id,
            action=AuditAction.DELETE,
            changes={"deleted": current.model_dump(mode="json")},
        )
        return True
