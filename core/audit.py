"""
Audit trail for invoicing and billing changes.

Every mutation to a client, invoice or subscription is logged here. The
audit log is:
- Append-only (entries never modified or deleted)
- Tenant-attributed (whose data changed; None for processor events that
  could not be tied to a tenant)
- Detailed (captures old and new values)
"""

from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from core.models import AuditEntry
from core.stores.base import AuditStore
from utils.tenant_context import peek_current_tenant_id
from utils.timezone import now_utc


class AuditAction(Enum):
    """Type of change made to an entity."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class BillingAuditAction(Enum):
    """Named billing actions recorded by payment reconciliation."""

    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_PAYMENT_SUCCEEDED = "subscription_payment_succeeded"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"
    INVOICE_PAYMENT_RECEIVED = "invoice_payment_received"
    PAYMENT_AFTER_PAID = "payment_after_paid"
    PAYMENT_NOT_APPLIED = "payment_not_applied"


def compute_changes(
    old: dict[str, Any],
    new: dict[str, Any],
    exclude_fields: set[str] | None = None
) -> dict[str, dict[str, Any]]:
    """
    Compute changes between two entity states.

    Args:
        old: Previous state of entity
        new: New state of entity
        exclude_fields: Fields to ignore (defaults to {"updated_at"})

    Returns:
        Dict of {field: {"old": old_val, "new": new_val}} for changed fields.
        Empty dict if no changes.
    """
    exclude = exclude_fields or {"updated_at"}
    changes = {}

    for key in set(old.keys()) | set(new.keys()):
        if key in exclude:
            continue
        old_val = old.get(key)
        new_val = new.get(key)
        if old_val != new_val:
            changes[key] = {"old": old_val, "new": new_val}

    return changes


class AuditLogger:
    """
    Writes audit entries through an AuditStore.

    Always use model_dump(mode="json") when passing Pydantic models so UUIDs,
    Decimals and datetimes are stored as JSON-compatible values.

    Usage:
        audit = AuditLogger(store)

        audit.log_change(
            entity_type="invoice",
            entity_id=invoice.id,
            action=AuditAction.CREATE,
            changes={"created": invoice.model_dump(mode="json")},
        )

        changes = compute_changes(old.model_dump(mode="json"), new.model_dump(mode="json"))
        audit.log_change("invoice", invoice.id, AuditAction.UPDATE, changes)

        audit.log_change(
            entity_type="subscription",
            entity_id=None,
            action=BillingAuditAction.SUBSCRIPTION_PAYMENT_FAILED,
            changes={"processor_invoice_id": "in_123"},
            user_id=tenant_id,
        )
    """

    def __init__(self, store: AuditStore):
        self.store = store

    def log_change(
        self,
        entity_type: str,
        entity_id: UUID | None,
        action: AuditAction | BillingAuditAction,
        changes: dict[str, Any],
        user_id: UUID | None = None
    ) -> AuditEntry:
        """
        Log an entity change.

        Args:
            entity_type: Type of entity ("client", "invoice", "subscription")
            entity_id: ID of the entity, if it has a local one
            action: The action performed
            changes: The changes made (format depends on action)
            user_id: Tenant whose data changed (defaults to current context)

        Changes format by action:
        - CREATE: {"created": {full entity data}}
        - UPDATE: {"field": {"old": old_val, "new": new_val}, ...}
        - DELETE: {"deleted": {full entity data at deletion}}
        - billing actions: the processor fields that triggered them
        """
        entry = AuditEntry(
            id=uuid4(),
            user_id=user_id if user_id is not None else peek_current_tenant_id(),
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            changes=changes,
            created_at=now_utc(),
        )
        self.store.append(entry)
        return entry

    def get_entity_history(self, entity_type: str, entity_id: UUID) -> list[AuditEntry]:
        """Full audit history for an entity, newest first."""
        return self.store.entity_history(entity_type, entity_id)

    def get_tenant_activity(self, user_id: UUID, limit: int = 100) -> list[AuditEntry]:
        """Recent entries for a tenant, newest first."""
        return self.store.tenant_activity(user_id, limit)
