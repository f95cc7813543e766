"""
Entitlement checks against the tenant's current plan.

Loads the tenant, applies plan expiry, and runs the pure policy in
core.entitlements. Usage counts are read by the caller just before acting.
"""

from uuid import UUID

from core.entitlements import Action, UsageCounts, check
from core.exceptions import NotFoundError
from core.models import PlanTier, Tenant
from core.stores.base import BillingStore
from utils.timezone import now_utc


class PlanGuard:
    """Resolves a tenant's effective plan and enforces its limits."""

    def __init__(self, billing: BillingStore):
        self.billing = billing

    def tenant(self, user_id: UUID) -> Tenant:
        tenant = self.billing.get_tenant(user_id)
        if tenant is None:
            raise NotFoundError("tenant", user_id)
        return tenant

    def plan(self, tenant: Tenant) -> PlanTier:
        return tenant.effective_plan(now_utc())

    def require(self, user_id: UUID, action: Action, usage: UsageCounts | None = None) -> Tenant:
        """
        Raise EntitlementExceededError unless ``action`` is allowed.

        Returns the tenant so callers can use its issuer details.
        """
        tenant = self.tenant(user_id)
        check(self.plan(tenant), action, usage)
        return tenant
