"""Tenant (issuing account) and plan tier models."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class PlanTier(str, Enum):
    """Subscription tier that drives entitlements."""

    FREE = "free"
    PRO = "pro"
    BUSINESS = "business"


class Tenant(BaseModel):
    """
    The business account that owns clients, invoices and a subscription.

    ``plan`` is a projection of subscription state written by payment
    reconciliation; it is never edited through the invoicing API.
    """

    id: UUID
    email: str
    name: str
    business_name: str | None = None
    address: str | None = None
    phone: str | None = None
    plan: PlanTier = PlanTier.FREE
    plan_expires_at: datetime | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    payment_terms_days: int = 30
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    def effective_plan(self, now: datetime) -> PlanTier:
        """Plan in force at ``now``. A paid plan past its expiry counts as free."""
        if self.plan != PlanTier.FREE and self.plan_expires_at is not None and now > self.plan_expires_at:
            return PlanTier.FREE
        return self.plan

    @property
    def display_name(self) -> str:
        """Name printed as the issuer on documents and emails."""
        return self.business_name or self.name
