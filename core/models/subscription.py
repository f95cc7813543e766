"""Subscription models. Rows are written only by payment reconciliation."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel

from core.models.tenant import PlanTier


class SubscriptionStatus(str, Enum):
    """Local subscription status."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    TRIALING = "trialing"

    @property
    def grants_plan(self) -> bool:
        """Whether a subscription in this status entitles the tenant to its plan."""
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class SubscriptionUpsert(BaseModel):
    """State reported by the processor for one subscription."""

    user_id: UUID
    stripe_subscription_id: str
    stripe_customer_id: str | None = None
    plan: PlanTier
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at: datetime | None = None


class Subscription(BaseModel):
    """Full subscription entity as stored."""

    id: UUID
    user_id: UUID
    stripe_subscription_id: str | None
    stripe_customer_id: str | None
    plan: PlanTier
    status: SubscriptionStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @property
    def cancel_scheduled(self) -> bool:
        """Cancellation at period end has been requested."""
        return self.cancel_at is not None and self.status != SubscriptionStatus.CANCELLED
