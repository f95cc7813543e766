"""
Plan entitlements.

A pure allow/deny decision on (plan tier, action, current usage). Callers
read usage first and then act, so two concurrent creations can both pass a
check at the limit; the quotas are soft limits and that race is accepted.
"""

from dataclasses import dataclass
from enum import Enum

from core.exceptions import EntitlementExceededError
from core.models import PlanTier

FREE_INVOICES_PER_MONTH = 5
FREE_ACTIVE_CLIENTS = 2

UPGRADE_TIER = PlanTier.PRO


class Action(str, Enum):
    """Plan-gated actions."""

    CREATE_INVOICE = "create_invoice"
    CREATE_CLIENT = "create_client"
    SEND_INVOICE = "send_invoice"
    REMIND_INVOICE = "remind_invoice"


@dataclass(frozen=True)
class UsageCounts:
    """Usage already consumed by a tenant."""

    invoices_this_month: int = 0
    active_clients: int = 0


_FEATURE_MESSAGES = {
    Action.SEND_INVOICE: "Sending invoices by email requires a Pro plan",
    Action.REMIND_INVOICE: "Payment reminders require a Pro plan",
}


def check(plan: PlanTier, action: Action, usage: UsageCounts | None = None) -> None:
    """
    Allow or deny ``action`` for a tenant on ``plan``.

    Args:
        plan: Plan tier currently in force (already adjusted for expiry)
        action: Action being attempted
        usage: Current usage; only consulted for quota-limited actions

    Raises:
        EntitlementExceededError: action denied on this plan
    """
    if plan != PlanTier.FREE:
        return

    usage = usage or UsageCounts()

    if action == Action.CREATE_INVOICE and usage.invoices_this_month >= FREE_INVOICES_PER_MONTH:
        raise EntitlementExceededError(
            plan.value, action.value,
            f"Free plan is limited to {FREE_INVOICES_PER_MONTH} invoices per month. "
            "Upgrade to Pro for unlimited invoices.",
            upgrade_to=UPGRADE_TIER.value,
        )

    if action == Action.CREATE_CLIENT and usage.active_clients >= FREE_ACTIVE_CLIENTS:
        raise EntitlementExceededError(
            plan.value, action.value,
            f"Free plan is limited to {FREE_ACTIVE_CLIENTS} clients. "
            "Upgrade to Pro for unlimited clients.",
            upgrade_to=UPGRADE_TIER.value,
        )

    if action in _FEATURE_MESSAGES:
        raise EntitlementExceededError(
            plan.value, action.value, _FEATURE_MESSAGES[action], upgrade_to=UPGRADE_TIER.value
        )
