"""Purchasable plans and the membership each one grants."""
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import NamedTuple, Optional, Tuple

from .utils import as_utc


class Plan(str, Enum):
    annual = "annual"
    lifetime = "lifetime"
    # pricing tier only; grants the same entitlement as lifetime
    agent = "agent"


class PlanInfo(NamedTuple):
    plan: Plan
    price: Decimal
    description: str


CATALOG = {
    Plan.annual: PlanInfo(Plan.annual, Decimal("99.00"), "Annual membership"),
    Plan.lifetime: PlanInfo(Plan.lifetime, Decimal("399.00"), "Lifetime membership"),
    Plan.agent: PlanInfo(Plan.agent, Decimal("1999.00"), "Agent partnership"),
}

TIER_RANK = {"free": 0, "annual": 1, "lifetime": 2}


def price_for(plan: Plan) -> Decimal:
    return CATALOG[Plan(plan)].price


def membership_for_plan(
    plan: Plan,
    now: datetime,
    current_type: Optional[str] = None,
    current_expiry: Optional[datetime] = None,
    mode: str = "reset",
    annual_days: int = 365,
) -> Tuple[str, Optional[datetime]]:
    """Return the ``(membership_type, membership_expires_at)`` a plan grants.

    In ``reset`` mode an annual purchase always runs ``annual_days`` from
    ``now``. In ``extend`` mode the days are added to a still-active annual
    expiry instead, so early renewals keep the unused remainder.
    """
    plan = Plan(plan)
    if plan in (Plan.lifetime, Plan.agent):
        return "lifetime", None

    start = now
    if mode == "extend" and current_type == "annual":
        expiry = as_utc(current_expiry)
        if expiry is not None and expiry > as_utc(now):
            start = expiry
    return "annual", start + timedelta(days=annual_days)


def is_downgrade(current_type: Optional[str], target_type: str) -> bool:
    return TIER_RANK.get(target_type, 0) < TIER_RANK.get(current_type or "free", 0)
