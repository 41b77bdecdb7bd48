from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from ..config import settings

# amount paid in cents -> (plan name, credits granted)
PRICE_TABLE: Dict[int, Tuple[str, int]] = {
    100: ("Starter", 50),
    200: ("Professional", 200),
    300: ("Enterprise", 500),
}

CUSTOM_PLAN = "Custom"


@dataclass(frozen=True)
class PlanGrant:
    plan_name: str
    credits: int
    mapped: bool


def resolve_plan(amount_paid_cents: int, cents_per_credit: Optional[int] = None) -> PlanGrant:
    """Map a payment amount to the credits it buys.

    Amounts missing from the price table still grant credits, one per
    ``cents_per_credit`` and never fewer than one, under the Custom plan.
    """
    if amount_paid_cents in PRICE_TABLE:
        plan_name, credits = PRICE_TABLE[amount_paid_cents]
        return PlanGrant(plan_name=plan_name, credits=credits, mapped=True)

    cents_per_credit = cents_per_credit or settings.cents_per_credit
    return PlanGrant(
        plan_name=CUSTOM_PLAN,
        credits=max(1, amount_paid_cents // cents_per_credit),
        mapped=False,
    )
