"""
Credit pricing plans.

Server-side catalog of the credit packages clients can buy. The price and
credit count of a payment come from here, never from the client.
"""

from dataclasses import dataclass

from clipledger.exceptions import UnknownPlanError


@dataclass(frozen=True)
class PricingPlan:
    """A purchasable credit package."""

    plan_id: str
    name: str
    credits: int
    price_minor: int
    currency: str = "USD"
    popular: bool = False

    def __post_init__(self) -> None:
        """Validate plan configuration."""
        if not self.plan_id:
            raise ValueError("Plan ID required")
        if not self.name:
            raise ValueError("Name required")
        if self.credits <= 0:
            raise ValueError(f"Credits must be positive: {self.credits}")
        if self.price_minor <= 0:
            raise ValueError(f"Price must be positive: {self.price_minor}")
        if len(self.currency) != 3 or not self.currency.isupper():
            raise ValueError(f"Currency must be an upper-case ISO code: {self.currency}")


PRICING_PLANS: dict[str, PricingPlan] = {
    "starter": PricingPlan(
        plan_id="starter",
        name="Starter",
        credits=1000,
        price_minor=1000,
        popular=True,
    ),
    "creator": PricingPlan(
        plan_id="creator",
        name="Creator",
        credits=2500,
        price_minor=2000,
    ),
    "studio": PricingPlan(
        plan_id="studio",
        name="Studio",
        credits=6000,
        price_minor=4500,
    ),
}


def list_plans() -> list[PricingPlan]:
    """Plans in display order, cheapest first."""
    return sorted(PRICING_PLANS.values(), key=lambda plan: plan.price_minor)


def get_plan(plan_id: str) -> PricingPlan:
    """
    Get plan configuration by ID.

    Raises:
        UnknownPlanError: no such plan
    """
    plan = PRICING_PLANS.get(plan_id)
    if plan is None:
        raise UnknownPlanError(plan_id)
    return plan
