"""
Tests for the credit pricing plan catalog.
"""

import pytest

from clipledger.exceptions import UnknownPlanError
from clipledger.services.pricing_plans import (
    PRICING_PLANS,
    PricingPlan,
    get_plan,
    list_plans,
)


class TestPricingPlan:
    """Tests for PricingPlan validation."""

    def test_valid_plan(self):
        plan = PricingPlan(plan_id="starter", name="Starter", credits=1000, price_minor=1000)

        assert plan.currency == "USD"
        assert plan.popular is False

    @pytest.mark.parametrize("credits", [0, -100])
    def test_non_positive_credits(self, credits: int):
        with pytest.raises(ValueError, match="Credits must be positive"):
            PricingPlan(plan_id="starter", name="Starter", credits=credits, price_minor=1000)

    @pytest.mark.parametrize("price", [0, -1])
    def test_non_positive_price(self, price: int):
        with pytest.raises(ValueError, match="Price must be positive"):
            PricingPlan(plan_id="starter", name="Starter", credits=1000, price_minor=price)

    def test_missing_plan_id(self):
        with pytest.raises(ValueError, match="Plan ID required"):
            PricingPlan(plan_id="", name="Starter", credits=1000, price_minor=1000)

    def test_missing_name(self):
        with pytest.raises(ValueError, match="Name required"):
            PricingPlan(plan_id="starter", name="", credits=1000, price_minor=1000)

    @pytest.mark.parametrize("currency", ["usd", "US", "EURO"])
    def test_bad_currency(self, currency: str):
        with pytest.raises(ValueError, match="Currency"):
            PricingPlan(
                plan_id="starter", name="Starter", credits=1000, price_minor=1000, currency=currency
            )


class TestCatalog:
    """Tests for catalog lookups."""

    def test_catalog_keys_match_plan_ids(self):
        for plan_id, plan in PRICING_PLANS.items():
            assert plan.plan_id == plan_id

    def test_get_plan(self):
        plan = get_plan("studio")
        assert plan.credits == 6000
        assert plan.price_minor == 4500

    def test_unknown_plan(self):
        with pytest.raises(UnknownPlanError) as exc_info:
            get_plan("unlimited")
        assert exc_info.value.plan_id == "unlimited"

    def test_list_plans_cheapest_first(self):
        prices = [plan.price_minor for plan in list_plans()]
        assert prices == sorted(prices)
        assert len(prices) == len(PRICING_PLANS)

    def test_bigger_plans_never_cost_more_per_credit(self):
        plans = list_plans()
        rates = [plan.price_minor / plan.credits for plan in plans]
        assert rates == sorted(rates, reverse=True)
