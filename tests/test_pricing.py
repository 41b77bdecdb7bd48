import pytest

from credit_ledger.services.pricing import CUSTOM_PLAN, PRICE_TABLE, resolve_plan


@pytest.mark.parametrize(
    "amount,plan_name,credits",
    [
        (100, "Starter", 50),
        (200, "Professional", 200),
        (300, "Enterprise", 500),
    ],
)
def test_known_amounts_map_to_plans(amount, plan_name, credits):
    plan = resolve_plan(amount)

    assert plan.mapped
    assert plan.plan_name == plan_name
    assert plan.credits == credits


def test_unknown_amount_falls_back_to_custom_plan():
    plan = resolve_plan(1000)

    assert not plan.mapped
    assert plan.plan_name == CUSTOM_PLAN
    assert plan.credits == 500


def test_fallback_never_grants_zero_credits():
    assert resolve_plan(1).credits == 1


def test_fallback_rate_can_be_overridden():
    assert resolve_plan(1000, cents_per_credit=5).credits == 200


def test_price_table_amounts_are_positive():
    assert all(amount > 0 and credits > 0 for amount, (_, credits) in PRICE_TABLE.items())
