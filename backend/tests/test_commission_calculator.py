# tests/test_commission_calculator.py
from __future__ import annotations

from decimal import Decimal

import pytest

from app.core.errors import ConfigurationError, ValidationError
from app.services.commission_calculator import (
    CommissionRules,
    FlatRule,
    PercentageRule,
    build_rules,
    calculate,
    parse_tiers,
)

TIERS = [
    {"min_amount": 1000, "max_amount": 5000, "rate": "0.05"},
    {"min_amount": 5000, "max_amount": 10000, "rate": "0.07"},
    {"min_amount": 10000, "max_amount": None, "rate": "0.10"},
]


def test_percentage_rule():
    rules = build_rules("percentage", commission_rate="0.05")

    quote = calculate(2000, rules)

    assert quote.commission_amount == Decimal("100")
    assert quote.commission_rate == Decimal("0.05")


def test_first_matching_tier_wins_over_base_rate():
    rules = build_rules("percentage", commission_rate="0.02", tiered_rates=TIERS)

    quote = calculate(3000, rules)

    assert quote.commission_amount == Decimal("150")
    assert quote.commission_rate == Decimal("0.05")


@pytest.mark.parametrize(
    "spend, expected_rate",
    [
        ("1000", "0.05"),
        ("5000", "0.05"),   # shared boundary goes to the lower tier
        ("7500", "0.07"),
        ("250000", "0.10"),
        ("999.99", "0.02"),  # below every tier -> base rule
    ],
)
def test_tier_selection(spend, expected_rate):
    rules = build_rules("percentage", commission_rate="0.02", tiered_rates=TIERS)

    assert calculate(spend, rules).commission_rate == Decimal(expected_rate)


def test_tiers_are_sorted_by_min_amount():
    tiers = parse_tiers(list(reversed(TIERS)))

    assert [t.min_amount for t in tiers] == [Decimal("1000"), Decimal("5000"), Decimal("10000")]
    assert tiers[-1].max_amount is None


def test_flat_rule_reports_effective_rate():
    rules = build_rules("flat", commission_flat_amount="50")

    quote = calculate(1000, rules)

    assert quote.commission_amount == Decimal("50")
    assert quote.commission_rate == Decimal("0.05")


def test_flat_rule_zero_spend_has_zero_rate():
    quote = calculate(0, CommissionRules(base=FlatRule(amount=Decimal("25"))))

    assert quote.commission_amount == Decimal("25")
    assert quote.commission_rate == Decimal("0")


def test_override_amount_beats_rate_and_tiers():
    rules = build_rules("percentage", commission_rate="0.05", tiered_rates=TIERS)

    quote = calculate(2000, rules, custom_rate="0.5", custom_amount="80", override=True)

    assert quote.commission_amount == Decimal("80")
    assert quote.commission_rate == Decimal("0.04")


def test_override_rate():
    rules = build_rules("percentage", commission_rate="0.05", tiered_rates=TIERS)

    quote = calculate(2000, rules, custom_rate="0.10", override=True)

    assert quote.commission_amount == Decimal("200")
    assert quote.commission_rate == Decimal("0.10")


def test_custom_values_ignored_without_override_flag():
    rules = build_rules("percentage", commission_rate="0.05")

    quote = calculate(2000, rules, custom_amount="999")

    assert quote.commission_amount == Decimal("100")


def test_calculate_is_deterministic():
    rules = CommissionRules(base=PercentageRule(rate=Decimal("0.035")))

    quotes = {calculate("1234.56", rules) for _ in range(5)}

    assert len(quotes) == 1


def test_missing_rate_is_configuration_error():
    with pytest.raises(ConfigurationError) as exc:
        build_rules("percentage", commission_rate=None)
    assert exc.value.message == "Product commission rate is not defined"


def test_missing_flat_amount_is_configuration_error():
    with pytest.raises(ConfigurationError) as exc:
        build_rules("flat")
    assert exc.value.message == "Product flat commission amount is not defined"


def test_unknown_commission_type():
    with pytest.raises(ConfigurationError):
        build_rules("hybrid", commission_rate="0.05")


def test_tier_without_rate_is_configuration_error():
    with pytest.raises(ConfigurationError):
        parse_tiers([{"min_amount": 100}])


def test_non_numeric_spend_is_validation_error():
    rules = build_rules("percentage", commission_rate="0.05")

    with pytest.raises(ValidationError):
        calculate("lots", rules)
