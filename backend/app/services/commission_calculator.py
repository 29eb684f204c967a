"""
Commission calculation (pure, no I/O).

Rules are a tagged union:
    PercentageRule(rate)      amount = spend * rate
    FlatRule(amount)          amount = constant, rate = amount / spend (display only)
    Tier(min, max?, rate)     first tier (ascending by min) with min <= spend <= max wins

Resolution order: override -> tiers -> base rule. Nothing is rounded here.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Union

from app.core.errors import ConfigurationError, ValidationError

COMMISSION_TYPE_PERCENTAGE = "percentage"
COMMISSION_TYPE_FLAT = "flat"

ZERO = Decimal("0")


def to_decimal(value: Any, field_name: str = "value") -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValidationError(f"Invalid numeric value for {field_name}", value=str(value)) from e


@dataclass(frozen=True)
class PercentageRule:
    rate: Decimal
    kind: str = field(default=COMMISSION_TYPE_PERCENTAGE, init=False)


@dataclass(frozen=True)
class FlatRule:
    amount: Decimal
    kind: str = field(default=COMMISSION_TYPE_FLAT, init=False)


BaseRule = Union[PercentageRule, FlatRule]


@dataclass(frozen=True)
class Tier:
    min_amount: Decimal
    rate: Decimal
    max_amount: Optional[Decimal] = None

    def matches(self, spend: Decimal) -> bool:
        if spend < self.min_amount:
            return False
        return self.max_amount is None or spend <= self.max_amount


@dataclass(frozen=True)
class CommissionRules:
    base: BaseRule
    tiers: tuple[Tier, ...] = ()
    min_initial_spend: Decimal = ZERO


@dataclass(frozen=True)
class CommissionQuote:
    commission_amount: Decimal
    commission_rate: Decimal


def _ratio(amount: Decimal, spend: Decimal) -> Decimal:
    return amount / spend if spend != 0 else ZERO


def parse_tiers(raw: Iterable[dict[str, Any]] | None) -> tuple[Tier, ...]:
    tiers = []
    for i, item in enumerate(raw or ()):
        try:
            min_amount = item["min_amount"]
            rate = item["rate"]
        except (KeyError, TypeError) as e:
            raise ConfigurationError(f"Tier {i} requires min_amount and rate") from e
        max_amount = item.get("max_amount")
        tiers.append(
            Tier(
                min_amount=to_decimal(min_amount, "min_amount"),
                rate=to_decimal(rate, "rate"),
                max_amount=to_decimal(max_amount, "max_amount") if max_amount is not None else None,
            )
        )
    return tuple(sorted(tiers, key=lambda t: t.min_amount))


def build_rules(
    commission_type: str,
    commission_rate: Any = None,
    commission_flat_amount: Any = None,
    min_initial_spend: Any = 0,
    tiered_rates: Iterable[dict[str, Any]] | None = None,
) -> CommissionRules:
    base: BaseRule
    if commission_type == COMMISSION_TYPE_PERCENTAGE:
        if commission_rate is None:
            raise ConfigurationError("Product commission rate is not defined")
        base = PercentageRule(rate=to_decimal(commission_rate, "commission_rate"))
    elif commission_type == COMMISSION_TYPE_FLAT:
        if commission_flat_amount is None:
            raise ConfigurationError("Product flat commission amount is not defined")
        base = FlatRule(amount=to_decimal(commission_flat_amount, "commission_flat_amount"))
    else:
        raise ConfigurationError("Invalid commission type", commission_type=commission_type)

    return CommissionRules(
        base=base,
        tiers=parse_tiers(tiered_rates),
        min_initial_spend=to_decimal(min_initial_spend or 0, "min_initial_spend"),
    )


def rules_from_product(product) -> CommissionRules:
    return build_rules(
        product.commission_type,
        commission_rate=product.commission_rate,
        commission_flat_amount=product.commission_flat_amount,
        min_initial_spend=product.min_initial_spend,
        tiered_rates=product.tiered_rates,
    )


def calculate(
    spend: Any,
    rules: CommissionRules,
    custom_rate: Any = None,
    custom_amount: Any = None,
    override: bool = False,
) -> CommissionQuote:
    spend = to_decimal(spend, "initial_spend_amount")

    if override and custom_amount is not None:
        amount = to_decimal(custom_amount, "custom_amount")
        return CommissionQuote(commission_amount=amount, commission_rate=_ratio(amount, spend))
    if override and custom_rate is not None:
        rate = to_decimal(custom_rate, "custom_rate")
        return CommissionQuote(commission_amount=spend * rate, commission_rate=rate)

    for tier in sorted(rules.tiers, key=lambda t: t.min_amount):
        if tier.matches(spend):
            return CommissionQuote(commission_amount=spend * tier.rate, commission_rate=tier.rate)

    base = rules.base
    if isinstance(base, PercentageRule):
        return CommissionQuote(commission_amount=spend * base.rate, commission_rate=base.rate)
    if isinstance(base, FlatRule):
        return CommissionQuote(commission_amount=base.amount, commission_rate=_ratio(base.amount, spend))
    raise ConfigurationError("Invalid commission type")
