"""Tax rate resolution and tax calculation.

Pure functions. No store access here; the caller hands in the candidate rate
sets for the object being taxed.

Exclusive policy: tax is added on top of the amount.
Inclusive policy: the amount already contains tax; percentage taxes are
backed out over the summed percentage, flat-amount taxes are taken as
already-deducted flat shares.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Sequence

from pydantic import BaseModel, ConfigDict

from .folio import TaxLine
from .money import HUNDRED, INCLUSIVE_MATCH_EPSILON, ZERO, round2, to_decimal

logger = logging.getLogger(__name__)


class TaxPostingType(str, Enum):
    FLAT_PERCENTAGE = "flat_percentage"
    FLAT_AMOUNT = "flat_amount"


class TaxPolicy(str, Enum):
    INCLUSIVE = "inclusive"
    EXCLUSIVE = "exclusive"


class TaxRate(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    hotel_id: str
    name: str = ""
    posting_type: TaxPostingType = TaxPostingType.FLAT_PERCENTAGE
    percentage: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")

    @property
    def is_percentage(self) -> bool:
        return self.posting_type == TaxPostingType.FLAT_PERCENTAGE


class TaxContext(BaseModel):
    """Candidate rate sets for one taxable object.

    ``room_rates`` / ``extra_charge_rates`` are the object's own rates,
    ``meal_plan_rates`` the union over a meal plan's components (used when a
    meal-plan line has no specific extra charge), ``hotel_default_rates`` the
    hotel-level default for the posting category.
    """

    model_config = ConfigDict(frozen=True)

    hotel_id: str
    room_rates: tuple[TaxRate, ...] = ()
    extra_charge_rates: tuple[TaxRate, ...] = ()
    meal_plan_rates: tuple[TaxRate, ...] = ()
    hotel_default_rates: tuple[TaxRate, ...] = ()


class TaxComputation(BaseModel):
    model_config = ConfigDict(frozen=True)

    per_rate: tuple[TaxLine, ...] = ()
    total: Decimal = ZERO
    policy: TaxPolicy = TaxPolicy.EXCLUSIVE


def _dedupe(rates: Iterable[TaxRate]) -> list[TaxRate]:
    seen: dict[str, TaxRate] = {}
    for rate in rates:
        seen.setdefault(rate.id, rate)
    return list(seen.values())


def owned_rates(rates: Iterable[TaxRate], hotel_id: str | None) -> list[TaxRate]:
    """Drop rates that belong to another hotel than ``hotel_id``."""
    if hotel_id is None:
        return list(rates)
    kept: list[TaxRate] = []
    for rate in rates:
        if rate.hotel_id != hotel_id:
            logger.warning(
                "tax rate excluded: hotel mismatch",
                extra={
                    "extra_fields": {
                        "rate_id": rate.id,
                        "rate_hotel_id": rate.hotel_id,
                        "hotel_id": hotel_id,
                    }
                },
            )
            continue
        kept.append(rate)
    return kept


def resolve_tax_rates(context: TaxContext) -> list[TaxRate]:
    """Return the ordered, de-duplicated rate set applicable to ``context``.

    The object's own rates win. Hotel defaults are used only when the object
    defines none. The choice is made before ownership filtering, so an object
    whose rates all belong to another hotel ends up untaxed rather than
    silently picking up the hotel default.
    """
    specific = _dedupe([*context.room_rates, *context.extra_charge_rates])
    if specific:
        chosen = specific
    elif context.meal_plan_rates:
        chosen = _dedupe(context.meal_plan_rates)
    else:
        chosen = _dedupe(context.hotel_default_rates)
    return owned_rates(chosen, context.hotel_id)


def tax_stack(rates: Sequence[TaxRate]) -> tuple[Decimal, Decimal]:
    """Return (summed percentage, summed flat amount) of a rate set."""
    percentage_sum = Decimal("0")
    flat_sum = Decimal("0")
    for rate in rates:
        if rate.is_percentage:
            percentage_sum += to_decimal(rate.percentage)
        else:
            flat_sum += to_decimal(rate.amount)
    return percentage_sum, flat_sum


def compute_tax(
    amount: Any,
    rates: Sequence[TaxRate],
    policy: TaxPolicy | str = TaxPolicy.EXCLUSIVE,
    *,
    hotel_id: str | None = None,
) -> TaxComputation:
    """Compute the per-rate tax breakdown of ``amount``.

    Args:
        amount: Taxable amount (gross when inclusive).
        rates: Applicable rate set, already resolved.
        policy: Inclusive or exclusive.
        hotel_id: When given, rates owned by another hotel are excluded.

    Returns:
        TaxComputation whose total is the sum of the rounded per-rate lines.
        A zero or negative amount yields zero tax on every line.
    """
    policy = TaxPolicy(policy)
    amount = to_decimal(amount)
    applicable = owned_rates(_dedupe(rates), hotel_id)

    if amount <= 0:
        lines = tuple(
            TaxLine(
                rate_id=r.id,
                name=r.name,
                tax_amount=ZERO,
                percentage=r.percentage if r.is_percentage else None,
            )
            for r in applicable
        )
        return TaxComputation(per_rate=lines, total=ZERO, policy=policy)

    total_percentage, _ = tax_stack(applicable)
    net_base = amount
    if policy == TaxPolicy.INCLUSIVE:
        net_base = amount / (1 + total_percentage / HUNDRED)

    lines: list[TaxLine] = []
    for rate in applicable:
        if rate.is_percentage:
            raw = net_base * to_decimal(rate.percentage) / HUNDRED
            percentage: Decimal | None = rate.percentage
        else:
            # Flat share; under an inclusive policy it is taken as already
            # deducted from the amount.
            raw = to_decimal(rate.amount)
            percentage = None
        lines.append(
            TaxLine(
                rate_id=rate.id,
                name=rate.name,
                tax_amount=round2(max(raw, Decimal("0"))),
                percentage=percentage,
            )
        )

    total = sum((line.tax_amount for line in lines), ZERO)
    return TaxComputation(per_rate=tuple(lines), total=total, policy=policy)


def detect_tax_policy(
    amount: Any,
    unit_price: Any,
    quantity: Any = 1,
    *,
    epsilon: Decimal = INCLUSIVE_MATCH_EPSILON,
) -> TaxPolicy:
    """Caller-side heuristic: a recorded amount equal to the theoretical gross
    (unit price x quantity) is treated as tax-inclusive."""
    expected = to_decimal(unit_price) * to_decimal(quantity)
    if expected > 0 and abs(to_decimal(amount) - expected) < epsilon:
        return TaxPolicy.INCLUSIVE
    return TaxPolicy.EXCLUSIVE


def category_tax_amount(amount: Any, rates: Sequence[TaxRate]) -> Decimal:
    """Hotel category shortcut: ``amount * sum(p)/100 + sum(flat)``, rounded."""
    amount = to_decimal(amount)
    if amount <= 0:
        return ZERO
    percentage_sum, flat_sum = tax_stack(rates)
    return round2(amount * percentage_sum / HUNDRED + flat_sum)
