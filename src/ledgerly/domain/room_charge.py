"""Room charge splitting.

Decomposes a bundled nightly package rate into the room-only part and the
meal-plan part, then splits the room part into net and tax using the hotel's
room-charge tax stack.

    mealPlanGross = sum(unit_price * quantity) over components
    totalRoom     = max(0, packageGross - mealPlanGross)   (meal plan included)
    adjustedGross = max(0, totalRoom - flatSum)
    net           = adjustedGross / (1 + percSum/100)
    tax           = totalRoom - net
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict

from .meal_plan import GuestCounts, MealPlan, MealPlanComponent
from .money import HUNDRED, ZERO, clamp_non_negative, round2, to_decimal
from .tax import TaxRate, tax_stack


class MealPlanLine(BaseModel):
    """Daily gross of one meal-plan component for a given occupancy."""

    model_config = ConfigDict(frozen=True)

    component: MealPlanComponent
    quantity: Decimal
    gross: Decimal


class RoomChargeSplit(BaseModel):
    model_config = ConfigDict(frozen=True)

    room_final_rate: Decimal
    room_final_net_amount: Decimal
    room_final_rate_tax: Decimal
    meal_plan_gross_per_day: Decimal = ZERO
    room_final_base_rate: Decimal | None = None
    meal_plan_lines: tuple[MealPlanLine, ...] = ()


def meal_plan_lines(meal_plan: MealPlan, guest_counts: GuestCounts) -> list[MealPlanLine]:
    """Price each component for one day; components with no quantity or no
    gross are skipped."""
    lines: list[MealPlanLine] = []
    for component in meal_plan.components:
        base_qty = clamp_non_negative(component.quantity_per_day)
        guests = guest_counts.for_target(component.target_guest_type)
        quantity = base_qty if component.fixed_price else base_qty * guests
        gross = to_decimal(component.unit_price) * quantity
        if quantity <= 0 or gross <= 0:
            continue
        lines.append(MealPlanLine(component=component, quantity=quantity, gross=gross))
    return lines


def _net_of_tax(gross: Decimal, flat_sum: Decimal, perc_rate: Decimal) -> Decimal:
    adjusted = clamp_non_negative(gross - flat_sum)
    if perc_rate > 0:
        return adjusted / (1 + perc_rate)
    return adjusted


def split_room_charge(
    package_gross_daily_rate: Any,
    meal_plan: MealPlan | None = None,
    guest_counts: GuestCounts | None = None,
    hotel_tax_stack: Sequence[TaxRate] = (),
    *,
    meal_plan_included: bool = True,
    base_rate: Any = None,
) -> RoomChargeSplit:
    """Split a package daily rate into room vs. meal plan and net vs. tax.

    Args:
        package_gross_daily_rate: Gross nightly rate as sold (tax included).
        meal_plan: Meal plan attached to the rate, if any.
        guest_counts: Occupancy used to price per-guest components.
        hotel_tax_stack: Hotel room-charge tax rates.
        meal_plan_included: Whether the meal plan is embedded in the rate.
        base_rate: Optional rack base rate; its net is reported as
            ``room_final_base_rate``.

    Returns:
        RoomChargeSplit with every monetary output rounded half-up to 2
        places and never negative.
    """
    package_gross = clamp_non_negative(package_gross_daily_rate)
    guest_counts = guest_counts or GuestCounts()

    bundled = bool(meal_plan_included and meal_plan is not None and meal_plan.components)
    lines: list[MealPlanLine] = []
    meal_plan_gross = Decimal("0")
    if bundled:
        lines = meal_plan_lines(meal_plan, guest_counts)
        meal_plan_gross = sum((line.gross for line in lines), Decimal("0"))

    if bundled:
        total_room = clamp_non_negative(package_gross - meal_plan_gross)
    else:
        total_room = package_gross

    percentage_sum, flat_sum = tax_stack(hotel_tax_stack)
    perc_rate = percentage_sum / HUNDRED if percentage_sum > 0 else Decimal("0")

    net = _net_of_tax(total_room, flat_sum, perc_rate)
    tax = clamp_non_negative(total_room - net)

    final_base_rate = None
    if base_rate is not None:
        final_base_rate = round2(_net_of_tax(clamp_non_negative(base_rate), flat_sum, perc_rate))

    return RoomChargeSplit(
        room_final_rate=round2(total_room),
        room_final_net_amount=round2(net),
        room_final_rate_tax=round2(tax),
        meal_plan_gross_per_day=round2(meal_plan_gross),
        room_final_base_rate=final_base_rate,
        meal_plan_lines=tuple(lines),
    )
