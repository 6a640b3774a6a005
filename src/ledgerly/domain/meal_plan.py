"""Meal plan catalog values.

A meal plan bundles extra-charge components priced per day. A component is
either fixed-price (quantity independent of guests) or multiplied by the
number of guests of its target type.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class GuestType(str, Enum):
    ADULT = "adult"
    CHILD = "child"
    INFANT = "infant"
    ALL = "all"


_GUEST_TYPE_ALIASES = {
    "adult": GuestType.ADULT,
    "adults": GuestType.ADULT,
    "child": GuestType.CHILD,
    "children": GuestType.CHILD,
    "infant": GuestType.INFANT,
    "infants": GuestType.INFANT,
}


def normalize_guest_type(value: object) -> GuestType:
    """Map free-form target guest type to GuestType; unknown means ALL."""
    if isinstance(value, GuestType):
        return value
    key = f"{value if value is not None else ''}".strip().lower()
    return _GUEST_TYPE_ALIASES.get(key, GuestType.ALL)


class GuestCounts(BaseModel):
    model_config = ConfigDict(frozen=True)

    adults: int = 0
    children: int = 0
    infants: int = 0

    def for_target(self, target: object) -> int:
        """Guest count a component targeting ``target`` is multiplied by."""
        guest_type = normalize_guest_type(target)
        if guest_type == GuestType.ADULT:
            count = self.adults
        elif guest_type == GuestType.CHILD:
            count = self.children
        elif guest_type == GuestType.INFANT:
            count = self.infants
        else:
            count = self.adults + self.children + self.infants
        return max(0, count)


class ExtraCharge(BaseModel):
    """Sellable extra item (breakfast, parking, ...) with its own tax rates."""

    model_config = ConfigDict(frozen=True)

    id: str
    hotel_id: str
    name: str = ""
    unit_price: Decimal = Decimal("0")
    fixed_price: bool = False
    tax_rate_ids: tuple[str, ...] = ()


class MealPlanComponent(BaseModel):
    model_config = ConfigDict(frozen=True)

    extra_charge: ExtraCharge
    quantity_per_day: Decimal = Field(default=Decimal("1"))
    target_guest_type: GuestType | str = GuestType.ALL

    @property
    def unit_price(self) -> Decimal:
        return self.extra_charge.unit_price

    @property
    def fixed_price(self) -> bool:
        return self.extra_charge.fixed_price


class MealPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    hotel_id: str
    name: str = ""
    components: tuple[MealPlanComponent, ...] = ()

    def tax_rate_ids(self) -> list[str]:
        """Union of component tax rate ids, first occurrence order."""
        seen: list[str] = []
        for component in self.components:
            for rate_id in component.extra_charge.tax_rate_ids:
                if rate_id not in seen:
                    seen.append(rate_id)
        return seen
