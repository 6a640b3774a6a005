"""Tax rate lookup against the store.

Collects the candidate rate sets of a taxable object from the session and
hands them to the pure resolver in ``ledgerly.domain.tax``.
"""

from __future__ import annotations

from typing import Iterable

from ledgerly.domain.errors import NotFoundError, ValidationError
from ledgerly.domain.folio import TransactionCategory
from ledgerly.domain.meal_plan import ExtraCharge, MealPlan
from ledgerly.domain.tax import TaxContext, TaxRate, owned_rates, resolve_tax_rates
from ledgerly.infra.store import LedgerSession

# Categories with a hotel-level default tax stack.
HOTEL_DEFAULT_CATEGORIES = frozenset(
    {
        TransactionCategory.ROOM,
        TransactionCategory.CANCELLATION_FEE,
        TransactionCategory.NO_SHOW_FEE,
    }
)


def load_extra_charge(session: LedgerSession, hotel_id: str, extra_charge_id: str) -> ExtraCharge:
    extra_charge = session.get_extra_charge(extra_charge_id)
    if extra_charge is None:
        raise NotFoundError("ExtraCharge", extra_charge_id)
    if extra_charge.hotel_id != hotel_id:
        raise ValidationError(
            f"Extra charge {extra_charge_id} does not belong to hotel {hotel_id}"
        )
    return extra_charge


def load_meal_plan(session: LedgerSession, hotel_id: str, meal_plan_id: str) -> MealPlan:
    meal_plan = session.get_meal_plan(meal_plan_id)
    if meal_plan is None:
        raise NotFoundError("MealPlan", meal_plan_id)
    if meal_plan.hotel_id != hotel_id:
        raise ValidationError(f"Meal plan {meal_plan_id} does not belong to hotel {hotel_id}")
    return meal_plan


def build_tax_context(
    session: LedgerSession,
    hotel_id: str,
    category: TransactionCategory | str,
    *,
    room_id: str | None = None,
    extra_charge_id: str | None = None,
    meal_plan_id: str | None = None,
    rate_ids: Iterable[str] = (),
) -> TaxContext:
    """Gather the candidate rate sets for one taxable object.

    ``rate_ids`` are explicit rates chosen by the producer; they count as the
    object's own rates, like an extra charge's.
    """
    category = TransactionCategory(category)

    room_rates: list[TaxRate] = []
    if room_id is not None and category == TransactionCategory.ROOM:
        room_rates = session.room_tax_rates(hotel_id, room_id)

    extra_rates: list[TaxRate] = list(session.get_tax_rates(list(rate_ids)))
    if extra_charge_id is not None:
        extra_charge = load_extra_charge(session, hotel_id, extra_charge_id)
        extra_rates.extend(session.get_tax_rates(extra_charge.tax_rate_ids))

    meal_plan_rates: list[TaxRate] = []
    if meal_plan_id is not None and extra_charge_id is None:
        meal_plan = load_meal_plan(session, hotel_id, meal_plan_id)
        meal_plan_rates = session.get_tax_rates(meal_plan.tax_rate_ids())

    defaults: list[TaxRate] = []
    if category in HOTEL_DEFAULT_CATEGORIES:
        defaults = session.hotel_tax_rates(hotel_id, category)

    return TaxContext(
        hotel_id=hotel_id,
        room_rates=tuple(room_rates),
        extra_charge_rates=tuple(extra_rates),
        meal_plan_rates=tuple(meal_plan_rates),
        hotel_default_rates=tuple(defaults),
    )


def resolve_rates(
    session: LedgerSession,
    hotel_id: str,
    category: TransactionCategory | str,
    **refs,
) -> list[TaxRate]:
    return resolve_tax_rates(build_tax_context(session, hotel_id, category, **refs))


def room_tax_stack(session: LedgerSession, hotel_id: str, room_id: str | None) -> list[TaxRate]:
    """Room-charge tax stack: the room's own rates, else the hotel's room
    defaults. Rates of other hotels are dropped."""
    rates: list[TaxRate] = []
    if room_id is not None:
        rates = session.room_tax_rates(hotel_id, room_id)
    if not rates:
        rates = session.hotel_tax_rates(hotel_id, TransactionCategory.ROOM)
    return owned_rates(rates, hotel_id)
