"""Catalog repository: tax rates, extra charges, meal plans, hotel config.

Uses raw SQL with psycopg2 (no ORM). Read-only from the ledger's point of
view; rate sets come back in their configured ``position`` order.
"""

from __future__ import annotations

import json
from typing import Any, Iterable

from psycopg2.extensions import cursor as PgCursor

from ledgerly.domain.meal_plan import ExtraCharge, MealPlan, MealPlanComponent
from ledgerly.domain.tax import TaxRate

_RATE_COLUMNS = "r.id, r.hotel_id, r.name, r.posting_type, r.percentage, r.amount"


def _row_to_rate(row: tuple[Any, ...]) -> TaxRate:
    return TaxRate(
        id=str(row[0]),
        hotel_id=str(row[1]),
        name=row[2] or "",
        posting_type=row[3],
        percentage=row[4],
        amount=row[5],
    )


def get_tax_rates(cur: PgCursor, rate_ids: Iterable[str]) -> list[TaxRate]:
    """Fetch rates by id, preserving the order of ``rate_ids``."""
    ids = list(dict.fromkeys(rate_ids))
    if not ids:
        return []
    cur.execute(f"SELECT {_RATE_COLUMNS} FROM tax_rates r WHERE r.id = ANY(%s)", (ids,))
    by_id = {rate.id: rate for rate in map(_row_to_rate, cur.fetchall())}
    return [by_id[i] for i in ids if i in by_id]


def room_tax_rates(cur: PgCursor, hotel_id: str, room_id: str) -> list[TaxRate]:
    cur.execute(
        f"""
        SELECT {_RATE_COLUMNS}
        FROM room_tax_rates l
        JOIN tax_rates r ON r.id = l.tax_rate_id
        WHERE l.hotel_id = %s AND l.room_id = %s
        ORDER BY l.position, r.id
        """,
        (hotel_id, room_id),
    )
    return [_row_to_rate(r) for r in cur.fetchall()]


def hotel_tax_rates(cur: PgCursor, hotel_id: str, category: str) -> list[TaxRate]:
    cur.execute(
        f"""
        SELECT {_RATE_COLUMNS}
        FROM hotel_category_tax_rates l
        JOIN tax_rates r ON r.id = l.tax_rate_id
        WHERE l.hotel_id = %s AND l.category = %s
        ORDER BY l.position, r.id
        """,
        (hotel_id, category),
    )
    return [_row_to_rate(r) for r in cur.fetchall()]


def _extra_charge_rate_ids(cur: PgCursor, extra_charge_id: str) -> tuple[str, ...]:
    cur.execute(
        """
        SELECT tax_rate_id
        FROM extra_charge_tax_rates
        WHERE extra_charge_id = %s
        ORDER BY position, tax_rate_id
        """,
        (extra_charge_id,),
    )
    return tuple(str(r[0]) for r in cur.fetchall())


def get_extra_charge(cur: PgCursor, extra_charge_id: str) -> ExtraCharge | None:
    cur.execute(
        """
        SELECT id, hotel_id, name, unit_price, fixed_price
        FROM extra_charges
        WHERE id = %s
        """,
        (extra_charge_id,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return ExtraCharge(
        id=str(row[0]),
        hotel_id=str(row[1]),
        name=row[2] or "",
        unit_price=row[3],
        fixed_price=bool(row[4]),
        tax_rate_ids=_extra_charge_rate_ids(cur, str(row[0])),
    )


def get_meal_plan(cur: PgCursor, meal_plan_id: str) -> MealPlan | None:
    cur.execute(
        "SELECT id, hotel_id, name FROM meal_plans WHERE id = %s",
        (meal_plan_id,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    plan_id, hotel_id, name = str(row[0]), str(row[1]), row[2] or ""

    cur.execute(
        """
        SELECT extra_charge_id, quantity_per_day, target_guest_type
        FROM meal_plan_components
        WHERE meal_plan_id = %s
        ORDER BY position, extra_charge_id
        """,
        (plan_id,),
    )
    component_rows = cur.fetchall()
    components: list[MealPlanComponent] = []
    for extra_charge_id, quantity_per_day, target in component_rows:
        extra_charge = get_extra_charge(cur, str(extra_charge_id))
        if extra_charge is None:
            continue
        components.append(
            MealPlanComponent(
                extra_charge=extra_charge,
                quantity_per_day=quantity_per_day,
                target_guest_type=target,
            )
        )
    return MealPlan(id=plan_id, hotel_id=hotel_id, name=name, components=tuple(components))


def hotel_ledger_config(cur: PgCursor, hotel_id: str) -> dict[str, Any]:
    """Per-hotel ledger overrides (hotels.ledger_config JSONB)."""
    cur.execute("SELECT ledger_config FROM hotels WHERE id = %s", (hotel_id,))
    row = cur.fetchone()
    if row is None or row[0] is None:
        return {}
    config = row[0]
    if isinstance(config, str):
        config = json.loads(config)
    return dict(config) if isinstance(config, dict) else {}
