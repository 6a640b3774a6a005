"""Folio repository: folio rows and their cached totals.

Uses raw SQL with psycopg2 (no ORM).
"""

from __future__ import annotations

from typing import Any, Iterable

from psycopg2.extensions import cursor as PgCursor

from ledgerly.domain.folio import Folio

_COLUMNS = """
    id, hotel_id, folio_type, currency, status, reservation_id, company_id,
    balance, total_charges, total_payments, total_adjustments, total_tax,
    total_service_charge, total_discount, created_at
"""


def _row_to_folio(row: tuple[Any, ...]) -> Folio:
    return Folio(
        id=str(row[0]),
        hotel_id=str(row[1]),
        folio_type=row[2],
        currency=str(row[3]).strip(),
        status=row[4],
        reservation_id=str(row[5]) if row[5] else None,
        company_id=str(row[6]) if row[6] else None,
        balance=row[7],
        total_charges=row[8],
        total_payments=row[9],
        total_adjustments=row[10],
        total_tax=row[11],
        total_service_charge=row[12],
        total_discount=row[13],
        created_at=row[14],
    )


def get_folio(cur: PgCursor, folio_id: str) -> Folio | None:
    cur.execute(f"SELECT {_COLUMNS} FROM folios WHERE id = %s", (folio_id,))
    row = cur.fetchone()
    return _row_to_folio(row) if row else None


def list_folios(
    cur: PgCursor,
    *,
    hotel_id: str | None = None,
    folio_ids: Iterable[str] | None = None,
) -> list[Folio]:
    """List folios, optionally filtered by hotel and/or id set, ordered by id."""
    clauses: list[str] = []
    params: list[Any] = []
    if hotel_id is not None:
        clauses.append("hotel_id = %s")
        params.append(hotel_id)
    if folio_ids is not None:
        clauses.append("id = ANY(%s)")
        params.append(list(folio_ids))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    cur.execute(f"SELECT {_COLUMNS} FROM folios {where} ORDER BY id", tuple(params))
    return [_row_to_folio(r) for r in cur.fetchall()]


def insert_folio(cur: PgCursor, folio: Folio) -> Folio:
    cur.execute(
        f"""
        INSERT INTO folios (
            id, hotel_id, folio_type, currency, status, reservation_id,
            company_id, created_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
        RETURNING {_COLUMNS}
        """,
        (
            folio.id,
            folio.hotel_id,
            folio.folio_type.value,
            folio.currency,
            folio.status.value,
            folio.reservation_id,
            folio.company_id,
            folio.created_at,
        ),
    )
    return _row_to_folio(cur.fetchone())


def update_folio(cur: PgCursor, folio: Folio) -> Folio:
    """Store status and cached totals; identity columns never change."""
    cur.execute(
        f"""
        UPDATE folios
        SET status = %s,
            balance = %s,
            total_charges = %s,
            total_payments = %s,
            total_adjustments = %s,
            total_tax = %s,
            total_service_charge = %s,
            total_discount = %s,
            updated_at = now()
        WHERE id = %s
        RETURNING {_COLUMNS}
        """,
        (
            folio.status.value,
            folio.balance,
            folio.total_charges,
            folio.total_payments,
            folio.total_adjustments,
            folio.total_tax,
            folio.total_service_charge,
            folio.total_discount,
            folio.id,
        ),
    )
    row = cur.fetchone()
    if row is None:
        raise LookupError(f"folio {folio.id} does not exist")
    return _row_to_folio(row)
