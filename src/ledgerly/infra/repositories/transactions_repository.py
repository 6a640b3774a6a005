"""Folio transactions repository: append-only ledger rows.

Uses raw SQL with psycopg2 (no ORM). There is no update or delete: rows are
inserted once, and ``mark_voided`` only touches the void columns of an
active row.
"""

from __future__ import annotations

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from ledgerly.domain.folio import FolioTransaction, TaxLine

_FIELDS = (
    "id",
    "folio_id",
    "hotel_id",
    "transaction_type",
    "category",
    "source",
    "description",
    "quantity",
    "unit_price",
    "amount",
    "total_amount",
    "tax_amount",
    "service_charge_amount",
    "discount_amount",
    "tax_breakdown",
    "tax_inclusive",
    "payment_method",
    "room_final_rate",
    "room_final_net_amount",
    "room_final_rate_tax",
    "room_final_base_rate",
    "meal_plan_id",
    "extra_charge_id",
    "room_id",
    "original_transaction_id",
    "source_transaction_id",
    "counterpart_folio_id",
    "status",
    "void_reason",
    "voided_by",
    "voided_at",
    "posted_by",
    "created_at",
)
_COLUMNS = ", ".join(_FIELDS)


def _breakdown_to_json(lines: tuple[TaxLine, ...]) -> str:
    return json.dumps([line.model_dump(mode="json") for line in lines])


def _row_to_transaction(row: tuple[Any, ...]) -> FolioTransaction:
    data = dict(zip(_FIELDS, row))
    breakdown = data["tax_breakdown"] or []
    if isinstance(breakdown, str):
        breakdown = json.loads(breakdown)
    data["tax_breakdown"] = tuple(TaxLine.model_validate(item) for item in breakdown)
    for key in ("id", "folio_id", "hotel_id"):
        data[key] = str(data[key])
    return FolioTransaction.model_validate(data)


def get_transaction(cur: PgCursor, transaction_id: str) -> FolioTransaction | None:
    cur.execute(f"SELECT {_COLUMNS} FROM folio_transactions WHERE id = %s", (transaction_id,))
    row = cur.fetchone()
    return _row_to_transaction(row) if row else None


def list_transactions(cur: PgCursor, folio_id: str) -> list[FolioTransaction]:
    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM folio_transactions
        WHERE folio_id = %s
        ORDER BY created_at, id
        """,
        (folio_id,),
    )
    return [_row_to_transaction(r) for r in cur.fetchall()]


def list_by_source(cur: PgCursor, source_transaction_id: str) -> list[FolioTransaction]:
    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM folio_transactions
        WHERE source_transaction_id = %s
        ORDER BY created_at, id
        """,
        (source_transaction_id,),
    )
    return [_row_to_transaction(r) for r in cur.fetchall()]


def list_by_original(cur: PgCursor, original_transaction_id: str) -> list[FolioTransaction]:
    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM folio_transactions
        WHERE original_transaction_id = %s
        ORDER BY created_at, id
        """,
        (original_transaction_id,),
    )
    return [_row_to_transaction(r) for r in cur.fetchall()]


def insert_transaction(cur: PgCursor, transaction: FolioTransaction) -> FolioTransaction:
    """Insert one transaction row.

    Args:
        cur: Database cursor (within the unit of work holding the folio lock).
        transaction: Fully built, quantized transaction.

    Returns:
        The transaction as stored.
    """
    values = transaction.model_dump(mode="python")
    params = []
    for field in _FIELDS:
        value = values[field]
        if field == "tax_breakdown":
            value = _breakdown_to_json(transaction.tax_breakdown)
        elif hasattr(value, "value"):
            value = value.value
        params.append(value)
    placeholders = ", ".join(["%s"] * len(_FIELDS))
    cur.execute(
        f"""
        INSERT INTO folio_transactions ({_COLUMNS})
        VALUES ({placeholders})
        RETURNING {_COLUMNS}
        """,
        tuple(params),
    )
    return _row_to_transaction(cur.fetchone())


def mark_voided(cur: PgCursor, transaction: FolioTransaction) -> FolioTransaction:
    """Apply the active -> voided transition.

    Raises:
        LookupError: The row does not exist or is already voided.
    """
    cur.execute(
        f"""
        UPDATE folio_transactions
        SET status = 'voided', void_reason = %s, voided_by = %s, voided_at = %s
        WHERE id = %s AND status = 'active'
        RETURNING {_COLUMNS}
        """,
        (transaction.void_reason, transaction.voided_by, transaction.voided_at, transaction.id),
    )
    row = cur.fetchone()
    if row is None:
        raise LookupError(f"transaction {transaction.id} is missing or already voided")
    return _row_to_transaction(row)
