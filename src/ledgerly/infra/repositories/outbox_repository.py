"""Outbox repository - ledger event persistence.

Uses raw SQL with psycopg2 (no ORM).
"""

import json

from psycopg2.extensions import cursor as PgCursor

from ledgerly.domain.events import LedgerEvent


def emit_event(
    cur: PgCursor,
    *,
    hotel_id: str,
    event_type: str,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict | None = None,
    correlation_id: str | None = None,
    occurred_at=None,
) -> int:
    """Emit an event to the outbox.

    Args:
        cur: Database cursor (within transaction).
        hotel_id: Hotel identifier.
        event_type: Event type (e.g., transaction.appended).
        aggregate_type: Aggregate type (e.g., folio_transaction).
        aggregate_id: Aggregate ID.
        payload: Optional JSON payload (ids and amounts only).
        correlation_id: Optional correlation ID for tracing.
        occurred_at: Event timestamp; defaults to now().

    Returns:
        The generated event ID.
    """
    payload_json = json.dumps(payload) if payload else None

    cur.execute(
        """
        INSERT INTO outbox_events (
            hotel_id, event_type, aggregate_type,
            aggregate_id, payload, correlation_id, occurred_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
        RETURNING id
        """,
        (
            hotel_id,
            event_type,
            aggregate_type,
            aggregate_id,
            payload_json,
            correlation_id,
            occurred_at,
        ),
    )
    return cur.fetchone()[0]


def emit_ledger_event(cur: PgCursor, event: LedgerEvent) -> int:
    return emit_event(
        cur,
        hotel_id=event.hotel_id,
        event_type=event.event_type,
        aggregate_type=event.aggregate_type,
        aggregate_id=event.aggregate_id,
        payload=event.payload,
        correlation_id=event.correlation_id,
        occurred_at=event.occurred_at,
    )
