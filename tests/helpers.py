"""Shared test helper functions for ledger tests.

Regular functions and small callables, importable by conftest.py and by
individual test files. These are NOT fixtures.
"""

from __future__ import annotations

import itertools
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from ledgerly.domain.folio import FolioTransaction, TransactionCategory

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TickingClock:
    """Clock advancing one second per call, so creation order is strict."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=1)
            return self._now


class SequenceIds:
    """Deterministic id factory: id-0001, id-0002, ..."""

    def __init__(self, prefix: str = "id") -> None:
        self._counter = itertools.count(1)
        self._prefix = prefix
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            return f"{self._prefix}-{next(self._counter):04d}"


_txn_ids = itertools.count(1)


def make_txn(**overrides) -> FolioTransaction:
    """Build a FolioTransaction directly, bypassing the ledger."""
    n = next(_txn_ids)
    amount = Decimal(str(overrides.pop("amount", "0")))
    fields = {
        "id": f"t-{n:05d}",
        "folio_id": "F1",
        "hotel_id": "H1",
        "transaction_type": "charge",
        "category": "misc",
        "amount": amount,
        "total_amount": amount,
        "created_at": BASE_TIME + timedelta(seconds=n),
    }
    fields.update(overrides)
    for key in ("total_amount", "tax_amount", "service_charge_amount", "discount_amount"):
        if key in fields:
            fields[key] = Decimal(str(fields[key]))
    return FolioTransaction(**fields)


def write_lone_leg(engine, charge, target_folio_id, *, category="transfer_out", amount=None):
    """Write one transfer leg without its mate, as a partial write would leave it."""
    category = TransactionCategory(category)
    outgoing = category == TransactionCategory.TRANSFER_OUT
    folio_id = charge.folio_id if outgoing else target_folio_id
    counterpart = target_folio_id if outgoing else charge.folio_id

    def work(session):
        leg = engine.ledger.append_in(
            session,
            folio_id,
            engine.transfers.leg_draft(
                charge,
                category=category,
                mate_id="mate-of-lone",
                counterpart_folio_id=counterpart,
                posted_by="u1",
                amount=amount,
            ),
        )
        engine.ledger.refresh_in(session, folio_id)
        return leg

    return engine.ledger.execute([folio_id], work)


def void_alone(engine, transaction, reason="partial void"):
    """Void one row without its linked rows, as a write predating linked voids left it."""

    def work(session):
        voided = engine.ledger.void_in(session, transaction.id, reason, "u1", cascade=False)
        engine.ledger.refresh_in(session, transaction.folio_id)
        return voided

    return engine.ledger.execute([transaction.folio_id], work)
