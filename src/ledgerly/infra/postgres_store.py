"""PostgreSQL ledger store.

One unit of work = one database transaction (``txn()``). The folio rows of
the unit are locked with ``SELECT ... FOR UPDATE`` in ascending id order
before any read, so concurrent writers on the same folio serialize and
transfers across two folios cannot deadlock. Events are written to the
outbox in the same transaction.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterable, Iterator

from psycopg2.extensions import connection as PgConnection, cursor as PgCursor

from ledgerly.domain.events import LedgerEvent
from ledgerly.domain.folio import Folio, FolioTransaction, TransactionCategory
from ledgerly.domain.meal_plan import ExtraCharge, MealPlan
from ledgerly.domain.tax import TaxRate

from .db import lock_folios, txn
from .repositories import catalog_repository as catalog
from .repositories import folio_repository as folios
from .repositories import outbox_repository as outbox
from .repositories import transactions_repository as transactions
from .store import StoreUsageError


class PostgresLedgerStore:
    def __init__(self, conn: PgConnection | None = None) -> None:
        # With no connection, each session opens (and closes) its own.
        self._conn = conn

    @contextmanager
    def unit_of_work(self, folio_ids: Iterable[str]) -> Iterator[PostgresSession]:
        requested = frozenset(str(f) for f in folio_ids)
        with txn(self._conn) as cur:
            lock_folios(cur, requested)
            yield PostgresSession(cur, locked=requested)

    @contextmanager
    def read_session(self) -> Iterator[PostgresSession]:
        with txn(self._conn) as cur:
            yield PostgresSession(cur, locked=None)


class PostgresSession:
    def __init__(self, cur: PgCursor, locked: frozenset[str] | None) -> None:
        self._cur = cur
        self._locked = locked
        self.events: list[LedgerEvent] = []

    def _require_lock(self, folio_id: str) -> None:
        if self._locked is None:
            raise StoreUsageError("read session cannot write")
        if folio_id not in self._locked:
            raise StoreUsageError(f"folio {folio_id} is not locked by this unit of work")

    # Folios
    def get_folio(self, folio_id: str) -> Folio | None:
        return folios.get_folio(self._cur, folio_id)

    def list_folios(
        self,
        *,
        hotel_id: str | None = None,
        folio_ids: Iterable[str] | None = None,
    ) -> list[Folio]:
        return folios.list_folios(self._cur, hotel_id=hotel_id, folio_ids=folio_ids)

    def insert_folio(self, folio: Folio) -> Folio:
        self._require_lock(folio.id)
        return folios.insert_folio(self._cur, folio)

    def update_folio(self, folio: Folio) -> Folio:
        self._require_lock(folio.id)
        try:
            return folios.update_folio(self._cur, folio)
        except LookupError as exc:
            raise StoreUsageError(str(exc)) from exc

    # Transactions
    def get_transaction(self, transaction_id: str) -> FolioTransaction | None:
        return transactions.get_transaction(self._cur, transaction_id)

    def list_transactions(self, folio_id: str) -> list[FolioTransaction]:
        return transactions.list_transactions(self._cur, folio_id)

    def list_by_source(self, source_transaction_id: str) -> list[FolioTransaction]:
        return transactions.list_by_source(self._cur, source_transaction_id)

    def list_by_original(self, original_transaction_id: str) -> list[FolioTransaction]:
        return transactions.list_by_original(self._cur, original_transaction_id)

    def insert_transaction(self, transaction: FolioTransaction) -> FolioTransaction:
        self._require_lock(transaction.folio_id)
        return transactions.insert_transaction(self._cur, transaction)

    def mark_voided(self, transaction: FolioTransaction) -> FolioTransaction:
        self._require_lock(transaction.folio_id)
        try:
            return transactions.mark_voided(self._cur, transaction)
        except LookupError as exc:
            raise StoreUsageError(str(exc)) from exc

    # Catalog
    def room_tax_rates(self, hotel_id: str, room_id: str) -> list[TaxRate]:
        return catalog.room_tax_rates(self._cur, hotel_id, room_id)

    def hotel_tax_rates(self, hotel_id: str, category: TransactionCategory) -> list[TaxRate]:
        return catalog.hotel_tax_rates(self._cur, hotel_id, TransactionCategory(category).value)

    def get_extra_charge(self, extra_charge_id: str) -> ExtraCharge | None:
        return catalog.get_extra_charge(self._cur, extra_charge_id)

    def get_tax_rates(self, rate_ids: Iterable[str]) -> list[TaxRate]:
        return catalog.get_tax_rates(self._cur, rate_ids)

    def get_meal_plan(self, meal_plan_id: str) -> MealPlan | None:
        return catalog.get_meal_plan(self._cur, meal_plan_id)

    def hotel_ledger_config(self, hotel_id: str) -> dict[str, Any]:
        return catalog.hotel_ledger_config(self._cur, hotel_id)

    # Events
    def add_event(self, event: LedgerEvent) -> None:
        if self._locked is None:
            raise StoreUsageError("read session cannot emit events")
        outbox.emit_ledger_event(self._cur, event)
        self.events.append(event)
