"""In-memory ledger store.

Transactions live in an insertion-ordered arena keyed by id, with a folio
index (folio id -> transaction ids). Per-folio locks serialize units of work
on the same folio; different folios proceed in parallel.

Locks are not re-entrant: a thread must not open a second unit of work on a
folio it already holds.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator

from ledgerly.domain.events import LedgerEvent
from ledgerly.domain.folio import Folio, FolioTransaction, TransactionCategory
from ledgerly.domain.meal_plan import ExtraCharge, MealPlan
from ledgerly.domain.tax import TaxRate

from .store import StoreUsageError


class InMemoryLedgerStore:
    def __init__(self) -> None:
        self._folios: dict[str, Folio] = {}
        self._transactions: dict[str, FolioTransaction] = {}
        self._by_folio: dict[str, list[str]] = {}
        self._events: list[LedgerEvent] = []

        # Catalog
        self._tax_rates: dict[str, TaxRate] = {}
        self._room_rates: dict[tuple[str, str], list[str]] = {}
        self._hotel_rates: dict[tuple[str, str], list[str]] = {}
        self._extra_charges: dict[str, ExtraCharge] = {}
        self._meal_plans: dict[str, MealPlan] = {}
        self._hotel_config: dict[str, dict[str, Any]] = {}

        self._registry_lock = threading.Lock()
        self._commit_lock = threading.RLock()
        self._folio_locks: dict[str, threading.Lock] = {}

    # ── Catalog setup ─────────────────────────────────────

    def add_tax_rate(self, rate: TaxRate) -> TaxRate:
        self._tax_rates[rate.id] = rate
        return rate

    def attach_room_rates(self, hotel_id: str, room_id: str, rate_ids: Iterable[str]) -> None:
        self._room_rates[(hotel_id, room_id)] = list(rate_ids)

    def attach_hotel_rates(
        self,
        hotel_id: str,
        category: TransactionCategory | str,
        rate_ids: Iterable[str],
    ) -> None:
        self._hotel_rates[(hotel_id, TransactionCategory(category).value)] = list(rate_ids)

    def add_extra_charge(self, extra_charge: ExtraCharge) -> ExtraCharge:
        self._extra_charges[extra_charge.id] = extra_charge
        return extra_charge

    def add_meal_plan(self, meal_plan: MealPlan) -> MealPlan:
        self._meal_plans[meal_plan.id] = meal_plan
        for component in meal_plan.components:
            self._extra_charges.setdefault(component.extra_charge.id, component.extra_charge)
        return meal_plan

    def set_hotel_ledger_config(self, hotel_id: str, config: dict[str, Any]) -> None:
        self._hotel_config[hotel_id] = dict(config)

    def add_folio(self, folio: Folio) -> Folio:
        """Seed a folio directly, outside any unit of work."""
        with self._commit_lock:
            self._folios[folio.id] = folio
            self._by_folio.setdefault(folio.id, [])
        return folio

    @property
    def events(self) -> list[LedgerEvent]:
        with self._commit_lock:
            return list(self._events)

    # ── Sessions ──────────────────────────────────────────

    def _lock_for(self, folio_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._folio_locks.get(folio_id)
            if lock is None:
                lock = threading.Lock()
                self._folio_locks[folio_id] = lock
            return lock

    @contextmanager
    def unit_of_work(self, folio_ids: Iterable[str]) -> Iterator[_MemorySession]:
        ordered_ids = sorted({str(f) for f in folio_ids})
        acquired: list[threading.Lock] = []
        try:
            for folio_id in ordered_ids:
                lock = self._lock_for(folio_id)
                lock.acquire()
                acquired.append(lock)
            session = _MemorySession(self, locked=frozenset(ordered_ids))
            yield session
            session._commit()
        finally:
            for lock in reversed(acquired):
                lock.release()

    @contextmanager
    def read_session(self) -> Iterator[_MemorySession]:
        yield _MemorySession(self, locked=None)


class _MemorySession:
    """Session over an InMemoryLedgerStore; writes are staged until commit."""

    def __init__(self, store: InMemoryLedgerStore, locked: frozenset[str] | None):
        self._store = store
        self._locked = locked
        self._folios: dict[str, Folio] = {}
        self._new_transactions: dict[str, FolioTransaction] = {}
        self._voids: dict[str, FolioTransaction] = {}
        self.events: list[LedgerEvent] = []

    # ── Guards ────────────────────────────────────────────

    def _require_lock(self, folio_id: str) -> None:
        if self._locked is None:
            raise StoreUsageError("read session cannot write")
        if folio_id not in self._locked:
            raise StoreUsageError(f"folio {folio_id} is not locked by this unit of work")

    # ── Folios ────────────────────────────────────────────

    def get_folio(self, folio_id: str) -> Folio | None:
        if folio_id in self._folios:
            return self._folios[folio_id]
        with self._store._commit_lock:
            return self._store._folios.get(folio_id)

    def list_folios(
        self,
        *,
        hotel_id: str | None = None,
        folio_ids: Iterable[str] | None = None,
    ) -> list[Folio]:
        with self._store._commit_lock:
            merged = {**self._store._folios, **self._folios}
        wanted = None if folio_ids is None else set(folio_ids)
        result = [
            f
            for f in merged.values()
            if (hotel_id is None or f.hotel_id == hotel_id)
            and (wanted is None or f.id in wanted)
        ]
        return sorted(result, key=lambda f: f.id)

    def insert_folio(self, folio: Folio) -> Folio:
        self._require_lock(folio.id)
        if self.get_folio(folio.id) is not None:
            raise StoreUsageError(f"folio {folio.id} already exists")
        self._folios[folio.id] = folio
        return folio

    def update_folio(self, folio: Folio) -> Folio:
        self._require_lock(folio.id)
        if self.get_folio(folio.id) is None:
            raise StoreUsageError(f"folio {folio.id} does not exist")
        self._folios[folio.id] = folio
        return folio

    # ── Transactions ──────────────────────────────────────

    def get_transaction(self, transaction_id: str) -> FolioTransaction | None:
        if transaction_id in self._voids:
            return self._voids[transaction_id]
        if transaction_id in self._new_transactions:
            return self._new_transactions[transaction_id]
        with self._store._commit_lock:
            return self._store._transactions.get(transaction_id)

    def _all_transactions(self) -> list[FolioTransaction]:
        with self._store._commit_lock:
            rows = list(self._store._transactions.values())
        rows.extend(self._new_transactions.values())
        return [self._voids.get(t.id, t) for t in rows]

    def list_transactions(self, folio_id: str) -> list[FolioTransaction]:
        with self._store._commit_lock:
            rows = [self._store._transactions[i] for i in self._store._by_folio.get(folio_id, [])]
        rows.extend(t for t in self._new_transactions.values() if t.folio_id == folio_id)
        return [self._voids.get(t.id, t) for t in rows]

    def list_by_source(self, source_transaction_id: str) -> list[FolioTransaction]:
        return [
            t for t in self._all_transactions()
            if t.source_transaction_id == source_transaction_id
        ]

    def list_by_original(self, original_transaction_id: str) -> list[FolioTransaction]:
        return [
            t for t in self._all_transactions()
            if t.original_transaction_id == original_transaction_id
        ]

    def insert_transaction(self, transaction: FolioTransaction) -> FolioTransaction:
        self._require_lock(transaction.folio_id)
        if self.get_transaction(transaction.id) is not None:
            raise StoreUsageError(f"transaction {transaction.id} already exists")
        self._new_transactions[transaction.id] = transaction
        return transaction

    def mark_voided(self, transaction: FolioTransaction) -> FolioTransaction:
        self._require_lock(transaction.folio_id)
        current = self.get_transaction(transaction.id)
        if current is None:
            raise StoreUsageError(f"transaction {transaction.id} does not exist")
        self._voids[transaction.id] = transaction
        return transaction

    # ── Catalog ───────────────────────────────────────────

    def get_tax_rates(self, rate_ids: Iterable[str]) -> list[TaxRate]:
        rates = self._store._tax_rates
        return [rates[i] for i in rate_ids if i in rates]

    def room_tax_rates(self, hotel_id: str, room_id: str) -> list[TaxRate]:
        return self.get_tax_rates(self._store._room_rates.get((hotel_id, room_id), []))

    def hotel_tax_rates(self, hotel_id: str, category: TransactionCategory) -> list[TaxRate]:
        key = (hotel_id, TransactionCategory(category).value)
        return self.get_tax_rates(self._store._hotel_rates.get(key, []))

    def get_extra_charge(self, extra_charge_id: str) -> ExtraCharge | None:
        return self._store._extra_charges.get(extra_charge_id)

    def get_meal_plan(self, meal_plan_id: str) -> MealPlan | None:
        return self._store._meal_plans.get(meal_plan_id)

    def hotel_ledger_config(self, hotel_id: str) -> dict[str, Any]:
        return dict(self._store._hotel_config.get(hotel_id, {}))

    # ── Events ────────────────────────────────────────────

    def add_event(self, event: LedgerEvent) -> None:
        if self._locked is None:
            raise StoreUsageError("read session cannot emit events")
        self.events.append(event)

    # ── Commit ────────────────────────────────────────────

    def _commit(self) -> None:
        store = self._store
        with store._commit_lock:
            for folio in self._folios.values():
                store._folios[folio.id] = folio
                store._by_folio.setdefault(folio.id, [])
            for transaction in self._new_transactions.values():
                store._transactions[transaction.id] = self._voids.get(transaction.id, transaction)
                store._by_folio.setdefault(transaction.folio_id, []).append(transaction.id)
            for transaction_id, voided in self._voids.items():
                store._transactions[transaction_id] = voided
            store._events.extend(self.events)
