"""Storage contract of the ledger engine.

A store hands out sessions. A *unit of work* session holds the locks of the
folios it was opened for (acquired in ascending id order) and applies all of
its writes atomically on success, none on failure. A *read* session takes no
locks and rejects writes.

Stores are append-only for transactions: the only mutation of an existing
transaction is ``mark_voided``.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Any, Iterable, Protocol

from ledgerly.domain.events import LedgerEvent
from ledgerly.domain.folio import Folio, FolioTransaction, TransactionCategory
from ledgerly.domain.meal_plan import ExtraCharge, MealPlan
from ledgerly.domain.tax import TaxRate


class LedgerSession(Protocol):
    events: list[LedgerEvent]

    # Folios
    def get_folio(self, folio_id: str) -> Folio | None: ...

    def list_folios(
        self,
        *,
        hotel_id: str | None = None,
        folio_ids: Iterable[str] | None = None,
    ) -> list[Folio]: ...

    def insert_folio(self, folio: Folio) -> Folio: ...

    def update_folio(self, folio: Folio) -> Folio: ...

    # Transactions
    def get_transaction(self, transaction_id: str) -> FolioTransaction | None: ...

    def list_transactions(self, folio_id: str) -> list[FolioTransaction]: ...

    def list_by_source(self, source_transaction_id: str) -> list[FolioTransaction]: ...

    def list_by_original(self, original_transaction_id: str) -> list[FolioTransaction]: ...

    def insert_transaction(self, transaction: FolioTransaction) -> FolioTransaction: ...

    def mark_voided(self, transaction: FolioTransaction) -> FolioTransaction: ...

    # Catalog
    def room_tax_rates(self, hotel_id: str, room_id: str) -> list[TaxRate]: ...

    def hotel_tax_rates(self, hotel_id: str, category: TransactionCategory) -> list[TaxRate]: ...

    def get_extra_charge(self, extra_charge_id: str) -> ExtraCharge | None: ...

    def get_tax_rates(self, rate_ids: Iterable[str]) -> list[TaxRate]: ...

    def get_meal_plan(self, meal_plan_id: str) -> MealPlan | None: ...

    def hotel_ledger_config(self, hotel_id: str) -> dict[str, Any]: ...

    # Events
    def add_event(self, event: LedgerEvent) -> None: ...


class LedgerStore(Protocol):
    def unit_of_work(self, folio_ids: Iterable[str]) -> AbstractContextManager[LedgerSession]: ...

    def read_session(self) -> AbstractContextManager[LedgerSession]: ...


class StoreUsageError(RuntimeError):
    """A session was used outside its contract (write without lock, etc.)."""
