"""Transaction ledger service: append-only folio transactions.

Rules:
- Every write runs in one unit of work holding the folio lock(s):
  append/void + balance refresh + events, all or nothing.
- Transactions are never edited or deleted; ``void`` is the only transition.
- The folio's stored totals are a cache refreshed from the full transaction
  set after every change.
- Events are published to subscribers after commit, outside the locks.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, TypeVar

from ledgerly.domain import events as ev
from ledgerly.domain.balance import recompute_balance
from ledgerly.domain.errors import (
    AlreadyVoidedError,
    FolioClosedError,
    NotFoundError,
    ValidationError,
)
from ledgerly.domain.events import EventBus, LedgerEvent
from ledgerly.domain.folio import (
    BalanceSnapshot,
    Folio,
    FolioStatus,
    FolioTransaction,
    FolioType,
    TransactionType,
)
from ledgerly.domain.ledger import TransactionDraft, build_transaction
from ledgerly.infra.settings import LedgerSettings, load_settings, settings_for_hotel
from ledgerly.infra.store import LedgerSession, LedgerStore
from ledgerly.infra.time import utc_now
from ledgerly.observability.correlation import correlation_scope, get_correlation_id
from ledgerly.observability.logging import get_logger
from ledgerly.observability.redaction import safe_log_context

logger = get_logger(__name__)

T = TypeVar("T")


def new_id() -> str:
    return str(uuid.uuid4())


class TransactionLedger:
    """Append-only store front for folio transactions.

    Public methods open their own unit of work. The ``*_in`` methods work
    inside a session opened by the caller, so composite operations (transfers,
    audit fixes) can share one unit of work.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        bus: EventBus | None = None,
        settings: LedgerSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self.store = store
        self.bus = bus or EventBus()
        self.settings = settings or load_settings()
        self.clock = clock
        self.new_id = id_factory

    # ── Unit of work ──────────────────────────────────────

    def execute(self, folio_ids: Iterable[str], work: Callable[[LedgerSession], T]) -> T:
        """Run ``work`` in one unit of work over ``folio_ids``, then publish
        the events it produced."""
        with correlation_scope():
            with self.store.unit_of_work(folio_ids) as session:
                result = work(session)
            self.bus.publish(session.events)
        return result

    def settings_in(self, session: LedgerSession, hotel_id: str) -> LedgerSettings:
        return settings_for_hotel(self.settings, session.hotel_ledger_config(hotel_id))

    def event(
        self,
        event_type: str,
        *,
        hotel_id: str,
        aggregate_type: str,
        aggregate_id: str,
        payload: dict[str, Any] | None = None,
    ) -> LedgerEvent:
        return LedgerEvent(
            event_type=event_type,
            hotel_id=hotel_id,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            payload=payload or {},
            correlation_id=get_correlation_id() or None,
            occurred_at=self.clock(),
        )

    @staticmethod
    def require_folio(session: LedgerSession, folio_id: str) -> Folio:
        folio = session.get_folio(folio_id)
        if folio is None:
            raise NotFoundError("Folio", folio_id)
        return folio

    @staticmethod
    def require_transaction(session: LedgerSession, transaction_id: str) -> FolioTransaction:
        transaction = session.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    # ── Folios ────────────────────────────────────────────

    def open_folio_in(
        self,
        session: LedgerSession,
        folio_id: str,
        *,
        hotel_id: str,
        folio_type: FolioType | str = FolioType.GUEST,
        currency: str = "USD",
        reservation_id: str | None = None,
        company_id: str | None = None,
    ) -> Folio:
        if not currency or len(currency) != 3:
            raise ValidationError(f"Invalid currency code: {currency!r}")
        if session.get_folio(folio_id) is not None:
            raise ValidationError(f"Folio {folio_id} already exists")
        folio = Folio(
            id=folio_id,
            hotel_id=hotel_id,
            folio_type=FolioType(folio_type),
            currency=currency.upper(),
            reservation_id=reservation_id,
            company_id=company_id,
            created_at=self.clock(),
        )
        return session.insert_folio(folio)

    def open_folio(
        self,
        *,
        hotel_id: str,
        folio_type: FolioType | str = FolioType.GUEST,
        currency: str = "USD",
        folio_id: str | None = None,
        reservation_id: str | None = None,
        company_id: str | None = None,
    ) -> Folio:
        folio_id = folio_id or self.new_id()
        if not currency or len(currency) != 3:
            raise ValidationError(f"Invalid currency code: {currency!r}")
        return self.execute(
            [folio_id],
            lambda session: self.open_folio_in(
                session,
                folio_id,
                hotel_id=hotel_id,
                folio_type=folio_type,
                currency=currency,
                reservation_id=reservation_id,
                company_id=company_id,
            ),
        )

    def set_status_in(
        self,
        session: LedgerSession,
        folio_id: str,
        status: FolioStatus,
        actor_id: str,
    ) -> Folio:
        """Close or reopen a folio. Closing requires a settled balance."""
        folio = self.require_folio(session, folio_id)
        if folio.status == status:
            return folio
        if status == FolioStatus.CLOSED:
            snapshot = self.refresh_in(session, folio_id)
            settings = self.settings_in(session, folio.hotel_id)
            if snapshot.balance > settings.balance_epsilon:
                raise ValidationError(
                    f"Cannot close folio {folio_id} with outstanding balance {snapshot.balance}"
                )
            folio = self.require_folio(session, folio_id)
        updated = session.update_folio(folio.model_copy(update={"status": status}))
        session.add_event(
            self.event(
                ev.FOLIO_CLOSED if status == FolioStatus.CLOSED else ev.FOLIO_REOPENED,
                hotel_id=folio.hotel_id,
                aggregate_type="folio",
                aggregate_id=folio_id,
                payload={"folio_id": folio_id, "actor_id": actor_id},
            )
        )
        return updated

    def set_folio_status(self, folio_id: str, status: FolioStatus, actor_id: str) -> Folio:
        folio = self.execute(
            [folio_id], lambda session: self.set_status_in(session, folio_id, status, actor_id)
        )
        logger.info(
            "folio status changed",
            extra={
                "extra_fields": safe_log_context(
                    folio_id=folio_id, status=folio.status, actor_id=actor_id
                )
            },
        )
        return folio

    # ── Append ────────────────────────────────────────────

    def append_in(
        self,
        session: LedgerSession,
        folio_id: str,
        fields: TransactionDraft | Mapping[str, Any],
        *,
        transaction_id: str | None = None,
    ) -> FolioTransaction:
        folio = self.require_folio(session, folio_id)
        transaction = build_transaction(
            fields,
            folio,
            transaction_id=transaction_id or self.new_id(),
            created_at=self.clock(),
        )
        session.insert_transaction(transaction)
        session.add_event(
            self.event(
                ev.TRANSACTION_APPENDED,
                hotel_id=transaction.hotel_id,
                aggregate_type="folio_transaction",
                aggregate_id=transaction.id,
                payload={
                    "transaction_id": transaction.id,
                    "folio_id": transaction.folio_id,
                    "transaction_type": transaction.transaction_type.value,
                    "category": transaction.category.value,
                    "source": transaction.source.value,
                    "total_amount": str(transaction.total_amount),
                    "meal_plan_id": transaction.meal_plan_id,
                },
            )
        )
        return transaction

    def append(
        self,
        folio_id: str,
        fields: TransactionDraft | Mapping[str, Any],
    ) -> FolioTransaction:
        """Append one transaction and refresh the folio totals.

        Raises:
            NotFoundError: Folio does not exist.
            ValidationError: Malformed fields or cross-hotel reference.
            FolioClosedError: Folio is closed.
        """

        def work(session: LedgerSession) -> FolioTransaction:
            transaction = self.append_in(session, folio_id, fields)
            self.refresh_in(session, folio_id)
            return transaction

        transaction = self.execute([folio_id], work)
        logger.info(
            "folio transaction appended",
            extra={
                "extra_fields": safe_log_context(
                    folio_id=folio_id,
                    transaction_id=transaction.id,
                    transaction_type=transaction.transaction_type,
                    category=transaction.category,
                    total_amount=transaction.total_amount,
                    description=transaction.description,
                )
            },
        )
        return transaction

    # ── Void ──────────────────────────────────────────────

    @staticmethod
    def linked_rows(session: LedgerSession, transaction: FolioTransaction) -> list[FolioTransaction]:
        """Active rows that are voided together with ``transaction``.

        A transfer leg is linked to its mate (either leg may name the other
        through ``original_transaction_id``). A city-ledger payment is linked
        to the company posting it created, and that posting back to it.
        """
        if transaction.is_transfer_leg:
            candidates = list(session.list_by_original(transaction.id))
            if transaction.original_transaction_id:
                named = session.get_transaction(transaction.original_transaction_id)
                if named is not None:
                    candidates.append(named)
            rows = [
                t
                for t in candidates
                if t.is_transfer_leg
                and t.category != transaction.category
                and t.source_transaction_id == transaction.source_transaction_id
            ]
        elif transaction.transaction_type == TransactionType.PAYMENT:
            rows = [t for t in session.list_by_source(transaction.id) if t.is_city_ledger_posting]
        elif transaction.is_city_ledger_posting and transaction.source_transaction_id:
            payment = session.get_transaction(transaction.source_transaction_id)
            rows = [payment] if payment is not None else []
        else:
            return []
        linked: dict[str, FolioTransaction] = {}
        for t in rows:
            if t.id != transaction.id and not t.is_voided:
                linked[t.id] = t
        return list(linked.values())

    def void_folio_ids(self, session: LedgerSession, transaction: FolioTransaction) -> set[str]:
        """Folios a void of ``transaction`` writes to."""
        return {transaction.folio_id} | {t.folio_id for t in self.linked_rows(session, transaction)}

    def void_in(
        self,
        session: LedgerSession,
        transaction_id: str,
        reason: str,
        actor_id: str,
        *,
        cascade: bool = True,
    ) -> FolioTransaction:
        """Void one transaction and, with ``cascade``, its linked rows.

        The session must hold the locks of every folio in ``void_folio_ids``.
        """
        transaction = self.require_transaction(session, transaction_id)
        if transaction.is_voided:
            raise AlreadyVoidedError(transaction_id)
        if not reason or not reason.strip():
            raise ValidationError("A void reason is required")
        if not actor_id:
            raise ValidationError("A voiding actor is required")
        folio = self.require_folio(session, transaction.folio_id)
        if not folio.is_open:
            raise FolioClosedError(folio.id)
        linked = self.linked_rows(session, transaction) if cascade else []

        voided = session.mark_voided(
            transaction.voided(reason=reason.strip(), actor_id=actor_id, at=self.clock())
        )
        session.add_event(
            self.event(
                ev.TRANSACTION_VOIDED,
                hotel_id=voided.hotel_id,
                aggregate_type="folio_transaction",
                aggregate_id=voided.id,
                payload={
                    "transaction_id": voided.id,
                    "folio_id": voided.folio_id,
                    "actor_id": actor_id,
                    "linked_transaction_ids": [t.id for t in linked],
                },
            )
        )
        for row in linked:
            self.void_in(session, row.id, reason, actor_id, cascade=False)
        return voided

    def void(self, transaction_id: str, reason: str, actor_id: str) -> FolioTransaction:
        """Void a transaction; monetary fields are left untouched.

        A transfer leg takes its mate with it, a city-ledger payment its
        company posting; every folio written to is refreshed.

        Raises:
            NotFoundError: Transaction does not exist.
            AlreadyVoidedError: Transaction is already voided.
            ValidationError: Missing reason/actor.
            FolioClosedError: The transaction's or a linked row's folio is closed.
        """
        with self.store.read_session() as session:
            transaction = self.require_transaction(session, transaction_id)
            folio_ids = self.void_folio_ids(session, transaction)

        def work(session: LedgerSession) -> FolioTransaction:
            voided = self.void_in(session, transaction_id, reason, actor_id)
            for folio_id in sorted(folio_ids):
                self.refresh_in(session, folio_id)
            return voided

        voided = self.execute(folio_ids, work)
        logger.info(
            "folio transaction voided",
            extra={
                "extra_fields": safe_log_context(
                    folio_id=voided.folio_id,
                    transaction_id=transaction_id,
                    folio_ids=",".join(sorted(folio_ids)),
                    actor_id=actor_id,
                    reason=reason,
                )
            },
        )
        return voided

    # ── Balance ───────────────────────────────────────────

    def snapshot_in(self, session: LedgerSession, folio_id: str) -> BalanceSnapshot:
        folio = self.require_folio(session, folio_id)
        policy = self.settings_in(session, folio.hotel_id).balance_policy
        return recompute_balance(folio_id, session.list_transactions(folio_id), policy)

    def refresh_in(self, session: LedgerSession, folio_id: str) -> BalanceSnapshot:
        """Recompute and store the folio's cached totals."""
        folio = self.require_folio(session, folio_id)
        snapshot = self.snapshot_in(session, folio_id)
        session.update_folio(
            folio.model_copy(
                update={
                    "balance": snapshot.balance,
                    "total_charges": snapshot.total_charges,
                    "total_payments": snapshot.total_payments,
                    "total_adjustments": snapshot.total_adjustments,
                    "total_tax": snapshot.total_tax,
                    "total_service_charge": snapshot.total_service_charge,
                    "total_discount": snapshot.total_discount,
                }
            )
        )
        if folio.balance != snapshot.balance:
            session.add_event(
                self.event(
                    ev.FOLIO_TOTALS_UPDATED,
                    hotel_id=folio.hotel_id,
                    aggregate_type="folio",
                    aggregate_id=folio_id,
                    payload={
                        "folio_id": folio_id,
                        "previous_balance": str(folio.balance),
                        "balance": str(snapshot.balance),
                    },
                )
            )
        return snapshot

    def recompute(self, folio_id: str) -> BalanceSnapshot:
        """Pure recompute from the full transaction set; writes nothing."""
        with self.store.read_session() as session:
            return self.snapshot_in(session, folio_id)

    def recompute_and_store(self, folio_id: str) -> BalanceSnapshot:
        return self.execute([folio_id], lambda session: self.refresh_in(session, folio_id))

    # ── Reads ─────────────────────────────────────────────

    def get_folio(self, folio_id: str) -> Folio:
        with self.store.read_session() as session:
            return self.require_folio(session, folio_id)

    def get_transaction(self, transaction_id: str) -> FolioTransaction:
        with self.store.read_session() as session:
            return self.require_transaction(session, transaction_id)

    def list_transactions(self, folio_id: str) -> list[FolioTransaction]:
        with self.store.read_session() as session:
            self.require_folio(session, folio_id)
            return sorted(session.list_transactions(folio_id), key=lambda t: (t.created_at, t.id))
