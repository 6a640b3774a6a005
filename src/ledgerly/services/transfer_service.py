"""Transfer coordinator: moves a charge between folios as a linked pair.

A transfer writes two legs in one unit of work that holds both folio locks:

    transfer_out  on the source folio  (original_transaction_id -> transfer_in)
    transfer_in   on the target folio  (original_transaction_id -> transfer_out)

Both legs carry ``source_transaction_id`` = the transferred transaction, which
is what makes ``transfer`` idempotent: an existing active pair is returned
unchanged, and a lone leg left by a historic partial write is completed.

``split`` and ``split_by_category`` move several charges to one folio, opened
on the fly when none is given, as one pair per charge in a single unit of
work.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterable

from ledgerly.domain import events as ev
from ledgerly.domain.balance import BalancePolicy, contributes
from ledgerly.domain.errors import (
    FolioClosedError,
    NotFoundError,
    TransferTargetMismatchError,
    ValidationError,
)
from ledgerly.domain.events import LedgerEvent
from ledgerly.domain.folio import (
    TRANSFERABLE_TYPES,
    Folio,
    FolioTransaction,
    TransactionCategory,
    TransactionSource,
    TransactionType,
)
from ledgerly.domain.ledger import TransactionDraft
from ledgerly.infra.store import LedgerSession
from ledgerly.observability.logging import get_logger
from ledgerly.observability.redaction import safe_log_context

from .ledger_service import TransactionLedger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TransferResult:
    parent: FolioTransaction
    """transfer_out leg on the source folio."""
    child: FolioTransaction
    """transfer_in leg on the target folio."""
    created: bool


@dataclass(frozen=True)
class SplitResult:
    source_folio: Folio
    target_folio: Folio
    transfers: tuple[TransferResult, ...]
    created_folio: bool


def active_legs(session: LedgerSession, source_transaction_id: str) -> list[FolioTransaction]:
    return [
        t
        for t in session.list_by_source(source_transaction_id)
        if t.is_transfer_leg and not t.is_voided
    ]


def _leg(legs: Iterable[FolioTransaction], category: TransactionCategory) -> FolioTransaction | None:
    for leg in legs:
        if leg.category == category:
            return leg
    return None


class TransferCoordinator:
    def __init__(self, ledger: TransactionLedger) -> None:
        self.ledger = ledger

    # ── Checks ────────────────────────────────────────────

    @staticmethod
    def check_source(transaction: FolioTransaction) -> None:
        if transaction.is_voided:
            raise ValidationError(f"Transaction {transaction.id} is voided")
        if transaction.transaction_type not in TRANSFERABLE_TYPES:
            raise ValidationError(
                f"Transaction {transaction.id} of type "
                f"{transaction.transaction_type.value} cannot be transferred"
            )
        if (
            transaction.transaction_type == TransactionType.ADJUSTMENT
            and transaction.total_amount <= 0
        ):
            raise ValidationError(
                f"Only positive adjustments can be transferred ({transaction.id})"
            )

    @staticmethod
    def check_target(source: Folio, target: Folio) -> None:
        if source.id == target.id:
            raise ValidationError("Source and target folio must differ")
        if source.hotel_id != target.hotel_id:
            raise TransferTargetMismatchError(source.id, target.id, "hotel")
        if source.currency != target.currency:
            raise TransferTargetMismatchError(source.id, target.id, "currency")

    # ── Legs ──────────────────────────────────────────────

    @staticmethod
    def leg_draft(
        original: FolioTransaction,
        *,
        category: TransactionCategory,
        mate_id: str,
        counterpart_folio_id: str,
        posted_by: str | None,
        amount=None,
    ) -> TransactionDraft:
        amount = original.balance_effect if amount is None else amount
        direction = "to" if category == TransactionCategory.TRANSFER_OUT else "from"
        description = f"Transfer {direction} folio {counterpart_folio_id}"
        if original.description:
            description = f"{description}: {original.description}"
        return TransactionDraft(
            hotel_id=original.hotel_id,
            transaction_type=TransactionType.TRANSFER,
            category=category,
            source=TransactionSource.TRANSFER,
            description=description,
            amount=amount,
            unit_price=amount,
            original_transaction_id=mate_id,
            source_transaction_id=original.id,
            counterpart_folio_id=counterpart_folio_id,
            posted_by=posted_by,
        )

    def _event(self, parent: FolioTransaction, child: FolioTransaction) -> LedgerEvent:
        return self.ledger.event(
            ev.TRANSFER_CREATED,
            hotel_id=parent.hotel_id,
            aggregate_type="transfer",
            aggregate_id=parent.source_transaction_id or parent.id,
            payload={
                "source_transaction_id": parent.source_transaction_id,
                "transfer_out_id": parent.id,
                "transfer_in_id": child.id,
                "source_folio_id": parent.folio_id,
                "target_folio_id": child.folio_id,
                "amount": str(parent.total_amount),
            },
        )

    def transfer_in(
        self,
        session: LedgerSession,
        original: FolioTransaction,
        target_folio_id: str,
        posted_by: str | None,
    ) -> TransferResult:
        """Create (or return) the pair inside a session holding both locks."""
        legs = active_legs(session, original.id)
        out_leg = _leg(legs, TransactionCategory.TRANSFER_OUT)
        in_leg = _leg(legs, TransactionCategory.TRANSFER_IN)
        if out_leg is not None and in_leg is not None:
            return TransferResult(parent=out_leg, child=in_leg, created=False)
        if out_leg is not None or in_leg is not None:
            lone = out_leg or in_leg
            return self.complete_in(session, lone)

        self.check_source(original)
        source_folio = self.ledger.require_folio(session, original.folio_id)
        target_folio = self.ledger.require_folio(session, target_folio_id)
        self.check_target(source_folio, target_folio)

        out_id = self.ledger.new_id()
        in_id = self.ledger.new_id()
        parent = self.ledger.append_in(
            session,
            source_folio.id,
            self.leg_draft(
                original,
                category=TransactionCategory.TRANSFER_OUT,
                mate_id=in_id,
                counterpart_folio_id=target_folio.id,
                posted_by=posted_by,
            ),
            transaction_id=out_id,
        )
        child = self.ledger.append_in(
            session,
            target_folio.id,
            self.leg_draft(
                original,
                category=TransactionCategory.TRANSFER_IN,
                mate_id=out_id,
                counterpart_folio_id=source_folio.id,
                posted_by=posted_by,
            ),
            transaction_id=in_id,
        )
        self.ledger.refresh_in(session, source_folio.id)
        self.ledger.refresh_in(session, target_folio.id)
        session.add_event(self._event(parent, child))
        return TransferResult(parent=parent, child=child, created=True)

    def complete_in(self, session: LedgerSession, lone: FolioTransaction) -> TransferResult:
        """Create the missing mate of ``lone`` with the lone leg's amount."""
        if lone.counterpart_folio_id is None:
            raise ValidationError(
                f"Transfer leg {lone.id} does not name its counterpart folio"
            )
        mate_id = lone.original_transaction_id or self.ledger.new_id()
        original = self.ledger.require_transaction(session, lone.source_transaction_id or "")
        mate_category = (
            TransactionCategory.TRANSFER_IN
            if lone.category == TransactionCategory.TRANSFER_OUT
            else TransactionCategory.TRANSFER_OUT
        )
        if session.get_transaction(mate_id) is not None:
            # The id the lone leg points at is taken (voided mate); allocate anew.
            mate_id = self.ledger.new_id()
        mate = self.ledger.append_in(
            session,
            lone.counterpart_folio_id,
            self.leg_draft(
                original,
                category=mate_category,
                mate_id=lone.id,
                counterpart_folio_id=lone.folio_id,
                posted_by=lone.posted_by,
                amount=lone.total_amount,
            ),
            transaction_id=mate_id,
        )
        self.ledger.refresh_in(session, mate.folio_id)
        if mate_category == TransactionCategory.TRANSFER_IN:
            parent, child = lone, mate
        else:
            parent, child = mate, lone
        session.add_event(self._event(parent, child))
        return TransferResult(parent=parent, child=child, created=True)

    # ── Public operations ─────────────────────────────────

    def transfer(
        self,
        original_transaction_id: str,
        target_folio_id: str,
        posted_by: str | None = None,
    ) -> TransferResult:
        """Transfer a charge to ``target_folio_id``.

        Raises:
            NotFoundError: Source transaction or target folio does not exist.
            ValidationError: Source not transferable, same folio, closed folio.
            TransferTargetMismatchError: Target in another hotel or currency.
        """
        with self.ledger.store.read_session() as session:
            original = self.ledger.require_transaction(session, original_transaction_id)
            folio_ids = {original.folio_id, target_folio_id}
            # A lone leg may point at a third folio.
            for leg in active_legs(session, original.id):
                folio_ids.add(leg.folio_id)
                if leg.counterpart_folio_id:
                    folio_ids.add(leg.counterpart_folio_id)
            if session.get_folio(target_folio_id) is None:
                raise NotFoundError("Folio", target_folio_id)

        def work(session: LedgerSession) -> TransferResult:
            fresh = self.ledger.require_transaction(session, original_transaction_id)
            return self.transfer_in(session, fresh, target_folio_id, posted_by)

        result = self.ledger.execute(folio_ids, work)
        logger.info(
            "transfer created" if result.created else "transfer reused",
            extra={
                "extra_fields": safe_log_context(
                    source_transaction_id=original_transaction_id,
                    transfer_out_id=result.parent.id,
                    transfer_in_id=result.child.id,
                    source_folio_id=result.parent.folio_id,
                    target_folio_id=result.child.folio_id,
                    amount=result.parent.total_amount,
                )
            },
        )
        return result

    def complete_pair(self, leg_id: str) -> TransferResult:
        """Create the missing mate of a lone transfer leg."""
        with self.ledger.store.read_session() as session:
            lone = self.ledger.require_transaction(session, leg_id)
            if not lone.is_transfer_leg:
                raise ValidationError(f"Transaction {leg_id} is not a transfer leg")
            folio_ids = {lone.folio_id}
            if lone.counterpart_folio_id:
                folio_ids.add(lone.counterpart_folio_id)

        def work(session: LedgerSession) -> TransferResult:
            fresh = self.ledger.require_transaction(session, leg_id)
            if fresh.is_voided:
                raise ValidationError(f"Transfer leg {leg_id} is voided")
            legs = active_legs(session, fresh.source_transaction_id or "")
            mate_category = (
                TransactionCategory.TRANSFER_IN
                if fresh.category == TransactionCategory.TRANSFER_OUT
                else TransactionCategory.TRANSFER_OUT
            )
            mate = _leg(legs, mate_category)
            if mate is not None:
                if fresh.category == TransactionCategory.TRANSFER_OUT:
                    return TransferResult(parent=fresh, child=mate, created=False)
                return TransferResult(parent=mate, child=fresh, created=False)
            return self.complete_in(session, fresh)

        result = self.ledger.execute(folio_ids, work)
        logger.info(
            "transfer leg completed" if result.created else "transfer already paired",
            extra={
                "extra_fields": safe_log_context(
                    leg_id=leg_id,
                    transfer_out_id=result.parent.id,
                    transfer_in_id=result.child.id,
                )
            },
        )
        return result

    # ── Folio split ───────────────────────────────────────

    @staticmethod
    def splittable(
        session: LedgerSession, transaction: FolioTransaction, policy: BalancePolicy
    ) -> bool:
        """Whether a split by category picks ``transaction`` up.

        Rows outside the balance (voided, informational meal-plan lines) stay.
        """
        if not contributes(transaction, policy):
            return False
        if transaction.transaction_type not in TRANSFERABLE_TYPES:
            return False
        if transaction.transaction_type == TransactionType.ADJUSTMENT and transaction.total_amount <= 0:
            return False
        return not active_legs(session, transaction.id)

    def split_in(
        self,
        session: LedgerSession,
        source_folio_id: str,
        transactions: list[FolioTransaction],
        target_folio_id: str,
        *,
        create_target: bool,
        posted_by: str | None,
    ) -> SplitResult:
        source = self.ledger.require_folio(session, source_folio_id)
        if not source.is_open:
            raise FolioClosedError(source.id)
        if create_target:
            target = self.ledger.open_folio_in(
                session,
                target_folio_id,
                hotel_id=source.hotel_id,
                folio_type=source.folio_type,
                currency=source.currency,
                reservation_id=source.reservation_id,
                company_id=source.company_id,
            )
        else:
            target = self.ledger.require_folio(session, target_folio_id)
        self.check_target(source, target)

        results = []
        for transaction in transactions:
            if transaction.folio_id != source.id:
                raise ValidationError(
                    f"Transaction {transaction.id} does not belong to folio {source.id}"
                )
            if active_legs(session, transaction.id):
                raise ValidationError(f"Transaction {transaction.id} is already transferred")
            results.append(self.transfer_in(session, transaction, target.id, posted_by))

        session.add_event(
            self.ledger.event(
                ev.FOLIO_SPLIT,
                hotel_id=source.hotel_id,
                aggregate_type="folio",
                aggregate_id=source.id,
                payload={
                    "source_folio_id": source.id,
                    "target_folio_id": target.id,
                    "created_folio": create_target,
                    "transaction_ids": [t.id for t in transactions],
                },
            )
        )
        return SplitResult(
            source_folio=self.ledger.require_folio(session, source.id),
            target_folio=self.ledger.require_folio(session, target.id),
            transfers=tuple(results),
            created_folio=create_target,
        )

    def _split(
        self,
        source_folio_id: str,
        select: Callable[[LedgerSession], list[FolioTransaction]],
        target_folio_id: str | None,
        posted_by: str | None,
    ) -> SplitResult:
        create_target = target_folio_id is None
        target_id = target_folio_id or self.ledger.new_id()

        def work(session: LedgerSession) -> SplitResult:
            return self.split_in(
                session,
                source_folio_id,
                select(session),
                target_id,
                create_target=create_target,
                posted_by=posted_by,
            )

        result = self.ledger.execute({source_folio_id, target_id}, work)
        logger.info(
            "folio split",
            extra={
                "extra_fields": safe_log_context(
                    source_folio_id=source_folio_id,
                    target_folio_id=result.target_folio.id,
                    created_folio=result.created_folio,
                    transfers=len(result.transfers),
                    amount=sum((r.child.total_amount for r in result.transfers), Decimal("0")),
                )
            },
        )
        return result

    def split(
        self,
        source_folio_id: str,
        transaction_ids: Iterable[str],
        target_folio_id: str | None = None,
        posted_by: str | None = None,
    ) -> SplitResult:
        """Move the given charges to another folio, one transfer pair each.

        Without ``target_folio_id`` a folio like the source (hotel, type,
        currency, reservation) is opened in the same unit of work. Either
        every charge moves or none does.

        Raises:
            NotFoundError: Source folio, target folio or a transaction does not exist.
            ValidationError: No ids, foreign or non-transferable transaction.
            FolioClosedError: Source or target folio is closed.
            TransferTargetMismatchError: Target in another hotel or currency.
        """
        ids = list(dict.fromkeys(transaction_ids))
        if not ids:
            raise ValidationError("A split needs at least one transaction")

        def select(session: LedgerSession) -> list[FolioTransaction]:
            return [self.ledger.require_transaction(session, i) for i in ids]

        return self._split(source_folio_id, select, target_folio_id, posted_by)

    def split_by_category(
        self,
        source_folio_id: str,
        categories: Iterable[TransactionCategory | str],
        target_folio_id: str | None = None,
        posted_by: str | None = None,
    ) -> SplitResult:
        """Move every active, untransferred charge of ``categories`` to one folio.

        Raises:
            ValidationError: No category given, or nothing on the folio matches.
        """
        wanted = frozenset(TransactionCategory(c) for c in categories)
        if not wanted:
            raise ValidationError("A split needs at least one category")

        def select(session: LedgerSession) -> list[FolioTransaction]:
            folio = self.ledger.require_folio(session, source_folio_id)
            policy = self.ledger.settings_in(session, folio.hotel_id).balance_policy
            picked = sorted(
                (
                    t
                    for t in session.list_transactions(source_folio_id)
                    if t.category in wanted and self.splittable(session, t, policy)
                ),
                key=lambda t: (t.created_at, t.id),
            )
            if not picked:
                raise ValidationError(
                    f"No transferable transactions of {sorted(c.value for c in wanted)} "
                    f"on folio {source_folio_id}"
                )
            return picked

        return self._split(source_folio_id, select, target_folio_id, posted_by)


# ── Routing ───────────────────────────────────────────────


@dataclass(frozen=True)
class RoutingRule:
    """Route charges of ``categories`` posted on ``folio_id`` to ``target_folio_id``."""

    folio_id: str
    target_folio_id: str
    categories: frozenset[TransactionCategory]


class RoutingSubscriber:
    """Event subscriber applying folio routing instructions.

    Subscribed to ``transaction.appended``; runs after the append committed,
    so a failed transfer leaves the charge on its original folio.
    """

    def __init__(self, coordinator: TransferCoordinator, rules: Iterable[RoutingRule] = ()) -> None:
        self.coordinator = coordinator
        self.rules: list[RoutingRule] = list(rules)

    def add_rule(self, rule: RoutingRule) -> None:
        self.rules.append(rule)

    def attach(self) -> None:
        self.coordinator.ledger.bus.subscribe(ev.TRANSACTION_APPENDED, self)

    def rule_for(self, folio_id: str, category: TransactionCategory) -> RoutingRule | None:
        for rule in self.rules:
            if rule.folio_id == folio_id and category in rule.categories:
                return rule
        return None

    def __call__(self, event: LedgerEvent) -> None:
        if event.event_type != ev.TRANSACTION_APPENDED:
            return
        payload = event.payload
        if payload.get("transaction_type") not in {t.value for t in TRANSFERABLE_TYPES}:
            return
        if payload.get("meal_plan_id"):
            return
        rule = self.rule_for(payload["folio_id"], TransactionCategory(payload["category"]))
        if rule is None:
            return
        self.coordinator.transfer(payload["transaction_id"], rule.target_folio_id, "routing")
