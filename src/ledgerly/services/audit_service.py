"""Consistency auditor: offline reconciliation of folios.

For every folio in scope the auditor independently re-derives:
- the balance (BalanceAggregator) vs. the stored folio cache;
- room charge splits (net + tax vs. final rate) and room tax;
- the tax of itemised extra-charge / meal-plan lines;
- transfer pairing (missing, duplicated, mismatched or orphaned legs);
- city-ledger postings whose payment was voided, and the reverse.

Dry-run reads only and takes no folio locks. Fix mode corrects what is
fixable through TransactionLedger / TransferCoordinator, never by editing
stored rows. Mismatches are reported, never raised.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Callable

from ledgerly.domain.errors import LedgerError, ReconciliationWarning
from ledgerly.domain.folio import (
    BalanceSnapshot,
    Folio,
    FolioTransaction,
    TransactionCategory,
    TransactionType,
)
from ledgerly.domain.ledger import TransactionDraft
from ledgerly.domain.tax import TaxPolicy, category_tax_amount, compute_tax
from ledgerly.infra.settings import LedgerSettings
from ledgerly.infra.store import LedgerSession
from ledgerly.infra.time import day_end_exclusive, day_start
from ledgerly.observability.logging import get_logger
from ledgerly.observability.redaction import safe_log_context

from .ledger_service import TransactionLedger
from .tax_service import resolve_rates, room_tax_stack
from .transfer_service import TransferCoordinator

logger = get_logger(__name__)

AUDIT_ACTOR = "consistency-auditor"


class MismatchKind(str, Enum):
    BALANCE_DRIFT = "balance_drift"
    ROOM_SPLIT = "room_split"
    ROOM_TAX = "room_tax"
    TAX_BREAKDOWN = "tax_breakdown"
    TRANSFER_MISSING_LEG = "transfer_missing_leg"
    TRANSFER_AMOUNT_MISMATCH = "transfer_amount_mismatch"
    TRANSFER_DUPLICATE = "transfer_duplicate"
    ORPHANED_TRANSFER = "orphaned_transfer"
    ORPHANED_POSTING = "orphaned_posting"


@dataclass(frozen=True)
class Mismatch:
    kind: MismatchKind
    folio_id: str
    message: str
    transaction_id: str | None = None
    expected: Decimal | None = None
    actual: Decimal | None = None
    fixable: bool = False
    related_ids: tuple[str, ...] = ()

    def as_warning(self) -> ReconciliationWarning:
        return ReconciliationWarning(
            self.kind.value,
            self.folio_id,
            self.message,
            transaction_id=self.transaction_id,
            expected=self.expected,
            actual=self.actual,
        )


@dataclass(frozen=True)
class FixAction:
    kind: MismatchKind
    folio_id: str
    transaction_id: str | None
    status: str  # "fixed" | "fix_failed"
    detail: str = ""


@dataclass
class AuditReport:
    folio_id: str
    hotel_id: str
    snapshot: BalanceSnapshot
    stored_balance: Decimal
    mismatches: list[Mismatch] = field(default_factory=list)
    fixes: list[FixAction] = field(default_factory=list)
    fix_mode: bool = False

    @property
    def ok(self) -> bool:
        return not self.remaining

    @property
    def warnings(self) -> list[ReconciliationWarning]:
        return [m.as_warning() for m in self.mismatches]

    @property
    def remaining(self) -> list[Mismatch]:
        """Mismatches not resolved by a successful fix."""
        fixed = {
            (f.kind, f.transaction_id) for f in self.fixes if f.status == "fixed"
        }
        return [m for m in self.mismatches if (m.kind, m.transaction_id) not in fixed]


@dataclass(frozen=True)
class AuditScope:
    folio_id: str | None = None
    hotel_id: str | None = None
    date_from: date | None = None
    date_to: date | None = None

    def includes(self, folio: Folio) -> bool:
        if self.folio_id is not None and folio.id != self.folio_id:
            return False
        if self.hotel_id is not None and folio.hotel_id != self.hotel_id:
            return False
        if self.date_from is None and self.date_to is None:
            return True
        if folio.created_at is None:
            return False
        if self.date_from is not None and folio.created_at < day_start(self.date_from):
            return False
        if self.date_to is not None and folio.created_at >= day_end_exclusive(self.date_to):
            return False
        return True


def _is_charge(t: FolioTransaction) -> bool:
    return t.transaction_type in (TransactionType.CHARGE, TransactionType.ROOM_POSTING)


class ConsistencyAuditor:
    def __init__(self, ledger: TransactionLedger, coordinator: TransferCoordinator | None = None) -> None:
        self.ledger = ledger
        self.coordinator = coordinator or TransferCoordinator(ledger)

    # ── Entry points ──────────────────────────────────────

    def audit(self, scope: AuditScope, *, fix: bool = False) -> list[AuditReport]:
        with self.ledger.store.read_session() as session:
            if scope.folio_id is not None:
                folios = session.list_folios(folio_ids=[scope.folio_id])
            else:
                folios = session.list_folios(hotel_id=scope.hotel_id)
        reports = [self._run(folio.id, fix) for folio in folios if scope.includes(folio)]
        logger.info(
            "audit finished",
            extra={
                "extra_fields": safe_log_context(
                    folios=len(reports),
                    mismatches=sum(len(r.mismatches) for r in reports),
                    remaining=sum(len(r.remaining) for r in reports),
                    fix=fix,
                )
            },
        )
        return reports

    def audit_folio(self, folio_id: str) -> AuditReport:
        """Dry-run audit of one folio."""
        return self._run(folio_id, False)

    def audit_and_fix(self, folio_id: str) -> AuditReport:
        return self._run(folio_id, True)

    def _run(self, folio_id: str, fix: bool) -> AuditReport:
        report = self.inspect(folio_id)
        report.fix_mode = fix
        for mismatch in report.mismatches:
            logger.warning(
                "audit mismatch",
                extra={
                    "extra_fields": safe_log_context(
                        folio_id=mismatch.folio_id,
                        kind=mismatch.kind,
                        transaction_id=mismatch.transaction_id,
                        expected=mismatch.expected,
                        actual=mismatch.actual,
                        message=mismatch.message,
                    )
                },
            )
        if fix:
            self.apply_fixes(report)
        return report

    # ── Checks ────────────────────────────────────────────

    def inspect(self, folio_id: str) -> AuditReport:
        """Collect mismatches of one folio without writing anything."""
        with self.ledger.store.read_session() as session:
            folio = self.ledger.require_folio(session, folio_id)
            settings = self.ledger.settings_in(session, folio.hotel_id)
            transactions = session.list_transactions(folio_id)
            snapshot = self.ledger.snapshot_in(session, folio_id)

            report = AuditReport(
                folio_id=folio_id,
                hotel_id=folio.hotel_id,
                snapshot=snapshot,
                stored_balance=folio.balance,
            )
            active = [t for t in transactions if not t.is_voided]
            report.mismatches.extend(self._check_room_charges(session, folio, active, settings))
            report.mismatches.extend(self._check_tax(session, folio, active, settings))
            report.mismatches.extend(self._check_transfers(session, folio, active))
            report.mismatches.extend(self._check_city_ledger(session, folio, active))

            drift = abs(folio.balance - snapshot.balance)
            if drift > settings.balance_epsilon:
                report.mismatches.append(
                    Mismatch(
                        kind=MismatchKind.BALANCE_DRIFT,
                        folio_id=folio_id,
                        message=f"stored balance {folio.balance} != recomputed {snapshot.balance}",
                        expected=snapshot.balance,
                        actual=folio.balance,
                        fixable=True,
                    )
                )
        return report

    def _check_room_charges(
        self,
        session: LedgerSession,
        folio: Folio,
        active: list[FolioTransaction],
        settings: LedgerSettings,
    ) -> list[Mismatch]:
        found: list[Mismatch] = []
        for t in active:
            if t.category != TransactionCategory.ROOM or not _is_charge(t):
                continue
            if t.room_final_rate is None or t.room_final_net_amount is None:
                continue
            rate_tax = t.room_final_rate_tax or Decimal("0")
            split_total = t.room_final_net_amount + rate_tax
            if abs(split_total - t.room_final_rate) > settings.split_epsilon:
                found.append(
                    Mismatch(
                        kind=MismatchKind.ROOM_SPLIT,
                        folio_id=folio.id,
                        transaction_id=t.id,
                        message="room net + tax does not add up to the room final rate",
                        expected=t.room_final_rate,
                        actual=split_total,
                    )
                )
            stack = room_tax_stack(session, folio.hotel_id, t.room_id)
            expected_tax = category_tax_amount(t.room_final_net_amount, stack)
            if abs(expected_tax - rate_tax) > settings.split_epsilon:
                found.append(
                    Mismatch(
                        kind=MismatchKind.ROOM_TAX,
                        folio_id=folio.id,
                        transaction_id=t.id,
                        message="room tax differs from the room tax stack",
                        expected=expected_tax,
                        actual=rate_tax,
                    )
                )
        return found

    def _check_tax(
        self,
        session: LedgerSession,
        folio: Folio,
        active: list[FolioTransaction],
        settings: LedgerSettings,
    ) -> list[Mismatch]:
        found: list[Mismatch] = []
        for t in active:
            if not _is_charge(t) or t.category == TransactionCategory.ROOM:
                continue
            # Only catalog-priced lines have a derivable tax stack.
            if t.extra_charge_id is None and t.meal_plan_id is None:
                continue
            computation = self.expected_tax(session, t)
            if abs(computation.total - t.tax_amount) <= settings.balance_epsilon:
                continue
            transferred = any(
                leg.is_transfer_leg and not leg.is_voided
                for leg in session.list_by_source(t.id)
            )
            found.append(
                Mismatch(
                    kind=MismatchKind.TAX_BREAKDOWN,
                    folio_id=folio.id,
                    transaction_id=t.id,
                    message="stored tax differs from the resolved tax rates",
                    expected=computation.total,
                    actual=t.tax_amount,
                    fixable=not transferred,
                )
            )
        return found

    def expected_tax(self, session: LedgerSession, t: FolioTransaction):
        rates = resolve_rates(
            session,
            t.hotel_id,
            t.category,
            extra_charge_id=t.extra_charge_id,
            meal_plan_id=t.meal_plan_id,
        )
        policy = TaxPolicy.INCLUSIVE if t.tax_inclusive else TaxPolicy.EXCLUSIVE
        return compute_tax(t.amount - t.discount_amount, rates, policy, hotel_id=t.hotel_id)

    def _check_transfers(
        self,
        session: LedgerSession,
        folio: Folio,
        active: list[FolioTransaction],
    ) -> list[Mismatch]:
        found: list[Mismatch] = []
        legs = [t for t in active if t.is_transfer_leg]
        by_group: dict[tuple[str | None, TransactionCategory], list[FolioTransaction]] = defaultdict(list)
        for leg in legs:
            by_group[(leg.source_transaction_id, leg.category)].append(leg)

        for (source_id, category), group in by_group.items():
            if source_id is not None and len(group) > 1:
                found.append(
                    Mismatch(
                        kind=MismatchKind.TRANSFER_DUPLICATE,
                        folio_id=folio.id,
                        transaction_id=group[0].id,
                        message=f"{len(group)} active {category.value} legs for one transfer",
                        related_ids=tuple(t.id for t in group[1:]),
                    )
                )

        for leg in legs:
            mate = self._mate(session, leg)
            source = (
                session.get_transaction(leg.source_transaction_id)
                if leg.source_transaction_id
                else None
            )
            if leg.source_transaction_id and (source is None or source.is_voided):
                found.append(
                    Mismatch(
                        kind=MismatchKind.ORPHANED_TRANSFER,
                        folio_id=folio.id,
                        transaction_id=leg.id,
                        message="transfer leg of a voided or missing transaction",
                        actual=leg.total_amount,
                        fixable=True,
                        related_ids=(mate.id,) if mate is not None else (),
                    )
                )
                continue
            if mate is None and self._voided_mate(session, leg) is not None:
                found.append(
                    Mismatch(
                        kind=MismatchKind.ORPHANED_TRANSFER,
                        folio_id=folio.id,
                        transaction_id=leg.id,
                        message=f"{leg.category.value} leg whose counterpart was voided",
                        actual=leg.total_amount,
                        fixable=True,
                    )
                )
                continue
            if mate is None:
                found.append(
                    Mismatch(
                        kind=MismatchKind.TRANSFER_MISSING_LEG,
                        folio_id=folio.id,
                        transaction_id=leg.id,
                        message=f"{leg.category.value} leg has no active counterpart",
                        actual=leg.total_amount,
                        fixable=(
                            leg.source_transaction_id is not None
                            and leg.counterpart_folio_id is not None
                        ),
                    )
                )
                continue
            if (
                leg.category == TransactionCategory.TRANSFER_OUT
                and abs(mate.total_amount) != abs(leg.total_amount)
            ):
                found.append(
                    Mismatch(
                        kind=MismatchKind.TRANSFER_AMOUNT_MISMATCH,
                        folio_id=folio.id,
                        transaction_id=leg.id,
                        message="transfer legs carry different amounts",
                        expected=leg.total_amount,
                        actual=mate.total_amount,
                        related_ids=(mate.id,),
                    )
                )
        return found

    @staticmethod
    def _mate(session: LedgerSession, leg: FolioTransaction) -> FolioTransaction | None:
        wanted = (
            TransactionCategory.TRANSFER_IN
            if leg.category == TransactionCategory.TRANSFER_OUT
            else TransactionCategory.TRANSFER_OUT
        )
        if leg.source_transaction_id is not None:
            for t in session.list_by_source(leg.source_transaction_id):
                if t.is_transfer_leg and not t.is_voided and t.category == wanted:
                    return t
            return None
        if leg.original_transaction_id is None:
            return None
        mate = session.get_transaction(leg.original_transaction_id)
        if mate is None or mate.is_voided or mate.category != wanted:
            return None
        return mate

    @staticmethod
    def _voided_mate(session: LedgerSession, leg: FolioTransaction) -> FolioTransaction | None:
        candidates = list(session.list_by_original(leg.id))
        if leg.original_transaction_id is not None:
            named = session.get_transaction(leg.original_transaction_id)
            if named is not None:
                candidates.append(named)
        for t in candidates:
            if (
                t.is_transfer_leg
                and t.is_voided
                and t.category != leg.category
                and t.source_transaction_id == leg.source_transaction_id
            ):
                return t
        return None

    def _check_city_ledger(
        self,
        session: LedgerSession,
        folio: Folio,
        active: list[FolioTransaction],
    ) -> list[Mismatch]:
        found: list[Mismatch] = []
        for t in active:
            if t.is_city_ledger_posting and t.source_transaction_id:
                payment = session.get_transaction(t.source_transaction_id)
                if payment is not None and not payment.is_voided:
                    continue
                found.append(
                    Mismatch(
                        kind=MismatchKind.ORPHANED_POSTING,
                        folio_id=folio.id,
                        transaction_id=t.id,
                        message="city ledger posting of a voided or missing payment",
                        actual=t.total_amount,
                        fixable=True,
                    )
                )
            elif t.transaction_type == TransactionType.PAYMENT:
                postings = [p for p in session.list_by_source(t.id) if p.is_city_ledger_posting]
                if postings and all(p.is_voided for p in postings):
                    found.append(
                        Mismatch(
                            kind=MismatchKind.ORPHANED_POSTING,
                            folio_id=folio.id,
                            transaction_id=t.id,
                            message="city ledger payment whose company posting was voided",
                            actual=t.total_amount,
                            fixable=True,
                        )
                    )
        return found

    # ── Fixes ─────────────────────────────────────────────

    def apply_fixes(self, report: AuditReport) -> None:
        handlers: dict[MismatchKind, Callable[[Mismatch], Any]] = {
            MismatchKind.TAX_BREAKDOWN: self._fix_tax_breakdown,
            MismatchKind.TRANSFER_MISSING_LEG: self._fix_missing_leg,
            MismatchKind.ORPHANED_TRANSFER: self._fix_orphaned,
            MismatchKind.ORPHANED_POSTING: self._fix_orphaned,
        }
        drift = None
        for mismatch in report.mismatches:
            if not mismatch.fixable:
                continue
            if mismatch.kind == MismatchKind.BALANCE_DRIFT:
                drift = mismatch
                continue
            self._attempt(report, mismatch, handlers[mismatch.kind])
        if drift is not None:
            self._attempt(report, drift, lambda m: self.ledger.recompute_and_store(m.folio_id))

    def _attempt(self, report: AuditReport, mismatch: Mismatch, handler: Callable[[Mismatch], Any]) -> None:
        try:
            handler(mismatch)
        except LedgerError as exc:
            logger.exception(
                "audit fix failed",
                extra={
                    "extra_fields": safe_log_context(
                        folio_id=mismatch.folio_id,
                        kind=mismatch.kind,
                        transaction_id=mismatch.transaction_id,
                    )
                },
            )
            report.fixes.append(
                FixAction(
                    kind=mismatch.kind,
                    folio_id=mismatch.folio_id,
                    transaction_id=mismatch.transaction_id,
                    status="fix_failed",
                    detail=str(exc),
                )
            )
            return
        report.fixes.append(
            FixAction(
                kind=mismatch.kind,
                folio_id=mismatch.folio_id,
                transaction_id=mismatch.transaction_id,
                status="fixed",
            )
        )
        logger.info(
            "audit fix applied",
            extra={
                "extra_fields": safe_log_context(
                    folio_id=mismatch.folio_id,
                    kind=mismatch.kind,
                    transaction_id=mismatch.transaction_id,
                )
            },
        )

    def _fix_tax_breakdown(self, mismatch: Mismatch) -> FolioTransaction:
        """Void the line and repost a copy carrying the recomputed tax."""

        def work(session: LedgerSession) -> FolioTransaction:
            original = self.ledger.require_transaction(session, mismatch.transaction_id or "")
            computation = self.expected_tax(session, original)
            self.ledger.void_in(
                session,
                original.id,
                f"Tax correction: {original.tax_amount} -> {computation.total}",
                AUDIT_ACTOR,
            )
            corrected = self.ledger.append_in(
                session,
                original.folio_id,
                TransactionDraft(
                    hotel_id=original.hotel_id,
                    transaction_type=original.transaction_type,
                    category=original.category,
                    source=original.source,
                    description=f"{original.description} [corrects {original.id}]".strip(),
                    quantity=original.quantity,
                    unit_price=original.unit_price,
                    amount=original.amount,
                    tax_amount=computation.total,
                    service_charge_amount=original.service_charge_amount,
                    discount_amount=original.discount_amount,
                    tax_breakdown=computation.per_rate,
                    tax_inclusive=original.tax_inclusive,
                    meal_plan_id=original.meal_plan_id,
                    extra_charge_id=original.extra_charge_id,
                    room_id=original.room_id,
                    source_transaction_id=original.source_transaction_id,
                    posted_by=AUDIT_ACTOR,
                ),
            )
            self.ledger.refresh_in(session, original.folio_id)
            return corrected

        return self.ledger.execute([mismatch.folio_id], work)

    def _fix_missing_leg(self, mismatch: Mismatch):
        return self.coordinator.complete_pair(mismatch.transaction_id or "")

    def _fix_orphaned(self, mismatch: Mismatch) -> None:
        """Void the orphaned row and whatever is still linked to it."""
        with self.ledger.store.read_session() as session:
            row = self.ledger.require_transaction(session, mismatch.transaction_id or "")
            rows = [row]
            for related_id in mismatch.related_ids:
                related = session.get_transaction(related_id)
                if related is not None:
                    rows.append(related)
            folio_ids: set[str] = set()
            for t in rows:
                folio_ids |= self.ledger.void_folio_ids(session, t)

        def work(session: LedgerSession) -> None:
            for t in rows:
                current = self.ledger.require_transaction(session, t.id)
                if current.is_voided:
                    continue
                self.ledger.void_in(session, t.id, "Linked transaction was voided", AUDIT_ACTOR)
            for folio_id in sorted(folio_ids):
                self.ledger.refresh_in(session, folio_id)

        self.ledger.execute(folio_ids, work)
