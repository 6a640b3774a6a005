"""Folio ledger engine: the operations offered to producers.

Reservation lifecycle, night audit, POS and payment processing call this
facade; it prices charges (tax resolution, discounts, room splits) and hands
the resulting drafts to TransactionLedger. Transfers go through
TransferCoordinator, reconciliation through ConsistencyAuditor.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable

from pydantic import BaseModel, ConfigDict

from ledgerly.domain.balance import MealPlanPolicy
from ledgerly.domain.errors import NotFoundError, ValidationError
from ledgerly.domain.events import EventBus
from ledgerly.domain.folio import (
    LINKED_TAX_CATEGORIES,
    BalanceSnapshot,
    Folio,
    FolioStatus,
    FolioTransaction,
    FolioType,
    PaymentMethod,
    TransactionCategory,
    TransactionSource,
    TransactionType,
)
from ledgerly.domain.ledger import DiscountType, TransactionDraft, compute_discount
from ledgerly.domain.meal_plan import GuestCounts
from ledgerly.domain.money import ZERO, round2, to_decimal
from ledgerly.domain.room_charge import RoomChargeSplit, split_room_charge
from ledgerly.domain.tax import (
    TaxContext,
    TaxPolicy,
    TaxRate,
    compute_tax,
    detect_tax_policy,
    resolve_tax_rates,
)
from ledgerly.infra.settings import LedgerSettings
from ledgerly.infra.store import LedgerSession, LedgerStore
from ledgerly.infra.time import utc_now
from ledgerly.observability.logging import get_logger
from ledgerly.observability.redaction import safe_log_context

from .audit_service import AuditReport, AuditScope, ConsistencyAuditor
from .ledger_service import TransactionLedger, new_id
from .tax_service import load_extra_charge, load_meal_plan, resolve_rates, room_tax_stack
from .transfer_service import SplitResult, TransferCoordinator, TransferResult

logger = get_logger(__name__)


class TaxSpec(BaseModel):
    """Where the tax of a charge comes from.

    Catalog references (room, extra charge, explicit rate ids) are looked up
    in the store; ``exempt`` posts the charge untaxed; ``policy`` forces
    inclusive/exclusive instead of the unit-price heuristic.
    """

    model_config = ConfigDict(frozen=True)

    room_id: str | None = None
    extra_charge_id: str | None = None
    rate_ids: tuple[str, ...] = ()
    policy: TaxPolicy | None = None
    exempt: bool = False


class MealPlanContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    meal_plan_id: str
    guest_counts: GuestCounts = GuestCounts()
    meal_plan_included: bool = True


@dataclass(frozen=True)
class RoomPosting:
    room_charge: FolioTransaction
    meal_plan_lines: tuple[FolioTransaction, ...]
    split: RoomChargeSplit


class FolioLedgerEngine:
    def __init__(
        self,
        store: LedgerStore,
        *,
        bus: EventBus | None = None,
        settings: LedgerSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self.ledger = TransactionLedger(
            store, bus=bus, settings=settings, clock=clock, id_factory=id_factory
        )
        self.transfers = TransferCoordinator(self.ledger)
        self.auditor = ConsistencyAuditor(self.ledger, self.transfers)

    @property
    def bus(self) -> EventBus:
        return self.ledger.bus

    def _log(self, message: str, transaction: FolioTransaction) -> None:
        logger.info(
            message,
            extra={
                "extra_fields": safe_log_context(
                    folio_id=transaction.folio_id,
                    transaction_id=transaction.id,
                    transaction_type=transaction.transaction_type,
                    category=transaction.category,
                    total_amount=transaction.total_amount,
                    tax_amount=transaction.tax_amount,
                    description=transaction.description,
                )
            },
        )

    # ── Folios ────────────────────────────────────────────

    def open_folio(
        self,
        hotel_id: str,
        *,
        folio_type: FolioType | str = FolioType.GUEST,
        currency: str = "USD",
        folio_id: str | None = None,
        reservation_id: str | None = None,
        company_id: str | None = None,
    ) -> Folio:
        folio = self.ledger.open_folio(
            hotel_id=hotel_id,
            folio_type=folio_type,
            currency=currency,
            folio_id=folio_id,
            reservation_id=reservation_id,
            company_id=company_id,
        )
        logger.info(
            "folio opened",
            extra={
                "extra_fields": safe_log_context(
                    folio_id=folio.id, hotel_id=hotel_id, folio_type=folio.folio_type
                )
            },
        )
        return folio

    def close_folio(self, folio_id: str, actor_id: str) -> Folio:
        """Close a folio whose balance is settled (within the balance epsilon)."""
        return self.ledger.set_folio_status(folio_id, FolioStatus.CLOSED, actor_id)

    def reopen_folio(self, folio_id: str, actor_id: str) -> Folio:
        return self.ledger.set_folio_status(folio_id, FolioStatus.OPEN, actor_id)

    def settle_folio(
        self,
        folio_id: str,
        method: PaymentMethod | str,
        actor_id: str,
        *,
        close: bool = True,
    ) -> tuple[FolioTransaction | None, Folio]:
        """Pay the outstanding balance and (by default) close the folio.

        Returns the settling payment (None when nothing was owed) and the
        folio after settlement.
        """
        method = PaymentMethod(method)

        def work(session: LedgerSession) -> tuple[FolioTransaction | None, Folio]:
            folio = self.ledger.require_folio(session, folio_id)
            snapshot = self.ledger.refresh_in(session, folio_id)
            payment = None
            if snapshot.balance > 0:
                payment = self.ledger.append_in(
                    session,
                    folio_id,
                    TransactionDraft(
                        hotel_id=folio.hotel_id,
                        transaction_type=TransactionType.PAYMENT,
                        category=TransactionCategory.PAYMENT,
                        source=TransactionSource.PAYMENT,
                        description="Settlement",
                        amount=snapshot.balance,
                        unit_price=snapshot.balance,
                        payment_method=method,
                        posted_by=actor_id,
                    ),
                )
                self.ledger.refresh_in(session, folio_id)
            if close:
                folio = self.ledger.set_status_in(session, folio_id, FolioStatus.CLOSED, actor_id)
            else:
                folio = self.ledger.require_folio(session, folio_id)
            return payment, folio

        payment, folio = self.ledger.execute([folio_id], work)
        logger.info(
            "folio settled",
            extra={
                "extra_fields": safe_log_context(
                    folio_id=folio_id,
                    amount=payment.total_amount if payment else ZERO,
                    status=folio.status,
                    actor_id=actor_id,
                )
            },
        )
        return payment, folio

    # ── Charges ───────────────────────────────────────────

    def _charge_rates(
        self,
        session: LedgerSession,
        hotel_id: str,
        category: TransactionCategory,
        tax_context: TaxSpec | TaxContext | None,
        meal_plan_id: str | None,
        room_id: str | None,
        extra_charge_id: str | None,
    ) -> list[TaxRate]:
        if isinstance(tax_context, TaxContext):
            if tax_context.hotel_id != hotel_id:
                raise ValidationError(
                    f"Tax context of hotel {tax_context.hotel_id} used on hotel {hotel_id}"
                )
            return resolve_tax_rates(tax_context)
        spec = tax_context or TaxSpec()
        if spec.exempt:
            return []
        return resolve_rates(
            session,
            hotel_id,
            category,
            room_id=spec.room_id or room_id,
            extra_charge_id=spec.extra_charge_id or extra_charge_id,
            meal_plan_id=meal_plan_id,
            rate_ids=spec.rate_ids,
        )

    def append_charge(
        self,
        folio_id: str,
        amount: Any,
        category: TransactionCategory | str,
        tax_context: TaxSpec | TaxContext | None = None,
        meal_plan_context: MealPlanContext | None = None,
        *,
        quantity: Any = 1,
        unit_price: Any = None,
        description: str = "",
        source: TransactionSource | str | None = None,
        transaction_type: TransactionType | str = TransactionType.CHARGE,
        service_charge_amount: Any = 0,
        discount_type: DiscountType | str | None = None,
        discount_value: Any = 0,
        extra_charge_id: str | None = None,
        room_id: str | None = None,
        posted_by: str | None = None,
    ) -> FolioTransaction:
        """Price and append one charge.

        Tax is resolved from ``tax_context`` (explicit candidate rates, or
        catalog references looked up in the store) and computed on the
        discounted amount. Without an explicit policy, a charge whose amount
        equals its catalog unit price times quantity is taken as
        tax-inclusive.

        Raises:
            NotFoundError: Folio, extra charge or meal plan missing.
            ValidationError: Negative amounts, cross-hotel references.
            FolioClosedError: Folio is closed.
        """
        category = TransactionCategory(category)
        transaction_type = TransactionType(transaction_type)
        if transaction_type not in (TransactionType.CHARGE, TransactionType.ROOM_POSTING):
            raise ValidationError(f"append_charge cannot post {transaction_type.value}")
        amount = to_decimal(amount)
        quantity = to_decimal(quantity)
        if amount < 0 or quantity < 0:
            raise ValidationError("Charge amount and quantity must be >= 0")
        meal_plan_id = meal_plan_context.meal_plan_id if meal_plan_context else None
        if isinstance(tax_context, TaxSpec) and tax_context.extra_charge_id:
            extra_charge_id = extra_charge_id or tax_context.extra_charge_id

        def work(session: LedgerSession) -> FolioTransaction:
            folio = self.ledger.require_folio(session, folio_id)
            hotel_id = folio.hotel_id
            if meal_plan_id is not None:
                load_meal_plan(session, hotel_id, meal_plan_id)

            catalog_price = None
            if extra_charge_id is not None:
                catalog_price = load_extra_charge(session, hotel_id, extra_charge_id).unit_price

            rates = self._charge_rates(
                session, hotel_id, category, tax_context, meal_plan_id, room_id, extra_charge_id
            )
            policy = tax_context.policy if isinstance(tax_context, TaxSpec) else None
            if policy is None:
                if catalog_price is not None:
                    settings = self.ledger.settings_in(session, hotel_id)
                    policy = detect_tax_policy(
                        amount,
                        catalog_price,
                        quantity,
                        epsilon=settings.inclusive_match_epsilon,
                    )
                else:
                    policy = TaxPolicy.EXCLUSIVE

            discount = ZERO
            if discount_type is not None:
                discount = compute_discount(amount, discount_type, discount_value)
            computation = compute_tax(amount - discount, rates, policy, hotel_id=hotel_id)

            if unit_price is not None:
                price = to_decimal(unit_price)
            elif catalog_price is not None:
                price = catalog_price
            elif quantity > 0:
                price = round2(amount / quantity)
            else:
                price = amount

            draft = TransactionDraft(
                hotel_id=hotel_id,
                transaction_type=transaction_type,
                category=category,
                source=TransactionSource(
                    source
                    or (TransactionSource.MEAL_PLAN if meal_plan_id else TransactionSource.MANUAL)
                ),
                description=description,
                quantity=quantity,
                unit_price=price,
                amount=amount,
                tax_amount=computation.total,
                service_charge_amount=to_decimal(service_charge_amount),
                discount_amount=discount,
                tax_breakdown=computation.per_rate,
                tax_inclusive=policy == TaxPolicy.INCLUSIVE,
                meal_plan_id=meal_plan_id,
                extra_charge_id=extra_charge_id,
                room_id=room_id,
                posted_by=posted_by,
            )
            transaction = self.ledger.append_in(session, folio_id, draft)
            self.ledger.refresh_in(session, folio_id)
            return transaction

        transaction = self.ledger.execute([folio_id], work)
        self._log("charge appended", transaction)
        return transaction

    def append_tax_posting(
        self,
        folio_id: str,
        amount: Any,
        *,
        category: TransactionCategory | str = TransactionCategory.TAX,
        source_transaction_id: str | None = None,
        description: str = "",
        source: TransactionSource | str = TransactionSource.SYSTEM,
        posted_by: str | None = None,
    ) -> FolioTransaction:
        """Post a standalone tax, city tax or service charge line.

        The amount lands in the tax (or service charge) bucket. When linked
        to a charge via ``source_transaction_id`` the charge must live on the
        same folio.
        """
        category = TransactionCategory(category)
        if category not in LINKED_TAX_CATEGORIES:
            raise ValidationError(f"{category.value} is not a tax posting category")
        amount = to_decimal(amount)
        is_service = category == TransactionCategory.SERVICE_CHARGE

        def work(session: LedgerSession) -> FolioTransaction:
            folio = self.ledger.require_folio(session, folio_id)
            if source_transaction_id is not None:
                charge = self.ledger.require_transaction(session, source_transaction_id)
                if charge.folio_id != folio_id:
                    raise ValidationError(
                        f"Charge {source_transaction_id} is not on folio {folio_id}"
                    )
            draft = TransactionDraft(
                hotel_id=folio.hotel_id,
                transaction_type=TransactionType.CHARGE,
                category=category,
                source=TransactionSource(source),
                description=description or category.value.replace("_", " ").title(),
                amount=amount,
                unit_price=amount,
                total_amount=ZERO,
                tax_amount=ZERO if is_service else amount,
                service_charge_amount=amount if is_service else ZERO,
                source_transaction_id=source_transaction_id,
                posted_by=posted_by,
            )
            transaction = self.ledger.append_in(session, folio_id, draft)
            self.ledger.refresh_in(session, folio_id)
            return transaction

        transaction = self.ledger.execute([folio_id], work)
        self._log("tax posting appended", transaction)
        return transaction

    def post_room_charge(
        self,
        folio_id: str,
        package_rate: Any,
        *,
        room_id: str | None = None,
        meal_plan_context: MealPlanContext | None = None,
        base_rate: Any = None,
        description: str = "Room charge",
        source: TransactionSource | str = TransactionSource.NIGHT_AUDIT,
        posted_by: str | None = None,
    ) -> RoomPosting:
        """Post one night of a package rate.

        The rate is split into room and meal plan; the room part is split
        into net and tax over the room tax stack. Meal-plan components are
        posted as itemised, tax-inclusive lines linked to the room charge.
        Under the room-inclusive meal-plan policy the room charge carries the
        whole package and the lines stay informational; under the itemised
        policy the room charge carries the room part only.
        """

        def work(session: LedgerSession) -> RoomPosting:
            folio = self.ledger.require_folio(session, folio_id)
            hotel_id = folio.hotel_id
            settings = self.ledger.settings_in(session, hotel_id)
            stack = room_tax_stack(session, hotel_id, room_id)

            meal_plan = None
            guest_counts = GuestCounts()
            included = True
            if meal_plan_context is not None:
                meal_plan = load_meal_plan(session, hotel_id, meal_plan_context.meal_plan_id)
                guest_counts = meal_plan_context.guest_counts
                included = meal_plan_context.meal_plan_included

            split = split_room_charge(
                package_rate,
                meal_plan,
                guest_counts,
                stack,
                meal_plan_included=included,
                base_rate=base_rate,
            )
            itemized = settings.meal_plan_policy == MealPlanPolicy.ITEMIZED
            if split.meal_plan_lines and not itemized:
                charged = max(to_decimal(package_rate), ZERO)
            else:
                charged = split.room_final_rate
            breakdown = compute_tax(split.room_final_net_amount, stack, TaxPolicy.EXCLUSIVE)

            room_charge = self.ledger.append_in(
                session,
                folio_id,
                TransactionDraft(
                    hotel_id=hotel_id,
                    transaction_type=TransactionType.ROOM_POSTING,
                    category=TransactionCategory.ROOM,
                    source=TransactionSource(source),
                    description=description,
                    unit_price=charged,
                    amount=charged,
                    total_amount=charged - split.room_final_rate_tax,
                    tax_amount=split.room_final_rate_tax,
                    tax_breakdown=breakdown.per_rate,
                    tax_inclusive=True,
                    room_final_rate=split.room_final_rate,
                    room_final_net_amount=split.room_final_net_amount,
                    room_final_rate_tax=split.room_final_rate_tax,
                    room_final_base_rate=split.room_final_base_rate,
                    room_id=room_id,
                    posted_by=posted_by,
                ),
            )

            lines: list[FolioTransaction] = []
            for line in split.meal_plan_lines:
                extra_charge = line.component.extra_charge
                rates = resolve_rates(
                    session,
                    hotel_id,
                    TransactionCategory.EXTRACT_CHARGE,
                    extra_charge_id=extra_charge.id,
                    meal_plan_id=meal_plan.id,
                )
                tax = compute_tax(line.gross, rates, TaxPolicy.INCLUSIVE, hotel_id=hotel_id)
                lines.append(
                    self.ledger.append_in(
                        session,
                        folio_id,
                        TransactionDraft(
                            hotel_id=hotel_id,
                            transaction_type=TransactionType.CHARGE,
                            category=TransactionCategory.EXTRACT_CHARGE,
                            source=TransactionSource.MEAL_PLAN,
                            description=extra_charge.name or meal_plan.name,
                            quantity=line.quantity,
                            unit_price=extra_charge.unit_price,
                            amount=line.gross,
                            tax_amount=tax.total,
                            tax_breakdown=tax.per_rate,
                            tax_inclusive=True,
                            meal_plan_id=meal_plan.id,
                            extra_charge_id=extra_charge.id,
                            room_id=room_id,
                            source_transaction_id=room_charge.id,
                            posted_by=posted_by,
                        ),
                    )
                )
            self.ledger.refresh_in(session, folio_id)
            return RoomPosting(room_charge=room_charge, meal_plan_lines=tuple(lines), split=split)

        posting = self.ledger.execute([folio_id], work)
        self._log("room charge posted", posting.room_charge)
        return posting

    # ── Payments and corrections ──────────────────────────

    def append_payment(
        self,
        folio_id: str,
        amount: Any,
        method: PaymentMethod | str,
        *,
        description: str = "Payment",
        city_ledger_folio_id: str | None = None,
        posted_by: str | None = None,
    ) -> FolioTransaction:
        """Append a payment.

        A city-ledger payment moves the debt to the company's city-ledger
        folio: the same unit of work posts a matching charge there, linked to
        the payment through ``source_transaction_id``.
        """
        method = PaymentMethod(method)
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be > 0")
        if method == PaymentMethod.CITY_LEDGER and city_ledger_folio_id is None:
            raise ValidationError("City ledger payments require a city ledger folio")
        folio_ids = {folio_id}
        if method == PaymentMethod.CITY_LEDGER:
            folio_ids.add(city_ledger_folio_id)

        def work(session: LedgerSession) -> FolioTransaction:
            folio = self.ledger.require_folio(session, folio_id)
            payment = self.ledger.append_in(
                session,
                folio_id,
                TransactionDraft(
                    hotel_id=folio.hotel_id,
                    transaction_type=TransactionType.PAYMENT,
                    category=TransactionCategory.PAYMENT,
                    source=TransactionSource.PAYMENT,
                    description=description,
                    amount=amount,
                    unit_price=amount,
                    payment_method=method,
                    posted_by=posted_by,
                ),
            )
            self.ledger.refresh_in(session, folio_id)
            if method == PaymentMethod.CITY_LEDGER:
                city_ledger = self.ledger.require_folio(session, city_ledger_folio_id)
                TransferCoordinator.check_target(folio, city_ledger)
                self.ledger.append_in(
                    session,
                    city_ledger.id,
                    TransactionDraft(
                        hotel_id=folio.hotel_id,
                        transaction_type=TransactionType.CHARGE,
                        category=TransactionCategory.POSTING,
                        source=TransactionSource.PAYMENT,
                        description=f"City ledger charge for folio {folio_id}",
                        amount=amount,
                        unit_price=amount,
                        source_transaction_id=payment.id,
                        counterpart_folio_id=folio_id,
                        posted_by=posted_by,
                    ),
                )
                self.ledger.refresh_in(session, city_ledger.id)
            return payment

        payment = self.ledger.execute(folio_ids, work)
        self._log("payment appended", payment)
        return payment

    def append_refund(
        self,
        folio_id: str,
        amount: Any,
        method: PaymentMethod | str,
        *,
        source_transaction_id: str | None = None,
        description: str = "Refund",
        posted_by: str | None = None,
    ) -> FolioTransaction:
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Refund amount must be > 0")

        def work(session: LedgerSession) -> FolioTransaction:
            folio = self.ledger.require_folio(session, folio_id)
            if source_transaction_id is not None:
                paid = self.ledger.require_transaction(session, source_transaction_id)
                if paid.folio_id != folio_id or paid.transaction_type != TransactionType.PAYMENT:
                    raise ValidationError(
                        f"Refund source {source_transaction_id} is not a payment on folio {folio_id}"
                    )
                if amount > paid.total_amount:
                    raise ValidationError("Refund exceeds the refunded payment")
            transaction = self.ledger.append_in(
                session,
                folio_id,
                TransactionDraft(
                    hotel_id=folio.hotel_id,
                    transaction_type=TransactionType.REFUND,
                    category=TransactionCategory.REFUND,
                    source=TransactionSource.PAYMENT,
                    description=description,
                    amount=amount,
                    unit_price=amount,
                    payment_method=PaymentMethod(method),
                    source_transaction_id=source_transaction_id,
                    posted_by=posted_by,
                ),
            )
            self.ledger.refresh_in(session, folio_id)
            return transaction

        transaction = self.ledger.execute([folio_id], work)
        self._log("refund appended", transaction)
        return transaction

    def append_adjustment(
        self,
        folio_id: str,
        amount: Any,
        *,
        description: str,
        source_transaction_id: str | None = None,
        posted_by: str | None = None,
    ) -> FolioTransaction:
        """Append a signed adjustment (negative reduces the balance)."""
        amount = to_decimal(amount)
        if amount == 0:
            raise ValidationError("Adjustment amount must not be zero")
        if not description or not description.strip():
            raise ValidationError("Adjustments require a description")

        def work(session: LedgerSession) -> FolioTransaction:
            folio = self.ledger.require_folio(session, folio_id)
            transaction = self.ledger.append_in(
                session,
                folio_id,
                TransactionDraft(
                    hotel_id=folio.hotel_id,
                    transaction_type=TransactionType.ADJUSTMENT,
                    category=TransactionCategory.ADJUSTMENT,
                    source=TransactionSource.MANUAL,
                    description=description.strip(),
                    amount=amount,
                    unit_price=abs(amount),
                    source_transaction_id=source_transaction_id,
                    posted_by=posted_by,
                ),
            )
            self.ledger.refresh_in(session, folio_id)
            return transaction

        transaction = self.ledger.execute([folio_id], work)
        self._log("adjustment appended", transaction)
        return transaction

    def void_transaction(self, transaction_id: str, reason: str, actor_id: str) -> FolioTransaction:
        return self.ledger.void(transaction_id, reason, actor_id)

    # ── Transfers, balances, audit ────────────────────────

    def transfer_between_folios(
        self,
        source_transaction_id: str,
        target_folio_id: str,
        actor_id: str,
    ) -> TransferResult:
        return self.transfers.transfer(source_transaction_id, target_folio_id, actor_id)

    def split_folio(
        self,
        source_folio_id: str,
        transaction_ids: Iterable[str],
        target_folio_id: str | None = None,
        *,
        actor_id: str,
    ) -> SplitResult:
        """Move charges to ``target_folio_id``, or to a new folio like the source."""
        return self.transfers.split(source_folio_id, transaction_ids, target_folio_id, actor_id)

    def split_folio_by_category(
        self,
        source_folio_id: str,
        categories: Iterable[TransactionCategory | str],
        target_folio_id: str | None = None,
        *,
        actor_id: str,
    ) -> SplitResult:
        return self.transfers.split_by_category(
            source_folio_id, categories, target_folio_id, actor_id
        )

    def recompute_folio_totals(self, folio_id: str) -> BalanceSnapshot:
        """Recompute from the full transaction set and store the cache."""
        return self.ledger.recompute_and_store(folio_id)

    def folio_balance(self, folio_id: str) -> Decimal:
        """Pure recompute; nothing is written."""
        return self.ledger.recompute(folio_id).balance

    def audit_folio(self, folio_id: str) -> AuditReport:
        return self.auditor.audit_folio(folio_id)

    def audit_and_fix(self, folio_id: str) -> AuditReport:
        return self.auditor.audit_and_fix(folio_id)

    def audit(self, scope: AuditScope, *, fix: bool = False) -> list[AuditReport]:
        return self.auditor.audit(scope, fix=fix)

    def get_folio(self, folio_id: str) -> Folio:
        try:
            return self.ledger.get_folio(folio_id)
        except NotFoundError:
            logger.warning(
                "folio lookup failed",
                extra={"extra_fields": safe_log_context(folio_id=folio_id)},
            )
            raise
