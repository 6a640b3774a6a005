"""Balance aggregation: deterministic fold over a folio's transactions.

    balance = charges + taxes + service charges + adjustments - payments

Pure and idempotent: the same transaction set always yields the same
snapshot. Amounts are quantized Decimals, so summation order is irrelevant.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Iterable

from pydantic import BaseModel, ConfigDict

from .folio import (
    LINKED_TAX_CATEGORIES,
    BalanceSnapshot,
    FolioTransaction,
    TransactionCategory,
    TransactionType,
)


class MealPlanPolicy(str, Enum):
    # Meal-plan lines are informational; their value lives in the room charge.
    ROOM_INCLUSIVE = "room_inclusive"
    # Meal-plan lines are billed on their own.
    ITEMIZED = "itemized"


class VoidTaxPolicy(str, Enum):
    # Tax postings survive the void of the charge they belong to.
    KEEP_LINKED = "keep_linked"
    # Tax postings of a voided charge drop out of the balance with it.
    CASCADE_LINKED = "cascade_linked"


class BalancePolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    meal_plan_policy: MealPlanPolicy = MealPlanPolicy.ROOM_INCLUSIVE
    void_tax_policy: VoidTaxPolicy = VoidTaxPolicy.KEEP_LINKED


DEFAULT_POLICY = BalancePolicy()


def ordered(transactions: Iterable[FolioTransaction]) -> list[FolioTransaction]:
    """Creation order, ties broken by id."""
    return sorted(transactions, key=lambda t: (t.created_at, t.id))


def contributes(
    transaction: FolioTransaction,
    policy: BalancePolicy = DEFAULT_POLICY,
    voided_ids: frozenset[str] = frozenset(),
) -> bool:
    """Whether ``transaction`` takes part in the balance under ``policy``."""
    if transaction.is_voided:
        return False
    if (
        transaction.meal_plan_id is not None
        and policy.meal_plan_policy == MealPlanPolicy.ROOM_INCLUSIVE
    ):
        return False
    if (
        policy.void_tax_policy == VoidTaxPolicy.CASCADE_LINKED
        and transaction.category in LINKED_TAX_CATEGORIES
        and transaction.source_transaction_id in voided_ids
    ):
        return False
    return True


def recompute_balance(
    folio_id: str,
    transactions: Iterable[FolioTransaction],
    policy: BalancePolicy = DEFAULT_POLICY,
) -> BalanceSnapshot:
    """Fold ``transactions`` of ``folio_id`` into a BalanceSnapshot.

    Transactions of other folios are ignored, so the full arena may be
    passed in.
    """
    rows = [t for t in ordered(transactions) if t.folio_id == folio_id]
    voided_ids = frozenset(t.id for t in rows if t.is_voided)

    charges = Decimal("0")
    payments = Decimal("0")
    adjustments = Decimal("0")
    taxes = Decimal("0")
    service_charges = Decimal("0")
    discounts = Decimal("0")
    counted = 0

    for t in rows:
        if not contributes(t, policy, voided_ids):
            continue
        counted += 1
        total = t.total_amount
        kind = t.transaction_type

        if kind in (TransactionType.CHARGE, TransactionType.ROOM_POSTING):
            charges += total
        elif kind == TransactionType.PAYMENT:
            payments += abs(total)
        elif kind == TransactionType.ADJUSTMENT:
            adjustments += total
        elif kind == TransactionType.TRANSFER:
            if t.category == TransactionCategory.TRANSFER_IN:
                charges += total
            elif t.category == TransactionCategory.TRANSFER_OUT:
                payments += abs(total)
        elif kind == TransactionType.REFUND:
            payments -= abs(total)

        taxes += t.tax_amount
        service_charges += t.service_charge_amount
        discounts += t.discount_amount

    balance = charges + taxes + service_charges + adjustments - payments
    return BalanceSnapshot(
        folio_id=folio_id,
        total_charges=charges,
        total_payments=payments,
        total_adjustments=adjustments,
        total_tax=taxes,
        total_service_charge=service_charges,
        total_discount=discounts,
        balance=balance,
        transaction_count=counted,
    )
