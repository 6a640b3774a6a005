"""Transaction shape rules.

Turns a producer's draft into an immutable FolioTransaction, enforcing:
- hotel ownership (draft hotel == folio hotel) and an open folio;
- non-negative quantity, unit price and amounts (adjustments may be signed);
- meal_plan_id set if and only if the transaction is meal-plan sourced;
- transfer type <-> transfer_in/transfer_out category;
- total_amount excludes tax and service charge.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping

import pydantic
from pydantic import BaseModel, ConfigDict

from .errors import FolioClosedError, ValidationError
from .folio import (
    Folio,
    FolioTransaction,
    PaymentMethod,
    TaxLine,
    TransactionCategory,
    TransactionSource,
    TransactionType,
)
from .money import HUNDRED, ZERO, clamp_non_negative, round2, to_decimal

_TRANSFER_CATEGORIES = frozenset(
    {TransactionCategory.TRANSFER_IN, TransactionCategory.TRANSFER_OUT}
)
_CHARGE_TYPES = frozenset({TransactionType.CHARGE, TransactionType.ROOM_POSTING})


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FLAT = "flat"


def compute_discount(amount: Any, discount_type: DiscountType | str, value: Any) -> Decimal:
    """Discount on ``amount``: a percentage of it, or a flat value capped at it."""
    amount = clamp_non_negative(amount)
    value = clamp_non_negative(value)
    if DiscountType(discount_type) == DiscountType.PERCENTAGE:
        return round2(amount * value / HUNDRED)
    return round2(min(value, amount))


class TransactionDraft(BaseModel):
    """Producer-supplied fields of a transaction before it is appended."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    hotel_id: str
    transaction_type: TransactionType
    category: TransactionCategory
    source: TransactionSource = TransactionSource.MANUAL
    description: str = ""

    quantity: Decimal = Decimal("1")
    unit_price: Decimal = ZERO
    amount: Decimal
    total_amount: Decimal | None = None
    tax_amount: Decimal = ZERO
    service_charge_amount: Decimal = ZERO
    discount_amount: Decimal = ZERO
    tax_breakdown: tuple[TaxLine, ...] = ()
    tax_inclusive: bool = False
    payment_method: PaymentMethod | None = None

    room_final_rate: Decimal | None = None
    room_final_net_amount: Decimal | None = None
    room_final_rate_tax: Decimal | None = None
    room_final_base_rate: Decimal | None = None

    meal_plan_id: str | None = None
    extra_charge_id: str | None = None
    room_id: str | None = None
    original_transaction_id: str | None = None
    source_transaction_id: str | None = None
    counterpart_folio_id: str | None = None
    posted_by: str | None = None


def as_draft(fields: TransactionDraft | Mapping[str, Any]) -> TransactionDraft:
    """Coerce ``fields`` to a draft; schema errors become ValidationError."""
    if isinstance(fields, TransactionDraft):
        return fields
    try:
        return TransactionDraft(**dict(fields))
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Malformed transaction fields: {exc}") from exc


def _check_shape(draft: TransactionDraft) -> None:
    if draft.quantity < 0:
        raise ValidationError("quantity must be >= 0")
    if draft.unit_price < 0:
        raise ValidationError("unit_price must be >= 0")
    if draft.transaction_type != TransactionType.ADJUSTMENT and draft.amount < 0:
        raise ValidationError(
            f"amount must be >= 0 for {draft.transaction_type.value} transactions"
        )
    for name in ("tax_amount", "service_charge_amount", "discount_amount"):
        if getattr(draft, name) < 0:
            raise ValidationError(f"{name} must be >= 0")
    if draft.discount_amount > abs(draft.amount):
        raise ValidationError("discount_amount cannot exceed amount")

    if (draft.meal_plan_id is not None) != (draft.source == TransactionSource.MEAL_PLAN):
        raise ValidationError(
            "meal_plan_id must be set exactly for meal-plan sourced transactions"
        )

    is_transfer_type = draft.transaction_type == TransactionType.TRANSFER
    is_transfer_category = draft.category in _TRANSFER_CATEGORIES
    if is_transfer_type != is_transfer_category:
        raise ValidationError(
            "transfer transactions must use transfer_in/transfer_out categories"
        )
    if draft.transaction_type == TransactionType.PAYMENT and draft.payment_method is None:
        raise ValidationError("payment transactions require a payment_method")


def _total_amount(draft: TransactionDraft) -> Decimal:
    if draft.total_amount is not None:
        return draft.total_amount
    if draft.transaction_type in _CHARGE_TYPES:
        principal = draft.amount - draft.discount_amount
        if draft.tax_inclusive:
            principal -= draft.tax_amount
        return clamp_non_negative(principal)
    return draft.amount


def build_transaction(
    draft: TransactionDraft | Mapping[str, Any],
    folio: Folio,
    *,
    transaction_id: str,
    created_at: datetime,
) -> FolioTransaction:
    """Validate ``draft`` against ``folio`` and freeze it as a transaction.

    Raises:
        ValidationError: Shape, ownership or sign violations.
        FolioClosedError: The folio is closed.
    """
    draft = as_draft(draft)
    if draft.hotel_id != folio.hotel_id:
        raise ValidationError(
            f"Transaction hotel {draft.hotel_id} does not own folio {folio.id}"
        )
    if not folio.is_open:
        raise FolioClosedError(folio.id)
    _check_shape(draft)

    def opt(value: Decimal | None) -> Decimal | None:
        return None if value is None else round2(value)

    try:
        return FolioTransaction(
            id=transaction_id,
            folio_id=folio.id,
            hotel_id=draft.hotel_id,
            transaction_type=draft.transaction_type,
            category=draft.category,
            source=draft.source,
            description=draft.description,
            quantity=to_decimal(draft.quantity),
            unit_price=round2(draft.unit_price),
            amount=round2(draft.amount),
            total_amount=round2(_total_amount(draft)),
            tax_amount=round2(draft.tax_amount),
            service_charge_amount=round2(draft.service_charge_amount),
            discount_amount=round2(draft.discount_amount),
            tax_breakdown=draft.tax_breakdown,
            tax_inclusive=draft.tax_inclusive,
            payment_method=draft.payment_method,
            room_final_rate=opt(draft.room_final_rate),
            room_final_net_amount=opt(draft.room_final_net_amount),
            room_final_rate_tax=opt(draft.room_final_rate_tax),
            room_final_base_rate=opt(draft.room_final_base_rate),
            meal_plan_id=draft.meal_plan_id,
            extra_charge_id=draft.extra_charge_id,
            room_id=draft.room_id,
            original_transaction_id=draft.original_transaction_id,
            source_transaction_id=draft.source_transaction_id,
            counterpart_folio_id=draft.counterpart_folio_id,
            posted_by=draft.posted_by,
            created_at=created_at,
        )
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid transaction: {exc}") from exc
