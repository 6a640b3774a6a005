"""Folio domain: enums and value objects for folios and their transactions.

Transactions are frozen pydantic models. The only permitted change after
creation is the active → voided transition, which produces a new instance
through ``FolioTransaction.voided`` and never touches monetary fields.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .money import ZERO

# ── Enums ─────────────────────────────────────────────────


class FolioType(str, Enum):
    GUEST = "guest"
    COMPANY = "company"
    GROUP = "group"
    MASTER = "master"
    HOUSE = "house"


class FolioStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class TransactionType(str, Enum):
    CHARGE = "charge"
    PAYMENT = "payment"
    ADJUSTMENT = "adjustment"
    TRANSFER = "transfer"
    REFUND = "refund"
    ROOM_POSTING = "room_posting"


class TransactionCategory(str, Enum):
    ROOM = "room"
    TAX = "tax"
    CITY_TAX = "city_tax"
    SERVICE_CHARGE = "service_charge"
    FOOD_BEVERAGE = "food_beverage"
    EXTRACT_CHARGE = "extract_charge"
    MINIBAR = "minibar"
    LAUNDRY = "laundry"
    CANCELLATION_FEE = "cancellation_fee"
    NO_SHOW_FEE = "no_show_fee"
    PAYMENT = "payment"
    ADJUSTMENT = "adjustment"
    REFUND = "refund"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    POSTING = "posting"
    MISC = "misc"


class TransactionSource(str, Enum):
    MANUAL = "manual"
    NIGHT_AUDIT = "night_audit"
    POS = "pos"
    PAYMENT = "payment"
    TRANSFER = "transfer"
    MEAL_PLAN = "meal_plan"
    SYSTEM = "system"


class TransactionStatus(str, Enum):
    ACTIVE = "active"
    VOIDED = "voided"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    BANK_TRANSFER = "bank_transfer"
    CITY_LEDGER = "city_ledger"
    VOUCHER = "voucher"


# Categories that represent a tax or service posting tied to another charge.
LINKED_TAX_CATEGORIES = frozenset(
    {
        TransactionCategory.TAX,
        TransactionCategory.CITY_TAX,
        TransactionCategory.SERVICE_CHARGE,
    }
)

# Transaction types whose value can be moved to another folio.
TRANSFERABLE_TYPES = frozenset(
    {
        TransactionType.CHARGE,
        TransactionType.ROOM_POSTING,
        TransactionType.ADJUSTMENT,
    }
)


# ── Value objects ─────────────────────────────────────────


class TaxLine(BaseModel):
    """One tax rate's share of a transaction's tax."""

    model_config = ConfigDict(frozen=True)

    rate_id: str
    name: str = ""
    tax_amount: Decimal
    percentage: Decimal | None = None


class Folio(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    hotel_id: str
    folio_type: FolioType = FolioType.GUEST
    currency: str = "USD"
    status: FolioStatus = FolioStatus.OPEN
    reservation_id: str | None = None
    company_id: str | None = None

    # Cached totals of the last recompute. Never the source of truth.
    balance: Decimal = ZERO
    total_charges: Decimal = ZERO
    total_payments: Decimal = ZERO
    total_adjustments: Decimal = ZERO
    total_tax: Decimal = ZERO
    total_service_charge: Decimal = ZERO
    total_discount: Decimal = ZERO

    created_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status == FolioStatus.OPEN


class FolioTransaction(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    folio_id: str
    hotel_id: str
    transaction_type: TransactionType
    category: TransactionCategory
    source: TransactionSource = TransactionSource.MANUAL
    description: str = ""

    quantity: Decimal = Field(default=Decimal("1"), ge=0)
    unit_price: Decimal = Field(default=ZERO, ge=0)
    amount: Decimal
    total_amount: Decimal
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

    # Transfer legs point at each other; both point at the transferred
    # transaction through source_transaction_id.
    original_transaction_id: str | None = None
    source_transaction_id: str | None = None
    counterpart_folio_id: str | None = None

    status: TransactionStatus = TransactionStatus.ACTIVE
    void_reason: str | None = None
    voided_by: str | None = None
    voided_at: datetime | None = None

    posted_by: str | None = None
    created_at: datetime

    @property
    def is_voided(self) -> bool:
        return self.status == TransactionStatus.VOIDED

    @property
    def is_transfer_leg(self) -> bool:
        return self.transaction_type == TransactionType.TRANSFER

    @property
    def is_city_ledger_posting(self) -> bool:
        """Company-folio charge created by a city-ledger payment."""
        return (
            self.transaction_type == TransactionType.CHARGE
            and self.category == TransactionCategory.POSTING
            and self.source == TransactionSource.PAYMENT
        )

    @property
    def balance_effect(self) -> Decimal:
        """Gross amount this transaction adds to its folio's charges side."""
        return self.total_amount + self.tax_amount + self.service_charge_amount

    def voided(self, *, reason: str, actor_id: str, at: datetime) -> FolioTransaction:
        return self.model_copy(
            update={
                "status": TransactionStatus.VOIDED,
                "void_reason": reason,
                "voided_by": actor_id,
                "voided_at": at,
            }
        )


class BalanceSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    folio_id: str
    total_charges: Decimal = ZERO
    total_payments: Decimal = ZERO
    total_adjustments: Decimal = ZERO
    total_tax: Decimal = ZERO
    total_service_charge: Decimal = ZERO
    total_discount: Decimal = ZERO
    balance: Decimal = ZERO
    transaction_count: int = 0
