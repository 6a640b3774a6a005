"""Shared pytest fixtures for ledger tests."""
import sys
sys.dont_write_bytecode = True

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402

from ledgerly.domain.folio import TransactionCategory  # noqa: E402
from ledgerly.domain.meal_plan import (  # noqa: E402
    ExtraCharge,
    GuestType,
    MealPlan,
    MealPlanComponent,
)
from ledgerly.domain.tax import TaxPostingType, TaxRate  # noqa: E402
from ledgerly.infra.memory_store import InMemoryLedgerStore  # noqa: E402
from ledgerly.infra.settings import LedgerSettings  # noqa: E402
from ledgerly.services.engine import FolioLedgerEngine  # noqa: E402

from helpers import SequenceIds, TickingClock  # noqa: E402

HOTEL = "H1"
OTHER_HOTEL = "H2"

VAT10 = TaxRate(id="vat10", hotel_id=HOTEL, name="VAT", percentage=Decimal("10"))
CITY2 = TaxRate(
    id="city2",
    hotel_id=HOTEL,
    name="City tax",
    posting_type=TaxPostingType.FLAT_AMOUNT,
    amount=Decimal("2"),
)
FOREIGN_VAT = TaxRate(id="vat20-h2", hotel_id=OTHER_HOTEL, name="VAT", percentage=Decimal("20"))

BREAKFAST = ExtraCharge(
    id="bf",
    hotel_id=HOTEL,
    name="Breakfast",
    unit_price=Decimal("10"),
    tax_rate_ids=("vat10",),
)
PARKING = ExtraCharge(
    id="pk",
    hotel_id=HOTEL,
    name="Parking",
    unit_price=Decimal("5"),
    fixed_price=True,
)
BED_AND_BREAKFAST = MealPlan(
    id="bb",
    hotel_id=HOTEL,
    name="Bed & Breakfast",
    components=(
        MealPlanComponent(
            extra_charge=BREAKFAST,
            quantity_per_day=Decimal("1"),
            target_guest_type=GuestType.ADULT,
        ),
    ),
)


def seed_catalog(store: InMemoryLedgerStore) -> InMemoryLedgerStore:
    for rate in (VAT10, CITY2, FOREIGN_VAT):
        store.add_tax_rate(rate)
    store.attach_hotel_rates(HOTEL, TransactionCategory.ROOM, ["vat10", "city2"])
    store.attach_hotel_rates(HOTEL, TransactionCategory.CANCELLATION_FEE, ["vat10"])
    store.add_extra_charge(BREAKFAST)
    store.add_extra_charge(PARKING)
    store.add_meal_plan(BED_AND_BREAKFAST)
    return store


@pytest.fixture
def store():
    return seed_catalog(InMemoryLedgerStore())


@pytest.fixture
def settings():
    return LedgerSettings()


@pytest.fixture
def engine(store, settings):
    return FolioLedgerEngine(
        store,
        settings=settings,
        clock=TickingClock(),
        id_factory=SequenceIds(),
    )


@pytest.fixture
def guest_folio(engine):
    return engine.open_folio(HOTEL, folio_id="F-guest")


@pytest.fixture
def company_folio(engine):
    return engine.open_folio(HOTEL, folio_id="F-company", folio_type="company")
