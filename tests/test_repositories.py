"""Tests for the raw-SQL repositories against mocked cursors."""

import json
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from ledgerly.domain.events import LedgerEvent
from ledgerly.domain.folio import Folio, TaxLine
from ledgerly.infra.repositories import catalog_repository as catalog
from ledgerly.infra.repositories import folio_repository as folios
from ledgerly.infra.repositories import outbox_repository as outbox
from ledgerly.infra.repositories import transactions_repository as transactions

from helpers import BASE_TIME, make_txn

FOLIO_ROW = (
    "F1", "H1", "guest", "USD", "open", None, None,
    Decimal("10.00"), Decimal("10.00"), Decimal("0.00"), Decimal("0.00"),
    Decimal("0.00"), Decimal("0.00"), Decimal("0.00"), BASE_TIME,
)


def echo_cursor():
    """Cursor whose RETURNING row is the parameter tuple of the last execute."""
    cur = MagicMock()

    def execute(sql, params=None):
        cur.fetchone.return_value = params

    cur.execute.side_effect = execute
    return cur


class TestFolioRepository:
    def test_get_folio(self):
        cur = MagicMock()
        cur.fetchone.return_value = FOLIO_ROW
        folio = folios.get_folio(cur, "F1")
        assert folio.id == "F1"
        assert folio.balance == Decimal("10.00")
        assert folio.is_open

    def test_get_missing_folio(self):
        cur = MagicMock()
        cur.fetchone.return_value = None
        assert folios.get_folio(cur, "F1") is None

    def test_list_folios_filters(self):
        cur = MagicMock()
        cur.fetchall.return_value = [FOLIO_ROW]
        result = folios.list_folios(cur, hotel_id="H1", folio_ids=["F1", "F2"])
        sql, params = cur.execute.call_args[0]
        assert "hotel_id = %s AND id = ANY(%s)" in sql
        assert "ORDER BY id" in sql
        assert params == ("H1", ["F1", "F2"])
        assert [f.id for f in result] == ["F1"]

    def test_list_folios_unfiltered(self):
        cur = MagicMock()
        cur.fetchall.return_value = []
        folios.list_folios(cur)
        sql, params = cur.execute.call_args[0]
        assert "WHERE" not in sql
        assert params == ()

    def test_update_missing_folio(self):
        cur = MagicMock()
        cur.fetchone.return_value = None
        with pytest.raises(LookupError):
            folios.update_folio(cur, Folio(id="F9", hotel_id="H1"))

    def test_insert_folio_passes_enum_values(self):
        cur = MagicMock()
        cur.fetchone.return_value = FOLIO_ROW
        folios.insert_folio(cur, Folio(id="F1", hotel_id="H1", folio_type="company"))
        params = cur.execute.call_args[0][1]
        assert params[2] == "company"
        assert params[4] == "open"


class TestTransactionsRepository:
    def test_insert_serializes_enums_and_breakdown(self):
        txn = make_txn(
            amount="100",
            tax_amount="10",
            tax_breakdown=(TaxLine(rate_id="vat10", tax_amount=Decimal("10.00"), percentage=Decimal("10")),),
            payment_method=None,
        )
        cur = echo_cursor()
        stored = transactions.insert_transaction(cur, txn)

        params = cur.execute.call_args[0][1]
        row = dict(zip(transactions._FIELDS, params))
        assert row["transaction_type"] == "charge"
        assert row["status"] == "active"
        assert json.loads(row["tax_breakdown"])[0]["rate_id"] == "vat10"
        assert stored == txn

    def test_row_with_jsonb_breakdown(self):
        txn = make_txn(amount="5")
        row = [getattr(txn, f) for f in transactions._FIELDS]
        row[transactions._FIELDS.index("tax_breakdown")] = [
            {"rate_id": "city2", "name": "", "tax_amount": "2.00", "percentage": None}
        ]
        row[transactions._FIELDS.index("transaction_type")] = "charge"
        row[transactions._FIELDS.index("category")] = "misc"
        row[transactions._FIELDS.index("source")] = "manual"
        row[transactions._FIELDS.index("status")] = "active"
        cur = MagicMock()
        cur.fetchone.return_value = tuple(row)

        loaded = transactions.get_transaction(cur, txn.id)
        assert loaded.tax_breakdown[0].tax_amount == Decimal("2.00")
        assert loaded.tax_breakdown[0].percentage is None

    def test_list_transactions_ordered(self):
        cur = MagicMock()
        cur.fetchall.return_value = []
        transactions.list_transactions(cur, "F1")
        sql = cur.execute.call_args[0][0]
        assert "ORDER BY created_at, id" in sql

    def test_mark_voided_only_active_rows(self):
        txn = make_txn(amount="5").voided(
            reason="error", actor_id="u1", at=datetime(2026, 3, 2, tzinfo=timezone.utc)
        )
        cur = MagicMock()
        cur.fetchone.return_value = None
        with pytest.raises(LookupError):
            transactions.mark_voided(cur, txn)
        sql, params = cur.execute.call_args[0]
        assert "status = 'active'" in sql
        assert params[:2] == ("error", "u1")


class TestCatalogRepository:
    def test_get_tax_rates_keeps_requested_order(self):
        cur = MagicMock()
        cur.fetchall.return_value = [
            ("city2", "H1", "City", "flat_amount", Decimal("0"), Decimal("2")),
            ("vat10", "H1", "VAT", "flat_percentage", Decimal("10"), Decimal("0")),
        ]
        rates = catalog.get_tax_rates(cur, ["vat10", "city2", "vat10"])
        assert [r.id for r in rates] == ["vat10", "city2"]
        assert cur.execute.call_args[0][1] == (["vat10", "city2"],)

    def test_get_tax_rates_empty(self):
        cur = MagicMock()
        assert catalog.get_tax_rates(cur, []) == []
        cur.execute.assert_not_called()

    def test_get_extra_charge_with_rates(self):
        cur = MagicMock()
        cur.fetchone.return_value = ("bf", "H1", "Breakfast", Decimal("10"), False)
        cur.fetchall.return_value = [("vat10",)]
        extra_charge = catalog.get_extra_charge(cur, "bf")
        assert extra_charge.unit_price == Decimal("10")
        assert extra_charge.tax_rate_ids == ("vat10",)

    def test_get_missing_meal_plan(self):
        cur = MagicMock()
        cur.fetchone.return_value = None
        assert catalog.get_meal_plan(cur, "bb") is None

    @pytest.mark.parametrize(
        "stored, expected",
        [
            (None, {}),
            ({"void_tax_policy": "cascade_linked"}, {"void_tax_policy": "cascade_linked"}),
            ('{"meal_plan_policy": "itemized"}', {"meal_plan_policy": "itemized"}),
            ("[1, 2]", {}),
        ],
    )
    def test_hotel_ledger_config(self, stored, expected):
        cur = MagicMock()
        cur.fetchone.return_value = (stored,)
        assert catalog.hotel_ledger_config(cur, "H1") == expected


class TestOutboxRepository:
    def test_emit_ledger_event(self):
        cur = MagicMock()
        cur.fetchone.return_value = (42,)
        event = LedgerEvent(
            event_type="transaction.appended",
            hotel_id="H1",
            aggregate_type="folio_transaction",
            aggregate_id="t-1",
            payload={"total_amount": "10.00"},
            correlation_id="c-1",
            occurred_at=BASE_TIME,
        )
        assert outbox.emit_ledger_event(cur, event) == 42
        params = cur.execute.call_args[0][1]
        assert params[:4] == ("H1", "transaction.appended", "folio_transaction", "t-1")
        assert json.loads(params[4]) == {"total_amount": "10.00"}
        assert params[5:] == ("c-1", BASE_TIME)

    def test_empty_payload_stored_as_null(self):
        cur = MagicMock()
        cur.fetchone.return_value = (1,)
        outbox.emit_event(
            cur,
            hotel_id="H1",
            event_type="folio.closed",
            aggregate_type="folio",
            aggregate_id="F1",
        )
        assert cur.execute.call_args[0][1][4] is None
