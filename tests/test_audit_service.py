"""Tests for the consistency auditor: detection in dry-run, correction in fix mode."""

from datetime import date
from decimal import Decimal

import pytest

from ledgerly.domain.errors import ReconciliationWarning
from ledgerly.domain.meal_plan import GuestCounts
from ledgerly.services.audit_service import AUDIT_ACTOR, AuditScope, MismatchKind
from ledgerly.services.engine import MealPlanContext

from conftest import HOTEL, OTHER_HOTEL
from helpers import void_alone, write_lone_leg


def kinds(report):
    return sorted(m.kind for m in report.mismatches)


def post_wrong_tax_line(engine, folio_id):
    """Breakfast line stored with 5.00 tax where its rates give 1.00."""
    return engine.ledger.append(
        folio_id,
        {
            "hotel_id": HOTEL,
            "transaction_type": "charge",
            "category": "extract_charge",
            "amount": "10",
            "tax_amount": "5",
            "extra_charge_id": "bf",
        },
    )


def corrupt_cached_balance(engine, store, folio_id, balance="999"):
    folio = engine.get_folio(folio_id)
    store.add_folio(folio.model_copy(update={"balance": Decimal(balance)}))


class TestCleanFolio:
    def test_consistent_folio_has_no_mismatches(self, engine, guest_folio):
        engine.post_room_charge(
            guest_folio.id,
            100,
            meal_plan_context=MealPlanContext(meal_plan_id="bb", guest_counts=GuestCounts(adults=2)),
        )
        engine.append_charge(guest_folio.id, 20, "extract_charge", extra_charge_id="bf", quantity=2)
        engine.append_payment(guest_folio.id, 50, "cash")

        report = engine.audit_folio(guest_folio.id)
        assert report.mismatches == []
        assert report.ok
        assert report.stored_balance == report.snapshot.balance


class TestBalanceDrift:
    def test_dry_run_reports_without_writing(self, engine, store, guest_folio):
        engine.append_charge(guest_folio.id, 40, "misc")
        corrupt_cached_balance(engine, store, guest_folio.id)

        report = engine.audit_folio(guest_folio.id)
        assert kinds(report) == [MismatchKind.BALANCE_DRIFT]
        (drift,) = report.mismatches
        assert drift.expected == Decimal("40.00")
        assert drift.actual == Decimal("999")
        assert drift.fixable
        assert report.fixes == []
        assert engine.get_folio(guest_folio.id).balance == Decimal("999")

    def test_fix_restores_cache(self, engine, store, guest_folio):
        engine.append_charge(guest_folio.id, 40, "misc")
        corrupt_cached_balance(engine, store, guest_folio.id)

        report = engine.audit_and_fix(guest_folio.id)
        assert [f.status for f in report.fixes] == ["fixed"]
        assert report.ok
        assert engine.get_folio(guest_folio.id).balance == Decimal("40.00")
        assert engine.audit_folio(guest_folio.id).mismatches == []

    def test_drift_within_epsilon_ignored(self, engine, store, guest_folio):
        engine.append_charge(guest_folio.id, 40, "misc")
        corrupt_cached_balance(engine, store, guest_folio.id, "40.01")
        assert engine.audit_folio(guest_folio.id).mismatches == []


class TestTaxBreakdown:
    def test_detected(self, engine, guest_folio):
        line = post_wrong_tax_line(engine, guest_folio.id)
        report = engine.audit_folio(guest_folio.id)
        (mismatch,) = report.mismatches
        assert mismatch.kind == MismatchKind.TAX_BREAKDOWN
        assert mismatch.transaction_id == line.id
        assert mismatch.expected == Decimal("1.00")
        assert mismatch.actual == Decimal("5.00")
        assert mismatch.fixable

    def test_fix_voids_and_reposts(self, engine, guest_folio):
        line = post_wrong_tax_line(engine, guest_folio.id)
        report = engine.audit_and_fix(guest_folio.id)
        assert report.ok

        rows = engine.ledger.list_transactions(guest_folio.id)
        original = next(t for t in rows if t.id == line.id)
        corrected = next(t for t in rows if t.id != line.id)
        assert original.is_voided
        assert original.voided_by == AUDIT_ACTOR
        assert original.tax_amount == Decimal("5.00")
        assert corrected.tax_amount == Decimal("1.00")
        assert corrected.source_transaction_id is None
        assert corrected.description == f"[corrects {line.id}]"
        assert corrected.extra_charge_id == "bf"
        assert engine.get_folio(guest_folio.id).balance == Decimal("11.00")
        assert engine.audit_folio(guest_folio.id).mismatches == []

    def test_meal_plan_repost_keeps_room_link(self, engine, guest_folio):
        room = engine.post_room_charge(guest_folio.id, 100).room_charge
        line = engine.ledger.append(
            guest_folio.id,
            {
                "hotel_id": HOTEL,
                "transaction_type": "charge",
                "category": "extract_charge",
                "source": "meal_plan",
                "description": "Breakfast",
                "amount": "10",
                "tax_amount": "5",
                "extra_charge_id": "bf",
                "meal_plan_id": "bb",
                "source_transaction_id": room.id,
            },
        )

        report = engine.audit_and_fix(guest_folio.id)
        assert kinds(report) == [MismatchKind.TAX_BREAKDOWN]
        assert report.ok
        corrected = next(
            t for t in engine.ledger.list_transactions(guest_folio.id)
            if t.meal_plan_id == "bb" and not t.is_voided
        )
        assert corrected.id != line.id
        assert corrected.source_transaction_id == room.id
        assert corrected.tax_amount == Decimal("1.00")
        assert corrected.description == f"Breakfast [corrects {line.id}]"

    def test_transferred_line_is_report_only(self, engine, guest_folio, company_folio):
        line = post_wrong_tax_line(engine, guest_folio.id)
        engine.transfer_between_folios(line.id, company_folio.id, "u1")

        report = engine.audit_and_fix(guest_folio.id)
        (mismatch,) = report.mismatches
        assert not mismatch.fixable
        assert report.fixes == []
        assert report.remaining == [mismatch]
        assert not engine.ledger.get_transaction(line.id).is_voided

    def test_fix_failure_is_reported(self, engine, guest_folio):
        post_wrong_tax_line(engine, guest_folio.id)
        engine.settle_folio(guest_folio.id, "cash", "u1")

        report = engine.audit_and_fix(guest_folio.id)
        (fix,) = report.fixes
        assert fix.status == "fix_failed"
        assert "closed" in fix.detail
        assert not report.ok


class TestRoomCharges:
    def test_split_and_tax_mismatch_are_report_only(self, engine, guest_folio):
        room = engine.ledger.append(
            guest_folio.id,
            {
                "hotel_id": HOTEL,
                "transaction_type": "room_posting",
                "category": "room",
                "amount": "80",
                "total_amount": "70.91",
                "tax_amount": "9.09",
                "room_final_rate": "80",
                "room_final_net_amount": "70",
                "room_final_rate_tax": "9.09",
            },
        )
        report = engine.audit_and_fix(guest_folio.id)
        assert kinds(report) == [MismatchKind.ROOM_SPLIT, MismatchKind.ROOM_TAX]
        room_tax = next(m for m in report.mismatches if m.kind == MismatchKind.ROOM_TAX)
        assert room_tax.expected == Decimal("9.00")
        assert room_tax.transaction_id == room.id
        assert report.fixes == []
        assert len(report.remaining) == 2


class TestTransfers:
    def test_orphaned_pair_voided_by_fix(self, engine, guest_folio, company_folio):
        charge = engine.append_charge(guest_folio.id, 40, "misc")
        pair = engine.transfer_between_folios(charge.id, company_folio.id, "u1")
        engine.void_transaction(charge.id, "posted to wrong guest", "u1")

        company_report = engine.audit_folio(company_folio.id)
        assert kinds(company_report) == [MismatchKind.ORPHANED_TRANSFER]

        report = engine.audit_and_fix(guest_folio.id)
        (mismatch,) = report.mismatches
        assert mismatch.kind == MismatchKind.ORPHANED_TRANSFER
        assert mismatch.transaction_id == pair.parent.id
        assert mismatch.related_ids == (pair.child.id,)
        assert report.ok

        assert engine.ledger.get_transaction(pair.parent.id).is_voided
        assert engine.ledger.get_transaction(pair.child.id).is_voided
        assert engine.get_folio(guest_folio.id).balance == Decimal("0.00")
        assert engine.get_folio(company_folio.id).balance == Decimal("0.00")

    def test_leg_whose_mate_was_voided_is_orphaned(self, engine, guest_folio, company_folio):
        charge = engine.append_charge(guest_folio.id, 40, "misc")
        pair = engine.transfer_between_folios(charge.id, company_folio.id, "u1")
        void_alone(engine, pair.parent)

        dry = engine.audit_folio(company_folio.id)
        (mismatch,) = dry.mismatches
        assert mismatch.kind == MismatchKind.ORPHANED_TRANSFER
        assert mismatch.transaction_id == pair.child.id
        assert mismatch.fixable

        report = engine.audit_and_fix(company_folio.id)
        assert report.ok
        assert engine.ledger.get_transaction(pair.child.id).is_voided
        active_legs = [
            t for t in engine.ledger.list_transactions(guest_folio.id)
            if t.is_transfer_leg and not t.is_voided
        ]
        assert active_legs == []
        assert engine.get_folio(guest_folio.id).balance == Decimal("40.00")
        assert engine.get_folio(company_folio.id).balance == Decimal("0.00")

    def test_voided_out_leg_is_not_recreated(self, engine, guest_folio, company_folio):
        charge = engine.append_charge(guest_folio.id, 40, "misc")
        pair = engine.transfer_between_folios(charge.id, company_folio.id, "u1")
        void_alone(engine, pair.child)

        report = engine.audit_and_fix(guest_folio.id)
        assert kinds(report) == [MismatchKind.ORPHANED_TRANSFER]
        assert report.ok
        assert len(engine.ledger.list_transactions(company_folio.id)) == 1
        assert engine.get_folio(guest_folio.id).balance == Decimal("40.00")
        assert engine.get_folio(company_folio.id).balance == Decimal("0.00")

    def test_missing_leg_completed_by_fix(self, engine, guest_folio, company_folio):
        charge = engine.append_charge(guest_folio.id, 40, "misc")
        out_leg = write_lone_leg(engine, charge, company_folio.id)

        dry = engine.audit_folio(guest_folio.id)
        assert kinds(dry) == [MismatchKind.TRANSFER_MISSING_LEG]
        assert dry.mismatches[0].transaction_id == out_leg.id

        report = engine.audit_and_fix(guest_folio.id)
        assert report.ok
        assert engine.get_folio(company_folio.id).balance == Decimal("40.00")
        assert engine.audit_folio(company_folio.id).mismatches == []

    def test_duplicate_legs_reported(self, engine, guest_folio, company_folio):
        charge = engine.append_charge(guest_folio.id, 40, "misc")
        engine.transfer_between_folios(charge.id, company_folio.id, "u1")
        write_lone_leg(engine, charge, company_folio.id)

        report = engine.audit_and_fix(guest_folio.id)
        assert MismatchKind.TRANSFER_DUPLICATE in kinds(report)
        duplicate = next(m for m in report.mismatches if m.kind == MismatchKind.TRANSFER_DUPLICATE)
        assert not duplicate.fixable
        assert len(duplicate.related_ids) == 1
        assert not report.ok

    def test_amount_mismatch_reported(self, engine, guest_folio, company_folio):
        charge = engine.append_charge(guest_folio.id, 40, "misc")
        write_lone_leg(engine, charge, company_folio.id)
        write_lone_leg(engine, charge, company_folio.id, category="transfer_in", amount=Decimal("35"))

        report = engine.audit_folio(guest_folio.id)
        (mismatch,) = report.mismatches
        assert mismatch.kind == MismatchKind.TRANSFER_AMOUNT_MISMATCH
        assert mismatch.expected == Decimal("40.00")
        assert mismatch.actual == Decimal("35.00")


class TestCityLedger:
    @pytest.fixture
    def payment(self, engine, guest_folio, company_folio):
        engine.append_charge(guest_folio.id, 200, "misc")
        return engine.append_payment(
            guest_folio.id, 200, "city_ledger", city_ledger_folio_id=company_folio.id
        )

    def test_posting_of_voided_payment_is_orphaned(self, engine, payment, guest_folio, company_folio):
        void_alone(engine, payment)
        (posting,) = engine.ledger.list_transactions(company_folio.id)

        dry = engine.audit_folio(company_folio.id)
        (mismatch,) = dry.mismatches
        assert mismatch.kind == MismatchKind.ORPHANED_POSTING
        assert mismatch.transaction_id == posting.id
        assert mismatch.actual == Decimal("200.00")

        report = engine.audit_and_fix(company_folio.id)
        assert report.ok
        assert engine.ledger.get_transaction(posting.id).voided_by == AUDIT_ACTOR
        assert engine.get_folio(guest_folio.id).balance == Decimal("200.00")
        assert engine.get_folio(company_folio.id).balance == Decimal("0.00")

    def test_payment_of_voided_posting_is_orphaned(self, engine, payment, guest_folio, company_folio):
        (posting,) = engine.ledger.list_transactions(company_folio.id)
        void_alone(engine, posting)

        report = engine.audit_and_fix(guest_folio.id)
        assert kinds(report) == [MismatchKind.ORPHANED_POSTING]
        assert report.mismatches[0].transaction_id == payment.id
        assert report.ok
        assert engine.ledger.get_transaction(payment.id).is_voided
        assert engine.get_folio(guest_folio.id).balance == Decimal("200.00")

    def test_paired_payment_and_posting_are_clean(self, engine, payment, guest_folio, company_folio):
        assert engine.audit_folio(guest_folio.id).mismatches == []
        assert engine.audit_folio(company_folio.id).mismatches == []


class TestScope:
    @pytest.fixture
    def folios(self, engine, guest_folio, company_folio):
        foreign = engine.open_folio(OTHER_HOTEL, folio_id="F-foreign")
        return guest_folio, company_folio, foreign

    def test_hotel_scope(self, engine, folios):
        reports = engine.audit(AuditScope(hotel_id=HOTEL))
        assert [r.folio_id for r in reports] == ["F-company", "F-guest"]

    def test_folio_scope(self, engine, folios):
        reports = engine.audit(AuditScope(folio_id="F-foreign"))
        assert [r.hotel_id for r in reports] == [OTHER_HOTEL]

    def test_date_scope(self, engine, folios):
        # Folios are created on 2026-03-01 by the test clock.
        assert len(engine.audit(AuditScope(date_from=date(2026, 3, 1), date_to=date(2026, 3, 1)))) == 3
        assert engine.audit(AuditScope(date_from=date(2026, 3, 2))) == []
        assert engine.audit(AuditScope(date_to=date(2026, 2, 28))) == []

    def test_scope_fix_mode(self, engine, store, folios):
        engine.append_charge("F-guest", 40, "misc")
        corrupt_cached_balance(engine, store, "F-guest")
        reports = engine.audit(AuditScope(hotel_id=HOTEL), fix=True)
        assert all(r.fix_mode for r in reports)
        assert all(r.ok for r in reports)
        assert engine.get_folio("F-guest").balance == Decimal("40.00")

    def test_mismatches_convert_to_warnings(self, engine, store, folios):
        engine.append_charge("F-guest", 40, "misc")
        corrupt_cached_balance(engine, store, "F-guest")
        (report,) = engine.audit(AuditScope(folio_id="F-guest"))
        (warning,) = report.warnings
        assert isinstance(warning, ReconciliationWarning)
        assert warning.kind == "balance_drift"
        assert warning.folio_id == "F-guest"
