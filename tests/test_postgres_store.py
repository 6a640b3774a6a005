"""Tests for the PostgreSQL store's session contract (no real DB needed)."""

import os
from contextlib import contextmanager
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from ledgerly.domain.events import LedgerEvent
from ledgerly.domain.folio import Folio
from ledgerly.infra.db import lock_folios
from ledgerly.infra.postgres_store import PostgresLedgerStore
from ledgerly.infra.store import StoreUsageError

from helpers import BASE_TIME, make_txn


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def store(cursor):
    @contextmanager
    def fake_txn(conn=None):
        yield cursor

    with patch("ledgerly.infra.postgres_store.txn", fake_txn):
        yield PostgresLedgerStore()


def event():
    return LedgerEvent(
        event_type="folio.closed",
        hotel_id="H1",
        aggregate_type="folio",
        aggregate_id="F1",
        occurred_at=BASE_TIME,
    )


class TestLockFolios:
    def test_locks_in_ascending_order(self):
        cur = MagicMock()
        cur.fetchall.return_value = [("F1",), ("F2",)]
        locked = lock_folios(cur, ["F2", "F1", "F2"])
        sql, params = cur.execute.call_args[0]
        assert "FOR UPDATE" in sql
        assert "ORDER BY id" in sql
        assert params == (["F1", "F2"],)
        assert locked == ["F1", "F2"]

    def test_nothing_to_lock(self):
        cur = MagicMock()
        assert lock_folios(cur, []) == []
        cur.execute.assert_not_called()


class TestUnitOfWork:
    def test_locks_requested_folios_first(self, store, cursor):
        with patch("ledgerly.infra.postgres_store.lock_folios") as mock_lock:
            with store.unit_of_work(["F2", "F1"]):
                pass
        mock_lock.assert_called_once_with(cursor, frozenset({"F1", "F2"}))

    def test_write_outside_lock_rejected(self, store):
        with patch("ledgerly.infra.postgres_store.lock_folios"):
            with store.unit_of_work(["F1"]) as session:
                with pytest.raises(StoreUsageError):
                    session.insert_transaction(make_txn(folio_id="F2", amount="1"))

    def test_read_session_rejects_writes(self, store):
        with store.read_session() as session:
            with pytest.raises(StoreUsageError):
                session.insert_folio(Folio(id="F1", hotel_id="H1"))
            with pytest.raises(StoreUsageError):
                session.add_event(event())

    def test_missing_row_maps_to_usage_error(self, store, cursor):
        cursor.fetchone.return_value = None
        with patch("ledgerly.infra.postgres_store.lock_folios"):
            with store.unit_of_work(["F1"]) as session:
                with pytest.raises(StoreUsageError):
                    session.update_folio(Folio(id="F1", hotel_id="H1", balance=Decimal("5")))

    def test_events_go_to_outbox(self, store, cursor):
        cursor.fetchone.return_value = (7,)
        with patch("ledgerly.infra.postgres_store.lock_folios"):
            with store.unit_of_work(["F1"]) as session:
                session.add_event(event())
        assert len(session.events) == 1
        sql = cursor.execute.call_args[0][0]
        assert "INSERT INTO outbox_events" in sql


_skip_no_db = pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"),
    reason="DATABASE_URL not set - skipping DB integration tests",
)


@_skip_no_db
class TestPostgresRoundTrip:
    """Runs against a migrated database (alembic upgrade head)."""

    def test_open_charge_and_void(self):
        from ledgerly.infra.db import txn
        from ledgerly.services.engine import FolioLedgerEngine

        with txn() as cur:
            cur.execute(
                "INSERT INTO hotels (id, name) VALUES (%s, %s) ON CONFLICT (id) DO NOTHING",
                ("H-it", "Integration"),
            )

        engine = FolioLedgerEngine(PostgresLedgerStore())
        folio = engine.open_folio("H-it")
        charge = engine.append_charge(folio.id, "25.50", "misc")
        assert engine.get_folio(folio.id).balance == Decimal("25.50")

        engine.void_transaction(charge.id, "integration test", "it")
        assert engine.get_folio(folio.id).balance == Decimal("0.00")
        assert engine.audit_folio(folio.id).ok
