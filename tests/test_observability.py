"""Tests for observability utilities."""

import json
import logging
import sys
from decimal import Decimal

from ledgerly.domain.folio import TransactionCategory
from ledgerly.observability.correlation import (
    correlation_scope,
    get_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from ledgerly.observability.logging import JsonFormatter, get_logger
from ledgerly.observability.redaction import (
    redact_string,
    redact_value,
    safe_log_context,
)


class TestRedaction:
    """Tests for redaction helpers."""

    def test_redact_card_number(self):
        result = redact_string("Paid with 4111 1111 1111 1111 at desk")
        assert "1111 1111" not in result
        assert "[REDACTED]" in result
        assert result.endswith("at desk")

    def test_short_numbers_kept(self):
        assert redact_string("Room 1204, 2 nights") == "Room 1204, 2 nights"

    def test_redact_email(self):
        result = redact_string("Invoice to guest@example.com")
        assert "guest@example.com" not in result
        assert "[REDACTED]" in result

    def test_redact_value_dict_only_keys(self):
        result = redact_value({"card": "4111111111111111", "holder": "john"})
        assert "4111" not in result
        assert "john" not in result
        assert "card" in result
        assert "holder" in result

    def test_redact_value_list_only_len(self):
        result = redact_value(["a", "b", "c"])
        assert "a" not in result
        assert "len=3" in result

    def test_redact_value_scalars(self):
        assert redact_value(None) == "null"
        assert redact_value(True) == "true"
        assert redact_value(Decimal("10.50")) == "10.50"
        assert redact_value(TransactionCategory.MINIBAR) == "minibar"
        assert redact_value(object()) == "<object>"

    def test_safe_log_context(self):
        ctx = safe_log_context(description="card 4111111111111111", amount=Decimal("5.00"), count=42)
        assert "[REDACTED]" in ctx["description"]
        assert ctx["amount"] == "5.00"
        assert ctx["count"] == "42"


def make_record(msg="ledger event", **extra):
    record = logging.LogRecord("ledgerly.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    def test_basic_fields(self):
        out = json.loads(JsonFormatter().format(make_record()))
        assert out["level"] == "INFO"
        assert out["logger"] == "ledgerly.test"
        assert out["message"] == "ledger event"
        assert "correlationId" not in out

    def test_extra_fields_merged(self):
        record = make_record(extra_fields={"folio_id": "F1", "balance": Decimal("12.30")})
        out = json.loads(JsonFormatter().format(record))
        assert out["folio_id"] == "F1"
        assert out["balance"] == "12.30"

    def test_includes_correlation_id(self):
        with correlation_scope("cid-log"):
            out = json.loads(JsonFormatter().format(make_record()))
        assert out["correlationId"] == "cid-log"

    def test_exception_rendered(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record(exc_info=sys.exc_info())
        out = json.loads(JsonFormatter().format(record))
        assert "ValueError: boom" in out["exception"]

    def test_get_logger_single_handler(self):
        first = get_logger("ledgerly.test.single")
        second = get_logger("ledgerly.test.single")
        assert first is second
        assert len(second.handlers) == 1
        assert isinstance(second.handlers[0].formatter, JsonFormatter)


class TestCorrelation:
    def test_scope_sets_and_resets(self):
        assert get_correlation_id() == ""
        with correlation_scope("cid-1") as cid:
            assert cid == "cid-1"
            assert get_correlation_id() == "cid-1"
        assert get_correlation_id() == ""

    def test_scope_generates_id(self):
        with correlation_scope() as cid:
            assert cid
            assert get_correlation_id() == cid

    def test_nested_scope_reuses_ambient_id(self):
        with correlation_scope("outer"):
            with correlation_scope() as inner:
                assert inner == "outer"
            assert get_correlation_id() == "outer"

    def test_nested_explicit_id_overrides(self):
        with correlation_scope("outer"):
            with correlation_scope("inner") as inner:
                assert inner == "inner"
            assert get_correlation_id() == "outer"

    def test_set_and_reset(self):
        token = set_correlation_id("manual")
        try:
            assert get_correlation_id() == "manual"
        finally:
            reset_correlation_id(token)
        assert get_correlation_id() == ""
