"""Ledger event outbox.

Revision ID: 002_ledger_outbox
Revises: 001_ledger_schema
Create Date: 2026-10-19
"""
from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "002_ledger_outbox"
down_revision = "001_ledger_schema"
branch_labels = None
depends_on = None

_SQL_FILE = Path(__file__).resolve().parent.parent / "sql" / "002_ledger_outbox.sql"


def upgrade() -> None:
    op.execute(_SQL_FILE.read_text())


def downgrade() -> None:
    raise NotImplementedError("Downgrade not supported")
