"""Ledger error taxonomy.

Validation and not-found errors abort the whole unit of work (nothing is
written). ReconciliationWarning is never raised by the engine; the auditor
returns it inside its report.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base class for all aborting ledger failures."""


class ValidationError(LedgerError):
    """Malformed or negative input, or a cross-hotel reference."""


class FolioClosedError(ValidationError):
    """The folio is closed and does not accept postings."""

    def __init__(self, folio_id: str):
        self.folio_id = folio_id
        super().__init__(f"Folio {folio_id} is closed")


class NotFoundError(LedgerError):
    """Missing folio, transaction or transfer target."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class AlreadyVoidedError(LedgerError):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} is already voided")


class TransferTargetMismatchError(LedgerError):
    """Transfer target belongs to another hotel or uses another currency."""

    def __init__(self, source_folio_id: str, target_folio_id: str, field: str):
        self.source_folio_id = source_folio_id
        self.target_folio_id = target_folio_id
        self.field = field
        super().__init__(
            f"Cannot transfer from folio {source_folio_id} to {target_folio_id}: "
            f"{field} mismatch"
        )


class ReconciliationWarning(UserWarning):
    """Non-fatal drift detected by the consistency auditor."""

    def __init__(self, kind: str, folio_id: str, message: str, **details: Any):
        self.kind = kind
        self.folio_id = folio_id
        self.details = details
        super().__init__(f"[{kind}] folio {folio_id}: {message}")
