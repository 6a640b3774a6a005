"""Correlation ID management for tracing one ledger operation across logs,
events and nested service calls."""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

# Context variable for correlation ID - shared by nested engine calls
correlation_id_var: ContextVar[str] = ContextVar("ledger_correlation_id", default="")


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    """Set correlation ID in context."""
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    """Reset correlation ID to previous value."""
    correlation_id_var.reset(token)


@contextmanager
def correlation_scope(cid: str | None = None) -> Iterator[str]:
    """Run a block under a correlation ID.

    Reuses the ambient ID when one is already set (nested operations such as
    a transfer triggered by an append share their caller's ID), otherwise
    sets ``cid`` or a fresh one for the duration of the block.
    """
    current = get_correlation_id()
    if current and cid is None:
        yield current
        return
    token = set_correlation_id(cid or generate_correlation_id())
    try:
        yield get_correlation_id()
    finally:
        reset_correlation_id(token)
