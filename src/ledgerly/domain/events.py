"""Ledger events and the in-process event bus.

Every ledger write produces events inside its unit of work (persisted to the
store's outbox). After commit they are published to subscribers; a failing
subscriber is logged and does not undo the committed write, the outbox row
remains for redelivery.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

TRANSACTION_APPENDED = "transaction.appended"
TRANSACTION_VOIDED = "transaction.voided"
TRANSFER_CREATED = "transfer.created"
FOLIO_TOTALS_UPDATED = "folio.totals_updated"
FOLIO_SPLIT = "folio.split"
FOLIO_CLOSED = "folio.closed"
FOLIO_REOPENED = "folio.reopened"

ALL_EVENTS = "*"


class LedgerEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: str
    hotel_id: str
    aggregate_type: str
    aggregate_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None
    occurred_at: datetime


Subscriber = Callable[[LedgerEvent], None]


class EventBus:
    """Synchronous publish/subscribe keyed by event type."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Subscriber) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: Subscriber) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, events: list[LedgerEvent]) -> None:
        for event in events:
            handlers = [
                *self._subscribers.get(event.event_type, []),
                *self._subscribers.get(ALL_EVENTS, []),
            ]
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "ledger event subscriber failed",
                        extra={
                            "extra_fields": {
                                "event_type": event.event_type,
                                "aggregate_id": event.aggregate_id,
                                "handler": getattr(handler, "__qualname__", repr(handler)),
                            }
                        },
                    )
