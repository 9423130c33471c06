from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import assert_never

from otcsync.adapters.solana.instrumentation import InMemoryMetricsSink, MetricsSink
from otcsync.domain.events import (
    BalanceUpdated,
    DealCreated,
    DealSettled,
    EventWithContext,
    OfferCreated,
    OfferSettled,
    UnknownEvent,
)
from otcsync.domain.models import WriteOutcome
from otcsync.logging_context import with_logging_context
from otcsync.persistence.store import IndexStore

logger = logging.getLogger(__name__)


@dataclass
class HandleReport:
    handled: int = 0
    skipped: int = 0
    failed: int = 0
    outcomes: list[WriteOutcome | None] = field(default_factory=list)


class EventHandler:
    """Routes decoded events to the store, one event at a time.

    The raw event is always recorded first. A failure on one event is logged and the rest of
    the batch still runs.
    """

    def __init__(self, store: IndexStore, *, metrics: MetricsSink | None = None) -> None:
        self.store = store
        self.metrics = metrics or InMemoryMetricsSink()

    async def __call__(self, events: list[EventWithContext]) -> None:
        await asyncio.to_thread(self.handle, events)

    def handle(self, events: list[EventWithContext]) -> HandleReport:
        report = HandleReport()
        for event in events:
            with with_logging_context(signature=event.context.signature):
                try:
                    self.store.insert_raw_event(event)
                    outcome = self._route(event)
                except Exception:
                    report.failed += 1
                    report.outcomes.append(None)
                    self.metrics.inc("event_handler_errors")
                    logger.exception(
                        "failed to handle event",
                        extra={
                            "extra": {
                                "event_name": event.name,
                                "signature": event.context.signature,
                            }
                        },
                    )
                    continue
            report.outcomes.append(outcome)
            if outcome is None:
                report.skipped += 1
            else:
                report.handled += 1
                self.metrics.inc("events_handled")
        return report

    def _route(self, event: EventWithContext) -> WriteOutcome | None:
        data = event.data
        if isinstance(data, DealCreated):
            return self.store.upsert_deal_created(event)
        if isinstance(data, DealSettled):
            return self.store.upsert_deal_settled(event)
        if isinstance(data, OfferCreated):
            return self.store.upsert_offer_created(event)
        if isinstance(data, OfferSettled):
            return self.store.upsert_offer_settled(event)
        if isinstance(data, BalanceUpdated):
            return self.store.upsert_balance_updated(event)
        if isinstance(data, UnknownEvent):
            logger.warning("unknown event type", extra={"extra": {"event_name": event.name}})
            return None
        assert_never(data)
