"""Storage adapter for the indexer.

Every operation runs in its own short transaction and is safe to repeat: raw events are
written once per ``(signature, event_name)``, created events only refresh open rows from newer
slots, and settlements only close rows that are still open. Settlements for rows that do not
exist yet come back as ``WriteOutcome.ORPHANED`` so callers can log them; a later backfill
replays them in order.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import TypeVar

from otcsync.adapters.solana.instrumentation import InMemoryMetricsSink, MetricsSink
from otcsync.domain.events import (
    BalanceUpdated,
    DealCreated,
    DealSettled,
    EventWithContext,
    OfferCreated,
    OfferSettled,
    event_payload,
)
from otcsync.domain.models import RawEvent, WriteOutcome, unix_to_iso
from otcsync.persistence.uow import UnitOfWork

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IndexStore:
    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        *,
        metrics: MetricsSink | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.metrics = metrics or InMemoryMetricsSink()

    def insert_raw_event(self, event: EventWithContext) -> bool:
        context = event.context
        raw = RawEvent(
            event_name=event.name,
            signature=context.signature,
            slot=context.slot,
            block_time=unix_to_iso(context.block_time) if context.block_time is not None else None,
            raw_payload=json.dumps(event_payload(event.data), sort_keys=True),
        )
        with self._uow_factory() as uow:
            inserted = uow.raw_events.insert(raw)
        if not inserted:
            self.metrics.inc("raw_event_duplicates")
            logger.debug(
                "raw event already recorded",
                extra={"extra": {"signature": context.signature, "event_name": event.name}},
            )
        return inserted

    def upsert_deal_created(self, event: EventWithContext) -> WriteOutcome:
        data = _expect(event, DealCreated)
        with self._uow_factory() as uow:
            outcome = uow.deals.upsert_created(data, event.context)
        self._log_write("deal created", data.deal, event, outcome)
        return outcome

    def upsert_deal_settled(self, event: EventWithContext) -> WriteOutcome:
        data = _expect(event, DealSettled)
        with self._uow_factory() as uow:
            outcome = uow.deals.apply_settlement(data, event.context)
        self._log_write("deal settled", data.deal, event, outcome)
        return outcome

    def upsert_offer_created(self, event: EventWithContext) -> WriteOutcome:
        data = _expect(event, OfferCreated)
        with self._uow_factory() as uow:
            outcome = uow.offers.upsert_created(data, event.context)
        self._log_write("offer created", data.offer, event, outcome)
        return outcome

    def upsert_offer_settled(self, event: EventWithContext) -> WriteOutcome:
        data = _expect(event, OfferSettled)
        with self._uow_factory() as uow:
            outcome = uow.offers.apply_settlement(data, event.context)
        self._log_write("offer settled", data.offer, event, outcome)
        return outcome

    def upsert_balance_updated(self, event: EventWithContext) -> WriteOutcome:
        data = _expect(event, BalanceUpdated)
        with self._uow_factory() as uow:
            outcome = uow.balances.upsert(data, event.context)
        self._log_write("balance updated", data.balance, event, outcome)
        return outcome

    def _log_write(
        self, action: str, address: str, event: EventWithContext, outcome: WriteOutcome
    ) -> None:
        fields = {
            "address": address,
            "signature": event.context.signature,
            "slot": event.context.slot,
            "outcome": outcome.value,
        }
        if outcome is WriteOutcome.ORPHANED:
            self.metrics.inc("orphan_updates")
            logger.info(
                f"{action}: no matching row, left for backfill",
                extra={"extra": {**fields, "rows_affected": 0}},
            )
            return
        if outcome is WriteOutcome.UNCHANGED:
            logger.debug(f"{action}: already applied", extra={"extra": fields})
            return
        logger.info(action, extra={"extra": fields})


def _expect(event: EventWithContext, kind: type[T]) -> T:
    if not isinstance(event.data, kind):
        raise TypeError(f"expected {kind.__name__} payload, got {type(event.data).__name__}")
    return event.data
