from __future__ import annotations

import asyncio

from otcsync.domain.events import EventWithContext, TxContext, UnknownEvent
from otcsync.domain.models import DealStatus, OfferStatus, WriteOutcome
from otcsync.persistence.store import IndexStore
from otcsync.services.event_handler import EventHandler


def test_routes_each_event_kind_to_the_store(store: IndexStore, uow_factory, events) -> None:
    handler = EventHandler(store)
    batch = [
        events.deal_created("DEAL1", slot=1),
        events.offer_created("OFFER1", "DEAL1", slot=2),
        events.balance_updated("BAL1", slot=2),
        events.deal_settled("DEAL1", status=1, slot=3),
        events.offer_settled("OFFER1", "DEAL1", slot=3),
    ]

    report = handler.handle(batch)

    assert report.handled == 5
    assert report.failed == 0
    assert report.outcomes == [
        WriteOutcome.INSERTED,
        WriteOutcome.INSERTED,
        WriteOutcome.INSERTED,
        WriteOutcome.UPDATED,
        WriteOutcome.UPDATED,
    ]
    with uow_factory() as uow:
        assert uow.deals.get("DEAL1").status is DealStatus.EXECUTED
        assert uow.offers.get("OFFER1").status is OfferStatus.SETTLED
        assert uow.balances.count() == 1
        assert uow.raw_events.count() == 5


def test_unknown_event_is_recorded_raw_and_skipped(store: IndexStore, uow_factory) -> None:
    handler = EventHandler(store)
    event = EventWithContext.wrap(
        UnknownEvent(name="SumEvent", payload=b"\x01\x02"),
        TxContext(signature="sig-u", slot=5),
    )

    report = handler.handle([event])

    assert report.skipped == 1
    assert report.handled == 0
    assert report.outcomes == [None]
    with uow_factory() as uow:
        (raw,) = uow.raw_events.list_for_signature("sig-u")
    assert raw.event_name == "SumEvent"


def test_failure_on_one_event_does_not_stop_the_batch(
    store: IndexStore, uow_factory, events, metrics
) -> None:
    class FlakyStore(IndexStore):
        def upsert_deal_created(self, event):
            if event.data.deal == "BROKEN":
                raise RuntimeError("disk full")
            return super().upsert_deal_created(event)

    flaky = FlakyStore(uow_factory, metrics=metrics)
    handler = EventHandler(flaky, metrics=metrics)

    report = handler.handle(
        [events.deal_created("BROKEN"), events.deal_created("DEAL2")]
    )

    assert report.failed == 1
    assert report.handled == 1
    assert report.outcomes == [None, WriteOutcome.INSERTED]
    assert metrics.counters["event_handler_errors"] == 1
    with uow_factory() as uow:
        assert uow.deals.get("DEAL2") is not None


def test_settlement_before_creation_is_orphaned_then_backfill_recovers(
    store: IndexStore, uow_factory, events
) -> None:
    handler = EventHandler(store)
    settled = events.deal_settled("DEAL1", status=2, slot=20)

    first = handler.handle([settled])
    handler.handle([events.deal_created("DEAL1", slot=10), settled])

    assert first.outcomes == [WriteOutcome.ORPHANED]
    with uow_factory() as uow:
        deal = uow.deals.get("DEAL1")
        assert uow.raw_events.count_for_signature(settled.context.signature) == 1
    assert deal.status is DealStatus.EXPIRED


def test_async_call_runs_handle_in_worker_thread(store: IndexStore, uow_factory, events) -> None:
    handler = EventHandler(store)

    asyncio.run(handler([events.deal_created("DEAL1")]))

    with uow_factory() as uow:
        assert uow.deals.get("DEAL1") is not None
