from __future__ import annotations

import json
import tempfile
from pathlib import Path

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from otcsync.domain.models import DealStatus, OfferStatus, WriteOutcome
from otcsync.persistence.store import IndexStore
from otcsync.persistence.uow import UnitOfWorkFactory
from otcsync.services.event_handler import EventHandler


def test_deal_created_inserts_open_row(store: IndexStore, uow_factory, events) -> None:
    event = events.deal_created(
        "DEAL1",
        base_mint="BASE1",
        quote_mint="QUOTE1",
        expires_at=1_700_000_000,
        allow_partial=True,
        signature="sig-a",
    )

    assert store.insert_raw_event(event) is True
    assert store.upsert_deal_created(event) is WriteOutcome.INSERTED

    with uow_factory() as uow:
        deal = uow.deals.get("DEAL1")
    assert deal is not None
    assert deal.status is DealStatus.OPEN
    assert deal.base_mint == "BASE1"
    assert deal.quote_mint == "QUOTE1"
    assert deal.allow_partial is True
    assert deal.expires_at == "2023-11-14T22:13:20+00:00"
    assert deal.created_signature == "sig-a"


def test_redelivered_event_is_a_no_op(store: IndexStore, uow_factory, events, metrics) -> None:
    event = events.deal_created("DEAL1", signature="sig-a", slot=50)
    store.insert_raw_event(event)
    store.upsert_deal_created(event)
    with uow_factory() as uow:
        before = uow.deals.get("DEAL1")

    assert store.insert_raw_event(event) is False
    assert store.upsert_deal_created(event) is WriteOutcome.UNCHANGED

    with uow_factory() as uow:
        assert uow.raw_events.count_for_signature("sig-a") == 1
        assert uow.deals.get("DEAL1") == before
    assert metrics.counters["raw_event_duplicates"] == 1


def test_raw_event_payload_is_json_with_hex_blobs(store: IndexStore, uow_factory, events) -> None:
    event = events.deal_settled("DEAL1", signature="sig-s", block_time=1_700_000_000)
    store.insert_raw_event(event)

    with uow_factory() as uow:
        (raw,) = uow.raw_events.list_for_signature("sig-s")
    payload = json.loads(raw.raw_payload)
    assert raw.event_name == "DealSettled"
    assert raw.block_time == "2023-11-14T22:13:20+00:00"
    assert payload["deal"] == "DEAL1"
    assert payload["nonce"] == "07" * 16
    assert len(payload["ciphertexts"]) == 3


def test_same_signature_different_event_names_both_recorded(
    store: IndexStore, uow_factory, events
) -> None:
    store.insert_raw_event(events.deal_settled("DEAL1", signature="sig-x"))
    store.insert_raw_event(events.offer_settled("OFFER1", "DEAL1", signature="sig-x"))

    with uow_factory() as uow:
        assert uow.raw_events.count_for_signature("sig-x") == 2


@pytest.mark.parametrize(("code", "expected"), [(1, DealStatus.EXECUTED), (2, DealStatus.EXPIRED)])
def test_deal_settlement_maps_status_code(
    store: IndexStore, uow_factory, events, code: int, expected: DealStatus
) -> None:
    store.upsert_deal_created(events.deal_created("DEAL1", slot=10))

    outcome = store.upsert_deal_settled(
        events.deal_settled("DEAL1", status=code, slot=20, signature="sig-settle")
    )

    assert outcome is WriteOutcome.UPDATED
    with uow_factory() as uow:
        deal = uow.deals.get("DEAL1")
    assert deal.status is expected
    assert deal.settled_signature == "sig-settle"
    assert deal.settled_at == "2023-11-14T22:15:00+00:00"
    assert deal.settlement_ciphertexts == bytes([7]) * 32 + bytes([8]) * 32 + bytes([9]) * 32
    assert deal.slot == 20


def test_second_deal_settlement_never_transitions_again(
    store: IndexStore, uow_factory, events
) -> None:
    store.upsert_deal_created(events.deal_created("DEAL1", slot=10))
    store.upsert_deal_settled(events.deal_settled("DEAL1", status=1, slot=20))

    outcome = store.upsert_deal_settled(events.deal_settled("DEAL1", status=2, slot=30))

    assert outcome is WriteOutcome.UNCHANGED
    with uow_factory() as uow:
        assert uow.deals.get("DEAL1").status is DealStatus.EXECUTED


def test_settlement_for_unknown_deal_is_orphaned(store: IndexStore, uow_factory, events, metrics) -> None:
    outcome = store.upsert_deal_settled(events.deal_settled("GHOST"))

    assert outcome is WriteOutcome.ORPHANED
    assert metrics.counters["orphan_updates"] == 1
    with uow_factory() as uow:
        assert uow.deals.get("GHOST") is None


def test_created_replay_never_reopens_a_settled_deal(store: IndexStore, uow_factory, events) -> None:
    store.upsert_deal_created(events.deal_created("DEAL1", slot=10))
    store.upsert_deal_settled(events.deal_settled("DEAL1", slot=20))

    outcome = store.upsert_deal_created(events.deal_created("DEAL1", slot=99))

    assert outcome is WriteOutcome.UNCHANGED
    with uow_factory() as uow:
        assert uow.deals.get("DEAL1").status is DealStatus.EXECUTED


def test_created_upsert_is_slot_guarded(store: IndexStore, uow_factory, events) -> None:
    store.upsert_deal_created(events.deal_created("DEAL1", expires_at=1_700_000_000, slot=10))

    stale = store.upsert_deal_created(events.deal_created("DEAL1", expires_at=1, slot=5))
    newer = store.upsert_deal_created(
        events.deal_created("DEAL1", expires_at=1_800_000_000, slot=11)
    )

    assert stale is WriteOutcome.UNCHANGED
    assert newer is WriteOutcome.UPDATED
    with uow_factory() as uow:
        deal = uow.deals.get("DEAL1")
    assert deal.slot == 11
    assert deal.expires_at == "2027-01-15T08:00:00+00:00"


def test_offer_lifecycle(store: IndexStore, uow_factory, events) -> None:
    assert store.upsert_offer_created(
        events.offer_created("OFFER1", "DEAL1", offer_index=3, slot=10)
    ) is WriteOutcome.INSERTED
    assert store.upsert_offer_settled(
        events.offer_settled("OFFER1", "DEAL1", slot=20)
    ) is WriteOutcome.UPDATED
    assert store.upsert_offer_settled(
        events.offer_settled("OFFER1", "DEAL1", slot=30)
    ) is WriteOutcome.UNCHANGED

    with uow_factory() as uow:
        offer = uow.offers.get("OFFER1")
    assert offer.status is OfferStatus.SETTLED
    assert offer.deal_address == "DEAL1"
    assert offer.offer_index == 3
    assert offer.slot == 20


def test_offer_settlement_without_offer_is_orphaned(store: IndexStore, events) -> None:
    assert store.upsert_offer_settled(events.offer_settled("NOPE")) is WriteOutcome.ORPHANED


def test_balance_upsert_keeps_newest_slot(store: IndexStore, uow_factory, events) -> None:
    assert store.upsert_balance_updated(events.balance_updated("BAL1", slot=10)) is WriteOutcome.INSERTED
    assert store.upsert_balance_updated(events.balance_updated("BAL1", slot=5)) is WriteOutcome.UNCHANGED
    assert store.upsert_balance_updated(events.balance_updated("BAL1", slot=12)) is WriteOutcome.UPDATED

    with uow_factory() as uow:
        assert uow.balances.get_slot("BAL1") == 12
        assert uow.balances.count() == 1


def test_store_rejects_mismatched_payload(store: IndexStore, events) -> None:
    with pytest.raises(TypeError):
        store.upsert_deal_settled(events.deal_created())


def test_read_only_unit_of_work_blocks_writes(db_path: str, events) -> None:
    created = events.deal_created()
    with UnitOfWorkFactory(db_path)():
        pass

    with pytest.raises(PermissionError):
        with UnitOfWorkFactory(db_path, read_only=True)() as uow:
            uow.deals.upsert_created(created.data, created.context)


def test_failed_unit_of_work_rolls_back(uow_factory: UnitOfWorkFactory, events) -> None:
    created = events.deal_created()

    with pytest.raises(RuntimeError):
        with uow_factory() as uow:
            uow.deals.upsert_created(created.data, created.context)
            raise RuntimeError("boom")

    with uow_factory() as uow:
        assert uow.deals.get("DEAL1") is None


def _snapshot(uow_factory: UnitOfWorkFactory) -> tuple:
    with uow_factory() as uow:
        deals = {address: uow.deals.get(address) for address in ("D0", "D1")}
        offers = {address: uow.offers.get(address) for address in ("O0", "O1")}
        return (
            {k: (v.status, v.slot, v.settled_signature) if v else None for k, v in deals.items()},
            {k: (v.status, v.slot, v.settled_signature) if v else None for k, v in offers.items()},
            uow.raw_events.count(),
            uow.balances.count(),
        )


_STEPS = st.lists(
    st.tuples(
        st.sampled_from(["deal_created", "deal_settled", "offer_created", "offer_settled"]),
        st.integers(min_value=0, max_value=1),
        st.integers(min_value=1, max_value=50),
    ),
    min_size=1,
    max_size=12,
)


@settings(
    max_examples=40,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)
@given(_STEPS)
def test_replaying_any_event_sequence_converges(events, steps) -> None:
    batch = []
    for kind, index, slot in steps:
        if kind == "deal_created":
            batch.append(events.deal_created(f"D{index}", slot=slot))
        elif kind == "deal_settled":
            batch.append(events.deal_settled(f"D{index}", status=1 + index, slot=slot))
        elif kind == "offer_created":
            batch.append(events.offer_created(f"O{index}", f"D{index}", slot=slot))
        else:
            batch.append(events.offer_settled(f"O{index}", f"D{index}", slot=slot))

    with tempfile.TemporaryDirectory() as tmp:
        factory = UnitOfWorkFactory(str(Path(tmp) / "replay.db"))
        handler = EventHandler(IndexStore(factory))

        handler.handle(batch)
        # A second pass may still repair settlements that arrived before their rows.
        handler.handle(batch)
        repaired = _snapshot(factory)
        handler.handle(batch)
        replayed = _snapshot(factory)

    assert replayed == repaired
    assert replayed[2] == len(batch)
