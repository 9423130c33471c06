from __future__ import annotations

from typing import Protocol

from otcsync.domain.events import OfferCreated, OfferSettled, TxContext
from otcsync.domain.models import CrankableOffer, Offer, WriteOutcome


class OffersRepoProtocol(Protocol):
    def get(self, address: str) -> Offer | None: ...

    def upsert_created(self, event: OfferCreated, context: TxContext) -> WriteOutcome: ...

    def apply_settlement(self, event: OfferSettled, context: TxContext) -> WriteOutcome: ...

    def list_open_for_closed_deals(self, *, limit: int) -> list[CrankableOffer]: ...

    def count_by_status(self) -> dict[str, int]: ...
