from __future__ import annotations

from typing import Protocol

from otcsync.domain.events import DealCreated, DealSettled, TxContext
from otcsync.domain.models import CrankableDeal, Deal, WriteOutcome


class DealsRepoProtocol(Protocol):
    def get(self, address: str) -> Deal | None: ...

    def upsert_created(self, event: DealCreated, context: TxContext) -> WriteOutcome: ...

    def apply_settlement(self, event: DealSettled, context: TxContext) -> WriteOutcome: ...

    def list_expired_open(self, *, now_iso: str, limit: int) -> list[CrankableDeal]: ...

    def count_by_status(self) -> dict[str, int]: ...
