from __future__ import annotations

from typing import Protocol

from otcsync.domain.events import BalanceUpdated, TxContext
from otcsync.domain.models import WriteOutcome


class BalancesRepoProtocol(Protocol):
    def upsert(self, event: BalanceUpdated, context: TxContext) -> WriteOutcome: ...

    def get_slot(self, address: str) -> int | None: ...

    def count(self) -> int: ...
