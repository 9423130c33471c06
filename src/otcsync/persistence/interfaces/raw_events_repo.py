from __future__ import annotations

from typing import Protocol

from otcsync.domain.models import RawEvent


class RawEventsRepoProtocol(Protocol):
    def insert(self, event: RawEvent) -> bool: ...

    def count_for_signature(self, signature: str) -> int: ...

    def list_for_signature(self, signature: str) -> list[RawEvent]: ...

    def count(self) -> int: ...
