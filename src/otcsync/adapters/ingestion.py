from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from otcsync.domain.events import EventWithContext

EventCallback = Callable[[list[EventWithContext]], Awaitable[None]]


class IngestionAdapter(ABC):
    """A source of decoded ledger events.

    ``start`` hands every decoded transaction to ``callback`` as one ordered batch. Within a
    batch, events keep their emission order.
    """

    @abstractmethod
    async def start(self, callback: EventCallback) -> None:
        raise NotImplementedError

    @abstractmethod
    async def stop(self) -> None:
        raise NotImplementedError
