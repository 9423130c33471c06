from __future__ import annotations

from collections.abc import Callable

from otcsync.domain.models import CrankableDeal, CrankableOffer, utc_now_iso
from otcsync.persistence.uow import UnitOfWork


class CrankQueries:
    """Read-only candidate discovery, recomputed on every poll."""

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        *,
        now_fn: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._uow_factory = uow_factory
        self._now_fn = now_fn

    def get_expired_open_deals(self, batch_size: int) -> list[CrankableDeal]:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        with self._uow_factory() as uow:
            return uow.deals.list_expired_open(now_iso=self._now_fn(), limit=batch_size)

    def get_open_offers_for_settled_deals(self, batch_size: int) -> list[CrankableOffer]:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        with self._uow_factory() as uow:
            return uow.offers.list_open_for_closed_deals(limit=batch_size)
