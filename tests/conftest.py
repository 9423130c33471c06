from __future__ import annotations

import itertools
import os
from pathlib import Path

import pytest

from otcsync.adapters.solana.instrumentation import InMemoryMetricsSink
from otcsync.config import Settings
from otcsync.domain.events import (
    BalanceUpdated,
    DealCreated,
    DealSettled,
    EncryptedBlob,
    EventWithContext,
    OfferCreated,
    OfferSettled,
    TxContext,
)
from otcsync.persistence.store import IndexStore
from otcsync.persistence.uow import UnitOfWorkFactory


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys = {
        field.alias for field in Settings.model_fields.values() if isinstance(field.alias, str)
    }
    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_store_and_locks(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STORE_DB_PATH", str(tmp_path / "otcsync.db"))
    monkeypatch.setenv("OTCSYNC_LOCK_DIR", str(tmp_path / "locks"))


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "index.db")


@pytest.fixture
def uow_factory(db_path: str) -> UnitOfWorkFactory:
    return UnitOfWorkFactory(db_path)


@pytest.fixture
def metrics() -> InMemoryMetricsSink:
    return InMemoryMetricsSink()


@pytest.fixture
def store(uow_factory: UnitOfWorkFactory, metrics: InMemoryMetricsSink) -> IndexStore:
    return IndexStore(uow_factory, metrics=metrics)


def _blob(ciphertexts: int, fill: int = 1) -> EncryptedBlob:
    return EncryptedBlob(
        encryption_key=bytes([fill]) * 32,
        nonce=bytes([fill]) * 16,
        ciphertexts=tuple(bytes([fill + i]) * 32 for i in range(ciphertexts)),
    )


class EventFactory:
    """Builds events wrapped in a transaction context with unique signatures by default."""

    def __init__(self) -> None:
        self._counter = itertools.count(1)

    def context(
        self, *, signature: str | None = None, slot: int = 100, block_time: int | None = None
    ) -> TxContext:
        return TxContext(
            signature=signature or f"sig-{next(self._counter)}",
            slot=slot,
            block_time=block_time,
        )

    def deal_created(
        self,
        deal: str = "DEAL1",
        *,
        expires_at: int = 1_700_000_000,
        created_at: int = 1_699_990_000,
        base_mint: str = "BASE1",
        quote_mint: str = "QUOTE1",
        allow_partial: bool = True,
        **context: object,
    ) -> EventWithContext:
        data = DealCreated(
            deal=deal,
            base_mint=base_mint,
            quote_mint=quote_mint,
            expires_at=expires_at,
            allow_partial=allow_partial,
            created_at=created_at,
            blob=_blob(2),
        )
        return EventWithContext.wrap(data, self.context(**context))

    def deal_settled(
        self, deal: str = "DEAL1", *, status: int = 1, settled_at: int = 1_700_000_100, **context
    ) -> EventWithContext:
        data = DealSettled(deal=deal, status=status, settled_at=settled_at, blob=_blob(3, fill=7))
        return EventWithContext.wrap(data, self.context(**context))

    def offer_created(
        self,
        offer: str = "OFFER1",
        deal: str = "DEAL1",
        *,
        offer_index: int = 0,
        submitted_at: int = 1_699_995_000,
        **context,
    ) -> EventWithContext:
        data = OfferCreated(
            deal=deal,
            offer=offer,
            offer_index=offer_index,
            submitted_at=submitted_at,
            blob=_blob(2, fill=3),
        )
        return EventWithContext.wrap(data, self.context(**context))

    def offer_settled(
        self,
        offer: str = "OFFER1",
        deal: str = "DEAL1",
        *,
        offer_index: int = 0,
        settled_at: int = 1_700_000_200,
        **context,
    ) -> EventWithContext:
        data = OfferSettled(
            deal=deal,
            offer=offer,
            offer_index=offer_index,
            settled_at=settled_at,
            blob=_blob(4, fill=9),
        )
        return EventWithContext.wrap(data, self.context(**context))

    def balance_updated(
        self,
        balance: str = "BAL1",
        *,
        controller: str = "CTRL1",
        mint: str = "BASE1",
        **context,
    ) -> EventWithContext:
        data = BalanceUpdated(
            balance=balance, controller=controller, mint=mint, blob=_blob(2, fill=5)
        )
        return EventWithContext.wrap(data, self.context(**context))


@pytest.fixture
def events() -> EventFactory:
    return EventFactory()
