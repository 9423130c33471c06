"""Typed ledger events emitted by the OTC program.

Every decoded event is one member of the closed ``LedgerEvent`` union. Anything the
decoder recognises by discriminator but does not route (test counters, computation
bookkeeping) becomes an ``UnknownEvent`` so the router can log and skip it explicitly.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, ClassVar


class EventName(StrEnum):
    DEAL_CREATED = "DealCreated"
    DEAL_SETTLED = "DealSettled"
    OFFER_CREATED = "OfferCreated"
    OFFER_SETTLED = "OfferSettled"
    BALANCE_UPDATED = "BalanceUpdated"


_WORD_SPLIT_RE = re.compile(r"[_\-\s]+")


def canonical_event_name(name: str) -> str:
    """Normalise ``dealCreated`` / ``deal_created`` / ``DealCreated`` to ``DealCreated``."""
    parts = [part for part in _WORD_SPLIT_RE.split(name.strip()) if part]
    if not parts:
        return ""
    return "".join(part[0].upper() + part[1:] for part in parts)


@dataclass(frozen=True)
class TxContext:
    signature: str
    slot: int
    block_time: int | None = None


@dataclass(frozen=True)
class EncryptedBlob:
    encryption_key: bytes
    nonce: bytes
    ciphertexts: tuple[bytes, ...]

    def flat_ciphertexts(self) -> bytes:
        return b"".join(self.ciphertexts)


@dataclass(frozen=True)
class DealCreated:
    NAME: ClassVar[EventName] = EventName.DEAL_CREATED

    deal: str
    base_mint: str
    quote_mint: str
    expires_at: int
    allow_partial: bool
    created_at: int
    blob: EncryptedBlob


@dataclass(frozen=True)
class DealSettled:
    NAME: ClassVar[EventName] = EventName.DEAL_SETTLED

    deal: str
    status: int
    settled_at: int
    blob: EncryptedBlob


@dataclass(frozen=True)
class OfferCreated:
    NAME: ClassVar[EventName] = EventName.OFFER_CREATED

    deal: str
    offer: str
    offer_index: int
    submitted_at: int
    blob: EncryptedBlob


@dataclass(frozen=True)
class OfferSettled:
    NAME: ClassVar[EventName] = EventName.OFFER_SETTLED

    deal: str
    offer: str
    offer_index: int
    settled_at: int
    blob: EncryptedBlob


@dataclass(frozen=True)
class BalanceUpdated:
    NAME: ClassVar[EventName] = EventName.BALANCE_UPDATED

    balance: str
    controller: str
    mint: str
    blob: EncryptedBlob


@dataclass(frozen=True)
class UnknownEvent:
    name: str
    payload: bytes = b""


LedgerEvent = DealCreated | DealSettled | OfferCreated | OfferSettled | BalanceUpdated | UnknownEvent


def event_name_of(data: LedgerEvent) -> str:
    if isinstance(data, UnknownEvent):
        return canonical_event_name(data.name)
    return data.NAME.value


@dataclass(frozen=True)
class EventWithContext:
    name: str
    data: LedgerEvent
    context: TxContext

    @classmethod
    def wrap(cls, data: LedgerEvent, context: TxContext) -> EventWithContext:
        return cls(name=event_name_of(data), data=data, context=context)


def event_payload(data: LedgerEvent) -> dict[str, Any]:
    """JSON-safe view of an event for the raw audit log."""
    if isinstance(data, UnknownEvent):
        return {"name": data.name, "payload_hex": data.payload.hex()}

    payload: dict[str, Any] = {}
    for key, value in data.__dict__.items():
        if isinstance(value, EncryptedBlob):
            payload["encryption_key"] = value.encryption_key.hex()
            payload["nonce"] = value.nonce.hex()
            payload["ciphertexts"] = [chunk.hex() for chunk in value.ciphertexts]
        else:
            payload[key] = value
    return payload
