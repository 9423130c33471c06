from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum


class DealStatus(StrEnum):
    OPEN = "open"
    EXECUTED = "executed"
    EXPIRED = "expired"

    @classmethod
    def from_settlement_code(cls, code: int) -> DealStatus:
        # 1 = executed; every other settlement code closes the deal as expired.
        return cls.EXECUTED if int(code) == 1 else cls.EXPIRED


class OfferStatus(StrEnum):
    OPEN = "open"
    SETTLED = "settled"


class WriteOutcome(StrEnum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    ORPHANED = "orphaned"


def unix_to_iso(seconds: int) -> str:
    return datetime.fromtimestamp(int(seconds), UTC).isoformat()


def utc_now_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True)
class Deal:
    address: str
    base_mint: str
    quote_mint: str
    expires_at: str
    allow_partial: bool
    created_at: str
    status: DealStatus
    slot: int
    created_signature: str | None = None
    settled_at: str | None = None
    settled_signature: str | None = None
    settlement_ciphertexts: bytes | None = None


@dataclass(frozen=True)
class Offer:
    address: str
    deal_address: str
    offer_index: int
    submitted_at: str
    status: OfferStatus
    slot: int
    created_signature: str | None = None
    settled_at: str | None = None
    settled_signature: str | None = None
    settlement_ciphertexts: bytes | None = None


@dataclass(frozen=True)
class RawEvent:
    event_name: str
    signature: str
    slot: int
    block_time: str | None
    raw_payload: str


@dataclass(frozen=True)
class CrankableDeal:
    address: str


@dataclass(frozen=True)
class CrankableOffer:
    address: str
    deal_address: str


@dataclass(frozen=True)
class CrankResult:
    success: bool
    address: str
    signature: str | None = None
    error: str | None = None
