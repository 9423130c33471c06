from __future__ import annotations

import hashlib
from dataclasses import dataclass

from borsh_construct import I64, U8, U32, Bool, CStruct
from construct import Bytes, ConstructError
from solders.pubkey import Pubkey

from otcsync.errors import DecodeError

ACCOUNT_DISCRIMINATOR_SIZE = 8

# Only the plaintext prefix is parsed; encrypted trailing fields are left untouched.
DEAL_ACCOUNT_LAYOUT = CStruct(
    "create_key" / Bytes(32),
    "controller" / Bytes(32),
    "encryption_pubkey" / Bytes(32),
    "base_mint" / Bytes(32),
    "quote_mint" / Bytes(32),
    "created_at" / I64,
    "expires_at" / I64,
    "status" / U8,
    "allow_partial" / Bool,
    "num_offers" / U32,
    "bump" / U8,
)

OFFER_ACCOUNT_LAYOUT = CStruct(
    "create_key" / Bytes(32),
    "controller" / Bytes(32),
    "encryption_pubkey" / Bytes(32),
    "deal" / Bytes(32),
    "submitted_at" / I64,
    "offer_index" / U32,
    "status" / U8,
    "bump" / U8,
)


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:ACCOUNT_DISCRIMINATOR_SIZE]


@dataclass(frozen=True)
class DealAccountState:
    controller: Pubkey
    base_mint: Pubkey
    quote_mint: Pubkey
    expires_at: int
    status: int


@dataclass(frozen=True)
class OfferAccountState:
    controller: Pubkey
    deal: Pubkey
    offer_index: int
    status: int


def _strip_discriminator(data: bytes, account_name: str) -> bytes:
    expected = account_discriminator(account_name)
    if data[:ACCOUNT_DISCRIMINATOR_SIZE] != expected:
        raise DecodeError(f"account data is not a {account_name}")
    return data[ACCOUNT_DISCRIMINATOR_SIZE:]


def parse_deal_account(data: bytes) -> DealAccountState:
    body = _strip_discriminator(data, "DealAccount")
    try:
        parsed = DEAL_ACCOUNT_LAYOUT.parse(body)
    except ConstructError as exc:
        raise DecodeError(f"malformed DealAccount: {exc}") from exc
    return DealAccountState(
        controller=Pubkey.from_bytes(parsed.controller),
        base_mint=Pubkey.from_bytes(parsed.base_mint),
        quote_mint=Pubkey.from_bytes(parsed.quote_mint),
        expires_at=int(parsed.expires_at),
        status=int(parsed.status),
    )


def parse_offer_account(data: bytes) -> OfferAccountState:
    body = _strip_discriminator(data, "OfferAccount")
    try:
        parsed = OFFER_ACCOUNT_LAYOUT.parse(body)
    except ConstructError as exc:
        raise DecodeError(f"malformed OfferAccount: {exc}") from exc
    return OfferAccountState(
        controller=Pubkey.from_bytes(parsed.controller),
        deal=Pubkey.from_bytes(parsed.deal),
        offer_index=int(parsed.offer_index),
        status=int(parsed.status),
    )
