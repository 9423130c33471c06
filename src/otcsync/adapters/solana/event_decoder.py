"""Decode Anchor events out of transaction log lines.

Anchor programs emit events as ``Program data: <base64>`` lines where the payload is an 8-byte
discriminator (``sha256("event:<Name>")[:8]``) followed by the Borsh-encoded event body. The
decoder tracks the invoke stack so that only data lines emitted while the target program is
executing are attributed to it.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from borsh_construct import I64, U8, U32, U64, Bool, CStruct
from construct import Array, Bytes, Construct, ConstructError, Container
from solders.pubkey import Pubkey

from otcsync.domain.events import (
    BalanceUpdated,
    DealCreated,
    DealSettled,
    EncryptedBlob,
    LedgerEvent,
    OfferCreated,
    OfferSettled,
    UnknownEvent,
    event_name_of,
)

logger = logging.getLogger(__name__)

PROGRAM_DATA_PREFIX = "Program data: "
DISCRIMINATOR_SIZE = 8

_INVOKE_RE = re.compile(r"^Program (\S+) invoke \[\d+\]$")
_EXIT_RE = re.compile(r"^Program (\S+) (?:success|failed.*)$")

PublicKeyBytes = Bytes(32)
EncryptionKey = Bytes(32)
Nonce = Bytes(16)
Ciphertext = Bytes(32)


def event_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"event:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


def _pubkey(raw: bytes) -> str:
    return str(Pubkey.from_bytes(bytes(raw)))


def _blob(parsed: Container) -> EncryptedBlob:
    return EncryptedBlob(
        encryption_key=bytes(parsed.encryption_key),
        nonce=bytes(parsed.nonce),
        ciphertexts=tuple(bytes(chunk) for chunk in parsed.ciphertexts),
    )


def _encrypted_struct(*fields: Any, ciphertexts: int) -> CStruct:
    return CStruct(
        *fields,
        "encryption_key" / EncryptionKey,
        "nonce" / Nonce,
        "ciphertexts" / Array(ciphertexts, Ciphertext),
    )


@dataclass(frozen=True)
class EventSchema:
    name: str
    layout: Construct
    build: Callable[[Container], Any]

    @property
    def discriminator(self) -> bytes:
        return event_discriminator(self.name)


class EventCatalog:
    """Discriminator lookup over a fixed set of event schemas."""

    def __init__(self, schemas: Iterable[EventSchema]) -> None:
        self._schemas = {schema.discriminator: schema for schema in schemas}

    def __contains__(self, discriminator: bytes) -> bool:
        return discriminator in self._schemas

    def decode(self, payload: bytes) -> Any | None:
        """Return the built event, or ``None`` when the discriminator is not catalogued.

        Raises ``ConstructError`` when the discriminator matches but the body does not parse.
        """
        schema = self._schemas.get(payload[:DISCRIMINATOR_SIZE])
        if schema is None:
            return None
        parsed = schema.layout.parse(payload[DISCRIMINATOR_SIZE:])
        return schema.build(parsed)


DEAL_CREATED_LAYOUT = _encrypted_struct(
    "deal" / PublicKeyBytes,
    "base_mint" / PublicKeyBytes,
    "quote_mint" / PublicKeyBytes,
    "expires_at" / I64,
    "allow_partial" / Bool,
    "created_at" / I64,
    ciphertexts=2,
)
DEAL_SETTLED_LAYOUT = _encrypted_struct(
    "deal" / PublicKeyBytes,
    "status" / U8,
    "settled_at" / I64,
    ciphertexts=3,
)
OFFER_CREATED_LAYOUT = _encrypted_struct(
    "deal" / PublicKeyBytes,
    "offer" / PublicKeyBytes,
    "offer_index" / U32,
    "submitted_at" / I64,
    ciphertexts=2,
)
OFFER_SETTLED_LAYOUT = _encrypted_struct(
    "deal" / PublicKeyBytes,
    "offer" / PublicKeyBytes,
    "offer_index" / U32,
    "settled_at" / I64,
    ciphertexts=4,
)
BALANCE_UPDATED_LAYOUT = _encrypted_struct(
    "balance" / PublicKeyBytes,
    "controller" / PublicKeyBytes,
    "mint" / PublicKeyBytes,
    ciphertexts=2,
)
COUNTER_VALUE_LAYOUT = CStruct(
    "encryption_key" / EncryptionKey,
    "nonce" / Nonce,
    "ciphertext" / Ciphertext,
)


def _unrouted(name: str) -> Callable[[Container], UnknownEvent]:
    def _build(parsed: Container) -> UnknownEvent:
        return UnknownEvent(name=name, payload=COUNTER_VALUE_LAYOUT.build(parsed))

    return _build


OTC_EVENT_CATALOG = EventCatalog(
    [
        EventSchema(
            "DealCreated",
            DEAL_CREATED_LAYOUT,
            lambda p: DealCreated(
                deal=_pubkey(p.deal),
                base_mint=_pubkey(p.base_mint),
                quote_mint=_pubkey(p.quote_mint),
                expires_at=int(p.expires_at),
                allow_partial=bool(p.allow_partial),
                created_at=int(p.created_at),
                blob=_blob(p),
            ),
        ),
        EventSchema(
            "DealSettled",
            DEAL_SETTLED_LAYOUT,
            lambda p: DealSettled(
                deal=_pubkey(p.deal),
                status=int(p.status),
                settled_at=int(p.settled_at),
                blob=_blob(p),
            ),
        ),
        EventSchema(
            "OfferCreated",
            OFFER_CREATED_LAYOUT,
            lambda p: OfferCreated(
                deal=_pubkey(p.deal),
                offer=_pubkey(p.offer),
                offer_index=int(p.offer_index),
                submitted_at=int(p.submitted_at),
                blob=_blob(p),
            ),
        ),
        EventSchema(
            "OfferSettled",
            OFFER_SETTLED_LAYOUT,
            lambda p: OfferSettled(
                deal=_pubkey(p.deal),
                offer=_pubkey(p.offer),
                offer_index=int(p.offer_index),
                settled_at=int(p.settled_at),
                blob=_blob(p),
            ),
        ),
        EventSchema(
            "BalanceUpdated",
            BALANCE_UPDATED_LAYOUT,
            lambda p: BalanceUpdated(
                balance=_pubkey(p.balance),
                controller=_pubkey(p.controller),
                mint=_pubkey(p.mint),
                blob=_blob(p),
            ),
        ),
        EventSchema("CounterValueEvent", COUNTER_VALUE_LAYOUT, _unrouted("CounterValueEvent")),
        EventSchema("SumEvent", COUNTER_VALUE_LAYOUT, _unrouted("SumEvent")),
    ]
)


@dataclass(frozen=True)
class FinalizeComputationEvent:
    computation_offset: int
    mxe_program_id: str


FINALIZE_COMPUTATION_LAYOUT = CStruct(
    "computation_offset" / U64,
    "mxe_program_id" / PublicKeyBytes,
)

ARCIUM_EVENT_CATALOG = EventCatalog(
    [
        EventSchema(
            "FinalizeComputationEvent",
            FINALIZE_COMPUTATION_LAYOUT,
            lambda p: FinalizeComputationEvent(
                computation_offset=int(p.computation_offset),
                mxe_program_id=_pubkey(p.mxe_program_id),
            ),
        ),
    ]
)


def iter_program_data(logs: Iterable[str], program_id: str) -> Iterable[bytes]:
    """Yield base64-decoded ``Program data`` payloads emitted while ``program_id`` is executing."""
    stack: list[str] = []
    for line in logs:
        invoke = _INVOKE_RE.match(line)
        if invoke is not None:
            stack.append(invoke.group(1))
            continue
        exit_match = _EXIT_RE.match(line)
        if exit_match is not None:
            if stack and stack[-1] == exit_match.group(1):
                stack.pop()
            continue
        if not line.startswith(PROGRAM_DATA_PREFIX):
            continue
        if stack and stack[-1] != program_id:
            continue
        try:
            yield base64.b64decode(line[len(PROGRAM_DATA_PREFIX) :], validate=True)
        except (binascii.Error, ValueError):
            logger.debug("skipping undecodable program data line")


class EventDecoder:
    def __init__(self, program_id: str, catalog: EventCatalog = OTC_EVENT_CATALOG) -> None:
        self.program_id = program_id
        self.catalog = catalog

    def decode(self, logs: Iterable[str]) -> list[Any]:
        events: list[Any] = []
        for payload in iter_program_data(logs, self.program_id):
            try:
                event = self.catalog.decode(payload)
            except (ConstructError, ValueError) as exc:
                logger.debug("skipping malformed event payload", extra={"extra": {"error": str(exc)}})
                continue
            if event is not None:
                events.append(event)
        return events

    def decode_named(self, logs: Iterable[str]) -> list[tuple[str, LedgerEvent]]:
        """Decode ledger events paired with their canonical names, in emission order."""
        return [(event_name_of(event), event) for event in self.decode(logs)]
