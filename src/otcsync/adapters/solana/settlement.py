from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from pathlib import Path

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from otcsync.adapters.solana.account_layouts import (
    DealAccountState,
    OfferAccountState,
    parse_deal_account,
    parse_offer_account,
)
from otcsync.adapters.solana.event_decoder import (
    ARCIUM_EVENT_CATALOG,
    EventDecoder,
    FinalizeComputationEvent,
)
from otcsync.adapters.solana.log_stream import LogSubscription
from otcsync.adapters.solana.rpc_client import SolanaRpcClient
from otcsync.errors import ConfigurationError, FinalizationTimeoutError

logger = logging.getLogger(__name__)


def load_keypair(path: Path) -> Keypair:
    """Load a Solana CLI style keypair file (JSON array of 64 bytes)."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"payer keypair not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"payer keypair is not valid JSON: {path}") from exc
    if not isinstance(raw, list) or len(raw) != 64:
        raise ConfigurationError(f"payer keypair must be a JSON array of 64 bytes: {path}")
    try:
        return Keypair.from_bytes(bytes(raw))
    except ValueError as exc:
        raise ConfigurationError(f"payer keypair is invalid: {path}") from exc


class FinalizationWatcher:
    """Waits for the computation program to report a queued computation as finalized."""

    def __init__(self, subscription: LogSubscription, *, arcium_program_id: str) -> None:
        self.subscription = subscription
        self.decoder = EventDecoder(arcium_program_id, catalog=ARCIUM_EVENT_CATALOG)

    async def wait(self, *, computation_offset: int, mxe_program_id: str) -> str:
        while True:
            notification = await self.subscription.next_notification()
            if notification.failed:
                continue
            for event in self.decoder.decode(notification.logs):
                if not isinstance(event, FinalizeComputationEvent):
                    continue
                if (
                    event.computation_offset == computation_offset
                    and event.mxe_program_id == mxe_program_id
                ):
                    return notification.signature


SubscriptionFactory = Callable[[str], LogSubscription]


class SolanaCrankLedger:
    """Ledger gateway used by the crank executor: account reads and signed submission."""

    def __init__(
        self,
        *,
        rpc: SolanaRpcClient,
        payer: Keypair,
        program_id: Pubkey,
        arcium_program_id: Pubkey,
        subscription_factory: SubscriptionFactory,
        finalization_timeout_seconds: float,
    ) -> None:
        self.rpc = rpc
        self._payer = payer
        self.program_id = program_id
        self.arcium_program_id = arcium_program_id
        self.subscription_factory = subscription_factory
        self.finalization_timeout_seconds = finalization_timeout_seconds

    @property
    def payer(self) -> Pubkey:
        return self._payer.pubkey()

    async def fetch_deal_account(self, address: Pubkey) -> DealAccountState:
        info = await self.rpc.get_account_info(str(address))
        return parse_deal_account(info.data)

    async def fetch_offer_account(self, address: Pubkey) -> OfferAccountState:
        info = await self.rpc.get_account_info(str(address))
        return parse_offer_account(info.data)

    async def submit_and_finalize(self, instruction: Instruction, computation_offset: int) -> str:
        # Subscribe before sending so the finalize event cannot slip past unobserved.
        subscription = self.subscription_factory(str(self.arcium_program_id))
        await subscription.open()
        try:
            signature = await self._send(instruction)
            logger.debug(
                "computation queued",
                extra={
                    "extra": {
                        "signature": signature,
                        "computation_offset": computation_offset,
                    }
                },
            )
            watcher = FinalizationWatcher(
                subscription, arcium_program_id=str(self.arcium_program_id)
            )
            try:
                await asyncio.wait_for(
                    watcher.wait(
                        computation_offset=computation_offset,
                        mxe_program_id=str(self.program_id),
                    ),
                    timeout=self.finalization_timeout_seconds,
                )
            except TimeoutError as exc:
                raise FinalizationTimeoutError(
                    computation_offset=computation_offset,
                    timeout_seconds=self.finalization_timeout_seconds,
                ) from exc
            return signature
        finally:
            await subscription.close()

    async def _send(self, instruction: Instruction) -> str:
        blockhash = Hash.from_string(await self.rpc.get_latest_blockhash())
        message = Message([instruction], self._payer.pubkey())
        transaction = Transaction([self._payer], message, blockhash)
        return await self.rpc.send_transaction(bytes(transaction), skip_preflight=True)
