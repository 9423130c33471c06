from __future__ import annotations

import logging
from collections.abc import Callable
from time import monotonic
from typing import Protocol

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from otcsync.adapters.solana.account_layouts import DealAccountState, OfferAccountState
from otcsync.adapters.solana.instructions import (
    CrankArgs,
    build_crank_deal_instruction,
    build_crank_offer_instruction,
)
from otcsync.adapters.solana.instrumentation import InMemoryMetricsSink, MetricsSink
from otcsync.domain.models import CrankResult
from otcsync.errors import classify_rpc_error
from otcsync.logging_context import with_logging_context

logger = logging.getLogger(__name__)


class CrankLedger(Protocol):
    @property
    def payer(self) -> Pubkey: ...

    async def fetch_deal_account(self, address: Pubkey) -> DealAccountState: ...

    async def fetch_offer_account(self, address: Pubkey) -> OfferAccountState: ...

    async def submit_and_finalize(
        self, instruction: Instruction, computation_offset: int
    ) -> str: ...


class CrankExecutor:
    """Submits one settlement action and waits for its computation to finalize.

    Never raises: every failure comes back as ``CrankResult(success=False, error=...)``.
    The store is not touched here; the settled event is picked up by the indexer.
    """

    def __init__(
        self,
        *,
        ledger: CrankLedger,
        program_id: Pubkey,
        arcium_program_id: Pubkey,
        cluster_offset: int,
        metrics: MetricsSink | None = None,
        args_factory: Callable[[], CrankArgs] = CrankArgs.generate,
    ) -> None:
        self.ledger = ledger
        self.program_id = program_id
        self.arcium_program_id = arcium_program_id
        self.cluster_offset = cluster_offset
        self.metrics = metrics or InMemoryMetricsSink()
        self.args_factory = args_factory

    async def execute_crank_deal(self, deal_address: str) -> CrankResult:
        with with_logging_context(address=deal_address):
            try:
                deal = Pubkey.from_string(deal_address)
                args = self.args_factory()
                logger.debug(
                    "executing crank_deal",
                    extra={"extra": {"computation_offset": args.computation_offset}},
                )
                state = await self.ledger.fetch_deal_account(deal)
                instruction = build_crank_deal_instruction(
                    program_id=self.program_id,
                    arcium_program_id=self.arcium_program_id,
                    payer=self.ledger.payer,
                    deal=deal,
                    deal_controller=state.controller,
                    base_mint=state.base_mint,
                    cluster_offset=self.cluster_offset,
                    args=args,
                )
                return await self._submit("deal", deal_address, instruction, args)
            except Exception as exc:
                return self._failure("deal", deal_address, exc)

    async def execute_crank_offer(self, offer_address: str, deal_address: str) -> CrankResult:
        with with_logging_context(address=offer_address):
            try:
                offer = Pubkey.from_string(offer_address)
                deal = Pubkey.from_string(deal_address)
                args = self.args_factory()
                logger.debug(
                    "executing crank_offer",
                    extra={
                        "extra": {
                            "deal": deal_address,
                            "computation_offset": args.computation_offset,
                        }
                    },
                )
                offer_state = await self.ledger.fetch_offer_account(offer)
                deal_state = await self.ledger.fetch_deal_account(deal)
                instruction = build_crank_offer_instruction(
                    program_id=self.program_id,
                    arcium_program_id=self.arcium_program_id,
                    payer=self.ledger.payer,
                    deal=deal,
                    offer=offer,
                    offer_controller=offer_state.controller,
                    quote_mint=deal_state.quote_mint,
                    cluster_offset=self.cluster_offset,
                    args=args,
                )
                return await self._submit("offer", offer_address, instruction, args)
            except Exception as exc:
                return self._failure("offer", offer_address, exc)

    async def _submit(
        self, kind: str, address: str, instruction: Instruction, args: CrankArgs
    ) -> CrankResult:
        started = monotonic()
        signature = await self.ledger.submit_and_finalize(instruction, args.computation_offset)
        self.metrics.observe_ms(f"crank_{kind}_latency", (monotonic() - started) * 1000)
        self.metrics.inc(f"{kind}s_cranked")
        logger.info(
            f"crank {kind} finalized",
            extra={"extra": {"address": address, "signature": signature}},
        )
        return CrankResult(success=True, address=address, signature=signature)

    def _failure(self, kind: str, address: str, exc: Exception) -> CrankResult:
        self.metrics.inc("crank_failures")
        message = str(exc) or type(exc).__name__
        logger.warning(
            f"failed to crank {kind}",
            extra={
                "extra": {
                    "address": address,
                    "error": message,
                    "error_type": type(exc).__name__,
                    "error_category": classify_rpc_error(exc).value,
                }
            },
        )
        return CrankResult(success=False, address=address, error=message)
