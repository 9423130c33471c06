from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

from otcsync.adapters.solana.instrumentation import InMemoryMetricsSink, MetricsSink
from otcsync.domain.models import CrankableDeal, CrankableOffer, CrankResult
from otcsync.logging_context import with_iteration_context, with_logging_context

logger = logging.getLogger(__name__)


class LoopState(StrEnum):
    RUNNING = "running"
    STOPPED = "stopped"


class CandidateSource(Protocol):
    def get_expired_open_deals(self, batch_size: int) -> list[CrankableDeal]: ...

    def get_open_offers_for_settled_deals(self, batch_size: int) -> list[CrankableOffer]: ...


class Executor(Protocol):
    async def execute_crank_deal(self, deal_address: str) -> CrankResult: ...

    async def execute_crank_offer(self, offer_address: str, deal_address: str) -> CrankResult: ...


@dataclass
class PhaseReport:
    name: str
    candidates: int = 0
    succeeded: int = 0
    failed: int = 0
    query_error: str | None = None
    results: list[CrankResult] = field(default_factory=list)


@dataclass(frozen=True)
class IterationReport:
    iteration: int
    deals: PhaseReport
    offers: PhaseReport


class CrankLoop:
    """Poll for crankable deals, then offers, then sleep; repeat until stopped.

    Each phase is isolated: a failed query or a failed item is logged and the loop moves on.
    ``stop()`` lets the item in flight finish and skips whatever remains.
    """

    def __init__(
        self,
        *,
        queries: CandidateSource,
        executor: Executor,
        batch_size: int,
        interval_seconds: float,
        metrics: MetricsSink | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.queries = queries
        self.executor = executor
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self.metrics = metrics or InMemoryMetricsSink()
        self.run_id = uuid.uuid4().hex[:12]
        self._state = LoopState.RUNNING
        self._wakeup = asyncio.Event()
        self._iteration = 0

    @property
    def state(self) -> LoopState:
        return self._state

    def stop(self) -> None:
        if self._state is LoopState.STOPPED:
            return
        logger.info("crank loop stopping")
        self._state = LoopState.STOPPED
        self._wakeup.set()

    async def run(self, *, max_iterations: int | None = None) -> int:
        logger.info(
            "crank loop started",
            extra={
                "extra": {
                    "run_id": self.run_id,
                    "batch_size": self.batch_size,
                    "interval_seconds": self.interval_seconds,
                }
            },
        )
        completed = 0
        while self._state is LoopState.RUNNING:
            await self.run_iteration()
            completed += 1
            if max_iterations is not None and completed >= max_iterations:
                break
            if self._state is not LoopState.RUNNING:
                break
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval_seconds)
        logger.info("crank loop stopped", extra={"extra": {"iterations": completed}})
        return completed

    async def run_iteration(self) -> IterationReport:
        self._iteration += 1
        iteration_id = f"{self.run_id}-{self._iteration}"
        with with_iteration_context(iteration_id, run_id=self.run_id):
            deals = await self._deal_phase()
            offers = await self._offer_phase()
            report = IterationReport(iteration=self._iteration, deals=deals, offers=offers)
            if deals.candidates or offers.candidates:
                logger.info(
                    "crank iteration complete",
                    extra={
                        "extra": {
                            "deals_cranked": deals.succeeded,
                            "deals_total": deals.candidates,
                            "offers_cranked": offers.succeeded,
                            "offers_total": offers.candidates,
                        }
                    },
                )
            else:
                logger.debug("crank iteration found nothing to do")
        return report

    async def _deal_phase(self) -> PhaseReport:
        report = PhaseReport(name="deals")
        try:
            candidates = await asyncio.to_thread(
                self.queries.get_expired_open_deals, self.batch_size
            )
        except Exception as exc:
            self._query_failed(report, exc)
            return report

        report.candidates = len(candidates)
        if candidates:
            logger.info("found expired deals", extra={"extra": {"count": len(candidates)}})
        for candidate in candidates:
            if self._state is not LoopState.RUNNING:
                break
            with with_logging_context(address=candidate.address):
                try:
                    result = await self.executor.execute_crank_deal(candidate.address)
                except Exception as exc:
                    result = CrankResult(success=False, address=candidate.address, error=str(exc))
                    logger.warning(
                        "crank deal raised",
                        extra={"extra": {"address": candidate.address, "error": str(exc)}},
                    )
            self._tally(report, result)
        return report

    async def _offer_phase(self) -> PhaseReport:
        report = PhaseReport(name="offers")
        try:
            candidates = await asyncio.to_thread(
                self.queries.get_open_offers_for_settled_deals, self.batch_size
            )
        except Exception as exc:
            self._query_failed(report, exc)
            return report

        report.candidates = len(candidates)
        if candidates:
            logger.info(
                "found offers on settled deals", extra={"extra": {"count": len(candidates)}}
            )
        for candidate in candidates:
            if self._state is not LoopState.RUNNING:
                break
            with with_logging_context(address=candidate.address):
                try:
                    result = await self.executor.execute_crank_offer(
                        candidate.address, candidate.deal_address
                    )
                except Exception as exc:
                    result = CrankResult(success=False, address=candidate.address, error=str(exc))
                    logger.warning(
                        "crank offer raised",
                        extra={
                            "extra": {
                                "address": candidate.address,
                                "deal": candidate.deal_address,
                                "error": str(exc),
                            }
                        },
                    )
            self._tally(report, result)
        return report

    def _tally(self, report: PhaseReport, result: CrankResult) -> None:
        report.results.append(result)
        if result.success:
            report.succeeded += 1
        else:
            report.failed += 1

    def _query_failed(self, report: PhaseReport, exc: Exception) -> None:
        report.query_error = str(exc) or type(exc).__name__
        self.metrics.inc("crank_phase_errors")
        logger.error(
            f"crank {report.name} phase query failed",
            exc_info=exc,
            extra={"extra": {"phase": report.name}},
        )
