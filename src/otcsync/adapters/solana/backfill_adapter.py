from __future__ import annotations

import logging
from dataclasses import dataclass

from otcsync.adapters.ingestion import EventCallback, IngestionAdapter
from otcsync.adapters.solana.event_decoder import EventDecoder
from otcsync.adapters.solana.instrumentation import InMemoryMetricsSink, MetricsSink
from otcsync.adapters.solana.rpc_client import (
    MAX_SIGNATURES_PER_REQUEST,
    SignatureInfo,
    SolanaRpcClient,
)
from otcsync.domain.events import EventWithContext, TxContext

logger = logging.getLogger(__name__)

DEFAULT_SIGNATURE_LIMIT = 1000
DEFAULT_TRANSACTION_BATCH_SIZE = 100


@dataclass(frozen=True)
class BackfillReport:
    signatures: int
    transactions_processed: int
    transactions_skipped: int
    events_processed: int
    failures: int
    stopped_early: bool = False


class BackfillAdapter(IngestionAdapter):
    """Bounded replay of program history, delivered oldest-first.

    Contract: ``callback`` is invoked once per transaction carrying events, in ascending slot
    order (ties keep ledger order). Settlement events therefore always follow the events that
    created the rows they update, which is what lets a backfill repair orphaned live updates.
    """

    def __init__(
        self,
        *,
        rpc: SolanaRpcClient,
        program_id: str,
        decoder: EventDecoder | None = None,
        metrics: MetricsSink | None = None,
        limit: int = DEFAULT_SIGNATURE_LIMIT,
        before: str | None = None,
        batch_size: int = DEFAULT_TRANSACTION_BATCH_SIZE,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.rpc = rpc
        self.program_id = program_id
        self.decoder = decoder or EventDecoder(program_id)
        self.metrics = metrics or InMemoryMetricsSink()
        self.limit = limit
        self.before = before
        self.batch_size = batch_size
        self._stopped = False
        self.report: BackfillReport | None = None

    async def start(self, callback: EventCallback) -> None:
        self._stopped = False
        signatures = await self.fetch_signatures()
        if not signatures:
            logger.info("no signatures found for program")
            self.report = BackfillReport(0, 0, 0, 0, 0)
            return
        self.report = await self.process(signatures, callback)

    async def stop(self) -> None:
        self._stopped = True

    async def fetch_signatures(self) -> list[SignatureInfo]:
        """Page backwards from ``before`` and return signatures oldest-first."""
        collected: list[SignatureInfo] = []
        before = self.before
        logger.info(
            "fetching signatures",
            extra={"extra": {"limit": self.limit, "before": before}},
        )
        while len(collected) < self.limit and not self._stopped:
            page_size = min(MAX_SIGNATURES_PER_REQUEST, self.limit - len(collected))
            page = await self.rpc.get_signatures_for_address(
                self.program_id, limit=page_size, before=before
            )
            if not page:
                break
            collected.extend(page)
            before = page[-1].signature
            logger.debug(
                "fetched signature batch",
                extra={"extra": {"batch_size": len(page), "total": len(collected)}},
            )
            if len(page) < page_size:
                break

        collected = collected[: self.limit]
        logger.info("fetched all signatures", extra={"extra": {"count": len(collected)}})
        collected.reverse()
        return sorted(collected, key=lambda info: info.slot)

    async def process(
        self, signatures: list[SignatureInfo], callback: EventCallback
    ) -> BackfillReport:
        processed = skipped = events_total = failures = 0
        for start in range(0, len(signatures), self.batch_size):
            if self._stopped:
                logger.info("backfill stopped before completion")
                return BackfillReport(
                    len(signatures), processed, skipped, events_total, failures, stopped_early=True
                )
            batch = signatures[start : start + self.batch_size]
            transactions = await self.rpc.get_transactions([info.signature for info in batch])
            for info, transaction in zip(batch, transactions, strict=True):
                if transaction is None or transaction.failed or info.err is not None:
                    skipped += 1
                    continue
                if not transaction.log_messages:
                    skipped += 1
                    continue
                events = self.decoder.decode(transaction.log_messages)
                if not events:
                    skipped += 1
                    continue
                self.metrics.inc("events_decoded", len(events))
                block_time = (
                    info.block_time if info.block_time is not None else transaction.block_time
                )
                context = TxContext(signature=info.signature, slot=info.slot, block_time=block_time)
                try:
                    await callback([EventWithContext.wrap(event, context) for event in events])
                except Exception:
                    failures += 1
                    logger.exception(
                        "failed to process transaction",
                        extra={"extra": {"signature": info.signature}},
                    )
                    continue
                processed += 1
                events_total += len(events)

            logger.info(
                "processed transaction batch",
                extra={
                    "extra": {
                        "batch_end": min(start + self.batch_size, len(signatures)),
                        "total": len(signatures),
                        "events_processed": events_total,
                    }
                },
            )

        logger.info("backfill complete", extra={"extra": {"events_processed": events_total}})
        return BackfillReport(len(signatures), processed, skipped, events_total, failures)
