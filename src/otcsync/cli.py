from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from collections.abc import Callable

from pydantic import ValidationError
from solders.keypair import Keypair

from otcsync.adapters.solana.backfill_adapter import (
    DEFAULT_SIGNATURE_LIMIT,
    DEFAULT_TRANSACTION_BATCH_SIZE,
    BackfillAdapter,
)
from otcsync.adapters.solana.instrumentation import InMemoryMetricsSink
from otcsync.adapters.solana.live_adapter import LiveIngestionAdapter
from otcsync.adapters.solana.log_stream import LogSubscription
from otcsync.adapters.solana.rpc_client import RpcReliabilityConfig, SolanaRpcClient
from otcsync.adapters.solana.settlement import SolanaCrankLedger, load_keypair
from otcsync.config import Settings
from otcsync.errors import ConfigurationError
from otcsync.logging_utils import setup_logging
from otcsync.persistence.store import IndexStore
from otcsync.persistence.uow import UnitOfWorkFactory
from otcsync.security import sanitize_text
from otcsync.services.crank_executor import CrankExecutor
from otcsync.services.crank_loop import CrankLoop
from otcsync.services.crank_queries import CrankQueries
from otcsync.services.event_handler import EventHandler
from otcsync.services.process_lock import LockHeldError, single_instance_lock

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="otcsync",
        description="Index OTC ledger events into sqlite and crank settlements.",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Optional dotenv file read before the process environment defaults",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("indexer", help="Stream program logs and index events until stopped")

    backfill_parser = subparsers.add_parser("backfill", help="Replay historical transactions")
    backfill_parser.add_argument(
        "--limit",
        type=_positive_int,
        default=DEFAULT_SIGNATURE_LIMIT,
        help="Maximum number of signatures to fetch",
    )
    backfill_parser.add_argument(
        "--before",
        default=None,
        help="Start paging backwards from this transaction signature",
    )
    backfill_parser.add_argument(
        "--batch-size",
        type=_positive_int,
        default=DEFAULT_TRANSACTION_BATCH_SIZE,
        help="Transactions fetched per RPC batch",
    )

    cranker_parser = subparsers.add_parser("cranker", help="Crank expired deals and offers")
    cranker_parser.add_argument("--once", action="store_true", help="Run a single iteration")
    cranker_parser.add_argument(
        "--max-iterations",
        type=_positive_int,
        default=None,
        help="Stop after this many iterations",
    )

    subparsers.add_parser("status", help="Print row counts per status as JSON")

    args = parser.parse_args(argv)

    try:
        settings = _load_settings(args.env_file)
    except ValidationError as exc:
        print(f"invalid configuration:\n{exc}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(settings.log_level)
    logger.info(
        "runtime_prepared",
        extra={
            "extra": {
                "command": args.command,
                "rpc_url": sanitize_text(settings.rpc_url),
                "program_id": settings.program_id,
                "db_path": settings.store_db_path,
                "pid": os.getpid(),
            }
        },
    )

    try:
        if args.command == "indexer":
            return asyncio.run(run_indexer(settings))
        if args.command == "backfill":
            return asyncio.run(
                run_backfill(
                    settings,
                    limit=args.limit,
                    before=args.before,
                    batch_size=args.batch_size,
                )
            )
        if args.command == "cranker":
            max_iterations = 1 if args.once else args.max_iterations
            return run_cranker(settings, max_iterations=max_iterations)
        if args.command == "status":
            return run_status(settings)
    except (ConfigurationError, LockHeldError) as exc:
        logger.error("startup failed", extra={"extra": {"error": str(exc)}})
        return EXIT_CONFIG
    except KeyboardInterrupt:
        return EXIT_OK
    except Exception:
        logger.exception("fatal error", extra={"extra": {"command": args.command}})
        return EXIT_FATAL

    parser.error(f"unknown command {args.command}")
    return EXIT_CONFIG


def run() -> None:
    raise SystemExit(main())


def _load_settings(env_file: str | None) -> Settings:
    if env_file in (None, ""):
        return Settings()
    return Settings(_env_file=env_file)


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return value


def _install_signal_handlers(on_signal: Callable[[], None]) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # add_signal_handler is unavailable on Windows event loops.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, on_signal)


def _build_rpc(settings: Settings) -> SolanaRpcClient:
    return SolanaRpcClient(
        url=settings.rpc_url,
        reliability=RpcReliabilityConfig(
            read_timeout_seconds=settings.rpc_timeout_seconds,
            max_attempts=settings.rpc_max_attempts,
        ),
    )


def _build_handler(settings: Settings, metrics: InMemoryMetricsSink) -> EventHandler:
    uow_factory = UnitOfWorkFactory(settings.store_db_path)
    # Creates the database file and schema before the first event arrives.
    with uow_factory():
        pass
    return EventHandler(IndexStore(uow_factory, metrics=metrics), metrics=metrics)


def _build_live_adapter(settings: Settings, metrics: InMemoryMetricsSink) -> LiveIngestionAdapter:
    return LiveIngestionAdapter(
        ws_url=settings.resolved_ws_url(),
        program_id=settings.program_id,
        metrics=metrics,
        queue_maxsize=settings.live_queue_maxsize,
        handler_timeout_seconds=settings.handler_timeout_seconds,
        idle_reconnect_seconds=settings.idle_reconnect_seconds,
    )


async def run_indexer(settings: Settings) -> int:
    metrics = InMemoryMetricsSink()
    handler = _build_handler(settings, metrics)
    adapter = _build_live_adapter(settings, metrics)
    stop_requested = asyncio.Event()
    _install_signal_handlers(stop_requested.set)

    await adapter.start(handler)
    try:
        await stop_requested.wait()
    finally:
        await adapter.stop()
        logger.info("indexer stopped", extra={"extra": {"metrics": metrics.snapshot()}})
    return EXIT_OK


async def run_backfill(
    settings: Settings,
    *,
    limit: int,
    before: str | None,
    batch_size: int,
    rpc: SolanaRpcClient | None = None,
) -> int:
    metrics = InMemoryMetricsSink()
    handler = _build_handler(settings, metrics)
    client = rpc or _build_rpc(settings)
    adapter = BackfillAdapter(
        rpc=client,
        program_id=settings.program_id,
        metrics=metrics,
        limit=limit,
        before=before,
        batch_size=batch_size,
    )
    loop = asyncio.get_running_loop()
    _install_signal_handlers(lambda: loop.create_task(adapter.stop()))

    logger.info(
        "starting backfill",
        extra={"extra": {"limit": limit, "before": before, "batch_size": batch_size}},
    )
    try:
        await adapter.start(handler)
    finally:
        await client.close()

    report = adapter.report
    logger.info(
        "backfill finished",
        extra={
            "extra": {
                "signatures": report.signatures if report else 0,
                "events_processed": report.events_processed if report else 0,
                "failures": report.failures if report else 0,
                "metrics": metrics.snapshot(),
            }
        },
    )
    return EXIT_OK


def run_cranker(settings: Settings, *, max_iterations: int | None = None) -> int:
    payer = load_keypair(settings.resolved_payer_key_path())
    with single_instance_lock(db_path=settings.store_db_path, program_id=settings.program_id):
        return asyncio.run(_run_crank_loop(settings, payer=payer, max_iterations=max_iterations))


async def _run_crank_loop(
    settings: Settings, *, payer: Keypair, max_iterations: int | None
) -> int:
    metrics = InMemoryMetricsSink()
    rpc = _build_rpc(settings)
    ws_url = settings.resolved_ws_url()
    ledger = SolanaCrankLedger(
        rpc=rpc,
        payer=payer,
        program_id=settings.program_pubkey,
        arcium_program_id=settings.arcium_program_pubkey,
        subscription_factory=lambda mentions: LogSubscription(url=ws_url, mentions=mentions),
        finalization_timeout_seconds=settings.finalization_timeout_seconds,
    )
    executor = CrankExecutor(
        ledger=ledger,
        program_id=settings.program_pubkey,
        arcium_program_id=settings.arcium_program_pubkey,
        cluster_offset=settings.arcium_cluster_offset,
        metrics=metrics,
    )
    uow_factory = UnitOfWorkFactory(settings.store_db_path)
    with uow_factory():
        pass
    crank_loop = CrankLoop(
        queries=CrankQueries(uow_factory.reader()),
        executor=executor,
        batch_size=settings.crank_batch_size,
        interval_seconds=settings.crank_interval_seconds,
        metrics=metrics,
    )
    _install_signal_handlers(crank_loop.stop)

    logger.info(
        "cranker starting",
        extra={
            "extra": {
                "payer": str(ledger.payer),
                "cluster_offset": settings.arcium_cluster_offset,
                "interval_ms": settings.crank_interval_ms,
                "batch_size": settings.crank_batch_size,
            }
        },
    )
    try:
        await crank_loop.run(max_iterations=max_iterations)
    finally:
        await rpc.close()
        logger.info("cranker stopped", extra={"extra": {"metrics": metrics.snapshot()}})
    return EXIT_OK


def run_status(settings: Settings) -> int:
    uow_factory = UnitOfWorkFactory(settings.store_db_path)
    with uow_factory():
        pass
    with uow_factory.reader()() as uow:
        summary = {
            "db_path": settings.store_db_path,
            "deals": uow.deals.count_by_status(),
            "offers": uow.offers.count_by_status(),
            "raw_events": uow.raw_events.count(),
            "balances": uow.balances.count(),
        }
    print(json.dumps(summary, sort_keys=True))
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
