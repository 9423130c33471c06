from __future__ import annotations

import asyncio
import contextlib
import logging
import random

from otcsync.adapters.ingestion import EventCallback, IngestionAdapter
from otcsync.adapters.solana.event_decoder import EventDecoder
from otcsync.adapters.solana.instrumentation import InMemoryMetricsSink, MetricsSink
from otcsync.adapters.solana.log_stream import (
    ConnectFn,
    LogNotification,
    LogSubscription,
    default_connect,
)
from otcsync.domain.events import EventWithContext, TxContext

logger = logging.getLogger(__name__)


class LogStreamIdleError(RuntimeError):
    """Raised when no frame arrived within the idle window."""


class LiveIngestionAdapter(IngestionAdapter):
    """Streams program logs over pubsub and forwards decoded events.

    A reader task pushes notifications into a bounded queue; a dispatcher task drains it and
    awaits the callback one transaction at a time, so a slow store never stalls the socket and
    transactions are handled in stream order. A batch running past ``handler_timeout_seconds``
    is reported as slow but still awaited. Subscription failures are logged and retried with
    backoff; they never escape.
    """

    def __init__(
        self,
        *,
        ws_url: str,
        program_id: str,
        decoder: EventDecoder | None = None,
        metrics: MetricsSink | None = None,
        connect_fn: ConnectFn = default_connect,
        commitment: str = "confirmed",
        queue_maxsize: int = 1_000,
        handler_timeout_seconds: float = 30.0,
        base_backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 30.0,
        idle_reconnect_seconds: float | None = None,
    ) -> None:
        self.ws_url = ws_url
        self.program_id = program_id
        self.decoder = decoder or EventDecoder(program_id)
        self.metrics = metrics or InMemoryMetricsSink()
        self.connect_fn = connect_fn
        self.commitment = commitment
        self.queue: asyncio.Queue[LogNotification] = asyncio.Queue(maxsize=queue_maxsize)
        self.handler_timeout_seconds = handler_timeout_seconds
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.idle_reconnect_seconds = idle_reconnect_seconds

        self._callback: EventCallback | None = None
        self._subscription: LogSubscription | None = None
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self, callback: EventCallback) -> None:
        if self._tasks:
            raise RuntimeError("live adapter already started")
        self._callback = callback
        self._stop.clear()
        logger.info(
            "starting live log subscription",
            extra={"extra": {"program_id": self.program_id}},
        )
        self._tasks = [
            asyncio.create_task(self._connection_loop()),
            asyncio.create_task(self._dispatch_loop()),
        ]

    async def stop(self) -> None:
        self._stop.set()
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            with contextlib.suppress(Exception):
                await subscription.close()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._tasks = []
        logger.info("live log subscription stopped")

    async def _connection_loop(self) -> None:
        attempt = 0
        while not self._stop.is_set():
            subscription = LogSubscription(
                url=self.ws_url,
                mentions=self.program_id,
                commitment=self.commitment,
                connect_fn=self.connect_fn,
            )
            self._subscription = subscription
            try:
                await subscription.open()
                attempt = 0
                await self._read_loop(subscription)
            except asyncio.CancelledError:
                raise
            except LogStreamIdleError:
                self.metrics.inc("ws_idle_timeouts")
                logger.warning(
                    "log stream idle, reconnecting",
                    extra={"extra": {"idle_seconds": self.idle_reconnect_seconds}},
                )
            except Exception:
                if self._stop.is_set():
                    break
                self.metrics.inc("ws_drops")
                logger.exception("log subscription disconnected")
            finally:
                with contextlib.suppress(Exception):
                    await subscription.close()
                if self._subscription is subscription:
                    self._subscription = None

            if self._stop.is_set():
                break

            attempt += 1
            self.metrics.inc("ws_reconnects")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=self._compute_backoff(attempt))

    async def _read_loop(self, subscription: LogSubscription) -> None:
        while not self._stop.is_set():
            try:
                notification = await asyncio.wait_for(
                    subscription.next_notification(), timeout=self.idle_reconnect_seconds
                )
            except TimeoutError as exc:
                raise LogStreamIdleError("log stream idle timeout") from exc
            if notification.failed:
                logger.debug(
                    "transaction failed, skipping",
                    extra={"extra": {"signature": notification.signature}},
                )
                continue
            try:
                self.queue.put_nowait(notification)
            except asyncio.QueueFull:
                self.metrics.inc("ingest_backpressure_drops")
                logger.warning(
                    "ingest queue full, dropping notification",
                    extra={"extra": {"signature": notification.signature}},
                )

    async def _dispatch_loop(self) -> None:
        while not self._stop.is_set():
            notification = await self.queue.get()
            batch = self.to_batch(notification)
            if not batch or self._callback is None:
                continue
            # The next batch is never started before this one finishes.
            pending = asyncio.ensure_future(self._callback(batch))
            try:
                try:
                    await asyncio.wait_for(
                        asyncio.shield(pending), timeout=self.handler_timeout_seconds
                    )
                except TimeoutError:
                    self.metrics.inc("ingest_handler_timeouts")
                    logger.warning(
                        "event batch handling is slow, waiting for it to finish",
                        extra={
                            "extra": {
                                "signature": notification.signature,
                                "timeout_seconds": self.handler_timeout_seconds,
                            }
                        },
                    )
                    await pending
            except asyncio.CancelledError:
                pending.cancel()
                raise
            except Exception:
                self.metrics.inc("ingest_handler_errors")
                logger.exception(
                    "failed to process logs",
                    extra={"extra": {"signature": notification.signature}},
                )

    def to_batch(self, notification: LogNotification) -> list[EventWithContext]:
        events = self.decoder.decode(notification.logs)
        if not events:
            return []
        self.metrics.inc("events_decoded", len(events))
        # Pubsub notifications carry no block time.
        context = TxContext(signature=notification.signature, slot=notification.slot)
        logger.debug(
            "parsed events from logs",
            extra={
                "extra": {
                    "signature": notification.signature,
                    "slot": notification.slot,
                    "event_count": len(events),
                }
            },
        )
        return [EventWithContext.wrap(event, context) for event in events]

    def _compute_backoff(self, attempt: int) -> float:
        base = min(self.max_backoff_seconds, self.base_backoff_seconds * (2 ** (attempt - 1)))
        return base * (0.8 + random.random() * 0.4)
