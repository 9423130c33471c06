from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import websockets

logger = logging.getLogger(__name__)


class WsSocket(Protocol):
    async def send(self, payload: str) -> None: ...

    async def recv(self) -> str: ...

    def close(self) -> object: ...


ConnectFn = Callable[[str], Awaitable[WsSocket]]


class LogStreamClosedError(RuntimeError):
    """Raised when the pubsub socket ends or the subscription cannot be established."""


@dataclass(frozen=True)
class LogNotification:
    signature: str
    slot: int
    err: object | None
    logs: tuple[str, ...]

    @property
    def failed(self) -> bool:
        return self.err is not None


async def default_connect(url: str) -> WsSocket:
    return await websockets.connect(url, ping_interval=30, ping_timeout=60, close_timeout=10)


def parse_log_notification(payload: dict[str, Any]) -> LogNotification | None:
    if payload.get("method") != "logsNotification":
        return None
    result = (payload.get("params") or {}).get("result") or {}
    value = result.get("value") or {}
    signature = value.get("signature")
    if not isinstance(signature, str):
        return None
    context = result.get("context") or {}
    return LogNotification(
        signature=signature,
        slot=int(context.get("slot", 0)),
        err=value.get("err"),
        logs=tuple(value.get("logs") or ()),
    )


class LogSubscription:
    """One ``logsSubscribe`` session filtered to transactions mentioning a single address."""

    def __init__(
        self,
        *,
        url: str,
        mentions: str,
        commitment: str = "confirmed",
        connect_fn: ConnectFn = default_connect,
        ack_timeout_seconds: float = 10.0,
    ) -> None:
        self.url = url
        self.mentions = mentions
        self.commitment = commitment
        self.connect_fn = connect_fn
        self.ack_timeout_seconds = ack_timeout_seconds
        self.subscription_id: int | None = None
        self._socket: WsSocket | None = None
        self._ids = itertools.count(1)
        self._pending: list[LogNotification] = []

    @property
    def connected(self) -> bool:
        return self._socket is not None

    async def open(self) -> None:
        socket = await self.connect_fn(self.url)
        self._socket = socket
        request_id = next(self._ids)
        await socket.send(
            json.dumps(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "method": "logsSubscribe",
                    "params": [{"mentions": [self.mentions]}, {"commitment": self.commitment}],
                }
            )
        )
        try:
            self.subscription_id = await asyncio.wait_for(
                self._await_ack(request_id), timeout=self.ack_timeout_seconds
            )
        except TimeoutError as exc:
            await self.close()
            raise LogStreamClosedError("logsSubscribe was not acknowledged") from exc
        logger.info(
            "log subscription opened",
            extra={"extra": {"mentions": self.mentions, "subscription_id": self.subscription_id}},
        )

    async def next_notification(self) -> LogNotification:
        if self._pending:
            return self._pending.pop(0)
        while True:
            payload = await self._recv_json()
            notification = parse_log_notification(payload)
            if notification is not None:
                return notification

    async def close(self) -> None:
        socket, self._socket = self._socket, None
        if socket is None:
            return
        if self.subscription_id is not None:
            try:
                await socket.send(
                    json.dumps(
                        {
                            "jsonrpc": "2.0",
                            "id": next(self._ids),
                            "method": "logsUnsubscribe",
                            "params": [self.subscription_id],
                        }
                    )
                )
            except Exception as exc:  # noqa: BLE001
                logger.debug(
                    "logsUnsubscribe failed", extra={"extra": {"error": str(exc)}}
                )
            self.subscription_id = None
        close_result = socket.close()
        if inspect.isawaitable(close_result):
            await close_result

    async def _await_ack(self, request_id: int) -> int:
        while True:
            payload = await self._recv_json()
            if payload.get("id") == request_id:
                if "error" in payload:
                    raise LogStreamClosedError(f"logsSubscribe rejected: {payload['error']}")
                return int(payload["result"])
            notification = parse_log_notification(payload)
            if notification is not None:
                self._pending.append(notification)

    async def _recv_json(self) -> dict[str, Any]:
        if self._socket is None:
            raise LogStreamClosedError("subscription is not open")
        raw = await self._socket.recv()
        try:
            payload = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.debug("ignoring non-json pubsub frame")
            return {}
        return payload if isinstance(payload, dict) else {}
