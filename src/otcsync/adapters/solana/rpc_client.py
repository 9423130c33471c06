from __future__ import annotations

import base64
import itertools
import logging
from dataclasses import dataclass
from time import monotonic
from typing import Any

import httpx

from otcsync.adapters.solana.instrumentation import InMemoryMetricsSink, MetricsSink
from otcsync.adapters.solana.retry import (
    BackoffPolicy,
    async_retry,
    rpc_retry_classifier,
)
from otcsync.errors import AccountNotFoundError, RpcError, RpcErrorKind
from otcsync.security import sanitize_text

logger = logging.getLogger(__name__)

MAX_SIGNATURES_PER_REQUEST = 1000
DEFAULT_COMMITMENT = "confirmed"


@dataclass(frozen=True)
class RpcReliabilityConfig:
    connect_timeout_seconds: float = 5.0
    read_timeout_seconds: float = 10.0
    write_timeout_seconds: float = 10.0
    pool_timeout_seconds: float = 5.0
    max_attempts: int = 4
    base_delay_seconds: float = 0.4
    max_delay_seconds: float = 4.0


@dataclass(frozen=True)
class SignatureInfo:
    signature: str
    slot: int
    block_time: int | None
    err: object | None = None


@dataclass(frozen=True)
class TransactionRecord:
    signature: str
    slot: int
    block_time: int | None
    err: object | None
    log_messages: tuple[str, ...]

    @property
    def failed(self) -> bool:
        return self.err is not None


@dataclass(frozen=True)
class AccountInfo:
    address: str
    owner: str
    lamports: int
    data: bytes


class SolanaRpcClient:
    """JSON-RPC client for a Solana node, with retry on transient failures."""

    def __init__(
        self,
        *,
        url: str,
        metrics: MetricsSink | None = None,
        reliability: RpcReliabilityConfig | None = None,
        commitment: str = DEFAULT_COMMITMENT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.metrics = metrics or InMemoryMetricsSink()
        self.reliability = reliability or RpcReliabilityConfig()
        self.commitment = commitment
        timeout = httpx.Timeout(
            connect=self.reliability.connect_timeout_seconds,
            read=self.reliability.read_timeout_seconds,
            write=self.reliability.write_timeout_seconds,
            pool=self.reliability.pool_timeout_seconds,
        )
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)
        self._classify = rpc_retry_classifier(
            BackoffPolicy(
                base_delay_seconds=self.reliability.base_delay_seconds,
                max_delay_seconds=self.reliability.max_delay_seconds,
                jitter_seed=17,
            )
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        payload = self._build_request(method, params)
        response = await self._post_with_retry(payload, method=method)
        if not isinstance(response, dict):
            raise RpcError(kind=RpcErrorKind.RPC, message=f"{method}: malformed response")
        return self._unwrap(method, response)

    async def call_batch(self, requests: list[tuple[str, list[Any]]]) -> list[Any]:
        """Send several requests in one round trip, returning results in request order.

        Per-item errors are returned as ``RpcError`` instances rather than raised.
        """
        if not requests:
            return []
        payload = [self._build_request(method, params) for method, params in requests]
        response = await self._post_with_retry(payload, method="batch")
        if not isinstance(response, list):
            raise RpcError(kind=RpcErrorKind.RPC, message="batch: malformed response")
        by_id = {item.get("id"): item for item in response if isinstance(item, dict)}
        results: list[Any] = []
        for request, (method, _) in zip(payload, requests, strict=True):
            item = by_id.get(request["id"])
            if item is None:
                results.append(RpcError(kind=RpcErrorKind.RPC, message=f"{method}: missing reply"))
                continue
            try:
                results.append(self._unwrap(method, item))
            except RpcError as exc:
                results.append(exc)
        return results

    async def get_signatures_for_address(
        self,
        address: str,
        *,
        limit: int = MAX_SIGNATURES_PER_REQUEST,
        before: str | None = None,
    ) -> list[SignatureInfo]:
        options: dict[str, Any] = {
            "limit": max(1, min(limit, MAX_SIGNATURES_PER_REQUEST)),
            "commitment": self.commitment,
        }
        if before:
            options["before"] = before
        result = await self.call("getSignaturesForAddress", [address, options])
        return [
            SignatureInfo(
                signature=str(item["signature"]),
                slot=int(item["slot"]),
                block_time=item.get("blockTime"),
                err=item.get("err"),
            )
            for item in result or []
        ]

    async def get_transaction(self, signature: str) -> TransactionRecord | None:
        result = await self.call("getTransaction", [signature, self._tx_options()])
        return _parse_transaction(signature, result)

    async def get_transactions(self, signatures: list[str]) -> list[TransactionRecord | None]:
        """Fetch transactions in one batch; entries that failed to load come back as ``None``."""
        replies = await self.call_batch(
            [("getTransaction", [signature, self._tx_options()]) for signature in signatures]
        )
        records: list[TransactionRecord | None] = []
        for signature, reply in zip(signatures, replies, strict=True):
            if isinstance(reply, RpcError):
                logger.warning(
                    "transaction fetch failed",
                    extra={"extra": {"signature": signature, "error": str(reply)}},
                )
                records.append(None)
                continue
            records.append(_parse_transaction(signature, reply))
        return records

    async def get_account_info(self, address: str) -> AccountInfo:
        result = await self.call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        value = (result or {}).get("value")
        if value is None:
            raise AccountNotFoundError(address)
        encoded = value.get("data") or ["", "base64"]
        return AccountInfo(
            address=address,
            owner=str(value.get("owner", "")),
            lamports=int(value.get("lamports", 0)),
            data=base64.b64decode(encoded[0]),
        )

    async def get_latest_blockhash(self) -> str:
        result = await self.call("getLatestBlockhash", [{"commitment": self.commitment}])
        return str(result["value"]["blockhash"])

    async def send_transaction(self, raw: bytes, *, skip_preflight: bool = True) -> str:
        encoded = base64.b64encode(raw).decode("ascii")
        options = {
            "encoding": "base64",
            "skipPreflight": skip_preflight,
            "preflightCommitment": self.commitment,
        }
        result = await self.call("sendTransaction", [encoded, options])
        return str(result)

    def _tx_options(self) -> dict[str, Any]:
        return {
            "encoding": "json",
            "commitment": self.commitment,
            "maxSupportedTransactionVersion": 0,
        }

    def _build_request(self, method: str, params: list[Any] | None) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}

    async def _post_with_retry(self, payload: object, *, method: str) -> Any:
        async def _call() -> Any:
            started = monotonic()
            try:
                response = await self._client.post(self.url, json=payload)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                raise RpcError(
                    kind=RpcErrorKind.NETWORK, message=sanitize_text(str(exc))
                ) from exc

            self.metrics.observe_ms(f"rpc_{method}_latency", (monotonic() - started) * 1000)
            if response.status_code == 429:
                self.metrics.inc("rpc_429_count")
            if response.status_code >= 400:
                self._raise_http_error(response, method=method)
            return response.json()

        def _on_retry(exc: Exception, attempt: int, delay: float) -> None:
            self.metrics.inc("rpc_retries")
            logger.warning(
                "rpc call retry",
                extra={
                    "extra": {
                        "method": method,
                        "attempt": attempt,
                        "delay_seconds": round(delay, 3),
                        "error": str(exc),
                    }
                },
            )

        return await async_retry(
            _call,
            max_attempts=self.reliability.max_attempts,
            classify=self._classify,
            on_retry=_on_retry,
        )

    def _raise_http_error(self, response: httpx.Response, *, method: str) -> None:
        status = response.status_code
        if status == 429:
            kind = RpcErrorKind.RATE_LIMIT
        elif status >= 500:
            kind = RpcErrorKind.SERVER
        else:
            kind = RpcErrorKind.CLIENT
        raise RpcError(
            kind=kind,
            message=f"{method}: http {status}",
            status_code=status,
            retry_after=response.headers.get("retry-after"),
        )

    @staticmethod
    def _unwrap(method: str, response: dict[str, Any]) -> Any:
        error = response.get("error")
        if error is not None:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise RpcError(
                kind=RpcErrorKind.RPC,
                message=f"{method}: {message}",
                rpc_code=code if isinstance(code, int) else None,
            )
        return response.get("result")


def _parse_transaction(signature: str, result: dict[str, Any] | None) -> TransactionRecord | None:
    if not result:
        return None
    meta = result.get("meta") or {}
    return TransactionRecord(
        signature=signature,
        slot=int(result.get("slot", 0)),
        block_time=result.get("blockTime"),
        err=meta.get("err"),
        log_messages=tuple(meta.get("logMessages") or ()),
    )
