from __future__ import annotations

import asyncio
import base64
import json

import httpx
import pytest

from otcsync.adapters.solana.instrumentation import InMemoryMetricsSink
from otcsync.adapters.solana.rpc_client import (
    RpcReliabilityConfig,
    SignatureInfo,
    SolanaRpcClient,
)
from otcsync.errors import AccountNotFoundError, RpcError, RpcErrorKind

URL = "https://rpc.example.com"
FAST = RpcReliabilityConfig(max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0)


def _client(handler, *, metrics=None, reliability=FAST) -> SolanaRpcClient:
    transport = httpx.MockTransport(handler)
    return SolanaRpcClient(
        url=URL,
        metrics=metrics,
        reliability=reliability,
        client=httpx.AsyncClient(transport=transport),
    )


def _reply(request: httpx.Request, result: object) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def test_get_signatures_for_address_sends_paging_options() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append(body)
        return _reply(
            request,
            [
                {"signature": "sig-2", "slot": 20, "blockTime": 1_700_000_020, "err": None},
                {"signature": "sig-1", "slot": 10, "blockTime": None, "err": {"Custom": 1}},
            ],
        )

    async def scenario() -> list[SignatureInfo]:
        client = _client(handler)
        try:
            return await client.get_signatures_for_address("PROG", limit=5000, before="sig-9")
        finally:
            await client.close()

    infos = asyncio.run(scenario())

    assert seen[0]["method"] == "getSignaturesForAddress"
    assert seen[0]["params"] == [
        "PROG",
        {"limit": 1000, "commitment": "confirmed", "before": "sig-9"},
    ]
    assert infos == [
        SignatureInfo(signature="sig-2", slot=20, block_time=1_700_000_020, err=None),
        SignatureInfo(signature="sig-1", slot=10, block_time=None, err={"Custom": 1}),
    ]


def test_get_transactions_batches_and_maps_failures_to_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        batch = json.loads(request.content)
        assert isinstance(batch, list)
        replies = [
            {
                "jsonrpc": "2.0",
                "id": batch[0]["id"],
                "result": {
                    "slot": 42,
                    "blockTime": 1_700_000_000,
                    "meta": {"err": None, "logMessages": ["Program log: hi"]},
                },
            },
            {"jsonrpc": "2.0", "id": batch[1]["id"], "error": {"code": -32009, "message": "gone"}},
            {"jsonrpc": "2.0", "id": batch[2]["id"], "result": None},
        ]
        # Nodes may answer batch items in any order.
        return httpx.Response(200, json=list(reversed(replies)))

    async def scenario():
        client = _client(handler)
        try:
            return await client.get_transactions(["a", "b", "c"])
        finally:
            await client.close()

    first, second, third = asyncio.run(scenario())

    assert first is not None
    assert first.slot == 42
    assert first.log_messages == ("Program log: hi",)
    assert first.failed is False
    assert second is None
    assert third is None


def test_retries_server_errors_then_succeeds() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            return httpx.Response(503)
        return _reply(request, {"value": {"blockhash": "HASH1"}})

    metrics = InMemoryMetricsSink()

    async def scenario() -> str:
        client = _client(handler, metrics=metrics)
        try:
            return await client.get_latest_blockhash()
        finally:
            await client.close()

    assert asyncio.run(scenario()) == "HASH1"
    assert calls == 2
    assert metrics.counters["rpc_retries"] == 1


def test_rate_limit_is_counted_and_classified() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"retry-after": "0"})

    metrics = InMemoryMetricsSink()

    async def scenario() -> None:
        client = _client(handler, metrics=metrics)
        try:
            await client.get_latest_blockhash()
        finally:
            await client.close()

    with pytest.raises(RpcError) as exc_info:
        asyncio.run(scenario())

    assert exc_info.value.kind is RpcErrorKind.RATE_LIMIT
    assert exc_info.value.status_code == 429
    assert metrics.counters["rpc_429_count"] == 3


def test_json_rpc_error_is_not_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        body = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "jsonrpc": "2.0",
                "id": body["id"],
                "error": {"code": -32602, "message": "Invalid params"},
            },
        )

    async def scenario() -> None:
        client = _client(handler)
        try:
            await client.call("getTransaction", ["x"])
        finally:
            await client.close()

    with pytest.raises(RpcError) as exc_info:
        asyncio.run(scenario())

    assert calls == 1
    assert exc_info.value.kind is RpcErrorKind.RPC
    assert exc_info.value.rpc_code == -32602


def test_transport_failure_becomes_network_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario() -> None:
        client = _client(handler)
        try:
            await client.get_latest_blockhash()
        finally:
            await client.close()

    with pytest.raises(RpcError) as exc_info:
        asyncio.run(scenario())

    assert exc_info.value.kind is RpcErrorKind.NETWORK


def test_get_account_info_decodes_data_and_raises_when_missing() -> None:
    raw = b"\x01\x02\x03"

    def handler(request: httpx.Request) -> httpx.Response:
        address = json.loads(request.content)["params"][0]
        if address == "MISSING":
            return _reply(request, {"context": {"slot": 1}, "value": None})
        value = {
            "owner": "OWNER",
            "lamports": 5,
            "data": [base64.b64encode(raw).decode(), "base64"],
        }
        return _reply(request, {"context": {"slot": 1}, "value": value})

    async def scenario():
        client = _client(handler)
        try:
            found = await client.get_account_info("ACCT")
            with pytest.raises(AccountNotFoundError):
                await client.get_account_info("MISSING")
            return found
        finally:
            await client.close()

    account = asyncio.run(scenario())

    assert account.data == raw
    assert account.owner == "OWNER"
    assert account.lamports == 5


def test_send_transaction_encodes_base64_and_skips_preflight() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append(body)
        return _reply(request, "SIG")

    async def scenario() -> str:
        client = _client(handler)
        try:
            return await client.send_transaction(b"\xde\xad")
        finally:
            await client.close()

    assert asyncio.run(scenario()) == "SIG"
    encoded, options = seen[0]["params"]
    assert base64.b64decode(encoded) == b"\xde\xad"
    assert options["skipPreflight"] is True
    assert options["encoding"] == "base64"
