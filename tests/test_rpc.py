"""Tests for evtrace/rpc — JSON-RPC client over httpx.

Uses respx to mock httpx calls (no real network I/O).
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
import pytest_asyncio
import respx

from evtrace.config import EvtraceConfig
from evtrace.exceptions import (
    CallRevertedError,
    FetchFailedError,
    RateLimitError,
    RpcConnectionError,
    RpcError,
    RpcTimeoutError,
)
from evtrace.rpc import LogFilter, Provider, get_provider
from evtrace.rpc.http import JsonRpcClient

from helpers import ALICE, TOKEN, TRANSFER_TOPIC, word

RPC_URL = "http://rpc.test"


def rpc_result(result) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})


def rpc_error(code: int, message: str) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message}})


def raw_log(block: int, log_index: int, removed: bool = False) -> dict:
    return {
        "address": TOKEN.lower(),
        "topics": [TRANSFER_TOPIC.upper().replace("0X", "0x")],
        "data": word(5),
        "transactionHash": "0x" + "AB" * 32,
        "blockNumber": hex(block),
        "logIndex": hex(log_index),
        "removed": removed,
    }


@pytest_asyncio.fixture
async def client():
    c = JsonRpcClient(RPC_URL, rate_limit_per_second=1000, poll_interval=0.01)
    yield c
    await c.close()


def test_client_satisfies_provider_protocol() -> None:
    assert isinstance(JsonRpcClient(RPC_URL), Provider)


def test_get_provider_uses_config() -> None:
    config = EvtraceConfig()
    config.rpc.url = "https://configured.example"
    assert get_provider(config).url == "https://configured.example"
    assert get_provider(config, url="https://override.example").url == "https://override.example"


@pytest.mark.asyncio
@respx.mock
async def test_get_block_number(client: JsonRpcClient) -> None:
    route = respx.post(RPC_URL).mock(return_value=rpc_result("0x3e8"))
    assert await client.get_block_number() == 1000
    body = json.loads(route.calls.last.request.content)
    assert body["method"] == "eth_blockNumber"
    assert body["jsonrpc"] == "2.0"


@pytest.mark.asyncio
@respx.mock
async def test_get_logs_parses_and_drops_removed(client: JsonRpcClient) -> None:
    route = respx.post(RPC_URL).mock(
        return_value=rpc_result([raw_log(901, 0), raw_log(902, 1, removed=True)])
    )
    log_filter = LogFilter(from_block=900, to_block=1000, topics=(TRANSFER_TOPIC, None), address=TOKEN)
    logs = await client.get_logs(log_filter)

    assert len(logs) == 1
    log = logs[0]
    assert log.address == TOKEN
    assert log.topics == (TRANSFER_TOPIC,)
    assert log.transaction_hash == "0x" + "ab" * 32
    assert (log.block_number, log.log_index) == (901, 0)

    params = json.loads(route.calls.last.request.content)["params"][0]
    assert params == {
        "fromBlock": "0x384",
        "toBlock": "0x3e8",
        "topics": [TRANSFER_TOPIC, None],
        "address": TOKEN,
    }


@pytest.mark.asyncio
@respx.mock
async def test_transaction_receipt_block(client: JsonRpcClient) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        method = json.loads(request.content)["method"]
        if method == "eth_getTransactionByHash":
            return rpc_result({"hash": "0xAA", "from": ALICE.lower(), "gasPrice": "0x3b9aca00"})
        if method == "eth_getTransactionReceipt":
            return rpc_result({"transactionHash": "0xAA", "gasUsed": "0xc738", "status": "0x1"})
        return rpc_result({"number": "0x10", "timestamp": "0x65b5d7e0"})

    respx.post(RPC_URL).mock(side_effect=handler)

    tx = await client.get_transaction("0xaa")
    assert tx.sender == ALICE
    assert tx.gas_price == 1_000_000_000

    receipt = await client.get_transaction_receipt("0xaa")
    assert receipt.gas_used == 51000
    assert receipt.status == 1

    block = await client.get_block(16)
    assert block.timestamp == 0x65B5D7E0


@pytest.mark.asyncio
@respx.mock
async def test_missing_transaction_raises(client: JsonRpcClient) -> None:
    respx.post(RPC_URL).mock(return_value=rpc_result(None))
    with pytest.raises(RpcError):
        await client.get_transaction("0xaa")


@pytest.mark.asyncio
@respx.mock
async def test_call_returns_bytes(client: JsonRpcClient) -> None:
    respx.post(RPC_URL).mock(return_value=rpc_result(word(18)))
    assert await client.call(TOKEN, b"\x31\x3c\xe5\x67") == (18).to_bytes(32, "big")


@pytest.mark.asyncio
@respx.mock
async def test_call_empty_result(client: JsonRpcClient) -> None:
    respx.post(RPC_URL).mock(return_value=rpc_result("0x"))
    assert await client.call(TOKEN, b"\x00\x00\x00\x00") == b""


# ── Error mapping ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
@respx.mock
async def test_timeout_maps_to_rpc_timeout(client: JsonRpcClient) -> None:
    respx.post(RPC_URL).mock(side_effect=httpx.ReadTimeout("slow"))
    with pytest.raises(RpcTimeoutError) as exc:
        await client.get_block_number()
    assert isinstance(exc.value, FetchFailedError)


@pytest.mark.asyncio
@respx.mock
async def test_connect_error(client: JsonRpcClient) -> None:
    respx.post(RPC_URL).mock(side_effect=httpx.ConnectError("refused"))
    with pytest.raises(RpcConnectionError):
        await client.get_block_number()


@pytest.mark.asyncio
@respx.mock
async def test_http_429_is_rate_limit(client: JsonRpcClient) -> None:
    respx.post(RPC_URL).mock(return_value=httpx.Response(429))
    with pytest.raises(RateLimitError):
        await client.get_block_number()


@pytest.mark.asyncio
@respx.mock
async def test_http_500_is_rpc_error(client: JsonRpcClient) -> None:
    respx.post(RPC_URL).mock(return_value=httpx.Response(500, text="oops"))
    with pytest.raises(RpcError) as exc:
        await client.get_block_number()
    assert exc.value.details["status"] == 500


@pytest.mark.asyncio
@respx.mock
async def test_limit_exceeded_code(client: JsonRpcClient) -> None:
    respx.post(RPC_URL).mock(return_value=rpc_error(-32005, "query returned more than 10000 results"))
    with pytest.raises(RateLimitError):
        await client.get_logs(LogFilter(0, 1))


@pytest.mark.asyncio
@respx.mock
async def test_revert_maps_to_call_reverted(client: JsonRpcClient) -> None:
    respx.post(RPC_URL).mock(return_value=rpc_error(3, "execution reverted: ERC721: invalid token ID"))
    with pytest.raises(CallRevertedError):
        await client.call(TOKEN, b"\x63\x52\x21\x1e")


@pytest.mark.asyncio
@respx.mock
async def test_generic_rpc_error(client: JsonRpcClient) -> None:
    respx.post(RPC_URL).mock(return_value=rpc_error(-32602, "invalid params"))
    with pytest.raises(RpcError) as exc:
        await client.get_block_number()
    assert exc.value.code == -32602
    assert not isinstance(exc.value, CallRevertedError)


@pytest.mark.asyncio
@respx.mock
async def test_malformed_json(client: JsonRpcClient) -> None:
    respx.post(RPC_URL).mock(return_value=httpx.Response(200, text="<html>"))
    with pytest.raises(RpcError):
        await client.get_block_number()


# ── New-block polling ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
@respx.mock
async def test_poller_delivers_each_new_block_in_order(client: JsonRpcClient) -> None:
    heads = iter(["0x64", "0x64", "0x67"])      # 100, 100, 103

    def handler(request: httpx.Request) -> httpx.Response:
        try:
            return rpc_result(next(heads))
        except StopIteration:
            return rpc_result("0x67")

    respx.post(RPC_URL).mock(side_effect=handler)

    seen: list[int] = []
    done = asyncio.Event()

    async def on_block(n: int) -> None:
        seen.append(n)
        if n == 103:
            done.set()

    client.on_new_block(on_block)
    await asyncio.wait_for(done.wait(), timeout=2)
    client.off_new_block(on_block)

    # First poll only records the head; 101..103 are delivered in order
    assert seen == [101, 102, 103]


@pytest.mark.asyncio
@respx.mock
async def test_poller_survives_errors_and_callback_failures(client: JsonRpcClient) -> None:
    responses = iter([rpc_result("0x1"), httpx.Response(500), rpc_result("0x2"), rpc_result("0x3")])

    def handler(request: httpx.Request) -> httpx.Response:
        try:
            return next(responses)
        except StopIteration:
            return rpc_result("0x3")

    respx.post(RPC_URL).mock(side_effect=handler)

    seen: list[int] = []
    done = asyncio.Event()

    async def flaky(n: int) -> None:
        seen.append(n)
        if n == 2:
            raise RuntimeError("handler bug")
        done.set()

    client.on_new_block(flaky)
    await asyncio.wait_for(done.wait(), timeout=2)
    assert seen == [2, 3]


@pytest.mark.asyncio
@respx.mock
async def test_poller_delivers_every_block_after_a_large_jump(client: JsonRpcClient) -> None:
    heads = iter(["0x64", "0xc8"])      # 100, then 200

    def handler(request: httpx.Request) -> httpx.Response:
        return rpc_result(next(heads, "0xc8"))

    respx.post(RPC_URL).mock(side_effect=handler)

    seen: list[int] = []
    done = asyncio.Event()

    async def on_block(n: int) -> None:
        seen.append(n)
        if n == 200:
            done.set()

    client.on_new_block(on_block)
    await asyncio.wait_for(done.wait(), timeout=2)
    client.off_new_block(on_block)

    assert seen == list(range(101, 201))
