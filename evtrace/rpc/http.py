"""
JSON-RPC provider over HTTP.

Design decisions:
- Uses async httpx for all calls (single pooled AsyncClient).
- Token bucket rate limiting, configurable calls/sec.
- Every transport or node failure surfaces as a FetchFailedError subclass;
  a transport timeout is just another FetchFailedError to callers.
- New-block notifications are produced by polling eth_blockNumber, since
  plain HTTP endpoints cannot push. Callbacks are awaited one block at a
  time, in ascending block order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx
from eth_utils import to_checksum_address

from evtrace.exceptions import (
    CallRevertedError,
    FetchFailedError,
    RateLimitError,
    RpcConnectionError,
    RpcError,
    RpcTimeoutError,
)
from evtrace.models import LogRecord
from evtrace.rpc.base import BlockCallback, BlockInfo, LogFilter, ReceiptInfo, TransactionInfo

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "http://127.0.0.1:8545"

# JSON-RPC error code used by several providers for "limit exceeded"
RPC_LIMIT_EXCEEDED = -32005
# Geth/Hardhat code for a reverted eth_call
RPC_EXECUTION_REVERTED = 3


class _TokenBucket:
    """Simple token bucket rate limiter."""

    def __init__(self, calls: int, period: float) -> None:
        self._calls = calls
        self._period = period
        self._tokens: float = float(calls)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_refill
            refill = (elapsed / self._period) * self._calls
            self._tokens = min(self._calls, self._tokens + refill)
            self._last_refill = now

            if self._tokens < 1:
                wait = (1 - self._tokens) * (self._period / self._calls)
                await asyncio.sleep(wait)
                self._tokens = 0
            else:
                self._tokens -= 1


class JsonRpcClient:
    """
    Async JSON-RPC 2.0 client implementing the Provider protocol.

    Usage:
        async with JsonRpcClient("http://127.0.0.1:8545") as rpc:
            latest = await rpc.get_block_number()
    """

    def __init__(
        self,
        url: str = DEFAULT_RPC_URL,
        timeout: float = 30.0,
        poll_interval: float = 4.0,
        rate_limit_per_second: int = 10,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._rate_limiter = _TokenBucket(max(rate_limit_per_second, 1), 1.0)
        self._poll_interval = poll_interval
        self._request_id = 0
        self._block_callbacks: list[BlockCallback] = []
        self._poll_task: asyncio.Task | None = None

    async def __aenter__(self) -> "JsonRpcClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ──────────────────────────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────────────────────────

    async def get_block_number(self) -> int:
        result = await self._request("eth_blockNumber", [])
        return _to_int(result)

    async def get_logs(self, log_filter: LogFilter) -> list[LogRecord]:
        result = await self._request("eth_getLogs", [log_filter.to_params()])
        logs: list[LogRecord] = []
        for raw in result or []:
            if raw.get("removed") or raw.get("blockNumber") is None:
                continue    # reorged-out or pending
            logs.append(_parse_log(raw))
        return logs

    async def get_transaction(self, tx_hash: str) -> TransactionInfo:
        raw = await self._request("eth_getTransactionByHash", [tx_hash])
        if not raw:
            raise RpcError(f"Transaction not found: {tx_hash}", details={"tx_hash": tx_hash})
        gas_price = raw.get("gasPrice")
        return TransactionInfo(
            hash=raw["hash"].lower(),
            sender=to_checksum_address(raw["from"]),
            gas_price=_to_int(gas_price) if gas_price is not None else None,
        )

    async def get_transaction_receipt(self, tx_hash: str) -> ReceiptInfo:
        raw = await self._request("eth_getTransactionReceipt", [tx_hash])
        if not raw:
            raise RpcError(f"Receipt not found: {tx_hash}", details={"tx_hash": tx_hash})
        status = raw.get("status")
        return ReceiptInfo(
            hash=raw["transactionHash"].lower(),
            gas_used=_to_int(raw["gasUsed"]),
            status=_to_int(status) if status is not None else None,
        )

    async def get_block(self, block_number: int) -> BlockInfo:
        raw = await self._request("eth_getBlockByNumber", [hex(block_number), False])
        if not raw:
            raise RpcError(f"Block not found: {block_number}", details={"block": block_number})
        return BlockInfo(number=_to_int(raw["number"]), timestamp=_to_int(raw["timestamp"]))

    async def call(self, to: str, data: bytes) -> bytes:
        result = await self._request("eth_call", [{"to": to, "data": "0x" + data.hex()}, "latest"])
        if not result or result == "0x":
            return b""
        return bytes.fromhex(result[2:])

    # ──────────────────────────────────────────────────────────────
    # New-block notifications
    # ──────────────────────────────────────────────────────────────

    def on_new_block(self, callback: BlockCallback) -> None:
        if callback not in self._block_callbacks:
            self._block_callbacks.append(callback)
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_blocks())

    def off_new_block(self, callback: BlockCallback) -> None:
        # The poll task exits on its own once no callbacks remain.
        if callback in self._block_callbacks:
            self._block_callbacks.remove(callback)

    async def close(self) -> None:
        self._block_callbacks.clear()
        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
        self._poll_task = None
        await self._client.aclose()

    # ──────────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────────

    async def _poll_blocks(self) -> None:
        """Poll the head and deliver each new block number to every callback."""
        last_seen: int | None = None

        while self._block_callbacks:
            try:
                latest = await self.get_block_number()
            except FetchFailedError as e:
                logger.warning("Block poll failed: %s", e)
            else:
                if last_seen is None:
                    last_seen = latest
                elif latest > last_seen:
                    if latest - last_seen > 1:
                        logger.debug("Head moved %d blocks; catching up %d..%d",
                                     latest - last_seen, last_seen + 1, latest)
                    # Every block is delivered, however far the head jumped
                    for block_number in range(last_seen + 1, latest + 1):
                        await self._dispatch_block(block_number)
                    last_seen = latest

            await asyncio.sleep(self._poll_interval)

    async def _dispatch_block(self, block_number: int) -> None:
        for callback in list(self._block_callbacks):
            try:
                await callback(block_number)
            except Exception:
                logger.exception("New-block callback failed for block %d", block_number)

    async def _request(self, method: str, params: list[Any]) -> Any:
        """POST one JSON-RPC request and return its result field."""
        await self._rate_limiter.acquire()
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        try:
            resp = await self._client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            raise RpcTimeoutError(
                f"RPC timeout on {method}: {e}", details={"method": method}
            ) from e
        except httpx.ConnectError as e:
            raise RpcConnectionError(
                f"Cannot connect to {self.url}: {e}", details={"method": method}
            ) from e
        except httpx.HTTPError as e:
            raise FetchFailedError(
                f"RPC transport error on {method}: {e}", details={"method": method}
            ) from e

        if resp.status_code == 429:
            raise RateLimitError(f"RPC rate limit exceeded on {method}", retry_after=60)
        if resp.status_code >= 400:
            raise RpcError(
                f"RPC endpoint returned HTTP {resp.status_code} on {method}",
                details={"method": method, "status": resp.status_code},
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise RpcError(f"Malformed JSON-RPC response on {method}") from e

        error = data.get("error")
        if error:
            code = error.get("code")
            message = str(error.get("message", ""))
            if code == RPC_LIMIT_EXCEEDED or "rate limit" in message.lower():
                raise RateLimitError(f"RPC rate limit on {method}: {message}", retry_after=60)
            if code == RPC_EXECUTION_REVERTED or "revert" in message.lower():
                raise CallRevertedError(
                    f"Call reverted: {message}", code=code, details={"method": method}
                )
            raise RpcError(f"RPC error {code} on {method}: {message}", code=code,
                           details={"method": method})

        return data.get("result")


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


def _parse_log(raw: dict[str, Any]) -> LogRecord:
    return LogRecord(
        address=to_checksum_address(raw["address"]),
        topics=tuple(t.lower() for t in raw.get("topics", [])),
        data=(raw.get("data") or "0x").lower(),
        transaction_hash=raw["transactionHash"].lower(),
        block_number=_to_int(raw["blockNumber"]),
        log_index=_to_int(raw["logIndex"]),
    )
