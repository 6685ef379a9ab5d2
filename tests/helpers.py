"""Builders and an in-memory Provider shared by the evtrace tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from evtrace.exceptions import RpcError
from evtrace.fetcher import address_topic
from evtrace.models import LogRecord
from evtrace.rpc.base import BlockCallback, BlockInfo, LogFilter, ReceiptInfo, TransactionInfo

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
APPROVAL_TOPIC = "0x8c5be1e5ebec7d5bd14f71427d1e84f3dd0314c0f7b2291e5b200ac8c7c3b925"
APPROVAL_FOR_ALL_TOPIC = "0x17307eab39ab6107e8899845ad3d59bd9653f200f220920489ca2b5937696c31"

VITALIK = "0xd8dA6BF26964aF9D7eEd9e03E53415D37aA96045"
ALICE = to_checksum_address("0x" + "a1" * 20)
BOB = to_checksum_address("0x" + "b2" * 20)
CAROL = to_checksum_address("0x" + "c3" * 20)
TOKEN = to_checksum_address("0x" + "70" * 20)
NFT = to_checksum_address("0x" + "4f" * 20)


def tx_hash(block: int, log_index: int = 0, salt: int = 0) -> str:
    return "0x" + f"{salt:04x}{block:012x}{log_index:06x}".rjust(64, "0")


def word(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


def make_transfer_log(
    from_addr: str,
    to_addr: str,
    value: int,
    block: int,
    log_index: int = 0,
    tx: str | None = None,
    contract: str = TOKEN,
) -> LogRecord:
    return LogRecord(
        address=contract,
        topics=(TRANSFER_TOPIC, address_topic(from_addr), address_topic(to_addr)),
        data=word(value),
        transaction_hash=tx or tx_hash(block, log_index),
        block_number=block,
        log_index=log_index,
    )


def make_approval_log(
    owner: str,
    spender: str,
    value: int,
    block: int,
    log_index: int = 0,
    tx: str | None = None,
    contract: str = TOKEN,
) -> LogRecord:
    return LogRecord(
        address=contract,
        topics=(APPROVAL_TOPIC, address_topic(owner), address_topic(spender)),
        data=word(value),
        transaction_hash=tx or tx_hash(block, log_index),
        block_number=block,
        log_index=log_index,
    )


def make_nft_transfer_log(from_addr: str, to_addr: str, token_id: int, block: int, log_index: int = 0) -> LogRecord:
    return LogRecord(
        address=NFT,
        topics=(TRANSFER_TOPIC, address_topic(from_addr), address_topic(to_addr), word(token_id)),
        data="0x",
        transaction_hash=tx_hash(block, log_index, salt=7),
        block_number=block,
        log_index=log_index,
    )


def selector(signature: str) -> str:
    return function_signature_to_4byte_selector(signature).hex()


def encoded(types: list[str], values: list[Any]) -> bytes:
    return abi_encode(types, values)


class FakeProvider:
    """
    In-memory Provider.

    Records every call in `calls`. get_logs applies the filter to `logs`
    the way a node would. Set `gate` to an asyncio.Event to hold get_logs
    until the test releases it.
    """

    def __init__(self, latest: int = 1000) -> None:
        self.latest = latest
        self.logs: list[LogRecord] = []
        self.calls: list[tuple] = []
        self.gate: asyncio.Event | None = None
        self.logs_error: Callable[[LogFilter], Exception | None] | None = None
        self.transactions: dict[str, TransactionInfo] = {}
        self.receipts: dict[str, ReceiptInfo] = {}
        self.block_times: dict[int, int] = {}
        self.failing_blocks: set[int] = set()
        # (lowercase contract, selector hex) → bytes | Exception | callable(data) → bytes
        self.call_results: dict[tuple[str, str], Any] = {}
        self.block_callbacks: list[BlockCallback] = []

    def call_count(self, method: str) -> int:
        return sum(1 for c in self.calls if c[0] == method)

    async def get_block_number(self) -> int:
        self.calls.append(("get_block_number",))
        return self.latest

    async def get_logs(self, log_filter: LogFilter) -> list[LogRecord]:
        self.calls.append(("get_logs", log_filter))
        if self.gate is not None:
            await self.gate.wait()
        if self.logs_error is not None:
            err = self.logs_error(log_filter)
            if err is not None:
                raise err
        return [log for log in self.logs if _matches(log_filter, log)]

    async def get_transaction(self, tx_hash: str) -> TransactionInfo:
        self.calls.append(("get_transaction", tx_hash))
        if tx_hash not in self.transactions:
            raise RpcError(f"Transaction not found: {tx_hash}")
        return self.transactions[tx_hash]

    async def get_transaction_receipt(self, tx_hash: str) -> ReceiptInfo:
        self.calls.append(("get_transaction_receipt", tx_hash))
        if tx_hash not in self.receipts:
            raise RpcError(f"Receipt not found: {tx_hash}")
        return self.receipts[tx_hash]

    async def get_block(self, block_number: int) -> BlockInfo:
        self.calls.append(("get_block", block_number))
        if block_number in self.failing_blocks:
            raise RpcError(f"Block not found: {block_number}")
        return BlockInfo(number=block_number, timestamp=self.block_times.get(block_number, 1_700_000_000))

    async def call(self, to: str, data: bytes) -> bytes:
        self.calls.append(("call", to, data))
        result = self.call_results.get((to.lower(), data[:4].hex()))
        if result is None:
            raise RpcError(f"No fake result for call to {to} selector {data[:4].hex()}")
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(data)
        return result

    def on_new_block(self, callback: BlockCallback) -> None:
        self.calls.append(("on_new_block",))
        self.block_callbacks.append(callback)

    def off_new_block(self, callback: BlockCallback) -> None:
        self.calls.append(("off_new_block",))
        if callback in self.block_callbacks:
            self.block_callbacks.remove(callback)

    async def emit_block(self, block_number: int) -> None:
        """Deliver a new-block notification the way the HTTP poller does."""
        for callback in list(self.block_callbacks):
            await callback(block_number)

    # ── token setup shortcuts ──

    def set_erc20(self, token: str, name: str = "Test Token", symbol: str = "TST", decimals: int = 18) -> None:
        key = token.lower()
        self.call_results[(key, selector("decimals()"))] = encoded(["uint8"], [decimals])
        self.call_results[(key, selector("symbol()"))] = encoded(["string"], [symbol])
        self.call_results[(key, selector("name()"))] = encoded(["string"], [name])

    def add_tx(self, tx: str, sender: str, gas_used: int = 51_000, gas_price: int | None = 1_000_000_000) -> None:
        self.transactions[tx] = TransactionInfo(hash=tx, sender=sender, gas_price=gas_price)
        self.receipts[tx] = ReceiptInfo(hash=tx, gas_used=gas_used, status=1)


def _matches(log_filter: LogFilter, log: LogRecord) -> bool:
    if not log_filter.from_block <= log.block_number <= log_filter.to_block:
        return False
    if log_filter.address and log_filter.address.lower() != log.address.lower():
        return False
    for i, want in enumerate(log_filter.topics):
        if want is None:
            continue
        if i >= len(log.topics) or log.topics[i] != want.lower():
            return False
    return True
