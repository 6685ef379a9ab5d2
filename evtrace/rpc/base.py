"""Provider protocol and the plain records it returns."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, runtime_checkable

from evtrace.models import LogRecord

BlockCallback = Callable[[int], Awaitable[None]]


@dataclass(frozen=True)
class LogFilter:
    """
    eth_getLogs filter. Each topic slot is one 32-byte hex word or None
    (wildcard). Block bounds are inclusive.
    """

    from_block: int
    to_block: int
    topics: tuple[str | None, ...] = ()
    address: str | None = None      # restrict to one emitting contract

    def to_params(self) -> dict:
        """JSON-RPC params object for eth_getLogs."""
        params: dict = {
            "fromBlock": hex(self.from_block),
            "toBlock": hex(self.to_block),
            "topics": list(self.topics),
        }
        if self.address:
            params["address"] = self.address
        return params

    def to_dict(self) -> dict:
        return {
            "from_block": self.from_block,
            "to_block": self.to_block,
            "topics": list(self.topics),
            "address": self.address,
        }


@dataclass(frozen=True)
class TransactionInfo:
    hash: str
    sender: str
    gas_price: int | None


@dataclass(frozen=True)
class ReceiptInfo:
    hash: str
    gas_used: int
    status: int | None = None


@dataclass(frozen=True)
class BlockInfo:
    number: int
    timestamp: int      # Unix seconds


@runtime_checkable
class Provider(Protocol):
    """
    Everything evtrace reads from a node.

    Providers are responsible for:
    - Transport, timeouts and rate limiting
    - Mapping transport/node failures onto FetchFailedError subclasses
    - Delivering new-block notifications serially, in block order

    Providers are NOT responsible for:
    - Choosing which topics to query (that's fetcher.py)
    - Decoding logs (that's decoder.py)
    - Dedup or ordering of results (that's merger.py)
    """

    async def get_block_number(self) -> int:
        ...

    async def get_logs(self, log_filter: LogFilter) -> list[LogRecord]:
        """Return raw logs matching the filter, in node order."""
        ...

    async def get_transaction(self, tx_hash: str) -> TransactionInfo:
        ...

    async def get_transaction_receipt(self, tx_hash: str) -> ReceiptInfo:
        ...

    async def get_block(self, block_number: int) -> BlockInfo:
        ...

    async def call(self, to: str, data: bytes) -> bytes:
        """eth_call against the latest block; raises CallRevertedError on revert."""
        ...

    def on_new_block(self, callback: BlockCallback) -> None:
        """
        Register callback(block_number) for every new block.

        The provider awaits each callback to completion before delivering the
        next block number.
        """
        ...

    def off_new_block(self, callback: BlockCallback) -> None:
        ...
