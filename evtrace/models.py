"""
Shared data models for evtrace.

These dataclasses are the canonical data shapes used across all modules:
the RPC layer produces LogRecords, the decoder turns them into DecodedEvents,
the reconciler builds TransferRecords, output renders them.
Raw logs and decoded events are frozen; nothing downstream mutates them.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from eth_utils import keccak

if TYPE_CHECKING:
    from evtrace.merger import EventSet

UNKNOWN_EVENT = "unknown"

SOURCE_LOCAL = "local"
SOURCE_CHAIN = "chain"
HISTORY_SOURCES = (SOURCE_LOCAL, SOURCE_CHAIN)


@dataclass(frozen=True)
class LogRecord:
    """A raw, undecoded log as returned by eth_getLogs."""

    address: str                    # emitting contract, checksum
    topics: tuple[str, ...]         # 0x-prefixed lowercase 32-byte words
    data: str                       # 0x-prefixed hex payload
    transaction_hash: str           # lowercase
    block_number: int
    log_index: int

    @property
    def key(self) -> tuple[str, int]:
        """(transaction_hash, log_index) — globally unique per log."""
        return (self.transaction_hash, self.log_index)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "topics": list(self.topics),
            "data": self.data,
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "logIndex": self.log_index,
        }


@dataclass(frozen=True)
class EventParam:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSignature:
    """A known event kind: name plus ordered parameter list."""

    name: str
    params: tuple[EventParam, ...]

    @property
    def canonical(self) -> str:
        """Name+types string hashed into topic0: 'Transfer(address,address,uint256)'."""
        return f"{self.name}({','.join(p.type for p in self.params)})"

    @property
    def topic0(self) -> str:
        return "0x" + keccak(text=self.canonical).hex()

    @property
    def indexed_params(self) -> tuple[EventParam, ...]:
        return tuple(p for p in self.params if p.indexed)

    @property
    def data_params(self) -> tuple[EventParam, ...]:
        return tuple(p for p in self.params if not p.indexed)

    @property
    def topic_count(self) -> int:
        """Number of topics a log of this kind carries (topic0 included)."""
        return 1 + len(self.indexed_params)


@dataclass(frozen=True)
class DecodedEvent:
    """
    A log decoded against the signature registry.

    name is "unknown" and args is None when no signature matched or decoding
    failed; raw_log is always kept so unknown events can still be displayed.
    """

    contract_address: str
    name: str
    args: dict[str, Any] | None
    raw_log: LogRecord
    block_number: int
    log_index: int
    transaction_hash: str

    @property
    def key(self) -> tuple[str, int]:
        return (self.transaction_hash, self.log_index)

    @property
    def is_unknown(self) -> bool:
        return self.name == UNKNOWN_EVENT

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "contract": self.contract_address,
            "name": self.name,
            "txHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "logIndex": self.log_index,
        }
        if self.is_unknown:
            d["raw"] = self.raw_log.to_dict()
        else:
            d["args"] = dict(self.args or {})
        return d


@dataclass
class TransferRecord:
    """
    One reconciled token transfer, either recorded locally at submission
    time (source="local") or re-derived from chain logs (source="chain").

    amount is always the human-readable decimal string, never base units.
    """

    id: str
    tx_hash: str
    from_addr: str
    to_addr: str
    amount: str
    token_address: str
    token_name: str
    token_symbol: str
    timestamp: str              # ISO8601 UTC
    block_number: int
    gas_used: str
    source: str                 # "local" | "chain"
    gas_price: str | None = None
    spender: str | None = None  # set only for delegated transfers
    is_delegated: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the persisted collection's wire names."""
        return {
            "id": self.id,
            "txHash": self.tx_hash,
            "from": self.from_addr,
            "to": self.to_addr,
            "amount": self.amount,
            "tokenAddress": self.token_address,
            "tokenName": self.token_name,
            "tokenSymbol": self.token_symbol,
            "timestamp": self.timestamp,
            "blockNumber": self.block_number,
            "gasUsed": self.gas_used,
            "gasPrice": self.gas_price,
            "spender": self.spender,
            "isDelegated": self.is_delegated,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TransferRecord":
        """Inverse of to_dict(). Accepts the older isTransferFrom/blockchain spellings."""
        source = d.get("source", SOURCE_LOCAL)
        if source == "blockchain":
            source = SOURCE_CHAIN
        is_delegated = d.get("isDelegated", d.get("isTransferFrom", False))
        gas_price = d.get("gasPrice")
        return cls(
            id=str(d["id"]),
            tx_hash=d["txHash"],
            from_addr=d["from"],
            to_addr=d["to"],
            amount=str(d["amount"]),
            token_address=d.get("tokenAddress", ""),
            token_name=d.get("tokenName", ""),
            token_symbol=d.get("tokenSymbol", ""),
            timestamp=d.get("timestamp", ""),
            block_number=int(d.get("blockNumber") or 0),
            gas_used=str(d.get("gasUsed", "0")),
            gas_price=str(gas_price) if gas_price is not None else None,
            spender=d.get("spender"),
            is_delegated=bool(is_delegated),
            source=source,
        )


@dataclass(frozen=True)
class TokenMetadata:
    address: str
    name: str
    symbol: str
    decimals: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
        }


@dataclass(frozen=True)
class ChainHistory(Sequence):
    """
    Chain-derived transfers, newest first, plus how many were dropped.

    Behaves as a read-only sequence of TransferRecords. `skipped` counts
    transfers whose tx, receipt or block lookup failed, so a partial view
    can be told apart from a complete one.
    """

    records: tuple[TransferRecord, ...] = ()
    skipped: int = 0
    from_block: int = 0
    to_block: int = 0

    def __getitem__(self, index):
        return self.records[index]

    def __len__(self) -> int:
        return len(self.records)


@dataclass
class LocalTransferDetails:
    """Submission context for a transfer this user just executed."""

    tx_hash: str
    from_addr: str
    to_addr: str
    amount: str                 # human-readable, as entered
    token: TokenMetadata
    block_number: int
    gas_used: int | str
    spender: str | None = None
    is_delegated: bool | None = None    # None: delegated iff spender is set
    gas_price: int | str | None = None


@dataclass
class FetchResult:
    """Outcome of one fetch_past_events call."""

    target: str
    from_block: int
    to_block: int
    fetched: int                # raw logs returned by the query union
    added: list[Any]            # DecodedEvents new to the accumulated set
    events: EventSet            # snapshot after merge

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "from_block": self.from_block,
            "to_block": self.to_block,
            "blocks_scanned": self.to_block - self.from_block + 1,
            "fetched": self.fetched,
            "added": len(self.added),
            "count": len(self.events),
            "events": [e.to_dict() for e in self.events],
        }


@dataclass(frozen=True)
class NftMetadata:
    """The tokenURI JSON document; `image` already points at an HTTP gateway."""

    name: str | None = None
    description: str | None = None
    image: str | None = None
    attributes: tuple[Any, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "image": self.image,
            "attributes": list(self.attributes),
        }


@dataclass(frozen=True)
class OwnedToken:
    token_id: int
    owner: str
    token_uri: str | None = None
    gateway_uri: str | None = None
    metadata: NftMetadata | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_id": self.token_id,
            "owner": self.owner,
            "token_uri": self.token_uri,
            "gateway_uri": self.gateway_uri,
            "metadata": self.metadata.to_dict() if self.metadata else None,
        }


@dataclass
class OwnershipScan:
    """Result of a bounded ownerOf scan."""

    contract: str
    owner: str
    scanned: int
    end_reason: str             # "not_found" | "upper_bound"
    tokens: list[OwnedToken] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract": self.contract,
            "owner": self.owner,
            "scanned": self.scanned,
            "end_reason": self.end_reason,
            "count": len(self.tokens),
            "tokens": [t.to_dict() for t in self.tokens],
        }
