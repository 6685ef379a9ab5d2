"""
Transfer history reconciliation.

Two provenance views of the same token activity:
  - local: recorded at submission time; the authoritative source for the
    spender and delegation flags
  - chain: re-derived from Transfer logs plus per-transaction lookups; the
    delegation flag there is inferred (see infer_delegation)

The views are never merged into one list. Timeline keeps them side by side
and callers select one by source.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from evtrace.decoder import EventDecoder
from evtrace.exceptions import DataError, FetchFailedError
from evtrace.fetcher import LogFetcher, normalize_address
from evtrace.merger import canonical_key
from evtrace.models import (
    HISTORY_SOURCES,
    SOURCE_CHAIN,
    SOURCE_LOCAL,
    ChainHistory,
    DecodedEvent,
    LocalTransferDetails,
    TokenMetadata,
    TransferRecord,
)
from evtrace.rpc.base import LogFilter, Provider
from evtrace.signatures import build_registry
from evtrace.token import TokenReader

logger = logging.getLogger(__name__)

ERC20_TRANSFER = "event Transfer(address indexed from, address indexed to, uint256 value)"


def infer_delegation(tx_sender: str, event_from: str) -> tuple[bool, str | None]:
    """
    Guess whether a transfer was executed by a spender on the owner's behalf.

    Heuristic: if whoever sent the transaction is not the token's `from`,
    assume transferFrom by an approved spender. Contracts that forward
    transfers (routers, multisigs) are misclassified as delegated.

    Returns:
        (is_delegated, spender); spender is the tx sender when delegated.
    """
    if tx_sender.lower() != event_from.lower():
        return True, tx_sender
    return False, None


def format_units(raw: int, decimals: int) -> str:
    """
    Scale a base-unit integer to a decimal string without float rounding.

    Always keeps at least one fractional digit: (10**18, 18) → "1.0",
    (1500000, 6) → "1.5".
    """
    if decimals < 0:
        raise ValueError(f"decimals must be non-negative, got {decimals}")
    sign = "-" if raw < 0 else ""
    whole, frac = divmod(abs(raw), 10**decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0") if decimals else ""
    return f"{sign}{whole}.{frac_str or '0'}"


@dataclass(frozen=True)
class Timeline:
    """Local and chain transfer views, kept separate."""

    local: tuple[TransferRecord, ...] = ()
    chain: tuple[TransferRecord, ...] = ()

    def select(self, source: str) -> list[TransferRecord]:
        if source == SOURCE_LOCAL:
            return list(self.local)
        if source == SOURCE_CHAIN:
            return list(self.chain)
        raise DataError(
            f"Unknown history source {source!r}. Valid: {list(HISTORY_SOURCES)}",
            details={"source": source},
        )

    @property
    def counts(self) -> dict[str, int]:
        return {SOURCE_LOCAL: len(self.local), SOURCE_CHAIN: len(self.chain)}

    def to_dict(self, source: str | None = None) -> dict[str, Any]:
        if source is not None:
            records = self.select(source)
            return {
                "source": source,
                "count": len(records),
                "transfers": [r.to_dict() for r in records],
            }
        return {
            "counts": self.counts,
            SOURCE_LOCAL: [r.to_dict() for r in self.local],
            SOURCE_CHAIN: [r.to_dict() for r in self.chain],
        }


def reconcile(
    local: Iterable[TransferRecord], chain: Iterable[TransferRecord]
) -> Timeline:
    """Pair the two views. No cross-source dedup, even on a shared tx hash."""
    return Timeline(local=tuple(local), chain=tuple(chain))


def build_local_record(details: LocalTransferDetails) -> TransferRecord:
    """
    Build a source="local" record from submission context.

    spender and the delegation flag are taken as given, never inferred.

    Raises:
        InvalidAddressError: from/to/spender/token address malformed.
        DataError: amount is not a non-negative decimal.
    """
    try:
        amount = Decimal(str(details.amount))
    except InvalidOperation:
        amount = Decimal("NaN")
    if not amount.is_finite() or amount < 0:
        raise DataError(
            f"Amount must be a non-negative decimal, got {details.amount!r}",
            details={"amount": str(details.amount)},
        )

    spender = normalize_address(details.spender) if details.spender else None
    is_delegated = details.is_delegated
    if is_delegated is None:
        is_delegated = spender is not None

    return TransferRecord(
        id=f"local-{uuid.uuid4().hex}",
        tx_hash=details.tx_hash.lower(),
        from_addr=normalize_address(details.from_addr),
        to_addr=normalize_address(details.to_addr),
        amount=str(details.amount),
        token_address=normalize_address(details.token.address),
        token_name=details.token.name,
        token_symbol=details.token.symbol,
        timestamp=datetime.now(tz=timezone.utc).isoformat(),
        block_number=details.block_number,
        gas_used=str(details.gas_used),
        gas_price=str(details.gas_price) if details.gas_price is not None else None,
        spender=spender,
        is_delegated=bool(is_delegated),
        source=SOURCE_LOCAL,
    )


class HistoryReconciler:
    """Re-derives the chain transfer view of one ERC-20 token."""

    def __init__(
        self,
        provider: Provider,
        token_reader: TokenReader | None = None,
        decoder: EventDecoder | None = None,
    ) -> None:
        self._provider = provider
        registry = build_registry([ERC20_TRANSFER])
        self._decoder = decoder or EventDecoder(registry)
        self._fetcher = LogFetcher(provider, self._decoder.registry)
        self._tokens = token_reader or TokenReader(provider)
        self._transfer_topic0 = registry.by_name("Transfer")[0].topic0

    async def fetch_chain_history(
        self, token_address: str, lookback: int = 10000, limit: int = 50
    ) -> ChainHistory:
        """
        Rebuild the chain view from the last `lookback` blocks.

        Keeps the `limit` most recent transfers, newest first. Transfers whose
        lookups failed are logged and counted in `skipped`.

        Raises:
            InvalidAddressError: Before any RPC call.
            FetchFailedError: getLogs failed.
            MetadataUnavailableError: decimals/symbol/name read failed.
        """
        token = normalize_address(token_address)
        if limit < 1:
            raise DataError(f"limit must be >= 1, got {limit}", details={"limit": limit})

        from_block, to_block = await self._fetcher.resolve_window(lookback)
        log_filter = LogFilter(
            from_block=from_block,
            to_block=to_block,
            topics=(self._transfer_topic0,),
            address=token,
        )
        try:
            logs = await self._provider.get_logs(log_filter)
        except FetchFailedError as e:
            e.details.setdefault("filter", log_filter.to_dict())
            raise

        metadata = await self._tokens.metadata(token)

        # ERC-721 Transfer shares topic0 but has 4 topics; those decode as unknown
        events = [e for e in self._decoder.decode_many(logs) if not e.is_unknown]
        events.sort(key=canonical_key)
        recent = list(reversed(events[-limit:]))

        block_times: dict[int, asyncio.Task] = {}
        results = await asyncio.gather(
            *(self._to_record(ev, metadata, block_times) for ev in recent),
            return_exceptions=True,
        )

        records: list[TransferRecord] = []
        for event, result in zip(recent, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Skipping transfer %s:%d: %s",
                    event.transaction_hash, event.log_index, result,
                )
                continue
            records.append(result)

        skipped = len(recent) - len(records)
        logger.info(
            "Chain history for %s: %d logs, %d records, %d skipped (blocks %d..%d)",
            token, len(logs), len(records), skipped, from_block, to_block,
        )
        return ChainHistory(
            records=tuple(records), skipped=skipped, from_block=from_block, to_block=to_block
        )

    async def _to_record(
        self,
        event: DecodedEvent,
        metadata: TokenMetadata,
        block_times: dict[int, asyncio.Task],
    ) -> TransferRecord:
        args = event.args or {}
        tx, receipt, timestamp = await asyncio.gather(
            self._provider.get_transaction(event.transaction_hash),
            self._provider.get_transaction_receipt(event.transaction_hash),
            self._block_timestamp(event.block_number, block_times),
        )
        is_delegated, spender = infer_delegation(tx.sender, args["from"])

        return TransferRecord(
            id=f"{event.transaction_hash}-{event.log_index}",
            tx_hash=event.transaction_hash,
            from_addr=args["from"],
            to_addr=args["to"],
            amount=format_units(args["value"], metadata.decimals),
            token_address=metadata.address,
            token_name=metadata.name,
            token_symbol=metadata.symbol,
            timestamp=datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat(),
            block_number=event.block_number,
            gas_used=str(receipt.gas_used),
            gas_price=str(tx.gas_price if tx.gas_price is not None else 0),
            spender=spender,
            is_delegated=is_delegated,
            source=SOURCE_CHAIN,
        )

    async def _block_timestamp(self, block_number: int, cache: dict[int, asyncio.Task]) -> int:
        # One getBlock per block per run, shared by every event in that block
        task = cache.get(block_number)
        if task is None:
            task = asyncio.ensure_future(self._provider.get_block(block_number))
            cache[block_number] = task
        block = await task
        return block.timestamp
