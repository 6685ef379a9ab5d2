"""
Log fetcher — topic-filtered range queries for one target address.

eth_getLogs can only OR alternatives within a single topic slot, so
"address is topic[1] OR topic[2]" takes one query per address-bearing slot.
For every event kind in the registry the fetcher issues one query per
indexed address position over the same block range, runs them
concurrently, and returns the union only after all have completed.
"""

from __future__ import annotations

import asyncio
import logging

from eth_utils import is_checksum_address, is_hex_address, to_checksum_address

from evtrace.exceptions import FetchFailedError, InvalidAddressError, InvalidRangeError
from evtrace.models import LogRecord
from evtrace.rpc.base import LogFilter, Provider
from evtrace.signatures import SignatureRegistry

logger = logging.getLogger(__name__)


def normalize_address(address: str) -> str:
    """
    Return the EIP-55 checksum form of address.

    All-lowercase and all-uppercase hex are accepted; mixed case must carry
    a valid checksum. No network call is made.

    Raises:
        InvalidAddressError: Malformed address or bad checksum.
    """
    candidate = address.strip() if isinstance(address, str) else ""
    if not _is_valid_address(candidate):
        raise InvalidAddressError(
            f"Invalid address: {address!r}. Must be 0x + 40 hex chars with a valid checksum.",
            details={"address": address},
        )
    return to_checksum_address(candidate)


def _is_valid_address(candidate: str) -> bool:
    # is_hex_address ignores case, so mixed case is checked explicitly
    if not candidate.startswith("0x") or not is_hex_address(candidate):
        return False
    body = candidate[2:]
    if body == body.lower() or body == body.upper():
        return True
    return is_checksum_address(candidate)


def address_topic(address: str) -> str:
    """Encode an address as a left-zero-padded 32-byte topic word."""
    checksummed = normalize_address(address)
    return "0x" + "0" * 24 + checksummed[2:].lower()


class LogFetcher:
    """Runs the per-role getLogs queries for a target address."""

    def __init__(self, provider: Provider, registry: SignatureRegistry) -> None:
        self._provider = provider
        self._registry = registry

    def build_queries(self, target: str, from_block: int, to_block: int) -> list[LogFilter]:
        """One filter per (event kind, address-bearing topic position)."""
        topic_addr = address_topic(target)
        queries: list[LogFilter] = []
        for topic0, position in self._registry.address_positions():
            topics: list[str | None] = [topic0] + [None] * (position - 1) + [topic_addr]
            query = LogFilter(from_block=from_block, to_block=to_block, topics=tuple(topics))
            if query not in queries:
                queries.append(query)
        return queries

    async def fetch_range(self, target: str, from_block: int, to_block: int) -> list[LogRecord]:
        """
        Fetch every log in [from_block, to_block] that involves target.

        Returns the union of all per-role queries with duplicate logs (same
        transaction hash and log index) removed. Order is unspecified; the
        merger owns ordering.

        Raises:
            InvalidAddressError: Before any query is issued.
            InvalidRangeError: Negative or inverted range.
            FetchFailedError: Any query failed; no partial result is returned.
        """
        queries = self.build_queries(target, from_block, to_block)
        if from_block < 0 or to_block < 0 or from_block > to_block:
            raise InvalidRangeError(
                f"Invalid block range {from_block}..{to_block}",
                details={"from_block": from_block, "to_block": to_block},
            )

        results = await asyncio.gather(
            *(self._provider.get_logs(q) for q in queries), return_exceptions=True
        )

        union: dict[tuple[str, int], LogRecord] = {}
        for query, result in zip(queries, results):
            if isinstance(result, BaseException):
                raise _fetch_failed(query, result) from result
            for log in result:
                union.setdefault(log.key, log)

        logger.debug(
            "fetch_range %s %d..%d: %d queries, %d logs",
            target, from_block, to_block, len(queries), len(union),
        )
        return list(union.values())

    async def resolve_window(self, lookback: int) -> tuple[int, int]:
        """Return (max(0, latest - lookback), latest)."""
        if lookback < 0:
            raise InvalidRangeError(
                f"Lookback must be non-negative, got {lookback}", details={"lookback": lookback}
            )
        try:
            latest = await self._provider.get_block_number()
        except FetchFailedError:
            raise
        except Exception as e:
            raise FetchFailedError(f"eth_blockNumber failed: {e}") from e
        return max(0, latest - lookback), latest

    async def fetch_recent(self, target: str, lookback: int) -> tuple[int, int, list[LogRecord]]:
        """Validate target, clamp the window to the last `lookback` blocks, fetch."""
        normalize_address(target)
        from_block, to_block = await self.resolve_window(lookback)
        logs = await self.fetch_range(target, from_block, to_block)
        return from_block, to_block, logs


def _fetch_failed(query: LogFilter, cause: BaseException) -> FetchFailedError:
    """Wrap a per-query failure so the error carries the query that triggered it."""
    details = {"filter": query.to_dict()}
    if isinstance(cause, FetchFailedError):
        details["cause"] = cause.error_code
        details.update({k: v for k, v in cause.details.items() if k not in details})
    else:
        details["cause"] = type(cause).__name__
    return FetchFailedError(f"getLogs failed: {cause}", details=details)
