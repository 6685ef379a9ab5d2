"""
TraceSession — one endpoint, one target address, one accumulated state.

The session owns the only mutable state in evtrace: the accumulated EventSet
and the HistoryStore. Both are swapped by reference, so callers reading
`events` or `timeline()` always get a complete snapshot.

Usage:
    async with JsonRpcClient(url) as rpc:
        session = TraceSession(rpc)
        result = await session.fetch_past_events(address, 1000)
        session.subscribe_live(address)
"""

from __future__ import annotations

import logging

from evtrace.decoder import EventDecoder
from evtrace.fetcher import LogFetcher, normalize_address
from evtrace.history import HistoryStore
from evtrace.merger import EventSet, merge_events
from evtrace.models import SOURCE_LOCAL, ChainHistory, FetchResult, LocalTransferDetails, TransferRecord
from evtrace.reconciler import HistoryReconciler, Timeline, build_local_record
from evtrace.rpc.base import Provider
from evtrace.signatures import SignatureRegistry, build_registry
from evtrace.tail import ErrorCallback, EventsCallback, LiveTailSubscriber
from evtrace.token import TokenReader

logger = logging.getLogger(__name__)


class TraceSession:
    def __init__(
        self,
        provider: Provider,
        registry: SignatureRegistry | None = None,
        store: HistoryStore | None = None,
        token_reader: TokenReader | None = None,
    ) -> None:
        self._provider = provider
        self._registry = registry or build_registry()
        self._decoder = EventDecoder(self._registry)
        self._fetcher = LogFetcher(provider, self._registry)
        self._events = EventSet.empty()
        self._store = store or HistoryStore()
        self.tokens = token_reader or TokenReader(provider)
        self._reconciler = HistoryReconciler(provider, self.tokens)
        self._tail = LiveTailSubscriber(
            provider, self._fetcher, self._decoder,
            get_events=lambda: self._events,
            publish=self._publish,
        )

    # ──────────────────────────────────────────────────────────────
    # Snapshots
    # ──────────────────────────────────────────────────────────────

    @property
    def events(self) -> EventSet:
        return self._events

    @property
    def is_live(self) -> bool:
        return self._tail.target is not None

    @property
    def registry(self) -> SignatureRegistry:
        return self._registry

    def timeline(self) -> Timeline:
        return self._store.timeline()

    # ──────────────────────────────────────────────────────────────
    # Events
    # ──────────────────────────────────────────────────────────────

    async def fetch_past_events(self, address: str, lookback_blocks: int) -> FetchResult:
        """
        Fetch, decode and merge the last `lookback_blocks` blocks of activity.

        On any error the accumulated set is left exactly as it was.

        Raises:
            InvalidAddressError: Before any RPC call.
            InvalidRangeError: Negative lookback.
            FetchFailedError: Any per-role query failed.
        """
        from_block, to_block, logs = await self._fetcher.fetch_recent(address, lookback_blocks)
        decoded = self._decoder.decode_many(logs)
        result = merge_events(self._events, decoded)
        self._publish(result.events)

        logger.info(
            "Fetched %d logs for %s in blocks %d..%d (%d new)",
            len(logs), address, from_block, to_block, len(result.added),
        )
        return FetchResult(
            target=normalize_address(address),
            from_block=from_block,
            to_block=to_block,
            fetched=len(logs),
            added=result.added,
            events=result.events,
        )

    def subscribe_live(
        self,
        address: str,
        on_events: EventsCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> bool:
        return self._tail.subscribe(address, on_events=on_events, on_error=on_error)

    def unsubscribe_live(self) -> bool:
        return self._tail.unsubscribe()

    async def handle_block(self, block_number: int):
        """Process one block for the live subscription (what the provider callback does)."""
        return await self._tail.handle_block(block_number)

    # ──────────────────────────────────────────────────────────────
    # Transfer history
    # ──────────────────────────────────────────────────────────────

    async def load(self) -> list[TransferRecord]:
        return await self._store.load()

    async def fetch_chain_history(
        self, token_address: str, lookback: int = 10000, limit: int = 50
    ) -> ChainHistory:
        """Rebuild the chain view; the previous chain view is kept on failure."""
        history = await self._reconciler.fetch_chain_history(token_address, lookback, limit)
        self._store.replace_chain(list(history))
        return history

    async def record_local_transfer(self, details: LocalTransferDetails) -> TransferRecord:
        record = build_local_record(details)
        await self._store.add_local(record)
        return record

    async def clear_history(self, source: str = SOURCE_LOCAL) -> int:
        return await self._store.clear(source)

    async def close(self) -> None:
        self._tail.unsubscribe()

    def _publish(self, events: EventSet) -> None:
        self._events = events
