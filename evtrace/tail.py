"""
Live tail: keep the accumulated event set current as blocks arrive.

Each subscription is a token object with its own lock and an `active` flag.
unsubscribe() flips the flag before detaching from the provider, so a
handler that was already waiting on I/O sees a dead token when it resumes
and drops its result instead of merging it.

Also hosts run_tail(), the JSONL loop behind `evtrace events tail`.

Event types emitted by run_tail:
  tail_start  — subscription established (after optional backfill)
  log_event   — one decoded event (backfill or live)
  tail_error  — a block handler failed; the subscription stays up
  tail_end    — SIGINT / cancellation → clean exit 130
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from evtrace.decoder import EventDecoder
from evtrace.fetcher import LogFetcher, normalize_address
from evtrace.merger import EventSet, merge_events
from evtrace.models import DecodedEvent
from evtrace.output import emit_event
from evtrace.rpc.base import BlockCallback, Provider

if TYPE_CHECKING:
    from evtrace.engine import TraceSession

logger = logging.getLogger(__name__)

EventsCallback = Callable[[list[DecodedEvent]], None]
ErrorCallback = Callable[[Exception], None]


class TailState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBED = "subscribed"


@dataclass(eq=False)
class _Subscription:
    target: str
    on_events: EventsCallback | None = None
    on_error: ErrorCallback | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    active: bool = True
    callback: BlockCallback | None = None


class LiveTailSubscriber:
    """
    Subscribed/Unsubscribed state machine over the provider's new-block feed.

    get_events/publish read and swap the owning session's EventSet; the
    subscriber never holds its own copy.
    """

    def __init__(
        self,
        provider: Provider,
        fetcher: LogFetcher,
        decoder: EventDecoder,
        get_events: Callable[[], EventSet],
        publish: Callable[[EventSet], None],
        on_events: EventsCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self._provider = provider
        self._fetcher = fetcher
        self._decoder = decoder
        self._get_events = get_events
        self._publish = publish
        self._on_events = on_events
        self._on_error = on_error
        self._sub: _Subscription | None = None

    @property
    def state(self) -> TailState:
        return TailState.SUBSCRIBED if self._sub is not None else TailState.UNSUBSCRIBED

    @property
    def target(self) -> str | None:
        return self._sub.target if self._sub else None

    def subscribe(
        self,
        target: str,
        on_events: EventsCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> bool:
        """
        Start tailing target. Returns False (no side effects) if a
        subscription is already active.

        Raises:
            InvalidAddressError: target is malformed; state stays unsubscribed.
        """
        checksummed = normalize_address(target)
        if self._sub is not None:
            logger.info("Already subscribed to %s", self._sub.target)
            return False

        sub = _Subscription(
            target=checksummed,
            on_events=on_events or self._on_events,
            on_error=on_error or self._on_error,
        )
        sub.callback = functools.partial(self._on_new_block, sub)
        self._sub = sub
        self._provider.on_new_block(sub.callback)
        logger.info("Subscribed to new blocks for %s", checksummed)
        return True

    def unsubscribe(self) -> bool:
        """Tear down the live subscription. Idempotent."""
        sub = self._sub
        if sub is None:
            return False
        sub.active = False
        self._sub = None
        if sub.callback is not None:
            self._provider.off_new_block(sub.callback)
        logger.info("Unsubscribed from %s", sub.target)
        return True

    async def handle_block(self, block_number: int) -> list[DecodedEvent]:
        """
        Fetch, decode and merge the target's logs in one block.

        Returns the events that were new to the accumulated set. Errors
        propagate; the provider-facing callback is what absorbs them.
        """
        sub = self._sub
        if sub is None:
            return []
        return await self._handle(sub, block_number)

    async def _handle(self, sub: _Subscription, block_number: int) -> list[DecodedEvent]:
        async with sub.lock:
            if not sub.active:
                return []

            logs = await self._fetcher.fetch_range(sub.target, block_number, block_number)
            if not logs:
                return []
            decoded = self._decoder.decode_many(logs)

            # unsubscribe() may have run while fetch_range was suspended
            if not sub.active:
                logger.debug("Discarding block %d result for stale subscription", block_number)
                return []

            result = merge_events(self._get_events(), decoded)
            if not result.added:
                return []
            self._publish(result.events)

        logger.debug("Block %d: %d new events", block_number, len(result.added))
        if sub.on_events is not None:
            sub.on_events(result.added)
        return result.added

    async def _on_new_block(self, sub: _Subscription, block_number: int) -> None:
        try:
            await self._handle(sub, block_number)
        except Exception as e:
            logger.warning("Live tail failed on block %d: %s", block_number, e)
            if sub.active and sub.on_error is not None:
                sub.on_error(e)


# ──────────────────────────────────────────────────────────────
# JSONL tail loop
# ──────────────────────────────────────────────────────────────


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _log_event(event: DecodedEvent, live: bool) -> dict[str, Any]:
    return {"type": "log_event", "timestamp": _now_iso(), "live": live, **event.to_dict()}


async def run_tail(
    session: TraceSession,
    target: str,
    lookback: int = 0,
    emit: Callable[[dict[str, Any]], None] = emit_event,
) -> None:
    """
    Backfill (if lookback > 0), then tail until cancelled.

    Errors before the subscription is up (bad address, backfill failure)
    propagate to the caller. Per-block errors after that are emitted as
    tail_error and the loop keeps running.
    """
    backfill_to: int | None = None
    backfill: list[DecodedEvent] = []
    if lookback > 0:
        result = await session.fetch_past_events(target, lookback)
        backfill_to = result.to_block
        backfill = list(result.events)

    counts = {"events": len(backfill), "errors": 0}

    def on_events(events: list[DecodedEvent]) -> None:
        counts["events"] += len(events)
        for event in events:
            emit(_log_event(event, live=True))

    def on_error(err: Exception) -> None:
        counts["errors"] += 1
        emit({
            "type": "tail_error",
            "timestamp": _now_iso(),
            "error_code": getattr(err, "error_code", "error"),
            "message": str(err),
            "recoverable": True,
        })

    session.subscribe_live(target, on_events=on_events, on_error=on_error)

    emit({
        "type": "tail_start",
        "timestamp": _now_iso(),
        "target": normalize_address(target),
        "lookback_blocks": lookback,
        "backfill_to_block": backfill_to,
        "backfilled": len(backfill),
    })
    for event in backfill:
        emit(_log_event(event, live=False))

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        session.unsubscribe_live()
        emit({
            "type": "tail_end",
            "timestamp": _now_iso(),
            "events_emitted": counts["events"],
            "errors": counts["errors"],
        })
        return  # Caller (CLI) is responsible for sys.exit(130)
