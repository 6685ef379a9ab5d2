"""
Event merger — dedup and canonical ordering of decoded events.

The accumulated set is an immutable EventSet snapshot. merge_events() never
touches its input; it builds and returns a new snapshot so a concurrent
reader either sees the old set or the fully merged one.

Canonical order: block number ascending, then log index ascending.
Display order (most recent first) is derived from it and never used for
correctness checks.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from evtrace.models import DecodedEvent


def canonical_key(event: DecodedEvent) -> tuple[int, int, str]:
    # (block, logIndex) is unique per log; the hash only keeps the order total
    # if a node ever reports two logs at the same position.
    return (event.block_number, event.log_index, event.transaction_hash)


@dataclass(frozen=True)
class EventSet:
    """Deduplicated decoded events in canonical order."""

    events: tuple[DecodedEvent, ...] = ()
    keys: frozenset[tuple[str, int]] = field(default_factory=frozenset)

    @classmethod
    def empty(cls) -> "EventSet":
        return cls()

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self) -> Iterator[DecodedEvent]:
        return iter(self.events)

    def __contains__(self, key: object) -> bool:
        return key in self.keys

    def display_order(self) -> list[DecodedEvent]:
        """Most recent first, for UIs."""
        return list(reversed(self.events))

    def to_list(self) -> list[dict]:
        return [e.to_dict() for e in self.events]


@dataclass(frozen=True)
class MergeResult:
    events: EventSet
    added: list[DecodedEvent]


def merge_events(accumulated: EventSet, new_events: Iterable[DecodedEvent]) -> MergeResult:
    """
    Fold new_events into accumulated.

    Events whose (transaction_hash, log_index) key is already present are
    skipped, never overwritten. Duplicates inside new_events are skipped too.
    Merging the same batch twice yields the same set as merging it once.
    """
    keys = set(accumulated.keys)
    added: list[DecodedEvent] = []
    for event in new_events:
        if event.key in keys:
            continue
        keys.add(event.key)
        added.append(event)

    if not added:
        return MergeResult(events=accumulated, added=[])

    ordered = tuple(sorted(accumulated.events + tuple(added), key=canonical_key))
    added.sort(key=canonical_key)
    return MergeResult(events=EventSet(events=ordered, keys=frozenset(keys)), added=added)
