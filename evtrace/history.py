"""
Transfer history store.

Holds the two transfer collections side by side:
  - local: transfers recorded at submission time; persisted in the key-value
    store under HISTORY_KEY as a JSON list, newest first
  - chain: re-derived from logs on demand; in memory only, replaced wholesale
    by each fetch

Both lists are swapped by reference; readers never see a half-updated list.
"""

from __future__ import annotations

import asyncio
import json
import logging

from evtrace.db import Database
from evtrace.exceptions import DatabaseError, DataError
from evtrace.models import HISTORY_SOURCES, SOURCE_CHAIN, SOURCE_LOCAL, TransferRecord
from evtrace.reconciler import Timeline, reconcile

logger = logging.getLogger(__name__)

HISTORY_KEY = "transferHistory"


class HistoryStore:
    """Local + chain transfer collections, with the local one persisted."""

    def __init__(self, db: Database | None = None, key: str = HISTORY_KEY) -> None:
        self._db = db
        self._key = key
        self._local: tuple[TransferRecord, ...] = ()
        self._chain: tuple[TransferRecord, ...] = ()
        # Serializes read-modify-write of the local collection across awaits
        self._write_lock = asyncio.Lock()

    @property
    def local(self) -> list[TransferRecord]:
        return list(self._local)

    @property
    def chain(self) -> list[TransferRecord]:
        return list(self._chain)

    def timeline(self) -> Timeline:
        return reconcile(self._local, self._chain)

    async def load(self) -> list[TransferRecord]:
        """Restore the local collection from the key-value store."""
        if self._db is None:
            return self.local

        raw = await self._db.load(self._key)
        if raw is None:
            self._local = ()
            return []

        try:
            items = json.loads(raw)
            records = tuple(TransferRecord.from_dict(d) for d in items)
        except (ValueError, KeyError, TypeError) as e:
            raise DatabaseError(
                f"Stored history under {self._key!r} is corrupt: {e}",
                details={"key": self._key},
            ) from e

        self._local = records
        logger.debug("Loaded %d local transfers", len(records))
        return list(records)

    async def add_local(self, record: TransferRecord) -> None:
        """Prepend record and persist. State only changes once the write succeeds."""
        async with self._write_lock:
            updated = (record,) + self._local
            await self._persist(updated)
            self._local = updated

    def replace_chain(self, records: list[TransferRecord]) -> None:
        self._chain = tuple(records)

    async def clear(self, source: str = SOURCE_LOCAL) -> int:
        """
        Empty one collection. Returns how many records were removed.

        Raises:
            DataError: source is neither "local" nor "chain".
        """
        if source not in HISTORY_SOURCES:
            raise DataError(
                f"Unknown history source {source!r}. Valid: {list(HISTORY_SOURCES)}",
                details={"source": source},
            )

        if source == SOURCE_CHAIN:
            removed = len(self._chain)
            self._chain = ()
            return removed

        async with self._write_lock:
            removed = len(self._local)
            if self._db is not None:
                await self._db.delete(self._key)
            self._local = ()
        return removed

    async def _persist(self, records: tuple[TransferRecord, ...]) -> None:
        if self._db is None:
            return
        await self._db.save(self._key, json.dumps([r.to_dict() for r in records]))
