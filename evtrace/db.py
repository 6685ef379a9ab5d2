"""SQLite key-value persistence for evtrace.

The engine only needs an opaque load(key)/save(key, value) store for the
locally recorded transfer history. Values are serialized collections (JSON
text); this module never inspects them. All operations are async (aiosqlite).

Schema:
  - schema_version: applied migration marker
  - kv_store: key → serialized value, with last-write timestamp
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from evtrace.exceptions import DatabaseError

DEFAULT_DB_PATH = Path.home() / ".evtrace" / "evtrace.db"

# SQL schema, applied on connect if tables don't exist
_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS kv_store (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
"""

SCHEMA_VERSION = 1


class Database:
    """
    Async SQLite key-value store.

    Usage:
        db = Database(":memory:")
        await db.connect()
        await db.save("transferHistory", "[]")
        raw = await db.load("transferHistory")
        await db.close()

    Or as async context manager:
        async with Database(path) as db:
            ...
    """

    def __init__(self, db_path: str = str(DEFAULT_DB_PATH)) -> None:
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open DB connection and run schema migrations."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._apply_schema()
        except Exception as e:
            raise DatabaseError(f"Failed to connect to database: {e}") from e

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ──────────────────────────────────────────────────────────
    # Key-value operations
    # ──────────────────────────────────────────────────────────

    async def load(self, key: str) -> str | None:
        """Return the stored value for key, or None if absent."""
        conn = self._require_conn()
        try:
            async with conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to load {key!r}: {e}", details={"key": key}) from e
        return row["value"] if row else None

    async def save(self, key: str, value: str) -> None:
        """Insert or replace the value stored under key."""
        conn = self._require_conn()
        updated_at = datetime.now(tz=timezone.utc).isoformat()
        try:
            await conn.execute(
                """
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
                """,
                (key, value, updated_at),
            )
            await conn.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to save {key!r}: {e}", details={"key": key}) from e

    async def delete(self, key: str) -> bool:
        """Remove key. Returns True if something was deleted."""
        conn = self._require_conn()
        try:
            async with conn.execute("DELETE FROM kv_store WHERE key = ?", (key,)) as cursor:
                deleted = cursor.rowcount > 0
            await conn.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to delete {key!r}: {e}", details={"key": key}) from e
        return deleted

    async def keys(self) -> list[str]:
        conn = self._require_conn()
        async with conn.execute("SELECT key FROM kv_store ORDER BY key") as cursor:
            return [row["key"] async for row in cursor]

    # ──────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise DatabaseError("Database is not connected; call connect() first")
        return self._conn

    async def _apply_schema(self) -> None:
        """Apply schema migrations idempotently."""
        assert self._conn is not None
        await self._conn.executescript(_SCHEMA)
        await self._conn.execute(
            "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        await self._conn.commit()
