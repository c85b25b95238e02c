"""SQLite-backed cache namespaces.

Each namespace is an independent key-value store of request URL → response.
Namespaces are created lazily on first open and persist across restarts.
Put and delete are atomic per key; nothing spans keys transactionally.

Unlike a read-through cache, failures here are not degraded to misses:
``aiosqlite.Error`` is re-raised as ``CacheSyncError(STORAGE_ERROR)`` so the
activator can detect a broken reconciliation and reset every namespace.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime

import aiosqlite
import structlog

from cachesync.errors import CacheSyncError, ErrorCode
from cachesync.models.cache import CachedResponse

log = structlog.get_logger()

_CREATE_NAMESPACE_TABLE = """
CREATE TABLE IF NOT EXISTS cache_namespaces (
    name       TEXT PRIMARY KEY,
    created_at TEXT NOT NULL
)
"""

_CREATE_ENTRY_TABLE = """
CREATE TABLE IF NOT EXISTS cache_entries (
    namespace TEXT NOT NULL,
    url       TEXT NOT NULL,
    status    INTEGER NOT NULL,
    headers   TEXT NOT NULL DEFAULT '[]',
    body      BLOB NOT NULL,
    stored_at TEXT NOT NULL,
    PRIMARY KEY (namespace, url)
)
"""


def _storage_error(operation: str, exc: aiosqlite.Error) -> CacheSyncError:
    return CacheSyncError(
        code=ErrorCode.STORAGE_ERROR,
        message=f"Cache storage failure during {operation}: {exc}",
        suggestion="Check that the cache database is writable and not corrupted.",
        recoverable=True,
    )


class CacheNamespace:
    """Handle on one named namespace. Obtained from ``CacheStorage.open``."""

    def __init__(self, db: aiosqlite.Connection, name: str) -> None:
        self._db = db
        self.name = name

    async def match(self, url: str) -> CachedResponse | None:
        """Return the stored response for ``url``, or ``None`` on miss."""
        try:
            cursor = await self._db.execute(
                "SELECT url, status, headers, body, stored_at FROM cache_entries "
                "WHERE namespace = ? AND url = ?",
                (self.name, url),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise _storage_error(f"match in {self.name}", exc) from exc
        if row is None:
            return None
        return CachedResponse(
            url=row[0],
            status=row[1],
            headers=json.loads(row[2]),
            body=bytes(row[3]),
            stored_at=datetime.fromisoformat(row[4]),
        )

    async def put(self, url: str, response: CachedResponse) -> None:
        """Store ``response`` under ``url``, replacing any previous entry."""
        now = datetime.now(UTC).isoformat()
        try:
            # A handle may outlive a delete of its namespace; writing through
            # it re-creates the namespace.
            await self._db.execute(
                "INSERT OR IGNORE INTO cache_namespaces (name, created_at) VALUES (?, ?)",
                (self.name, now),
            )
            await self._db.execute(
                "INSERT OR REPLACE INTO cache_entries "
                "(namespace, url, status, headers, body, stored_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    self.name,
                    url,
                    response.status,
                    json.dumps(response.headers),
                    response.body,
                    now,
                ),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _storage_error(f"put in {self.name}", exc) from exc

    async def delete(self, url: str) -> bool:
        """Remove the entry for ``url``. Returns whether one existed."""
        try:
            cursor = await self._db.execute(
                "DELETE FROM cache_entries WHERE namespace = ? AND url = ?",
                (self.name, url),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _storage_error(f"delete in {self.name}", exc) from exc
        return cursor.rowcount > 0

    async def keys(self) -> list[str]:
        """All stored URLs, in insertion order."""
        try:
            cursor = await self._db.execute(
                "SELECT url FROM cache_entries WHERE namespace = ? ORDER BY rowid",
                (self.name,),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise _storage_error(f"keys of {self.name}", exc) from exc
        return [row[0] for row in rows]


class CacheStorage:
    """Registry of named cache namespaces implementing CacheStorageProtocol."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def init_db(self) -> None:
        """Create tables and set WAL mode. Called once at startup."""
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute(_CREATE_NAMESPACE_TABLE)
        await self._db.execute(_CREATE_ENTRY_TABLE)
        await self._db.commit()

    async def open(self, name: str) -> CacheNamespace:
        """Open ``name``, creating it if it does not exist yet."""
        try:
            await self._db.execute(
                "INSERT OR IGNORE INTO cache_namespaces (name, created_at) VALUES (?, ?)",
                (name, datetime.now(UTC).isoformat()),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _storage_error(f"open of {name}", exc) from exc
        return CacheNamespace(self._db, name)

    async def delete(self, name: str) -> bool:
        """Drop ``name`` and all its entries. Returns whether it existed."""
        try:
            await self._db.execute("DELETE FROM cache_entries WHERE namespace = ?", (name,))
            cursor = await self._db.execute(
                "DELETE FROM cache_namespaces WHERE name = ?", (name,)
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _storage_error(f"delete of {name}", exc) from exc
        deleted = cursor.rowcount > 0
        log.debug("cache_namespace_deleted", namespace=name, existed=deleted)
        return deleted

    async def has(self, name: str) -> bool:
        try:
            cursor = await self._db.execute(
                "SELECT 1 FROM cache_namespaces WHERE name = ?", (name,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise _storage_error(f"lookup of {name}", exc) from exc
        return row is not None

    async def names(self) -> list[str]:
        try:
            cursor = await self._db.execute("SELECT name FROM cache_namespaces ORDER BY name")
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise _storage_error("namespace listing", exc) from exc
        return [row[0] for row in rows]
