from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from pathlib import Path
from types import TracebackType

import aiosqlite

from integrity_watcher.errors import SchemaMismatch
from integrity_watcher.models import CacheEntry, Verdict


logger = logging.getLogger(__name__)

CACHE_SCHEMA_VERSION = 1
# Keeps each IN (...) query under SQLite's bound-parameter limit.
LOOKUP_CHUNK_SIZE = 500

CACHE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS lookup_cache (
    sha256 TEXT PRIMARY KEY,
    verdict TEXT NOT NULL,
    trust_score INTEGER,
    fetched_at INTEGER NOT NULL
);
"""

CACHE_META_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS cache_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def _entry_from_row(row: aiosqlite.Row) -> CacheEntry:
    return CacheEntry(
        sha256=str(row["sha256"]),
        verdict=Verdict(row["verdict"]),
        trust_score=None if row["trust_score"] is None else int(row["trust_score"]),
        fetched_at=int(row["fetched_at"]),
    )


class CacheStore:
    """
    Persistent hash -> reputation verdict cache.

    Use as an async context manager; one connection is held for the
    lifetime of the block:

        async with CacheStore(path) as cache:
            entry = await cache.get(sha256)
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def __aenter__(self) -> CacheStore:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("CacheStore is not open")
        return self._db

    async def open(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(self.db_path)
        db.row_factory = aiosqlite.Row
        try:
            await db.execute(CACHE_SCHEMA_SQL)
            await db.execute(CACHE_META_SCHEMA_SQL)
            await db.execute(
                "INSERT OR IGNORE INTO cache_meta (key, value) VALUES ('schema_version', ?)",
                (str(CACHE_SCHEMA_VERSION),),
            )
            await db.commit()
            cursor = await db.execute(
                "SELECT value FROM cache_meta WHERE key = 'schema_version'"
            )
            row = await cursor.fetchone()
            await cursor.close()
        except sqlite3.DatabaseError as exc:
            await db.close()
            raise SchemaMismatch(self.db_path, str(exc)) from exc

        version = None if row is None else str(row["value"])
        if version != str(CACHE_SCHEMA_VERSION):
            await db.close()
            raise SchemaMismatch(
                self.db_path,
                f"cache schema version {version!r}, expected {CACHE_SCHEMA_VERSION}",
            )
        self._db = db
        logger.debug("Opened lookup cache %s", self.db_path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def get(self, sha256: str) -> CacheEntry | None:
        cursor = await self._conn.execute(
            "SELECT sha256, verdict, trust_score, fetched_at FROM lookup_cache WHERE sha256 = ?",
            (sha256,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return None if row is None else _entry_from_row(row)

    async def get_many(self, hashes: Iterable[str]) -> dict[str, CacheEntry]:
        wanted = sorted(set(hashes))
        found: dict[str, CacheEntry] = {}
        for start in range(0, len(wanted), LOOKUP_CHUNK_SIZE):
            chunk = wanted[start : start + LOOKUP_CHUNK_SIZE]
            placeholders = ",".join("?" for _ in chunk)
            cursor = await self._conn.execute(
                "SELECT sha256, verdict, trust_score, fetched_at FROM lookup_cache "
                f"WHERE sha256 IN ({placeholders})",
                chunk,
            )
            rows = await cursor.fetchall()
            await cursor.close()
            for row in rows:
                entry = _entry_from_row(row)
                found[entry.sha256] = entry
        return found

    async def put(self, entry: CacheEntry) -> None:
        """Persist a verdict. Writing the same hash twice is harmless."""
        if entry.verdict is Verdict.UNRESOLVED:
            raise ValueError("Unresolved lookups are never cached")
        await self._conn.execute(
            """
            INSERT OR REPLACE INTO lookup_cache (sha256, verdict, trust_score, fetched_at)
            VALUES (?, ?, ?, ?)
            """,
            (entry.sha256, entry.verdict.value, entry.trust_score, entry.fetched_at),
        )
        await self._conn.commit()
        logger.debug("Cached %s: %s", entry.sha256, entry.verdict.value)

    async def count(self) -> int:
        cursor = await self._conn.execute("SELECT COUNT(*) FROM lookup_cache")
        row = await cursor.fetchone()
        await cursor.close()
        return int(row[0]) if row else 0
