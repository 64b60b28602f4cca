from __future__ import annotations

import logging
import os
import sqlite3
import tempfile
import time
from dataclasses import dataclass, replace
from pathlib import Path

import aiosqlite

from integrity_watcher.errors import (
    SchemaMismatch,
    StoreAlreadyExists,
    StoreNotFound,
    StoreWriteFailed,
)
from integrity_watcher.models import FileRecord, RecordSet, freeze_records


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
HASH_ALGO = "sha256"
SQLITE_SIDECAR_SUFFIXES = ("-journal", "-wal", "-shm")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS file_state (
    path BLOB PRIMARY KEY,
    sha256 TEXT NOT NULL,
    size INTEGER NOT NULL,
    mtime_ns INTEGER NOT NULL,
    mode INTEGER NOT NULL
);
"""

META_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS store_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


@dataclass(frozen=True, slots=True)
class RecordStore:
    path: Path
    schema_version: int = SCHEMA_VERSION
    created_at: int | None = None
    generated_at: int | None = None
    record_count: int = 0


def store_artifacts(db_path: Path) -> list[Path]:
    """The store file plus the sidecar files SQLite may keep next to it."""
    return [db_path] + [db_path.with_name(db_path.name + suffix) for suffix in SQLITE_SIDECAR_SUFFIXES]


def store_exists(db_path: Path) -> bool:
    return db_path.is_file()


def open_or_create(db_path: Path, *, overwrite: bool = False) -> RecordStore:
    """
    Return a handle for a store that is about to be (re)created.

    Nothing is written here; the file only appears once `write_records`
    commits the first RecordSet.

    Raises:
        StoreAlreadyExists: the store exists and `overwrite` is false.
    """
    if db_path.exists() and not overwrite:
        raise StoreAlreadyExists(db_path)
    return RecordStore(path=db_path)


async def _read_meta(db: aiosqlite.Connection) -> dict[str, str]:
    cursor = await db.execute("SELECT key, value FROM store_meta")
    rows = await cursor.fetchall()
    await cursor.close()
    return {str(key): str(value) for key, value in rows}


def _readonly_uri(db_path: Path) -> str:
    return f"{db_path.resolve().as_uri()}?mode=ro"


async def open_store(db_path: Path) -> RecordStore:
    """
    Open an existing store and validate its schema.

    Raises:
        StoreNotFound: no store at `db_path`.
        SchemaMismatch: the file is not a store this version can read.
    """
    if not store_exists(db_path):
        raise StoreNotFound(db_path)

    try:
        async with aiosqlite.connect(_readonly_uri(db_path), uri=True) as db:
            meta = await _read_meta(db)
            cursor = await db.execute("SELECT COUNT(*) FROM file_state")
            row = await cursor.fetchone()
            await cursor.close()
    except sqlite3.DatabaseError as exc:
        raise SchemaMismatch(db_path, str(exc)) from exc

    version = meta.get("schema_version")
    if version != str(SCHEMA_VERSION):
        raise SchemaMismatch(
            db_path, f"schema version {version!r}, expected {SCHEMA_VERSION}"
        )
    if meta.get("hash_algo", HASH_ALGO) != HASH_ALGO:
        raise SchemaMismatch(db_path, f"hash algorithm {meta['hash_algo']!r}")

    return RecordStore(
        path=db_path,
        schema_version=SCHEMA_VERSION,
        created_at=int(meta["created_at"]) if "created_at" in meta else None,
        generated_at=int(meta["generated_at"]) if "generated_at" in meta else None,
        record_count=int(row[0]) if row else 0,
    )


async def load_records(store: RecordStore) -> RecordSet:
    try:
        async with aiosqlite.connect(_readonly_uri(store.path), uri=True) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT path, sha256, size, mtime_ns, mode FROM file_state ORDER BY path"
            )
            rows = await cursor.fetchall()
            await cursor.close()
    except sqlite3.DatabaseError as exc:
        raise SchemaMismatch(store.path, str(exc)) from exc

    return freeze_records(
        FileRecord(
            path=os.fsdecode(row["path"]),
            sha256=str(row["sha256"]),
            size=int(row["size"]),
            mtime_ns=int(row["mtime_ns"]),
            mode=int(row["mode"]),
        )
        for row in rows
    )


async def _populate(db_path: Path, records: RecordSet, meta: dict[str, str]) -> None:
    async with aiosqlite.connect(db_path) as db:
        await db.execute(SCHEMA_SQL)
        await db.execute(META_SCHEMA_SQL)
        await db.executemany(
            "INSERT OR REPLACE INTO store_meta (key, value) VALUES (?, ?)",
            sorted(meta.items()),
        )
        if records:
            await db.executemany(
                """
                INSERT INTO file_state (path, sha256, size, mtime_ns, mode)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (os.fsencode(r.path), r.sha256, r.size, r.mtime_ns, r.mode)
                    for r in records.values()
                ],
            )
        await db.commit()


def _fsync_path(path: Path, flags: int = os.O_RDONLY) -> None:
    fd = os.open(path, flags)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _fsync_directory(path: Path) -> None:
    # No O_DIRECTORY on Windows, where directories cannot be fsynced.
    if hasattr(os, "O_DIRECTORY"):
        _fsync_path(path, os.O_RDONLY | os.O_DIRECTORY)


async def write_records(store: RecordStore, records: RecordSet) -> RecordStore:
    """
    Atomically replace the store contents with `records`.

    The new generation is built in a temporary file next to the store and
    renamed over it, so readers see either the old or the new RecordSet.

    Raises:
        StoreWriteFailed: the new generation could not be written; the
            previous store is left untouched.
    """
    db_path = store.path
    now = int(time.time())
    created_at = store.created_at or now
    meta = {
        "schema_version": str(SCHEMA_VERSION),
        "hash_algo": HASH_ALGO,
        "created_at": str(created_at),
        "generated_at": str(now),
    }

    tmp_path: Path | None = None
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{db_path.name}.", suffix=".tmp", dir=db_path.parent
        )
        os.close(fd)
        tmp_path = Path(tmp_name)
        await _populate(tmp_path, records, meta)
        _fsync_path(tmp_path)
        os.replace(tmp_path, db_path)
        tmp_path = None
        _fsync_directory(db_path.parent)
    except (OSError, UnicodeError, sqlite3.Error) as exc:
        raise StoreWriteFailed(db_path, str(exc)) from exc
    finally:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)

    logger.debug("Wrote %s record(s) to %s", len(records), db_path)
    return replace(
        store,
        schema_version=SCHEMA_VERSION,
        created_at=created_at,
        generated_at=now,
        record_count=len(records),
    )
