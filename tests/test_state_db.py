from __future__ import annotations

import os
import sqlite3
from pathlib import Path

import pytest

from integrity_watcher import state_db
from integrity_watcher.errors import (
    SchemaMismatch,
    StoreAlreadyExists,
    StoreNotFound,
    StoreWriteFailed,
)
from integrity_watcher.models import FileRecord, freeze_records
from integrity_watcher.state_db import (
    SCHEMA_VERSION,
    load_records,
    open_or_create,
    open_store,
    store_artifacts,
    store_exists,
    write_records,
)


def _record(path: str, sha256: str = "aa" * 32, size: int = 1) -> FileRecord:
    return FileRecord(path=path, sha256=sha256, size=size, mtime_ns=1_700_000_000_000_000_000, mode=0o644)


OLD = freeze_records([_record("/t/a.txt", "11" * 32), _record("/t/b.txt", "22" * 32)])
NEW = freeze_records([_record("/t/b.txt", "33" * 32), _record("/t/c.txt", "44" * 32)])


def test_open_or_create_refuses_existing_store(tmp_path: Path):
    db_path = tmp_path / "files_data.db"
    db_path.write_bytes(b"existing")

    with pytest.raises(StoreAlreadyExists):
        open_or_create(db_path)

    assert db_path.read_bytes() == b"existing"
    assert open_or_create(db_path, overwrite=True).path == db_path


def test_open_or_create_writes_nothing_until_records_are_written(tmp_path: Path):
    db_path = tmp_path / "files_data.db"

    open_or_create(db_path)

    assert not store_exists(db_path)


@pytest.mark.asyncio
async def test_write_then_read_back(tmp_path: Path):
    db_path = tmp_path / "nested" / "files_data.db"

    written = await write_records(open_or_create(db_path), OLD)
    opened = await open_store(db_path)

    assert opened.schema_version == SCHEMA_VERSION
    assert opened.record_count == 2
    assert opened.created_at == written.created_at
    assert dict(await load_records(opened)) == dict(OLD)


@pytest.mark.asyncio
async def test_rewrite_replaces_whole_generation_and_keeps_created_at(tmp_path: Path):
    db_path = tmp_path / "files_data.db"
    first = await write_records(open_or_create(db_path), OLD)

    second = await write_records(await open_store(db_path), NEW)
    records = await load_records(await open_store(db_path))

    assert dict(records) == dict(NEW)
    assert second.created_at == first.created_at
    assert second.generated_at is not None


@pytest.mark.asyncio
async def test_open_missing_store(tmp_path: Path):
    with pytest.raises(StoreNotFound):
        await open_store(tmp_path / "missing.db")


@pytest.mark.asyncio
async def test_open_non_database_file(tmp_path: Path):
    db_path = tmp_path / "files_data.db"
    db_path.write_bytes(b"definitely not sqlite" * 100)

    with pytest.raises(SchemaMismatch):
        await open_store(db_path)


@pytest.mark.asyncio
async def test_open_foreign_sqlite_database(tmp_path: Path):
    db_path = tmp_path / "files_data.db"
    with sqlite3.connect(db_path) as conn:
        conn.execute("CREATE TABLE unrelated (id INTEGER)")

    with pytest.raises(SchemaMismatch):
        await open_store(db_path)


@pytest.mark.asyncio
async def test_open_store_from_other_schema_version(tmp_path: Path):
    db_path = tmp_path / "files_data.db"
    await write_records(open_or_create(db_path), OLD)
    conn = sqlite3.connect(db_path)
    conn.execute("UPDATE store_meta SET value = '99' WHERE key = 'schema_version'")
    conn.commit()
    conn.close()

    with pytest.raises(SchemaMismatch) as excinfo:
        await open_store(db_path)

    assert "99" in str(excinfo.value)


@pytest.mark.asyncio
async def test_failed_insert_leaves_previous_generation_readable(tmp_path: Path):
    db_path = tmp_path / "files_data.db"
    store = await write_records(open_or_create(db_path), OLD)
    # The NOT NULL constraint on sha256 fails part way through the insert.
    broken = {
        "/t/x.txt": _record("/t/x.txt"),
        "/t/y.txt": FileRecord(path="/t/y.txt", sha256=None, size=1, mtime_ns=0),  # type: ignore[arg-type]
    }

    with pytest.raises(StoreWriteFailed):
        await write_records(store, broken)

    assert dict(await load_records(await open_store(db_path))) == dict(OLD)
    assert sorted(p.name for p in tmp_path.iterdir()) == ["files_data.db"]


@pytest.mark.asyncio
async def test_crash_before_swap_leaves_previous_generation_readable(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
):
    db_path = tmp_path / "files_data.db"
    store = await write_records(open_or_create(db_path), OLD)

    def _crash(src, dst):
        raise OSError("simulated crash")

    monkeypatch.setattr(state_db.os, "replace", _crash)
    with pytest.raises(StoreWriteFailed):
        await write_records(store, NEW)
    monkeypatch.undo()

    assert dict(await load_records(await open_store(db_path))) == dict(OLD)
    assert sorted(p.name for p in tmp_path.iterdir()) == ["files_data.db"]


@pytest.mark.asyncio
async def test_paths_that_are_not_utf8_round_trip(tmp_path: Path):
    odd = os.fsdecode(b"/t/bad\xff.txt")
    records = freeze_records([_record(odd), _record("/t/ok.txt")])
    db_path = tmp_path / "files_data.db"

    await write_records(open_or_create(db_path), records)
    loaded = await load_records(await open_store(db_path))

    assert dict(loaded) == dict(records)


@pytest.mark.asyncio
async def test_directory_is_synced_after_swap(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    db_path = tmp_path / "files_data.db"
    real_open = os.open
    real_fsync = os.fsync
    opened: dict[int, str] = {}
    synced: list[str] = []

    def _open(path, flags, *args, **kwargs):
        fd = real_open(path, flags, *args, **kwargs)
        opened[fd] = os.fspath(path)
        return fd

    def _fsync(fd):
        synced.append(opened.get(fd, ""))
        return real_fsync(fd)

    monkeypatch.setattr(state_db.os, "open", _open)
    monkeypatch.setattr(state_db.os, "fsync", _fsync)
    await write_records(open_or_create(db_path), OLD)
    monkeypatch.undo()

    assert synced[0].startswith(str(tmp_path / ".files_data.db."))
    if hasattr(os, "O_DIRECTORY"):
        assert synced[-1] == str(tmp_path)


def test_store_artifacts_cover_sqlite_sidecars(tmp_path: Path):
    names = [path.name for path in store_artifacts(tmp_path / "files_data.db")]

    assert names == [
        "files_data.db",
        "files_data.db-journal",
        "files_data.db-wal",
        "files_data.db-shm",
    ]
