from __future__ import annotations

import os
from collections import Counter
from pathlib import Path

import httpx
import pytest

from conftest import key, sha256_of, write_file
from integrity_watcher.errors import (
    ConfigError,
    RootPathNotFound,
    StoreAlreadyExists,
    StoreNotFound,
)
from integrity_watcher.lookup_client import HashLookupClient
from integrity_watcher.models import Verdict
from integrity_watcher.operations import (
    check,
    circl_check,
    compare,
    create,
    list_records,
    update,
)
from integrity_watcher.state_db import load_records, open_store


@pytest.mark.asyncio
async def test_create_check_scenario(tmp_path: Path, make_config):
    root = tmp_path / "root"
    a = write_file(root / "a.txt", "hello")
    b = write_file(root / "b.txt", "world")
    config = make_config(root)

    created = await create(config)

    assert set(created.records) == {key(a), key(b)}
    assert created.records[key(a)].sha256 != created.records[key(b)].sha256
    assert created.store.record_count == 2

    write_file(b, "world!")
    first = await check(config)

    assert first.diff.modified_paths == {key(b)}
    assert first.diff.added_paths == set()
    assert first.diff.removed_paths == set()

    a.unlink()
    c = write_file(root / "c.txt", "new")
    second = await check(config)

    assert second.diff.removed_paths == {key(a)}
    assert second.diff.added_paths == {key(c)}
    assert second.diff.modified_paths == {key(b)}
    stored = await load_records(await open_store(config.db_path))
    assert set(stored) == {key(a), key(b)}


@pytest.mark.asyncio
async def test_create_refuses_existing_store_without_writing(tmp_path: Path, make_config):
    root = tmp_path / "root"
    write_file(root / "a.txt", "hello")
    config = make_config(root)
    await create(config)
    before = config.db_path.read_bytes()
    write_file(root / "b.txt", "more")

    with pytest.raises(StoreAlreadyExists):
        await create(config)

    assert config.db_path.read_bytes() == before


@pytest.mark.asyncio
async def test_create_with_overwrite_replaces_store(tmp_path: Path, make_config):
    root = tmp_path / "root"
    write_file(root / "a.txt", "hello")
    await create(make_config(root))
    write_file(root / "b.txt", "more")

    result = await create(make_config(root, overwrite=True))

    assert result.store.record_count == 2


@pytest.mark.asyncio
async def test_missing_root_aborts_without_creating_store(tmp_path: Path, make_config):
    config = make_config(tmp_path / "does-not-exist")

    with pytest.raises(RootPathNotFound):
        await create(config)

    assert not config.db_path.exists()


@pytest.mark.asyncio
async def test_create_requires_paths(make_config):
    with pytest.raises(ConfigError):
        await create(make_config())


@pytest.mark.asyncio
async def test_store_inside_scanned_tree_excludes_itself(tmp_path: Path, make_config):
    write_file(tmp_path / "a.txt", "hello")
    config = make_config(tmp_path)

    await create(config)
    result = await check(config)

    assert set(result.diff.unchanged_paths) == {key(tmp_path / "a.txt")}
    assert not result.diff.has_changes


@pytest.mark.asyncio
async def test_store_is_scanned_when_self_exclusion_is_disabled(tmp_path: Path, make_config):
    write_file(tmp_path / "a.txt", "hello")
    config = make_config(tmp_path, exclude_db=False)
    await create(config)

    result = await check(config)

    assert key(config.db_path) in result.diff.added_paths


@pytest.mark.asyncio
async def test_check_requires_existing_store(tmp_path: Path, make_config):
    write_file(tmp_path / "root" / "a.txt", "hello")

    with pytest.raises(StoreNotFound):
        await check(make_config(tmp_path / "root"))


@pytest.mark.asyncio
async def test_update_then_check_reports_nothing(tmp_path: Path, make_config):
    root = tmp_path / "root"
    write_file(root / "a.txt", "hello")
    config = make_config(root)
    await create(config)
    write_file(root / "a.txt", "changed")
    write_file(root / "new.txt", "new")

    updated = await update(config)
    after = await check(config)

    assert updated.diff.modified_paths == {key(root / "a.txt")}
    assert updated.diff.added_paths == {key(root / "new.txt")}
    assert updated.store.record_count == 2
    assert not after.diff.has_changes
    stored = await load_records(await open_store(config.db_path))
    assert stored[key(root / "a.txt")].sha256 == sha256_of("changed")


@pytest.mark.asyncio
async def test_update_without_changes_still_writes(tmp_path: Path, make_config):
    root = tmp_path / "root"
    write_file(root / "a.txt", "hello")
    config = make_config(root)
    created = await create(config)

    updated = await update(config)

    assert not updated.diff.has_changes
    assert updated.store.created_at == created.store.created_at
    assert updated.store.record_count == 1


@pytest.mark.asyncio
async def test_list_returns_stored_records(tmp_path: Path, make_config):
    root = tmp_path / "root"
    write_file(root / "a.txt", "hello")
    config = make_config(root)
    await create(config)

    result = await list_records(config)

    assert list(result.records) == [key(root / "a.txt")]
    assert result.store.record_count == 1


@pytest.mark.asyncio
async def test_compare_identical_scans_is_all_unchanged(tmp_path: Path, make_config):
    root = tmp_path / "root"
    write_file(root / "a.txt", "hello")
    write_file(root / "sub" / "b.txt", "world")
    first = make_config(root, db_path=tmp_path / "first.db")
    second = make_config(root, db_path=tmp_path / "second.db")
    await create(first)
    await create(second)

    result = await compare(first.with_overrides(db2_path=second.db_path))

    assert not result.diff.has_changes
    assert result.diff.unchanged_paths == {key(root / "a.txt"), key(root / "sub" / "b.txt")}


@pytest.mark.asyncio
async def test_compare_treats_second_store_as_newer(tmp_path: Path, make_config):
    root = tmp_path / "root"
    write_file(root / "a.txt", "hello")
    old = make_config(root, db_path=tmp_path / "old.db")
    await create(old)
    write_file(root / "b.txt", "world")
    new = make_config(root, db_path=tmp_path / "new.db")
    await create(new)

    forward = await compare(old.with_overrides(db2_path=new.db_path))
    backward = await compare(new.with_overrides(db2_path=old.db_path))

    assert forward.diff.added_paths == {key(root / "b.txt")} == backward.diff.removed_paths
    assert (tmp_path / "old.db").exists() and (tmp_path / "new.db").exists()


@pytest.mark.asyncio
async def test_compare_needs_second_store(make_config):
    with pytest.raises(ConfigError):
        await compare(make_config())


class CountingHashlookup:
    """Mock hashlookup endpoint that counts requests per hash."""

    def __init__(self, known: dict[str, int], failing: set[str] | None = None) -> None:
        self.known = known
        self.failing = failing or set()
        self.calls: Counter[str] = Counter()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        sha256 = request.url.path.rsplit("/", 1)[-1]
        self.calls[sha256] += 1
        if sha256 in self.failing:
            return httpx.Response(503)
        if sha256 in self.known:
            return httpx.Response(200, json={"hashlookup:trust": self.known[sha256]})
        return httpx.Response(404, json={"message": "Non existing SHA-256"})


@pytest.mark.asyncio
async def test_circl_check_queries_each_hash_at_most_once_across_runs(tmp_path: Path, make_config):
    root = tmp_path / "root"
    write_file(root / "a.txt", "hello")
    write_file(root / "copy-of-a.txt", "hello")
    write_file(root / "b.txt", "world")
    config = make_config(root)
    await create(config)
    remote = CountingHashlookup(known={sha256_of("hello"): 100})

    results = []
    for _ in range(3):
        async with HashLookupClient(transport=httpx.MockTransport(remote), retry_delay_seconds=0) as client:
            results.append(await circl_check(config, client=client))

    assert remote.calls == Counter({sha256_of("hello"): 1, sha256_of("world"): 1})
    first, *_, last = results
    assert first.queried_count == 2
    assert last.queried_count == 0
    assert last.by_path[key(root / "copy-of-a.txt")].verdict is Verdict.FOUND
    assert last.by_path[key(root / "copy-of-a.txt")].trust_score == 100
    assert last.by_path[key(root / "b.txt")].verdict is Verdict.NOT_FOUND
    assert all(lookup.cached for lookup in last.by_path.values())


@pytest.mark.asyncio
async def test_circl_check_failed_hash_is_retried_on_next_run(tmp_path: Path, make_config):
    root = tmp_path / "root"
    write_file(root / "a.txt", "hello")
    write_file(root / "b.txt", "world")
    config = make_config(root)
    await create(config)
    remote = CountingHashlookup(known={}, failing={sha256_of("world")})

    async with HashLookupClient(transport=httpx.MockTransport(remote), retry_delay_seconds=0) as client:
        first = await circl_check(config, client=client)
        remote.failing.clear()
        second = await circl_check(config, client=client)

    assert first.by_path[key(root / "b.txt")].verdict is Verdict.UNRESOLVED
    assert [w.subject for w in first.warnings] == [sha256_of("world")]
    assert first.by_path[key(root / "a.txt")].verdict is Verdict.NOT_FOUND
    assert second.by_path[key(root / "b.txt")].verdict is Verdict.NOT_FOUND
    assert second.queried_count == 1
    assert remote.calls[sha256_of("hello")] == 1
    assert remote.calls[sha256_of("world")] == 4


@pytest.mark.asyncio
async def test_file_names_that_are_not_utf8_survive_create_and_check(tmp_path: Path, make_config):
    root = tmp_path / "root"
    write_file(root / "ok.txt", "fine")
    odd = root / os.fsdecode(b"bad\xff.txt")
    write_file(odd, "odd")
    config = make_config(root)

    created = await create(config)
    checked = await check(config)

    assert set(created.records) == {key(root / "ok.txt"), key(odd)}
    assert created.records[key(odd)].sha256 == sha256_of("odd")
    assert not checked.diff.has_changes
    assert checked.diff.unchanged_paths == set(created.records)
