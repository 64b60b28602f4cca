from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from integrity_watcher.cache_db import CacheStore
from integrity_watcher.config import WatcherConfig
from integrity_watcher.errors import ConfigError
from integrity_watcher.filters import PathFilter, build_path_filter
from integrity_watcher.lookup_client import HashLookupClient
from integrity_watcher.models import FileRecord, LookupResult, RecordSet, SoftError
from integrity_watcher.resolver import LookupBackend, ReputationResolver
from integrity_watcher.scanner import ScanResult, scan_paths
from integrity_watcher.state_db import (
    RecordStore,
    load_records,
    open_or_create,
    open_store,
    store_artifacts,
    write_records,
)
from integrity_watcher.status_service import DiffResult, diff_records


logger = logging.getLogger(__name__)

RecordCallback = Callable[[FileRecord], None]


@dataclass(slots=True)
class CreateResult:
    store: RecordStore
    records: RecordSet
    warnings: list[SoftError] = field(default_factory=list)


@dataclass(slots=True)
class CheckResult:
    diff: DiffResult
    scanned_count: int
    warnings: list[SoftError] = field(default_factory=list)


@dataclass(slots=True)
class UpdateResult:
    diff: DiffResult
    store: RecordStore
    warnings: list[SoftError] = field(default_factory=list)


@dataclass(slots=True)
class ListResult:
    store: RecordStore
    records: RecordSet
    warnings: list[SoftError] = field(default_factory=list)


@dataclass(slots=True)
class CompareResult:
    diff: DiffResult
    warnings: list[SoftError] = field(default_factory=list)


@dataclass(slots=True)
class CirclCheckResult:
    by_path: dict[str, LookupResult]
    by_hash: dict[str, LookupResult]
    queried_count: int = 0
    warnings: list[SoftError] = field(default_factory=list)


def build_scan_filter(config: WatcherConfig) -> PathFilter:
    excludes = list(config.excludes)
    if config.exclude_db:
        excludes.extend(str(path) for path in store_artifacts(config.db_path))
    logger.debug("Excluded paths: %s", excludes)
    return build_path_filter(excludes, config.exclude_patterns)


def _scan(config: WatcherConfig, on_record: RecordCallback | None) -> ScanResult:
    if not config.paths:
        raise ConfigError("At least one path to scan is required")
    logger.debug("Paths: %s", list(config.paths))
    return scan_paths(
        config.paths,
        path_filter=build_scan_filter(config),
        workers=config.workers,
        on_record=on_record,
    )


async def create(config: WatcherConfig, *, on_record: RecordCallback | None = None) -> CreateResult:
    """Scan the configured paths into a new store."""
    store = open_or_create(config.db_path, overwrite=config.overwrite)
    logger.info("Creating db %s", config.db_path)
    scan = _scan(config, on_record)
    store = await write_records(store, scan.records)
    logger.info("Added %s files", len(scan.records))
    return CreateResult(store=store, records=scan.records, warnings=scan.warnings)


async def check(config: WatcherConfig, *, on_record: RecordCallback | None = None) -> CheckResult:
    """Diff the stored snapshot against a fresh scan without touching the store."""
    store = await open_store(config.db_path)
    stored = await load_records(store)
    scan = _scan(config, on_record)
    diff = diff_records(stored, scan.records, compare_time=config.compare_time)
    logger.info("Checked %s files", len(scan.records))
    return CheckResult(diff=diff, scanned_count=len(scan.records), warnings=scan.warnings)


async def update(config: WatcherConfig, *, on_record: RecordCallback | None = None) -> UpdateResult:
    """Diff like `check`, then store the fresh scan as the new snapshot."""
    store = await open_store(config.db_path)
    stored = await load_records(store)
    scan = _scan(config, on_record)
    diff = diff_records(stored, scan.records, compare_time=config.compare_time)
    store = await write_records(store, scan.records)
    logger.info("Updated %s files", len(scan.records))
    return UpdateResult(diff=diff, store=store, warnings=scan.warnings)


async def list_records(config: WatcherConfig) -> ListResult:
    store = await open_store(config.db_path)
    return ListResult(store=store, records=await load_records(store))


async def compare(config: WatcherConfig) -> CompareResult:
    """Diff `db_path` (base) against `db2_path` (candidate); neither is modified."""
    if config.db2_path is None:
        raise ConfigError("Compare needs a second database (--db2)")
    base = await load_records(await open_store(config.db_path))
    candidate = await load_records(await open_store(config.db2_path))
    diff = diff_records(base, candidate, compare_time=config.compare_time)
    logger.info("Compared %s against %s files", len(base), len(candidate))
    return CompareResult(diff=diff)


async def circl_check(
    config: WatcherConfig,
    *,
    client: LookupBackend | None = None,
) -> CirclCheckResult:
    """Look up every stored hash, consulting the cache before the network."""
    records = await load_records(await open_store(config.db_path))
    hashes = {record.sha256 for record in records.values()}

    owned_client: HashLookupClient | None = None
    if client is None:
        owned_client = HashLookupClient(config.lookup_url, timeout=config.lookup_timeout)
        client = owned_client

    try:
        async with CacheStore(config.cache_path) as cache:
            resolver = ReputationResolver(cache, client, limit=config.lookup_workers)
            resolved = await resolver.resolve(hashes)
    finally:
        if owned_client is not None:
            await owned_client.aclose()

    by_path = {path: resolved.results[record.sha256] for path, record in records.items()}
    return CirclCheckResult(
        by_path=by_path,
        by_hash=resolved.results,
        queried_count=resolved.queried_count,
        warnings=resolved.warnings,
    )
