from __future__ import annotations

import hashlib
import logging
import os
import stat
from collections.abc import Iterable, Iterator, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Callable

from integrity_watcher.errors import RootPathNotFound
from integrity_watcher.filters import PathFilter, canonical_path
from integrity_watcher.models import FileRecord, RecordSet, SoftError, freeze_records


logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024
PENDING_PER_WORKER = 4


def default_workers() -> int:
    return min(32, (os.cpu_count() or 1) + 4)


@dataclass(slots=True)
class ScanResult:
    records: RecordSet
    warnings: list[SoftError] = field(default_factory=list)


@dataclass(slots=True)
class _WalkState:
    path_filter: PathFilter
    warnings: list[SoftError]
    seen_dirs: set[tuple[int, int]] = field(default_factory=set)
    queued: set[str] = field(default_factory=set)

    def soft_error(self, path: str, exc: OSError) -> None:
        logger.warning("Skipping %s: %s", path, exc)
        self.warnings.append(
            SoftError(kind="file_unreadable", subject=path, detail=str(exc))
        )


def sha256_file(path: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> tuple[str, os.stat_result]:
    """Hash a file and return the digest with the stat of the handle that was read."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        file_stat = os.fstat(fh.fileno())
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest(), file_stat


def record_for_path(path: str) -> FileRecord:
    """
    Fingerprint a single file.

    Raises:
        OSError: the file vanished or cannot be read.
    """
    sha256, file_stat = sha256_file(path)
    return FileRecord(
        path=path,
        sha256=sha256,
        size=file_stat.st_size,
        mtime_ns=file_stat.st_mtime_ns,
        mode=stat.S_IMODE(file_stat.st_mode),
    )


def _relative_posix(path: str, root: str) -> str:
    return PurePath(os.path.relpath(path, root)).as_posix()


def _walk_directory(root: str, state: _WalkState) -> Iterator[str]:
    """
    Yield record keys for the regular files below `root`.

    Keys are the canonical directory joined with the entry name, so a file
    reached through a symlinked directory gets the same key whichever
    spelling the walk meets first.
    """
    # (walked directory, canonical directory)
    stack = [(root, root)]
    while stack:
        current, canonical_dir = stack.pop()
        try:
            with os.scandir(current) as iterator:
                entries = list(iterator)
        except OSError as exc:
            state.soft_error(current, exc)
            continue

        for entry in entries:
            path = entry.path
            if state.path_filter.excludes(path, _relative_posix(path, root)):
                logger.debug("Excluding %s", path)
                continue
            key = os.path.join(canonical_dir, entry.name)
            try:
                if entry.is_dir():
                    dir_stat = entry.stat()
                    identity = (dir_stat.st_dev, dir_stat.st_ino)
                    if identity in state.seen_dirs:
                        logger.debug("Skipping already visited directory %s", path)
                        continue
                    state.seen_dirs.add(identity)
                    if entry.is_symlink():
                        key = canonical_path(path)
                    stack.append((path, key))
                elif entry.is_file():
                    yield key
                else:
                    logger.debug("Skipping unsupported entry %s", path)
            except OSError as exc:
                state.soft_error(path, exc)


def _discover_candidates(roots: Sequence[str], state: _WalkState) -> Iterator[str]:
    for root in roots:
        if state.path_filter.excludes(root):
            logger.warning("Excluding top level path %s", root)
            continue
        if os.path.isdir(root):
            root_stat = os.stat(root)
            identity = (root_stat.st_dev, root_stat.st_ino)
            if identity in state.seen_dirs:
                logger.debug("Root %s already covered", root)
                continue
            state.seen_dirs.add(identity)
            candidates: Iterable[str] = _walk_directory(root, state)
        elif os.path.isfile(root):
            candidates = (root,)
        else:
            logger.warning("Root %s is not a regular file or directory", root)
            continue

        for path in candidates:
            if path in state.queued:
                continue
            state.queued.add(path)
            yield path


def resolve_roots(roots: Iterable[str | os.PathLike[str]]) -> list[str]:
    """Canonicalize roots, failing on the first one that does not exist."""
    resolved: list[str] = []
    for root in roots:
        canonical = canonical_path(root)
        if not os.path.exists(canonical):
            raise RootPathNotFound(root)
        if canonical not in resolved:
            resolved.append(canonical)
    return resolved


def scan_paths(
    roots: Iterable[str | os.PathLike[str]],
    *,
    path_filter: PathFilter | None = None,
    workers: int | None = None,
    on_record: Callable[[FileRecord], None] | None = None,
) -> ScanResult:
    """
    Fingerprint every regular file reachable from `roots`.

    Files are hashed on a bounded thread pool; records are merged on the
    calling thread only, so `on_record` is never called concurrently.

    Raises:
        RootPathNotFound: one of the roots does not exist.
    """
    resolved = resolve_roots(roots)
    path_filter = path_filter or PathFilter()
    workers = max(1, workers or default_workers())
    warnings: list[SoftError] = []
    state = _WalkState(path_filter=path_filter, warnings=warnings)
    records: dict[str, FileRecord] = {}

    def _collect(future: Future[FileRecord], path: str) -> None:
        try:
            record = future.result()
        except OSError as exc:
            state.soft_error(path, exc)
            return
        records[record.path] = record
        logger.debug("Hashed %s", path)
        if on_record is not None:
            on_record(record)

    window = workers * PENDING_PER_WORKER
    with ThreadPoolExecutor(max_workers=workers) as pool:
        pending: dict[Future[FileRecord], str] = {}
        for path in _discover_candidates(resolved, state):
            pending[pool.submit(record_for_path, path)] = path
            if len(pending) >= window:
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    _collect(future, pending.pop(future))
        for future in as_completed(list(pending)):
            _collect(future, pending.pop(future))

    logger.info("Scanned %s file(s) under %s root(s)", len(records), len(resolved))
    return ScanResult(records=freeze_records(records.values()), warnings=warnings)
