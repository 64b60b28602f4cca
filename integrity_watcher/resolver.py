from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

from integrity_watcher.cache_db import CacheStore
from integrity_watcher.errors import RemoteLookupFailed
from integrity_watcher.models import CacheEntry, LookupResult, SoftError, Verdict


logger = logging.getLogger(__name__)

DEFAULT_LOOKUP_WORKERS = 8


class LookupBackend(Protocol):
    async def lookup(self, sha256: str) -> CacheEntry:
        ...


@dataclass(slots=True)
class ResolveResult:
    results: dict[str, LookupResult]
    warnings: list[SoftError] = field(default_factory=list)
    queried_count: int = 0

    @property
    def cached_count(self) -> int:
        return sum(1 for result in self.results.values() if result.cached)


class ReputationResolver:
    """
    Resolve hashes through the cache, querying the remote service only for
    hashes the cache has never seen. Each unique hash is queried at most
    once per call, and a verdict is cached before it is returned.
    """

    def __init__(
        self,
        cache: CacheStore,
        client: LookupBackend,
        *,
        limit: int = DEFAULT_LOOKUP_WORKERS,
    ) -> None:
        self._cache = cache
        self._client = client
        self._limit = max(1, limit)

    async def _query(
        self, sha256: str, semaphore: asyncio.Semaphore, warnings: list[SoftError]
    ) -> LookupResult:
        async with semaphore:
            try:
                entry = await self._client.lookup(sha256)
            except RemoteLookupFailed as exc:
                logger.warning("Could not resolve %s: %s", sha256, exc.reason)
                warnings.append(
                    SoftError(kind="remote_lookup_failed", subject=sha256, detail=exc.reason)
                )
                return LookupResult(sha256=sha256, verdict=Verdict.UNRESOLVED)

        await self._cache.put(entry)
        return LookupResult(
            sha256=sha256,
            verdict=entry.verdict,
            trust_score=entry.trust_score,
            cached=False,
        )

    async def resolve(self, hashes: Iterable[str]) -> ResolveResult:
        unique = sorted(set(hashes))
        cached = await self._cache.get_many(unique)
        misses = [sha256 for sha256 in unique if sha256 not in cached]
        logger.info(
            "Resolving %s hash(es): %s cached, %s to query",
            len(unique),
            len(cached),
            len(misses),
        )

        results = {sha256: LookupResult.from_cache(entry) for sha256, entry in cached.items()}
        warnings: list[SoftError] = []
        semaphore = asyncio.Semaphore(self._limit)
        # Let every query settle before the caller can close the cache.
        fetched = await asyncio.gather(
            *(self._query(sha256, semaphore, warnings) for sha256 in misses),
            return_exceptions=True,
        )
        for result in fetched:
            if isinstance(result, BaseException):
                raise result
            results[result.sha256] = result

        return ResolveResult(
            results={sha256: results[sha256] for sha256 in unique},
            warnings=sorted(warnings, key=lambda warning: warning.subject),
            queried_count=len(misses),
        )
