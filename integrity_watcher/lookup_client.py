"""Client for the CIRCL hashlookup service (https://www.circl.lu/services/hashlookup/)."""
from __future__ import annotations

import asyncio
import logging
import time
from types import TracebackType
from typing import Any

import httpx

from integrity_watcher.errors import RemoteLookupFailed
from integrity_watcher.models import CacheEntry, Verdict


logger = logging.getLogger(__name__)

DEFAULT_LOOKUP_URL = "https://hashlookup.circl.lu"
DEFAULT_TIMEOUT_SECONDS = 3.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.05
TRUST_FIELD = "hashlookup:trust"


def _parse_trust_score(sha256: str, payload: Any) -> int:
    if not isinstance(payload, dict):
        raise RemoteLookupFailed(sha256, "response body is not a JSON object")
    value = payload.get(TRUST_FIELD)
    if isinstance(value, bool) or value is None:
        raise RemoteLookupFailed(sha256, f"response has no usable {TRUST_FIELD!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise RemoteLookupFailed(sha256, f"invalid {TRUST_FIELD!r}: {value!r}") from exc


class HashLookupClient:
    """
    Query one SHA-256 digest at a time against hashlookup.

    A 200 answer is a known file with a trust score, a 404 means the hash is
    not in the database. Both are definitive and may be cached. Transport
    errors and other status codes are retried, then reported as
    `RemoteLookupFailed`.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_LOOKUP_URL,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._max_attempts = max(1, max_attempts)
        self._retry_delay_seconds = retry_delay_seconds
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> HashLookupClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def lookup(self, sha256: str) -> CacheEntry:
        """
        Raises:
            RemoteLookupFailed: no definitive answer after all attempts, or a
                malformed response body.
        """
        attempt = 1
        while True:
            try:
                response = await self._client.get(f"/lookup/sha256/{sha256}")
            except httpx.HTTPError as exc:
                if attempt >= self._max_attempts:
                    raise RemoteLookupFailed(sha256, str(exc) or type(exc).__name__) from exc
                logger.warning("Lookup for %s failed (%s), retrying", sha256, exc)
            else:
                if response.status_code == httpx.codes.OK:
                    try:
                        payload = response.json()
                    except ValueError as exc:
                        raise RemoteLookupFailed(sha256, "response body is not JSON") from exc
                    return CacheEntry(
                        sha256=sha256,
                        verdict=Verdict.FOUND,
                        trust_score=_parse_trust_score(sha256, payload),
                        fetched_at=int(time.time()),
                    )
                if response.status_code == httpx.codes.NOT_FOUND:
                    return CacheEntry(
                        sha256=sha256,
                        verdict=Verdict.NOT_FOUND,
                        trust_score=None,
                        fetched_at=int(time.time()),
                    )
                if attempt >= self._max_attempts:
                    raise RemoteLookupFailed(
                        sha256, f"unexpected status {response.status_code}"
                    )
                logger.warning(
                    "Got status %s for %s, retrying", response.status_code, sha256
                )

            await asyncio.sleep(self._retry_delay_seconds * attempt)
            attempt += 1
