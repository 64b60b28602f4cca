from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Literal


@dataclass(frozen=True, slots=True)
class FileRecord:
    path: str
    sha256: str
    size: int
    mtime_ns: int
    mode: int = 0


RecordSet = Mapping[str, FileRecord]


def freeze_records(records: Iterable[FileRecord]) -> RecordSet:
    """Build a read-only RecordSet keyed by path, iterating in path order."""
    by_path: dict[str, FileRecord] = {}
    for record in records:
        if record.path in by_path:
            raise ValueError(f"Duplicate path in record set: {record.path}")
        by_path[record.path] = record
    return MappingProxyType({path: by_path[path] for path in sorted(by_path)})


class Verdict(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True, slots=True)
class CacheEntry:
    sha256: str
    verdict: Verdict
    trust_score: int | None
    fetched_at: int


@dataclass(frozen=True, slots=True)
class LookupResult:
    sha256: str
    verdict: Verdict
    trust_score: int | None = None
    cached: bool = False

    @classmethod
    def from_cache(cls, entry: CacheEntry) -> LookupResult:
        return cls(
            sha256=entry.sha256,
            verdict=entry.verdict,
            trust_score=entry.trust_score,
            cached=True,
        )


SoftErrorKind = Literal["file_unreadable", "remote_lookup_failed"]


@dataclass(frozen=True, slots=True)
class SoftError:
    """A non-fatal problem collected alongside an operation's result."""

    kind: SoftErrorKind
    subject: str
    detail: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.subject}: {self.detail}"
