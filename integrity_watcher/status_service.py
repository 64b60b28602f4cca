from __future__ import annotations

from dataclasses import dataclass, field

from integrity_watcher.models import FileRecord, RecordSet


@dataclass(frozen=True, slots=True)
class ModifiedEntry:
    before: FileRecord
    after: FileRecord

    @property
    def path(self) -> str:
        return self.after.path


@dataclass(frozen=True, slots=True)
class TimeChange:
    path: str
    before_ns: int
    after_ns: int

    @property
    def delta_ns(self) -> int:
        """Negative when the modification time moved backwards."""
        return self.after_ns - self.before_ns


@dataclass(frozen=True, slots=True)
class ModeChange:
    path: str
    before: int
    after: int


@dataclass(slots=True)
class DiffResult:
    added: list[FileRecord] = field(default_factory=list)
    removed: list[FileRecord] = field(default_factory=list)
    modified: list[ModifiedEntry] = field(default_factory=list)
    unchanged: list[FileRecord] = field(default_factory=list)
    time_changes: list[TimeChange] = field(default_factory=list)
    mode_changes: list[ModeChange] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified)

    @property
    def added_paths(self) -> set[str]:
        return {record.path for record in self.added}

    @property
    def removed_paths(self) -> set[str]:
        return {record.path for record in self.removed}

    @property
    def modified_paths(self) -> set[str]:
        return {entry.path for entry in self.modified}

    @property
    def unchanged_paths(self) -> set[str]:
        return {record.path for record in self.unchanged}


def diff_records(
    base: RecordSet,
    candidate: RecordSet,
    *,
    compare_time: bool = False,
) -> DiffResult:
    """
    Classify every path of `base` and `candidate`.

    Only the content hash decides between Modified and Unchanged. Size,
    mtime and mode are reported as informational changes and never move a
    path out of Unchanged.
    """
    result = DiffResult()

    for path in sorted(candidate):
        after = candidate[path]
        before = base.get(path)
        if before is None:
            result.added.append(after)
            continue

        if before.sha256 == after.sha256:
            result.unchanged.append(after)
        else:
            result.modified.append(ModifiedEntry(before=before, after=after))

        if compare_time and before.mtime_ns != after.mtime_ns:
            result.time_changes.append(
                TimeChange(path=path, before_ns=before.mtime_ns, after_ns=after.mtime_ns)
            )
        if before.mode != after.mode:
            result.mode_changes.append(ModeChange(path=path, before=before.mode, after=after.mode))

    for path in sorted(base):
        if path not in candidate:
            result.removed.append(base[path])

    return result
