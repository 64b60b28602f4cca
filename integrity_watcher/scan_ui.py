from __future__ import annotations

from rich.console import Console
from rich.progress import (
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
    TransferSpeedColumn,
)

from integrity_watcher.models import FileRecord


def printable(text: str) -> str:
    """Replace the surrogate escapes of undecodable file names so `text` can be written out."""
    return text.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


def shorten_path(path: str, max_len: int = 64) -> str:
    if len(path) <= max_len:
        return path
    keep = max_len - 3
    if keep <= 0:
        return path[:max_len]
    head = keep // 2
    tail = keep - head
    return f"{path[:head]}...{path[-tail:]}"


class ScanProgressUI:
    """
    Rich progress line for a scan.

    The total is unknown while the walk is still discovering files, so the
    line shows a running file count and hashed bytes instead of a bar.
    Pass `on_record` as the scanner callback.
    """

    def __init__(self, console: Console | None = None, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self._files = 0
        self._task_id: TaskID | None = None
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]Hashing"),
            TextColumn("{task.fields[file_count]} file(s)"),
            DownloadColumn(binary_units=True),
            TransferSpeedColumn(),
            TimeElapsedColumn(),
            TextColumn("{task.fields[path]}"),
            console=console,
            transient=True,
            expand=True,
            disable=not enabled,
        )

    def __enter__(self) -> ScanProgressUI:
        self._progress.__enter__()
        self._task_id = self._progress.add_task(
            "scan", total=None, file_count=0, path=""
        )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._progress.__exit__(exc_type, exc, tb)

    @property
    def file_count(self) -> int:
        return self._files

    def on_record(self, record: FileRecord) -> None:
        self._files += 1
        if self._task_id is None:
            return
        self._progress.update(
            self._task_id,
            advance=record.size,
            file_count=self._files,
            path=shorten_path(printable(record.path)),
        )
