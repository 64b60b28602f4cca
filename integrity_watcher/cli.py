from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from integrity_watcher.config import WatcherConfig, load_config, split_csv
from integrity_watcher.errors import IntegrityWatcherError
from integrity_watcher.models import FileRecord, SoftError, Verdict
from integrity_watcher.operations import (
    check as check_op,
    circl_check as circl_check_op,
    compare as compare_op,
    create as create_op,
    list_records,
    update as update_op,
)
from integrity_watcher.scan_ui import ScanProgressUI, printable
from integrity_watcher.status_service import DiffResult


app = typer.Typer(help="Record and verify the integrity of file trees.", no_args_is_help=True)
console = Console()

EXIT_CHANGES = 2
EXIT_INTERRUPTED = 130


@dataclass(slots=True)
class _Globals:
    db: Path | None = None
    config_file: Path | None = None
    show_progress: bool = True


def _setup_logging(verbose: bool, quiet: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=verbose)],
        force=True,
    )


def _format_ns(mtime_ns: int) -> str:
    try:
        return datetime.fromtimestamp(mtime_ns / 1_000_000_000).isoformat(sep=" ", timespec="seconds")
    except (OverflowError, OSError, ValueError):
        return "#ERROR#"


def _format_ts(timestamp: int | None) -> str:
    if timestamp is None:
        return "unknown"
    return datetime.fromtimestamp(timestamp).isoformat(sep=" ", timespec="seconds")


def _load(ctx: typer.Context, **overrides) -> WatcherConfig:
    state: _Globals = ctx.obj or _Globals()
    config = load_config(state.config_file)
    return config.with_overrides(db_path=state.db, **overrides)


def _run(action: Callable[[], Awaitable[int]]) -> None:
    try:
        code = asyncio.run(action())
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/yellow] The database keeps its last complete snapshot.")
        code = EXIT_INTERRUPTED
    except IntegrityWatcherError as exc:
        console.print(f"[red]{printable(str(exc))}[/red]")
        code = 1
    raise typer.Exit(code=code)


def _render_records(title: str, records: list[FileRecord], style: str = "") -> None:
    if not records:
        return

    table = Table(title=title, title_style=style)
    table.add_column("Path")
    table.add_column("Size", justify="right")
    table.add_column("Modified", justify="right")
    table.add_column("Mode", justify="right")
    table.add_column("SHA-256")

    for record in records:
        table.add_row(
            printable(record.path),
            str(record.size),
            _format_ns(record.mtime_ns),
            f"{record.mode:o}",
            record.sha256,
        )

    console.print(table)


def _render_diff(diff: DiffResult, *, compare_time: bool) -> None:
    _render_records("Added", diff.added, "green")
    _render_records("Removed", diff.removed, "yellow")

    if diff.modified:
        table = Table(title="Modified", title_style="red")
        table.add_column("Path")
        table.add_column("Size", justify="right")
        table.add_column("SHA-256 (before -> after)")
        for entry in diff.modified:
            size = (
                str(entry.after.size)
                if entry.before.size == entry.after.size
                else f"{entry.before.size} -> {entry.after.size}"
            )
            table.add_row(printable(entry.path), size, f"{entry.before.sha256}\n{entry.after.sha256}")
        console.print(table)

    if compare_time and diff.time_changes:
        console.print(Text(f"Modification time changed ({len(diff.time_changes)}):", style="cyan"))
        for change in diff.time_changes:
            direction = " (moved backwards)" if change.delta_ns < 0 else ""
            console.print(
                f"  {printable(change.path)}: {_format_ns(change.before_ns)} -> {_format_ns(change.after_ns)}{direction}"
            )

    if diff.mode_changes:
        console.print(Text(f"Permissions changed ({len(diff.mode_changes)}):", style="cyan"))
        for change in diff.mode_changes:
            console.print(f"  {printable(change.path)}: {change.before:o} -> {change.after:o}")

    if not diff.has_changes:
        console.print("[green]No changes detected.[/green]")

    console.print(
        f"Added: {len(diff.added)} | Removed: {len(diff.removed)} | "
        f"Modified: {len(diff.modified)} | Unchanged: {len(diff.unchanged)}"
    )


def _render_warnings(warnings: list[SoftError]) -> None:
    if not warnings:
        return
    console.print(Text(f"Warnings ({len(warnings)}):", style="yellow"))
    for warning in warnings:
        console.print(f"  {printable(str(warning))}")


@app.callback()
def main(
    ctx: typer.Context,
    db: Path | None = typer.Option(
        None,
        "--db",
        help="Path of the integrity database. Defaults to files_data.db.",
    ),
    config_file: Path | None = typer.Option(
        None,
        "--config",
        help="JSON config file. Defaults to .integrity-watcher.json when present.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every file."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only log warnings and errors."),
    no_progress: bool = typer.Option(False, "--no-progress", help="Hide the hashing progress line."),
) -> None:
    """Record file fingerprints and detect changes over time."""
    _setup_logging(verbose, quiet)
    ctx.obj = _Globals(db=db, config_file=config_file, show_progress=not no_progress)


_PATH_HELP = "Path(s) to scan (repeatable or comma separated)."
_EXCLUDE_HELP = "Path(s) to exclude (repeatable or comma separated)."
_PATTERN_HELP = "Glob pattern(s), relative to each scanned path, to exclude (repeatable)."


def _scan_overrides(
    path: list[str] | None,
    exclude: list[str] | None,
    exclude_pattern: list[str] | None,
    dont_exclude_db: bool,
    workers: int | None,
) -> dict:
    return {
        "paths": split_csv(path) or None,
        "excludes": split_csv(exclude) or None,
        "exclude_patterns": split_csv(exclude_pattern) or None,
        "exclude_db": False if dont_exclude_db else None,
        "workers": workers,
    }


def _progress(ctx: typer.Context) -> ScanProgressUI:
    state: _Globals = ctx.obj or _Globals()
    return ScanProgressUI(console, enabled=state.show_progress)


@app.command()
def create(
    ctx: typer.Context,
    path: list[str] | None = typer.Option(None, "--path", "-p", help=_PATH_HELP),
    exclude: list[str] | None = typer.Option(None, "--exclude", "-e", help=_EXCLUDE_HELP),
    exclude_pattern: list[str] | None = typer.Option(None, "--exclude-pattern", help=_PATTERN_HELP),
    dont_exclude_db: bool = typer.Option(False, "--dont-exclude-db", help="Scan the database file too."),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace an existing database."),
    workers: int | None = typer.Option(None, "--workers", min=1, help="Hashing threads."),
) -> None:
    """Create the database and store the current files' fingerprints."""

    async def _create_async() -> int:
        config = _load(
            ctx,
            overwrite=overwrite or None,
            **_scan_overrides(path, exclude, exclude_pattern, dont_exclude_db, workers),
        )
        with _progress(ctx) as progress:
            result = await create_op(config, on_record=progress.on_record)
        _render_warnings(result.warnings)
        console.print(
            f"[green]Created[/green] {result.store.path} with {len(result.records)} file(s)."
        )
        return 0

    _run(_create_async)


@app.command()
def check(
    ctx: typer.Context,
    path: list[str] | None = typer.Option(None, "--path", "-p", help=_PATH_HELP),
    exclude: list[str] | None = typer.Option(None, "--exclude", "-e", help=_EXCLUDE_HELP),
    exclude_pattern: list[str] | None = typer.Option(None, "--exclude-pattern", help=_PATTERN_HELP),
    dont_exclude_db: bool = typer.Option(False, "--dont-exclude-db", help="Scan the database file too."),
    compare_time: bool = typer.Option(False, "--compare-time", help="Also report modification time changes."),
    fail_on_change: bool = typer.Option(
        False, "--fail-on-change", help=f"Exit with code {EXIT_CHANGES} when changes are found."
    ),
    workers: int | None = typer.Option(None, "--workers", min=1, help="Hashing threads."),
) -> None:
    """Compare the current files against the database without modifying it."""

    async def _check_async() -> int:
        config = _load(
            ctx,
            compare_time=compare_time or None,
            **_scan_overrides(path, exclude, exclude_pattern, dont_exclude_db, workers),
        )
        with _progress(ctx) as progress:
            result = await check_op(config, on_record=progress.on_record)
        _render_diff(result.diff, compare_time=config.compare_time)
        _render_warnings(result.warnings)
        if fail_on_change and result.diff.has_changes:
            return EXIT_CHANGES
        return 0

    _run(_check_async)


@app.command()
def update(
    ctx: typer.Context,
    path: list[str] | None = typer.Option(None, "--path", "-p", help=_PATH_HELP),
    exclude: list[str] | None = typer.Option(None, "--exclude", "-e", help=_EXCLUDE_HELP),
    exclude_pattern: list[str] | None = typer.Option(None, "--exclude-pattern", help=_PATTERN_HELP),
    dont_exclude_db: bool = typer.Option(False, "--dont-exclude-db", help="Scan the database file too."),
    compare_time: bool = typer.Option(False, "--compare-time", help="Also report modification time changes."),
    workers: int | None = typer.Option(None, "--workers", min=1, help="Hashing threads."),
) -> None:
    """Report changes, then replace the database with the current fingerprints."""

    async def _update_async() -> int:
        config = _load(
            ctx,
            compare_time=compare_time or None,
            **_scan_overrides(path, exclude, exclude_pattern, dont_exclude_db, workers),
        )
        with _progress(ctx) as progress:
            result = await update_op(config, on_record=progress.on_record)
        _render_diff(result.diff, compare_time=config.compare_time)
        _render_warnings(result.warnings)
        console.print(
            f"[green]Database updated:[/green] {result.store.record_count} file(s) in {result.store.path}"
        )
        return 0

    _run(_update_async)


@app.command("list")
def list_command(ctx: typer.Context) -> None:
    """List every file stored in the database."""

    async def _list_async() -> int:
        config = _load(ctx)
        result = await list_records(config)
        _render_records(f"Files in {result.store.path}", list(result.records.values()))
        console.print(
            f"{result.store.record_count} file(s) | created {_format_ts(result.store.created_at)}"
            f" | last generation {_format_ts(result.store.generated_at)}"
        )
        return 0

    _run(_list_async)


@app.command()
def compare(
    ctx: typer.Context,
    db2: Path = typer.Option(..., "--db2", help="Second database; reported as the newer state."),
    compare_time: bool = typer.Option(False, "--compare-time", help="Also report modification time changes."),
    fail_on_change: bool = typer.Option(
        False, "--fail-on-change", help=f"Exit with code {EXIT_CHANGES} when the databases differ."
    ),
) -> None:
    """Compare two databases (like check, without scanning)."""

    async def _compare_async() -> int:
        config = _load(ctx, db2_path=db2, compare_time=compare_time or None)
        result = await compare_op(config)
        _render_diff(result.diff, compare_time=config.compare_time)
        if fail_on_change and result.diff.has_changes:
            return EXIT_CHANGES
        return 0

    _run(_compare_async)


_VERDICT_STYLES = {
    Verdict.FOUND: "green",
    Verdict.NOT_FOUND: "yellow",
    Verdict.UNRESOLVED: "red",
}


@app.command("circl-check")
def circl_check(
    ctx: typer.Context,
    cache: Path | None = typer.Option(None, "--cache", help="Lookup cache database."),
    lookup_url: str | None = typer.Option(None, "--lookup-url", help="hashlookup base URL."),
    lookup_workers: int | None = typer.Option(None, "--lookup-workers", min=1, help="Concurrent lookups."),
    timeout: float | None = typer.Option(None, "--timeout", min=0.1, help="Per-request timeout in seconds."),
) -> None:
    """Check stored hashes against CIRCL hashlookup (https://www.circl.lu/services/hashlookup/)."""

    async def _circl_async() -> int:
        config = _load(
            ctx,
            cache_path=cache,
            lookup_url=lookup_url,
            lookup_workers=lookup_workers,
            lookup_timeout=timeout,
        )
        result = await circl_check_op(config)

        table = Table(title="CIRCL hashlookup")
        table.add_column("Path")
        table.add_column("SHA-256")
        table.add_column("Verdict")
        table.add_column("Trust", justify="right")
        table.add_column("Source")
        for file_path, lookup in result.by_path.items():
            table.add_row(
                printable(file_path),
                lookup.sha256,
                Text(lookup.verdict.value, style=_VERDICT_STYLES[lookup.verdict]),
                "" if lookup.trust_score is None else str(lookup.trust_score),
                "cache" if lookup.cached else "remote",
            )
        if result.by_path:
            console.print(table)

        counts = {verdict: 0 for verdict in Verdict}
        for lookup in result.by_hash.values():
            counts[lookup.verdict] += 1
        console.print(
            f"Hashes: {len(result.by_hash)} | found: {counts[Verdict.FOUND]} | "
            f"not found: {counts[Verdict.NOT_FOUND]} | unresolved: {counts[Verdict.UNRESOLVED]} | "
            f"queried: {result.queried_count}"
        )
        _render_warnings(result.warnings)
        return 0

    _run(_circl_async)
