from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from integrity_watcher.errors import ConfigError
from integrity_watcher.lookup_client import DEFAULT_LOOKUP_URL, DEFAULT_TIMEOUT_SECONDS
from integrity_watcher.resolver import DEFAULT_LOOKUP_WORKERS
from integrity_watcher.scanner import default_workers


CONFIG_FILENAME = ".integrity-watcher.json"
DEFAULT_DB_FILENAME = "files_data.db"
CACHE_FILENAME = "circl_cache.db"
DB_ENV = "INTEGRITY_WATCHER_DB"
CACHE_ENV = "INTEGRITY_WATCHER_CACHE"

_PATH_FIELDS = {"db_path", "db2_path", "cache_path"}
_LIST_FIELDS = {"paths", "excludes", "exclude_patterns"}
_BOOL_FIELDS = {"exclude_db", "overwrite", "compare_time"}
_COUNT_FIELDS = {"workers", "lookup_workers"}


def default_cache_path() -> Path:
    """Per-user cache location, e.g. ~/.cache/integrity-watcher/circl_cache.db."""
    xdg_cache_home = os.getenv("XDG_CACHE_HOME")
    base = Path(xdg_cache_home) if xdg_cache_home else Path.home() / ".cache"
    return base / "integrity-watcher" / CACHE_FILENAME


@dataclass(slots=True)
class WatcherConfig:
    db_path: Path = field(default_factory=lambda: Path(DEFAULT_DB_FILENAME))
    paths: tuple[str, ...] = ()
    excludes: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    exclude_db: bool = True
    overwrite: bool = False
    db2_path: Path | None = None
    compare_time: bool = False
    cache_path: Path = field(default_factory=default_cache_path)
    workers: int = field(default_factory=default_workers)
    lookup_workers: int = DEFAULT_LOOKUP_WORKERS
    lookup_url: str = DEFAULT_LOOKUP_URL
    lookup_timeout: float = DEFAULT_TIMEOUT_SECONDS

    def with_overrides(self, **overrides: Any) -> WatcherConfig:
        """Return a copy with every override that is not None applied."""
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **_coerce(values))


def split_csv(values: list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
    """Accept repeated flags as well as comma-separated lists."""
    result: list[str] = []
    for value in values or ():
        for part in value.split(","):
            part = part.strip()
            if part:
                result.append(part)
    return tuple(result)


def _coerce(values: dict[str, Any]) -> dict[str, Any]:
    known = {f.name for f in fields(WatcherConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown config key(s): {', '.join(unknown)}")

    coerced: dict[str, Any] = {}
    for key, value in values.items():
        coerced[key] = _coerce_value(key, value)
    return coerced


def _coerce_value(key: str, value: Any) -> Any:
    if key in _PATH_FIELDS:
        if not isinstance(value, (str, os.PathLike)):
            raise ConfigError(f"Config key {key!r} must be a path, got {value!r}")
        return Path(value).expanduser()
    if key in _LIST_FIELDS:
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
            raise ConfigError(f"Config key {key!r} must be a string or a list of strings, got {value!r}")
        return split_csv(list(value))
    if key in _BOOL_FIELDS:
        if not isinstance(value, bool):
            raise ConfigError(f"Config key {key!r} must be true or false, got {value!r}")
        return value
    if key in _COUNT_FIELDS:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigError(f"Config key {key!r} must be a positive integer, got {value!r}")
        return value
    if key == "lookup_timeout":
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigError(f"Config key {key!r} must be a positive number, got {value!r}")
        return float(value)
    if key == "lookup_url":
        if not isinstance(value, str) or not value:
            raise ConfigError(f"Config key {key!r} must be a URL string, got {value!r}")
        return value
    return value


def config_path(base_dir: Path | None = None) -> Path:
    return (base_dir or Path.cwd()).resolve() / CONFIG_FILENAME


def load_config_file(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    _coerce(data)
    return data


def load_config(
    explicit_path: Path | None = None,
    *,
    base_dir: Path | None = None,
    environ: dict[str, str] | None = None,
) -> WatcherConfig:
    """
    Build a config from defaults, an optional JSON file and the environment.

    An explicit path must exist; otherwise `.integrity-watcher.json` in the
    working directory is used when present.
    """
    environ = dict(os.environ) if environ is None else environ
    config = WatcherConfig()

    path = explicit_path or config_path(base_dir)
    if explicit_path is not None or path.exists():
        config = config.with_overrides(**load_config_file(path))

    return config.with_overrides(
        db_path=environ.get(DB_ENV) or None,
        cache_path=environ.get(CACHE_ENV) or None,
    )
