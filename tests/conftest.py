from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Callable

import pytest

from integrity_watcher.config import WatcherConfig


def write_file(path: Path, content: str | bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode("utf-8")
    path.write_bytes(content)
    return path


def sha256_of(content: str | bytes) -> str:
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def key(path: Path) -> str:
    """The record key the scanner produces for `path`."""
    return os.path.realpath(path)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., WatcherConfig]:
    def _make(*paths: Path, **overrides) -> WatcherConfig:
        config = WatcherConfig(
            db_path=tmp_path / "files_data.db",
            paths=tuple(str(path) for path in paths),
            cache_path=tmp_path / "cache" / "circl_cache.db",
            workers=2,
        )
        return config.with_overrides(**overrides)

    return _make
