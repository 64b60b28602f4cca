from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import PurePosixPath


def canonical_path(path: str | os.PathLike[str]) -> str:
    """Absolute path with symlinks resolved and `..` segments collapsed."""
    return os.path.realpath(os.path.expanduser(os.fspath(path)))


def is_under(path: str, parent: str) -> bool:
    if path == parent:
        return True
    prefix = parent if parent.endswith(os.sep) else parent + os.sep
    return path.startswith(prefix)


def _normalize_pattern(pattern: str) -> str:
    normalized = pattern.strip().replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _match_pattern(path: str, pattern: str) -> bool:
    path_obj = PurePosixPath(path)
    norm = _normalize_pattern(pattern)
    if not norm:
        return False
    # Support both root-anchored and recursive matching styles.
    return (
        path_obj.match(norm)
        or path_obj.match(f"**/{norm}")
        or (norm.endswith("/") and (path + "/").startswith(norm))
    )


@dataclass(frozen=True, slots=True)
class PathFilter:
    """
    Exclude rules for a scan.

    `exclude_paths` are canonical absolute paths; anything equal to or below
    one of them is excluded. `exclude_patterns` are globs matched against the
    path relative to the scan root.
    """

    exclude_paths: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()

    def excludes_path(self, path: str) -> bool:
        return any(is_under(path, excluded) for excluded in self.exclude_paths)

    def excludes(self, walked_path: str, relative_path: str | None = None) -> bool:
        if self.excludes_path(walked_path):
            return True
        # A walked path can reach an excluded location through a symlink.
        if self.exclude_paths and self.excludes_path(canonical_path(walked_path)):
            return True
        if relative_path and any(
            _match_pattern(relative_path, pattern) for pattern in self.exclude_patterns
        ):
            return True
        return False


def build_path_filter(
    exclude_paths: list[str] | tuple[str, ...] | None = None,
    exclude_patterns: list[str] | tuple[str, ...] | None = None,
) -> PathFilter:
    paths: list[str] = []
    for raw in exclude_paths or []:
        if not raw:
            continue
        # Keep the literal spelling too so a dangling or not-yet-created path
        # still matches the walked path.
        for candidate in (os.path.abspath(os.path.expanduser(raw)), canonical_path(raw)):
            if candidate not in paths:
                paths.append(candidate)
    patterns = tuple(
        _normalize_pattern(pattern) for pattern in (exclude_patterns or []) if pattern
    )
    return PathFilter(exclude_paths=tuple(paths), exclude_patterns=patterns)
