from __future__ import annotations

from pathlib import Path


class IntegrityWatcherError(Exception):
    """Base class for errors that abort an operation."""


class ConfigError(IntegrityWatcherError):
    pass


class RootPathNotFound(IntegrityWatcherError):
    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        super().__init__(f"Root path does not exist: {self.path}")


class StoreAlreadyExists(IntegrityWatcherError):
    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        super().__init__(
            f"Database {self.path} already exists. Pass --overwrite to replace it."
        )


class StoreNotFound(IntegrityWatcherError):
    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        super().__init__(f"Database not found: {self.path}")


class SchemaMismatch(IntegrityWatcherError):
    def __init__(self, path: str | Path, reason: str) -> None:
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Unsupported database {self.path}: {reason}")


class StoreWriteFailed(IntegrityWatcherError):
    def __init__(self, path: str | Path, reason: str) -> None:
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Failed to write database {self.path}: {reason}")


class RemoteLookupFailed(IntegrityWatcherError):
    def __init__(self, sha256: str, reason: str) -> None:
        self.sha256 = sha256
        self.reason = reason
        super().__init__(f"Lookup failed for {sha256}: {reason}")
