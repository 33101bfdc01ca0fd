"""Exception hierarchy for dotward."""

from __future__ import annotations

from pathlib import Path


class DotwardError(RuntimeError):
    """Raised when dotward encounters an unrecoverable state."""


class ConfigError(DotwardError):
    """Raised when a configuration file cannot be parsed or validated."""


class FilesystemError(DotwardError):
    """I/O failure while applying a single action."""

    def __init__(self, path: Path, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


class StateStoreError(DotwardError):
    """Raised when the state file cannot be written."""


class PackageBackendError(DotwardError):
    """Package manager unavailable or a package command failed."""


class AdoptionConflict(DotwardError):
    """Raised when an adopted path is already managed."""


class LockError(DotwardError):
    """Raised when another dotward run holds the engine lock."""
