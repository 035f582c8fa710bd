"""Exception types raised across the studio core.

Nothing in the orchestration layer treats these as fatal: catalog loads,
fingerprint runs and queue persistence catch them, log, and degrade.
"""
from __future__ import annotations

from typing import Optional


class StudioError(Exception):
    """Base class for all repostudio errors."""


class BackendError(StudioError):
    """A backend operation failed (unreachable store, bad input, I/O)."""

    def __init__(self, message: str, *, repository_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.repository_id = repository_id


class RepositoryNotFound(BackendError):
    def __init__(self, repository_id: str) -> None:
        super().__init__(f"Repository not found: {repository_id}", repository_id=repository_id)


class FileNotInRepository(BackendError):
    def __init__(self, repository_id: str, file_id: str) -> None:
        super().__init__(
            f"File {file_id} not found in repository {repository_id}",
            repository_id=repository_id,
        )
        self.file_id = file_id


class FingerprintError(BackendError):
    """Fingerprint computation failed for one file."""


class MetadataWriteError(BackendError):
    """Tags could not be written into an audio file."""


class BundleError(StudioError):
    pass


class QueuePersistenceError(StudioError):
    pass
