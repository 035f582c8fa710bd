"""Backend boundary and the local sqlite-backed implementation.

Every backend call is a coroutine. `LocalBackend` runs its sqlite, hashing
and zip work in worker threads via `asyncio.to_thread`; `StudioDB` hands each
thread its own connection.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from loguru import logger
from mutagen import MutagenError

from . import bundle as bundler
from . import scanner
from .db import StudioDB
from .errors import BackendError, FileNotInRepository, FingerprintError, MetadataWriteError, RepositoryNotFound
from .logging import log_event
from .models import FileRecord, Repository, format_interval

DEFAULT_REPOSITORY_ID = "default"
DEFAULT_REPOSITORY_NAME = "Default Repository"

EVENT_ADDED = "added"
EVENT_REMOVED = "removed"
EVENT_MOVED = "moved"
EVENT_MODIFIED = "modified"

# fields a caller may edit; the meta_* ones are also written into the file
EDITABLE_FIELDS = tuple(scanner.EDITABLE_TAGS) + ("tags",)


@dataclass(frozen=True)
class FileEvent:
    kind: str
    repository_id: Optional[str]
    path: str
    dest_path: Optional[str] = None


FileEventCallback = Callable[[FileEvent], None]


class Backend(Protocol):
    async def list_repositories(self) -> List[Repository]: ...

    async def create_repository(
        self, name: str, description: str = "", repository_id: Optional[str] = None
    ) -> Repository: ...

    async def list_files(self, repository_id: str) -> List[FileRecord]: ...

    async def refresh_files(self, repository_id: str) -> int: ...

    async def compute_fingerprint(self, repository_id: str, file_id: str) -> Optional[str]: ...

    async def add_file(self, repository_id: str, path: str) -> FileRecord: ...

    async def update_metadata(
        self, repository_id: str, file_ids: Iterable[str], changes: Dict[str, Optional[str]]
    ) -> List[FileRecord]: ...

    async def bundle_files(self, paths: Iterable[str]) -> bytes: ...

    def subscribe(self, callback: FileEventCallback) -> Callable[[], None]: ...


class LocalBackend:
    """Reference backend over `StudioDB`, the scanner and the bundler."""

    def __init__(self, db: StudioDB, *, audio_extensions: Iterable[str] = scanner.DEFAULT_EXTENSIONS) -> None:
        self.db = db
        self.audio_extensions = tuple(audio_extensions)
        self._listeners: List[FileEventCallback] = []

    @classmethod
    def open(cls, path: Path, **kwargs) -> "LocalBackend":
        db = StudioDB(Path(path))
        db.ensure_schema()
        return cls(db, **kwargs)

    # -- events --------------------------------------------------------------

    def subscribe(self, callback: FileEventCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def emit(self, event: FileEvent) -> None:
        for cb in list(self._listeners):
            try:
                cb(event)
            except Exception:
                logger.exception(f"File event listener failed for {event.kind} {event.path}")

    # -- repositories --------------------------------------------------------

    def _require_repository(self, repository_id: str) -> Repository:
        repo = self.db.get_repository(repository_id)
        if repo is None:
            raise RepositoryNotFound(repository_id)
        return repo

    async def list_repositories(self) -> List[Repository]:
        return await asyncio.to_thread(self.db.list_repositories)

    async def get_repository(self, repository_id: str) -> Repository:
        return await asyncio.to_thread(self._require_repository, repository_id)

    async def create_repository(
        self, name: str, description: str = "", repository_id: Optional[str] = None
    ) -> Repository:
        if not name.strip():
            raise BackendError("Repository name must not be empty")

        def create() -> Repository:
            rid = self.db.create_repository(name.strip(), description, repository_id)
            return Repository(id=rid, name=name.strip(), description=description)

        repo = await asyncio.to_thread(create)
        log_event("repository_created", msg=f"Created repository {repo.name}", repository_id=repo.id)
        return repo

    async def update_repository(self, repository_id: str, name: str, description: str) -> Repository:
        def update() -> Repository:
            self._require_repository(repository_id)
            self.db.update_repository(repository_id, name, description)
            return Repository(id=repository_id, name=name, description=description)

        return await asyncio.to_thread(update)

    async def delete_repository(self, repository_id: str) -> None:
        def delete() -> None:
            self._require_repository(repository_id)
            self.db.delete_repository(repository_id)

        await asyncio.to_thread(delete)
        log_event("repository_deleted", msg=f"Deleted repository {repository_id}", repository_id=repository_id)

    # -- files ---------------------------------------------------------------

    def _list_files_sync(self, repository_id: str) -> List[FileRecord]:
        self._require_repository(repository_id)
        return self.db.list_files(repository_id)

    async def list_files(self, repository_id: str) -> List[FileRecord]:
        return await asyncio.to_thread(self._list_files_sync, repository_id)

    def _refresh_sync(self, repository_id: str) -> int:
        changed = 0
        for f in self._list_files_sync(repository_id):
            p = Path(f.path)
            if not p.exists():
                if f.accessible:
                    self.db.update_file(repository_id, f.replace(accessible=False))
                    changed += 1
                continue
            stamp = format_interval(p.stat().st_mtime_ns)
            if stamp != f.date_modified or not f.accessible:
                # the content may have changed: re-read it and drop the old fingerprint
                fresh = scanner.read_file_record(p, file_id=f.id)
                fresh = fresh.replace(tags=f.tags, related_files=f.related_files)
                self.db.update_file(repository_id, fresh)
                changed += 1
        if changed:
            logger.info(f"Refreshed {changed} file record(s) in repository {repository_id}")
        return changed

    async def refresh_files(self, repository_id: str) -> int:
        """Re-check every file on disk; return the number of records updated."""
        return await asyncio.to_thread(self._refresh_sync, repository_id)

    def _fingerprint_sync(self, repository_id: str, file_id: str) -> str:
        self._require_repository(repository_id)
        f = self.db.get_file(repository_id, file_id)
        if f is None:
            raise FileNotInRepository(repository_id, file_id)
        try:
            token = scanner.compute_fingerprint(Path(f.path))
        except OSError as e:
            raise FingerprintError(f"Cannot read {f.path}: {e}", repository_id=repository_id) from e
        self.db.set_fingerprint(repository_id, file_id, token)
        return token

    async def compute_fingerprint(self, repository_id: str, file_id: str) -> Optional[str]:
        return await asyncio.to_thread(self._fingerprint_sync, repository_id, file_id)

    def _add_file_sync(self, repository_id: str, path: Path) -> FileRecord:
        self._require_repository(repository_id)
        existing = self.db.find_file_by_path(repository_id, str(path))
        if existing is not None:
            return existing
        try:
            record = scanner.read_file_record(path)
        except OSError as e:
            raise BackendError(f"Cannot add {path}: {e}", repository_id=repository_id) from e
        return self.db.insert_file(repository_id, record)

    async def add_file(self, repository_id: str, path: str) -> FileRecord:
        p = Path(path).expanduser().resolve()
        record = await asyncio.to_thread(self._add_file_sync, repository_id, p)
        self.emit(FileEvent(EVENT_ADDED, repository_id, record.path))
        return record

    async def remove_file(self, repository_id: str, file_id: str) -> None:
        def remove() -> FileRecord:
            f = self.db.get_file(repository_id, file_id)
            if f is None:
                raise FileNotInRepository(repository_id, file_id)
            self.db.delete_file(repository_id, file_id)
            return f

        f = await asyncio.to_thread(remove)
        self.emit(FileEvent(EVENT_REMOVED, repository_id, f.path))

    def _write_tags(self, repository_id: str, path: Path, record: FileRecord) -> bool:
        try:
            return scanner.write_audio_metadata(path, record)
        except (MutagenError, OSError) as e:
            raise MetadataWriteError(f"Cannot write tags to {path}: {e}", repository_id=repository_id) from e

    def _update_metadata_sync(
        self, repository_id: str, file_ids: List[str], changes: Dict[str, Optional[str]]
    ) -> List[FileRecord]:
        self._require_repository(repository_id)
        unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
        if unknown:
            raise BackendError(f"Fields are not editable: {', '.join(unknown)}", repository_id=repository_id)
        values = {k: (v.strip() or None) if isinstance(v, str) else v for k, v in changes.items()}
        records = []
        for file_id in file_ids:
            f = self.db.get_file(repository_id, file_id)
            if f is None:
                raise FileNotInRepository(repository_id, file_id)
            records.append(f.replace(**values))

        updated: List[FileRecord] = []
        for record in records:
            p = Path(record.path)
            if record.accessible and p.exists() and self._write_tags(repository_id, p, record):
                # keep the stored stamp in step so refresh does not re-read the file;
                # only the STREAMINFO MD5 survives a retag
                st = p.stat()
                fp = record.audio_fingerprint
                record = record.replace(
                    date_modified=format_interval(st.st_mtime_ns),
                    meta_size_on_disk=str(st.st_size),
                    audio_fingerprint=fp if fp and fp.startswith("flac-md5:") else None,
                )
            self.db.update_file(repository_id, record)
            updated.append(record)
        return updated

    async def update_metadata(
        self, repository_id: str, file_ids: Iterable[str], changes: Dict[str, Optional[str]]
    ) -> List[FileRecord]:
        """Edit tags of one or more files, in the catalog and in the files themselves.

        Empty strings clear a field. Every file is validated before any is
        written; a write failure stops at that file.
        """
        updated = await asyncio.to_thread(self._update_metadata_sync, repository_id, list(file_ids), dict(changes))
        log_event("metadata_updated", msg=f"Updated metadata of {len(updated)} file(s)",
                  repository_id=repository_id, count=len(updated))
        for record in updated:
            self.emit(FileEvent(EVENT_MODIFIED, repository_id, record.path))
        return updated

    def _add_folder_sync(self, repository_id: str, folder: Path) -> List[FileRecord]:
        self._require_repository(repository_id)
        if not folder.is_dir():
            raise BackendError(f"Not a folder: {folder}", repository_id=repository_id)
        added: List[FileRecord] = []
        for p in scanner.iter_audio_files(folder, self.audio_extensions):
            if self.db.find_file_by_path(repository_id, str(p)) is not None:
                continue
            try:
                added.append(self.db.insert_file(repository_id, scanner.read_file_record(p)))
            except OSError as e:
                logger.warning(f"Skipping unreadable file {p}: {e}")
        self.db.add_tracked_folder(repository_id, str(folder))
        return added

    async def add_folder(self, repository_id: str, folder: str) -> List[FileRecord]:
        """Add every audio file below `folder` and track the folder."""
        p = Path(folder).expanduser().resolve()
        added = await asyncio.to_thread(self._add_folder_sync, repository_id, p)
        log_event("folder_added", msg=f"Added {len(added)} file(s) from {p}",
                  repository_id=repository_id, folder=str(p))
        if added:
            self.emit(FileEvent(EVENT_ADDED, repository_id, str(p)))
        return added

    async def tracked_folders(self, repository_id: Optional[str] = None) -> List[tuple]:
        return await asyncio.to_thread(self.db.list_tracked_folders, repository_id)

    async def remove_duplicates(self, repository_id: str) -> int:
        return await asyncio.to_thread(self.db.remove_duplicate_files, repository_id)

    # -- bundles -------------------------------------------------------------

    async def bundle_files(self, paths: Iterable[str]) -> bytes:
        return await asyncio.to_thread(bundler.bundle_files, list(paths))

    # -- settings ------------------------------------------------------------

    async def get_setting(self, name: str) -> Optional[str]:
        return await asyncio.to_thread(self.db.get_setting, name)

    async def set_setting(self, name: str, value: Optional[str]) -> None:
        await asyncio.to_thread(self.db.set_setting, name, value)


async def ensure_default_repository(backend: Backend) -> List[Repository]:
    """Create the default repository when none exists; return all repositories."""
    repos = await backend.list_repositories()
    if repos:
        return repos
    logger.info("No repositories found, creating default repository")
    await backend.create_repository(DEFAULT_REPOSITORY_NAME, "", DEFAULT_REPOSITORY_ID)
    return await backend.list_repositories()


__all__ = [
    "Backend",
    "LocalBackend",
    "FileEvent",
    "EVENT_ADDED",
    "EVENT_REMOVED",
    "EVENT_MOVED",
    "EVENT_MODIFIED",
    "EDITABLE_FIELDS",
    "DEFAULT_REPOSITORY_ID",
    "DEFAULT_REPOSITORY_NAME",
    "ensure_default_repository",
]
