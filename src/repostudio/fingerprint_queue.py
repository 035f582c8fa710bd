"""Ordered, deduplicated queue of files awaiting fingerprinting.

The queue is keyed by file id: an id is present at most once, and entries keep
FIFO order. Each entry remembers the repository it was queued for; only the
active repository's entries are processed or pruned, the rest wait for their
repository to become active again. Every mutation replaces the entry tuple in one step and, when a
`QueuePersistence` is attached, is written through to disk so interrupted work
survives a restart.

Persistence: JSON document ``{"schema_version": 1, "entries": [...]}`` written
atomically (temp -> fsync -> rename). Corrupt files or malformed entries are
skipped with a warning; a restored queue must be pruned against current
fingerprint status before processing resumes.
"""
from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from loguru import logger

from .errors import QueuePersistenceError
from .logging import log_event
from .models import FileRecord
from .store import Store

SCHEMA_VERSION = 1


@dataclass(frozen=True)
class QueueEntry:
    file_id: str
    repository_id: str = ""
    name: str = ""
    path: str = ""

    @classmethod
    def for_file(cls, file: FileRecord, repository_id: str) -> "QueueEntry":
        return cls(file_id=file.id, repository_id=repository_id, name=file.name, path=file.path)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueEntry":
        return cls(
            file_id=str(data["file_id"]),
            repository_id=str(data["repository_id"]),
            name=str(data.get("name", "") or ""),
            path=str(data.get("path", "") or ""),
        )


def _dedupe(entries: Iterable[QueueEntry]) -> Tuple[QueueEntry, ...]:
    seen = set()
    out: List[QueueEntry] = []
    for e in entries:
        if e.file_id in seen:
            continue
        seen.add(e.file_id)
        out.append(e)
    return tuple(out)


class QueuePersistence:
    """Serialize-on-write / deserialize-on-start boundary for the queue."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> List[QueueEntry]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable fingerprint queue {self.path}: {e}")
            return []
        raw = data.get("entries", []) if isinstance(data, dict) else []
        entries: List[QueueEntry] = []
        skipped = 0
        for item in raw:
            try:
                entries.append(QueueEntry.from_dict(item))
            except (KeyError, TypeError, AttributeError):
                skipped += 1
        if skipped:
            logger.warning(f"Skipped {skipped} malformed fingerprint queue entries in {self.path}")
        return list(_dedupe(entries))

    def save(self, entries: Iterable[QueueEntry]) -> None:
        payload = {
            "schema_version": SCHEMA_VERSION,
            "entries": [e.to_dict() for e in entries],
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".queue-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, self.path)
            except BaseException:
                try:
                    os.unlink(tmp)
                except OSError:
                    pass
                raise
        except OSError as e:
            raise QueuePersistenceError(f"Cannot write fingerprint queue {self.path}: {e}") from e


class FingerprintQueue:
    def __init__(self, persistence: Optional[QueuePersistence] = None) -> None:
        self._store: Store[Tuple[QueueEntry, ...]] = Store((), name="fingerprint_queue")
        self._persistence = persistence

    @classmethod
    def restore(cls, persistence: QueuePersistence) -> "FingerprintQueue":
        q = cls(persistence)
        entries = persistence.load()
        if entries:
            logger.info(f"Restored {len(entries)} queued file(s) from {persistence.path}")
        q._store.set(tuple(entries))
        return q

    # -- reads ---------------------------------------------------------------

    @property
    def entries(self) -> Tuple[QueueEntry, ...]:
        return self._store.get()

    def ids(self) -> List[str]:
        return [e.file_id for e in self._store.get()]

    def pending(self, repository_id: str) -> Tuple[QueueEntry, ...]:
        return tuple(e for e in self._store.get() if e.repository_id == repository_id)

    def peek(self, repository_id: Optional[str] = None) -> Optional[QueueEntry]:
        """Head of the queue, or of `repository_id`'s entries when given."""
        for e in self._store.get():
            if repository_id is None or e.repository_id == repository_id:
                return e
        return None

    def __len__(self) -> int:
        return len(self._store.get())

    def __contains__(self, file_id: object) -> bool:
        return any(e.file_id == file_id for e in self._store.get())

    def __iter__(self) -> Iterator[QueueEntry]:
        return iter(self._store.get())

    def subscribe(self, listener: Callable[[Tuple[QueueEntry, ...]], None]) -> Callable[[], None]:
        return self._store.subscribe(listener)

    # -- writes --------------------------------------------------------------

    def _commit(self, entries: Tuple[QueueEntry, ...]) -> None:
        self._store.set(entries)
        if self._persistence is None:
            return
        try:
            self._persistence.save(self._store.get())
        except QueuePersistenceError as e:
            logger.error(str(e))

    def enqueue(self, file: FileRecord, repository_id: str) -> bool:
        """Append `file` of `repository_id` unless it is already queued or fingerprinted."""
        if not file.needs_fingerprint:
            return False
        current = self._store.get()
        if any(e.file_id == file.id for e in current):
            return False
        self._commit(current + (QueueEntry.for_file(file, repository_id),))
        log_event("queue_enqueue", msg=f"Queued {file.name} for fingerprinting", file_id=file.id,
                  repository_id=repository_id, level="DEBUG")
        return True

    def dequeue_front(self) -> Optional[QueueEntry]:
        current = self._store.get()
        if not current:
            return None
        self._commit(current[1:])
        return current[0]

    def remove(self, file_id: str) -> bool:
        current = self._store.get()
        kept = tuple(e for e in current if e.file_id != file_id)
        if len(kept) == len(current):
            return False
        self._commit(kept)
        return True

    def clear(self) -> None:
        self._commit(())

    def replace(self, entries: Iterable[QueueEntry]) -> None:
        self._commit(_dedupe(entries))

    def prune(self, is_fingerprinted: Callable[[str], bool], repository_id: Optional[str] = None) -> int:
        """Drop entries whose file already has a fingerprint; return how many.

        With `repository_id` only that repository's entries are checked.
        """
        current = self._store.get()
        kept = tuple(
            e for e in current
            if (repository_id is not None and e.repository_id != repository_id) or not is_fingerprinted(e.file_id)
        )
        removed = len(current) - len(kept)
        if removed:
            logger.info(f"Removed {removed} already fingerprinted file(s) from the queue")
            self._commit(kept)
        return removed


__all__ = ["QueueEntry", "QueuePersistence", "FingerprintQueue", "SCHEMA_VERSION"]
