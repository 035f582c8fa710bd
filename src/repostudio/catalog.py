"""Cached file listing for the active repository and its reload policy.

`FileCatalog` owns the full file set and the current selection. `CatalogSync`
refreshes it from the backend on repository switches, explicit refreshes and
file-system events, and re-intersects the selection with whatever the backend
returns.
"""
from __future__ import annotations

import asyncio
import functools
import locale
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence, Set, Tuple

from loguru import logger

from .logging import log_event, truncate
from .models import FileRecord, parse_interval
from .selection import EMPTY, SelectionState
from .store import Store

# Placeholder set on a cached record after a successful compute; the next
# reload replaces it with the backend's real token.
PENDING_FINGERPRINT = "pending"


class SortKey(str, Enum):
    ALPHABETICAL = "alphabetical"
    DATE_CREATED = "dateCreated"
    DATE_MODIFIED = "dateModified"
    ENCODING = "encoding"


@dataclass(frozen=True)
class ViewOptions:
    query: str = ""
    sort_key: SortKey = SortKey.ALPHABETICAL
    descending: bool = False


def _locale_cmp(a: str, b: str) -> int:
    return locale.strcoll(a or "", b or "")


def _compare(sort_key: SortKey, a: FileRecord, b: FileRecord) -> int:
    if sort_key is SortKey.ALPHABETICAL:
        return _locale_cmp(a.name, b.name)
    if sort_key is SortKey.ENCODING:
        return _locale_cmp(a.encoding, b.encoding)
    if sort_key is SortKey.DATE_CREATED:
        return parse_interval(a.date_created) - parse_interval(b.date_created)
    if sort_key is SortKey.DATE_MODIFIED:
        return parse_interval(a.date_modified) - parse_interval(b.date_modified)
    return 0


def filter_files(files: Iterable[FileRecord], query: str) -> List[FileRecord]:
    """Case-insensitive substring match over name and tags."""
    q = (query or "").lower()
    if not q:
        return list(files)
    return [f for f in files if q in f.name.lower() or q in (f.tags or "").lower()]


def sort_files(files: Iterable[FileRecord], sort_key: SortKey, descending: bool = False) -> List[FileRecord]:
    # ties keep input order in both directions
    sign = -1 if descending else 1
    return sorted(files, key=functools.cmp_to_key(lambda a, b: sign * _compare(sort_key, a, b)))


def reconcile(previous: SelectionState, new_files: Sequence[FileRecord]) -> SelectionState:
    """Keep the ids of `previous` that are still listed in `new_files`, in their previous order.

    Indices are left for the caller's next action. An unchanged selection is
    returned as is, so reconciling twice against the same listing is a no-op.
    """
    listed: Set[str] = {f.id for f in new_files}
    kept = tuple(i for i in previous.selected if i in listed)
    if kept == previous.selected:
        return previous
    return SelectionState(kept, previous.anchor_index, previous.last_index)


class FileCatalog:
    def __init__(self) -> None:
        self.all_files: Store[Tuple[FileRecord, ...]] = Store((), name="all_files")
        self.selection: Store[SelectionState] = Store(EMPTY, name="selection")
        self.view: Store[ViewOptions] = Store(ViewOptions(), name="view")

    # -- reads ---------------------------------------------------------------

    def files(self) -> Tuple[FileRecord, ...]:
        return self.all_files.get()

    def get(self, file_id: str) -> Optional[FileRecord]:
        for f in self.all_files.get():
            if f.id == file_id:
                return f
        return None

    def has_fingerprint(self, file_id: str) -> bool:
        f = self.get(file_id)
        return f is not None and not f.needs_fingerprint

    def selected_files(self) -> List[FileRecord]:
        by_id = {f.id: f for f in self.all_files.get()}
        return [by_id[i] for i in self.selection.get().selected if i in by_id]

    def visible_files(self) -> List[FileRecord]:
        opts = self.view.get()
        return sort_files(filter_files(self.all_files.get(), opts.query), opts.sort_key, opts.descending)

    def visible_ids(self) -> List[str]:
        return [f.id for f in self.visible_files()]

    # -- writes --------------------------------------------------------------

    def replace_all(self, files: Iterable[FileRecord]) -> None:
        """Install a fresh listing and intersect the current selection with it."""
        fresh = tuple(files)
        self.all_files.set(fresh)
        # Read the selection now, not before the load started
        self.selection.update(lambda s: reconcile(s, fresh))

    def set_selection(self, state: SelectionState) -> None:
        self.selection.set(reconcile(state, self.all_files.get()))

    def set_selected_ids(self, ids: Iterable[str]) -> None:
        wanted: Set[str] = set(ids)
        ordered = tuple(f.id for f in self.all_files.get() if f.id in wanted)
        self.selection.update(lambda s: SelectionState(ordered, s.anchor_index, s.last_index))

    def set_view(self, **changes) -> None:
        current = self.view.get()
        self.view.set(ViewOptions(
            query=changes.get("query", current.query),
            sort_key=SortKey(changes.get("sort_key", current.sort_key)),
            descending=changes.get("descending", current.descending),
        ))

    def clear(self) -> None:
        self.all_files.set(())
        self.selection.set(EMPTY)

    def mark_fingerprinted(self, file_id: str, token: Optional[str] = None) -> bool:
        value = token or PENDING_FINGERPRINT
        hit = False

        def mark(files: Tuple[FileRecord, ...]) -> Tuple[FileRecord, ...]:
            nonlocal hit
            out = []
            for f in files:
                if f.id == file_id and f.needs_fingerprint:
                    hit = True
                    f = f.with_fingerprint(value)
                out.append(f)
            return tuple(out)

        self.all_files.update(mark)
        return hit


class CatalogSync:
    """Reload policy for a `FileCatalog`.

    - Every load is numbered; only the most recent load for the still-active
      repository may write its result.
    - File-system events within `debounce_seconds` collapse into one reload.
    - While `is_busy()` (a fingerprint run is active) reloads are deferred and
      performed by `resume()`.
    """

    def __init__(
        self,
        backend,
        catalog: FileCatalog,
        *,
        is_busy: Callable[[], bool] = lambda: False,
        debounce_seconds: float = 0.05,
    ) -> None:
        self._backend = backend
        self._catalog = catalog
        self._is_busy = is_busy
        self._debounce = debounce_seconds
        self._repository_id: Optional[str] = None
        self._seq = 0
        self._deferred = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def repository_id(self) -> Optional[str]:
        return self._repository_id

    @property
    def reload_deferred(self) -> bool:
        return self._deferred

    async def load(self) -> bool:
        """Refresh and list the active repository; return True if applied.

        Failures clear the catalog and are logged, never raised.
        """
        repo = self._repository_id
        if repo is None:
            self._catalog.clear()
            return False
        self._seq += 1
        seq = self._seq
        try:
            await self._backend.refresh_files(repo)
            files = await self._backend.list_files(repo)
        except Exception as e:
            # any backend failure, sqlite errors included, empties the view
            if not self._is_current(seq, repo):
                return False
            self._catalog.clear()
            reason = truncate(str(e), max_len=500)
            log_event("catalog_load_failed", msg=f"Failed to load files for repository {repo}: {reason}",
                      repository_id=repo, level="ERROR")
            return False
        if not self._is_current(seq, repo):
            logger.debug(f"Discarding stale listing for repository {repo}")
            return False
        self._catalog.replace_all(files)
        log_event("catalog_loaded", msg=f"Loaded {len(files)} file(s)", repository_id=repo,
                  selected=len(self._catalog.selection.get()), level="DEBUG")
        return True

    def _is_current(self, seq: int, repo: str) -> bool:
        return seq == self._seq and repo == self._repository_id

    async def switch_repository(self, repository_id: Optional[str]) -> bool:
        """Activate another repository, invalidating the cached list and selection."""
        if repository_id == self._repository_id and self._catalog.files():
            return await self.refresh()
        self._repository_id = repository_id
        self._seq += 1  # any in-flight load now belongs to the old repository
        self._catalog.clear()
        if repository_id is None:
            return False
        if self._is_busy():
            logger.info(f"Fingerprinting in progress; loading {repository_id} when it finishes")
            self._deferred = True
            return False
        return await self.load()

    async def refresh(self) -> bool:
        if self._is_busy():
            self._deferred = True
            return False
        return await self.load()

    def request_reload(self) -> None:
        """Schedule one coalesced reload; safe to call in bursts."""
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self._debounce, self._fire)

    def on_file_event(self, event) -> None:
        repo = getattr(event, "repository_id", None)
        if repo is not None and repo != self._repository_id:
            return
        logger.debug(f"File system event ({getattr(event, 'kind', '?')}) triggered refresh")
        self.request_reload()

    def _fire(self) -> None:
        self._timer = None
        if self._is_busy():
            self._deferred = True
            return
        self._spawn()

    def resume(self, reload: bool = False) -> None:
        """Called when fingerprinting goes idle; runs any deferred reload."""
        if not (reload or self._deferred):
            return
        self._deferred = False
        self._spawn()

    def _spawn(self) -> None:
        task = asyncio.get_running_loop().create_task(self.load())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_settled(self) -> None:
        """Wait until pending debounce timers and reload tasks have finished."""
        while self._timer is not None or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(self._debounce / 2 or 0.001)

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for t in list(self._tasks):
            t.cancel()


__all__ = [
    "SortKey",
    "ViewOptions",
    "FileCatalog",
    "CatalogSync",
    "PENDING_FINGERPRINT",
    "filter_files",
    "sort_files",
    "reconcile",
]
