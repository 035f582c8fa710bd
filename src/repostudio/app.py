"""Application context wiring the catalog, selection, queue and processor.

One `StudioApp` owns exactly one catalog, queue and processor. Queue changes
schedule a processor kick on the loop, so a batch of enqueues made in one
synchronous step starts a single run.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional

from loguru import logger

from .backend import Backend
from .catalog import CatalogSync, FileCatalog
from .config import StudioSettings
from .errors import BackendError
from .fingerprint_queue import FingerprintQueue, QueuePersistence
from .models import FileRecord
from .processor import ProcessorState, QueueProcessor
from .selection import Modifiers, SelectionAction, SelectionState, added_ids, apply


class StudioApp:
    def __init__(
        self,
        backend: Backend,
        settings: Optional[StudioSettings] = None,
        *,
        queue: Optional[FingerprintQueue] = None,
    ) -> None:
        self.backend = backend
        self.settings = settings or StudioSettings()
        self.catalog = FileCatalog()
        if queue is None:
            queue = FingerprintQueue.restore(QueuePersistence(self.settings.queue_file))
        self.queue = queue
        self.sync = CatalogSync(
            backend,
            self.catalog,
            is_busy=lambda: self.processor.is_busy,
            debounce_seconds=self.settings.reload_debounce_seconds,
        )
        self.processor = QueueProcessor(
            backend,
            self.queue,
            repository_id=lambda: self.sync.repository_id,
            on_fingerprinted=self.catalog.mark_fingerprinted,
            on_idle=self.sync.resume,
            done_hold_seconds=self.settings.done_hold_seconds,
            cancel_reset_seconds=self.settings.cancel_reset_seconds,
            fingerprint_timeout=self.settings.fingerprint_timeout,
        )
        self._kick_pending = False
        self._unsubscribe: List[Callable[[], None]] = [
            self.queue.subscribe(self._on_queue_changed),
            backend.subscribe(self.sync.on_file_event),
        ]

    async def __aenter__(self) -> "StudioApp":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def repository_id(self) -> Optional[str]:
        return self.sync.repository_id

    # -- processor wiring ----------------------------------------------------

    def _on_queue_changed(self, entries) -> None:
        if not entries or self._kick_pending:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop yet; activate() kicks
        self._kick_pending = True
        loop.call_soon(self._kick)

    def _kick(self) -> bool:
        self._kick_pending = False
        if self.processor.is_busy:
            return False
        if self.repository_id is not None:
            self.queue.prune(self.catalog.has_fingerprint, self.repository_id)
        return self.processor.kick()

    # -- repository ----------------------------------------------------------

    async def activate(self, repository_id: Optional[str]) -> bool:
        """Switch to `repository_id`, drop its queue entries already fingerprinted, resume its work."""
        loaded = await self.sync.switch_repository(repository_id)
        if repository_id is not None:
            self._kick()
        return loaded

    async def refresh(self) -> bool:
        return await self.sync.refresh()

    # -- selection -----------------------------------------------------------

    def select(
        self,
        action: SelectionAction,
        target: Optional[int] = None,
        *,
        shift: bool = False,
    ) -> SelectionState:
        """Apply a selection action over the visible list and queue newly selected files."""
        before = self.catalog.selection.get()
        after = apply(before, self.catalog.visible_ids(), action, target, shift=shift)
        if after == before:
            return before
        self.catalog.set_selection(after)
        self._queue_new_selection(added_ids(before, after))
        return after

    def click(self, index: int, modifiers: Modifiers = Modifiers()) -> SelectionState:
        return self.select(modifiers.click_action(), index)

    def _queue_new_selection(self, ids: List[str]) -> int:
        if not self.settings.auto_fingerprint:
            return 0
        queued = 0
        for file_id in ids:
            f = self.catalog.get(file_id)
            if f is None or not f.needs_fingerprint:
                continue
            if not f.accessible:
                logger.warning(f"Skipping inaccessible file: {f.name}")
                continue
            if self.queue.enqueue(f, self.repository_id):
                queued += 1
        return queued

    # -- bulk actions --------------------------------------------------------

    def process_repository(self) -> int:
        """Queue every accessible file of the active repository lacking a fingerprint.

        Returns the number queued; 0 when a run is already pending or active.
        """
        if self.repository_id is None:
            return 0
        if self.queue.pending(self.repository_id) or self.processor.is_busy:
            logger.warning("Fingerprint queue is not empty; wait for it to finish or cancel it.")
            return 0
        pending: List[FileRecord] = [f for f in self.catalog.files() if f.needs_fingerprint and f.accessible]
        skipped = sum(1 for f in self.catalog.files() if f.needs_fingerprint and not f.accessible)
        if skipped:
            logger.warning(f"Skipping {skipped} inaccessible file(s)")
        for f in pending:
            self.queue.enqueue(f, self.repository_id)
        if not pending:
            logger.info("All files already have fingerprints.")
        return len(pending)

    def cancel(self) -> None:
        self.processor.cancel()

    async def edit_metadata(self, changes: Dict[str, Optional[str]], file_ids: Optional[List[str]] = None) -> int:
        """Apply tag `changes` to `file_ids` (default: the selection); return how many were updated.

        One file is the single-file editor, several the bulk editor. The
        catalog reloads afterwards so the new values show up.
        """
        ids = list(file_ids) if file_ids is not None else [f.id for f in self.catalog.selected_files()]
        if not ids:
            raise BackendError("No files selected", repository_id=self.repository_id)
        updated = await self.backend.update_metadata(self.repository_id, ids, changes)
        self.sync.request_reload()
        return len(updated)

    async def bundle_selected(self) -> bytes:
        files = self.catalog.selected_files()
        if not files:
            raise BackendError("No files selected", repository_id=self.repository_id)
        return await self.backend.bundle_files([f.path for f in files])

    # -- lifecycle -----------------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait until no kick is pending, the processor is idle and reloads have settled."""
        while True:
            await asyncio.sleep(0)
            await self.processor.wait_idle()
            await self.sync.wait_settled()
            if not self._kick_pending and self.processor.current_state is ProcessorState.IDLE:
                return

    async def close(self) -> None:
        for unsub in self._unsubscribe:
            unsub()
        self._unsubscribe = []
        self.sync.close()
        await self.processor.shutdown()


__all__ = ["StudioApp"]
