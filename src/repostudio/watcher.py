"""Watch tracked folders and feed file-system changes into the backend.

watchdog delivers events on its observer thread; they are handed to the
asyncio loop with ``call_soon_threadsafe`` and never touch the catalog
directly.
"""
from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

from loguru import logger
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .backend import EVENT_MODIFIED, EVENT_MOVED, EVENT_REMOVED, FileEvent, LocalBackend
from .errors import BackendError
from .scanner import is_audio

# Files produced by our own conversions land next to their sources
_IGNORED_SUFFIX = "_converted"


class FolderEventHandler(FileSystemEventHandler):
    """Routes events below one tracked folder to its repository."""

    def __init__(self, watcher: "FolderWatcher", repository_id: str) -> None:
        super().__init__()
        self.watcher = watcher
        self.repository_id = repository_id

    def dispatch(self, event):
        if event.is_directory:
            return
        src = os.fsdecode(event.src_path)
        if Path(src).stem.endswith(_IGNORED_SUFFIX):
            logger.debug(f"Watcher: ignoring generated file {src}")
            return
        if event.event_type == "created":
            self.watcher.post_new_file(self.repository_id, src)
        elif event.event_type == "deleted":
            self.watcher.post_event(FileEvent(EVENT_REMOVED, self.repository_id, src))
        elif event.event_type == "moved":
            dest = os.fsdecode(event.dest_path)
            self.watcher.post_event(FileEvent(EVENT_MOVED, self.repository_id, src, dest))
        elif event.event_type == "modified":
            self.watcher.post_event(FileEvent(EVENT_MODIFIED, self.repository_id, src))


class FolderWatcher:
    """One recursive watchdog observer over every tracked folder."""

    def __init__(self, backend: LocalBackend, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.backend = backend
        self.loop = loop or asyncio.get_running_loop()
        self.observer = Observer()
        self._watches: Dict[str, object] = {}

    @property
    def folders(self) -> Tuple[str, ...]:
        return tuple(self._watches)

    def watch(self, repository_id: str, folder: str) -> bool:
        """Start watching `folder` for `repository_id`; False if already watched or missing."""
        if folder in self._watches:
            logger.debug(f"Already watching folder: {folder}")
            return False
        if not os.path.isdir(folder):
            logger.warning(f"Watch path does not exist: {folder}")
            return False
        handler = FolderEventHandler(self, repository_id)
        self._watches[folder] = self.observer.schedule(handler, path=folder, recursive=True)
        logger.info(f"Watching {folder} for changes...")
        return True

    def watch_all(self, tracked: Iterable[Tuple[str, str]]) -> int:
        return sum(1 for repo_id, folder in tracked if self.watch(repo_id, folder))

    def start(self) -> None:
        if not self.observer.is_alive():
            self.observer.start()
            logger.info("Folder watcher started.")

    def stop(self) -> None:
        if self.observer.is_alive():
            self.observer.stop()
            self.observer.join(timeout=1.0)
            if self.observer.is_alive():
                logger.warning("Folder watcher thread did not stop gracefully.")
        self._watches.clear()
        logger.info("Folder watcher stopped.")

    # -- observer thread -> loop ----------------------------------------------

    def post_event(self, event: FileEvent) -> None:
        self.loop.call_soon_threadsafe(self.backend.emit, event)

    def post_new_file(self, repository_id: str, path: str) -> None:
        if not is_audio(Path(path), self.backend.audio_extensions):
            return
        asyncio.run_coroutine_threadsafe(self._add_file(repository_id, path), self.loop)

    async def _add_file(self, repository_id: str, path: str) -> None:
        try:
            await self.backend.add_file(repository_id, path)
        except BackendError as e:
            logger.error(f"Error adding watched file {path}: {e}")
        else:
            logger.info(f"New file detected: {path}")


__all__ = ["FolderWatcher", "FolderEventHandler"]
