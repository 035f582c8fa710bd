import asyncio

import pytest
from watchdog.events import FileCreatedEvent, FileDeletedEvent, FileModifiedEvent, FileMovedEvent

from repostudio.backend import EVENT_ADDED, EVENT_MODIFIED, EVENT_MOVED, EVENT_REMOVED, LocalBackend
from repostudio.watcher import FolderEventHandler, FolderWatcher


@pytest.fixture
def backend(tmp_path):
    return LocalBackend.open(tmp_path / "studio.db", audio_extensions=["wav"])


async def _drain(predicate, rounds=100):
    for _ in range(rounds):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


def test_watch_rejects_missing_and_repeated_folders(backend, tmp_path):
    async def scenario():
        watcher = FolderWatcher(backend)
        results = (
            watcher.watch("r", str(tmp_path)),
            watcher.watch("r", str(tmp_path)),
            watcher.watch("r", str(tmp_path / "missing")),
        )
        folders = watcher.folders
        watcher.stop()
        return results, folders, watcher.folders

    results, folders, after_stop = asyncio.run(scenario())
    assert results == (True, False, False)
    assert folders == (str(tmp_path),)
    assert after_stop == ()


def test_events_are_forwarded_to_backend_listeners(backend, tmp_path):
    events = []
    backend.subscribe(events.append)

    async def scenario():
        watcher = FolderWatcher(backend)
        handler = FolderEventHandler(watcher, "r")
        handler.dispatch(FileDeletedEvent(str(tmp_path / "a.wav")))
        handler.dispatch(FileMovedEvent(str(tmp_path / "b.wav"), str(tmp_path / "c.wav")))
        handler.dispatch(FileModifiedEvent(str(tmp_path / "d.wav")))
        handler.dispatch(FileDeletedEvent(str(tmp_path / "d_converted.wav")))
        await _drain(lambda: len(events) >= 3)

    asyncio.run(scenario())
    assert [(e.kind, e.repository_id) for e in events] == [
        (EVENT_REMOVED, "r"),
        (EVENT_MOVED, "r"),
        (EVENT_MODIFIED, "r"),
    ]
    assert events[1].dest_path == str(tmp_path / "c.wav")


def test_created_audio_files_are_added(backend, tmp_path):
    (tmp_path / "new.wav").write_bytes(b"new")
    (tmp_path / "notes.txt").write_text("skip")
    events = []
    backend.subscribe(events.append)

    async def scenario():
        repo = await backend.create_repository("Drums")
        handler = FolderEventHandler(FolderWatcher(backend), repo.id)
        handler.dispatch(FileCreatedEvent(str(tmp_path / "notes.txt")))
        handler.dispatch(FileCreatedEvent(str(tmp_path / "new.wav")))
        await _drain(lambda: events)
        return await backend.list_files(repo.id)

    files = asyncio.run(scenario())
    assert [f.name for f in files] == ["new.wav"]
    assert [e.kind for e in events] == [EVENT_ADDED]
