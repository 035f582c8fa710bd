import asyncio

import pytest

from repostudio.app import StudioApp
from repostudio.backend import FileEvent
from repostudio.catalog import PENDING_FINGERPRINT
from repostudio.config import StudioSettings
from repostudio.errors import BackendError
from repostudio.fingerprint_queue import FingerprintQueue, QueueEntry, QueuePersistence
from repostudio.processor import ProcessorState
from repostudio.selection import Modifiers, SelectionAction

from fakes import FakeBackend, rec

CTRL = Modifiers(ctrl=True)
SHIFT = Modifiers(shift=True)


def _settings(**kw):
    kw.setdefault("done_hold_seconds", 0.01)
    kw.setdefault("cancel_reset_seconds", 0.01)
    kw.setdefault("reload_debounce_seconds", 0.01)
    return StudioSettings(**kw)


def _catalog():
    return {"r1": [rec("A"), rec("B", "x"), rec("C")]}


def test_ctrl_click_queues_only_unfingerprinted_files():
    async def scenario():
        backend = FakeBackend(_catalog())
        async with StudioApp(backend, _settings(), queue=FingerprintQueue()) as app:
            await app.activate("r1")
            app.click(0, CTRL)
            app.click(2, CTRL)
            queued_after_ac = app.queue.ids()
            app.click(1, CTRL)
            queued_after_b = app.queue.ids()
            selected = app.catalog.selection.get().selected
            await app.wait_idle()
            return backend, app, queued_after_ac, queued_after_b, selected

    backend, app, after_ac, after_b, selected = asyncio.run(scenario())
    assert after_ac == ["A", "C"]
    assert after_b == ["A", "C"]
    assert selected == ("A", "C", "B")
    assert backend.calls == ["A", "C"]
    # the post-run reload replaced the placeholders with the backend's tokens
    assert app.catalog.get("A").audio_fingerprint == "fp-A"
    assert app.catalog.get("C").audio_fingerprint == "fp-C"
    assert app.catalog.selection.get().selected == ("A", "C", "B")


def test_selection_batch_starts_one_run():
    async def scenario():
        backend = FakeBackend(_catalog())
        async with StudioApp(backend, _settings(), queue=FingerprintQueue()) as app:
            await app.activate("r1")
            totals = []
            app.processor.progress.subscribe(lambda p: totals.append(p.total) if p.completed == 0 else None)
            app.select(SelectionAction.SELECT_ALL)
            await app.wait_idle()
            return totals

    assert asyncio.run(scenario()) == [2]


def test_auto_fingerprint_disabled_leaves_queue_empty():
    async def scenario():
        backend = FakeBackend(_catalog())
        async with StudioApp(backend, _settings(auto_fingerprint=False), queue=FingerprintQueue()) as app:
            await app.activate("r1")
            app.click(0)
            app.click(2, SHIFT)
            return backend, app.queue.ids(), app.catalog.selection.get().selected

    backend, queued, selected = asyncio.run(scenario())
    assert queued == []
    assert selected == ("A", "B", "C")
    assert backend.calls == []


def test_inaccessible_files_are_not_queued():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A", accessible=False), rec("B")]})
        async with StudioApp(backend, _settings(), queue=FingerprintQueue()) as app:
            await app.activate("r1")
            app.select(SelectionAction.SELECT_ALL)
            queued = app.queue.ids()
            await app.wait_idle()
            return queued

    assert asyncio.run(scenario()) == ["B"]


def test_cancel_after_first_file():
    async def scenario():
        backend = FakeBackend(_catalog())
        async with StudioApp(backend, _settings(), queue=FingerprintQueue()) as app:
            await app.activate("r1")

            def on_progress(p):
                if p.completed == 1 and not p.cancelled:
                    app.cancel()

            app.processor.progress.subscribe(on_progress)
            app.click(0, CTRL)
            app.click(2, CTRL)
            await app.wait_idle()
            return backend, app

    backend, app = asyncio.run(scenario())
    assert backend.calls == ["A"]
    assert len(app.queue) == 0
    progress = app.processor.progress.get()
    assert (progress.completed, progress.total) == (1, 2)
    assert app.catalog.get("C").audio_fingerprint is None


def test_process_repository_refuses_while_queue_busy():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A"), rec("B", "x"), rec("C"), rec("D", accessible=False)]})
        async with StudioApp(backend, _settings(), queue=FingerprintQueue()) as app:
            await app.activate("r1")
            first = app.process_repository()
            second = app.process_repository()
            await app.wait_idle()
            third = app.process_repository()
            return backend, first, second, third

    backend, first, second, third = asyncio.run(scenario())
    assert first == 2
    assert second == 0
    assert third == 0
    assert backend.calls == ["A", "C"]


def test_restored_queue_is_pruned_on_activate(tmp_path):
    path = tmp_path / "queue.json"
    QueuePersistence(path).save([QueueEntry("B", "r1"), QueueEntry("C", "r1")])

    async def scenario():
        backend = FakeBackend(_catalog())
        async with StudioApp(backend, _settings(queue_path=str(path))) as app:
            await app.activate("r1")
            await app.wait_idle()
            return backend

    backend = asyncio.run(scenario())
    assert backend.calls == ["C"]
    assert QueuePersistence(path).load() == []


def test_restored_entries_of_other_repositories_wait_for_them(tmp_path):
    path = tmp_path / "queue.json"
    QueuePersistence(path).save([QueueEntry("X", "r2"), QueueEntry("C", "r1")])

    async def scenario():
        backend = FakeBackend({"r1": [rec("A", "x"), rec("C")], "r2": [rec("X")]})
        async with StudioApp(backend, _settings(queue_path=str(path))) as app:
            await app.activate("r1")
            await app.wait_idle()
            calls_in_r1 = list(backend.calls)
            left_in_r1 = [(e.file_id, e.repository_id) for e in QueuePersistence(path).load()]
            await app.activate("r2")
            await app.wait_idle()
            return backend, calls_in_r1, left_in_r1

    backend, calls_in_r1, left_in_r1 = asyncio.run(scenario())
    assert calls_in_r1 == ["C"]
    assert left_in_r1 == [("X", "r2")]
    assert backend.calls == ["C", "X"]
    assert backend.files["r2"][0].audio_fingerprint == "fp-X"
    assert QueuePersistence(path).load() == []


def test_file_event_reloads_catalog_and_keeps_selection():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A", "x"), rec("C", "y")]})
        async with StudioApp(backend, _settings(), queue=FingerprintQueue()) as app:
            await app.activate("r1")
            app.select(SelectionAction.SELECT_ALL)
            backend.files["r1"] = [rec("B", "z"), rec("C", "y")]
            for _ in range(3):
                backend.emit(FileEvent("removed", "r1", "/music/A.wav"))
            calls_before = backend.list_calls
            await app.wait_idle()
            return app, backend.list_calls - calls_before

    app, reloads = asyncio.run(scenario())
    assert reloads == 1
    assert [f.id for f in app.catalog.files()] == ["B", "C"]
    assert app.catalog.selection.get().selected == ("C",)


def test_mark_fingerprinted_uses_placeholder_without_token():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A")]})
        async with StudioApp(backend, _settings(), queue=FingerprintQueue()) as app:
            await app.activate("r1")
            return app.catalog.mark_fingerprinted("A"), app.catalog.get("A").audio_fingerprint

    assert asyncio.run(scenario()) == (True, PENDING_FINGERPRINT)


def test_bundle_selected_requires_selection():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A", "x"), rec("B", "y")]})
        async with StudioApp(backend, _settings(), queue=FingerprintQueue()) as app:
            await app.activate("r1")
            with pytest.raises(BackendError):
                await app.bundle_selected()
            app.click(1)
            return await app.bundle_selected()

    assert asyncio.run(scenario()) == b"zip:/music/B.wav"


def test_switching_repository_clears_selection():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A", "x")], "r2": [rec("Z", "z")]})
        async with StudioApp(backend, _settings(), queue=FingerprintQueue()) as app:
            await app.activate("r1")
            app.click(0)
            await app.activate("r2")
            return app

    app = asyncio.run(scenario())
    assert app.repository_id == "r2"
    assert [f.id for f in app.catalog.files()] == ["Z"]
    assert app.catalog.selection.get().selected == ()
    assert app.processor.current_state is ProcessorState.IDLE


def test_edit_metadata_applies_to_selection_and_reloads():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A", "x"), rec("B", "y"), rec("C", "z")]})
        async with StudioApp(backend, _settings(), queue=FingerprintQueue()) as app:
            await app.activate("r1")
            with pytest.raises(BackendError):
                await app.edit_metadata({"meta_album": "Kit"})
            app.click(0)
            app.click(2, CTRL)
            calls_before = backend.list_calls
            count = await app.edit_metadata({"meta_album": "Kit"})
            await app.wait_idle()
            return app, count, backend.list_calls - calls_before

    app, count, reloads = asyncio.run(scenario())
    assert count == 2
    assert reloads == 1
    assert [app.catalog.get(i).meta_album for i in ("A", "B", "C")] == ["Kit", None, "Kit"]
    assert app.catalog.selection.get().selected == ("A", "C")
