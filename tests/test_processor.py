import asyncio

from repostudio.fingerprint_queue import FingerprintQueue
from repostudio.processor import ProcessorState, ProgressState, QueueProcessor

from fakes import FakeBackend, rec, settle


def _processor(backend, queue, **kw):
    kw.setdefault("done_hold_seconds", 0.01)
    kw.setdefault("cancel_reset_seconds", 0.01)
    return QueueProcessor(backend, queue, repository_id=lambda: "r1", **kw)


def test_run_fingerprints_queue_head_first():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A"), rec("B")]})
        q = FingerprintQueue()
        done = []
        p = _processor(backend, q, on_fingerprinted=lambda fid, tok: done.append((fid, tok)))
        q.enqueue(rec("A"), "r1")
        q.enqueue(rec("B"), "r1")
        assert p.kick()
        assert p.current_state is ProcessorState.RUNNING
        assert p.progress.get() == ProgressState(completed=0, total=2)
        await settle(p)
        return backend, q, p, done

    backend, q, p, done = asyncio.run(scenario())
    assert backend.calls == ["A", "B"]
    assert len(q) == 0
    assert done == [("A", "fp-A"), ("B", "fp-B")]
    assert p.progress.get().completed == 2


def test_kick_is_noop_without_work_or_repository():
    async def scenario():
        backend = FakeBackend()
        q = FingerprintQueue()
        p = _processor(backend, q)
        empty = p.kick()
        q.enqueue(rec("A"), "r1")
        no_repo = QueueProcessor(backend, q, repository_id=lambda: None).kick()
        return empty, no_repo

    assert asyncio.run(scenario()) == (False, False)


def test_failed_file_is_dequeued_and_counted():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A"), rec("B"), rec("C")]})
        backend.fail.add("B")
        q = FingerprintQueue()
        p = _processor(backend, q)
        for fid in "ABC":
            q.enqueue(rec(fid), "r1")
        p.kick()
        await settle(p)
        return backend, q, p

    backend, q, p = asyncio.run(scenario())
    assert backend.calls == ["A", "B", "C"]
    assert len(q) == 0
    assert p.progress.get().completed == 3
    assert p.failed_ids == {"B"}


def test_timeout_counts_as_failure():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A"), rec("B")]})
        backend.gates["A"] = asyncio.Event()  # never released
        q = FingerprintQueue()
        p = _processor(backend, q, fingerprint_timeout=0.02)
        q.enqueue(rec("A"), "r1")
        q.enqueue(rec("B"), "r1")
        p.kick()
        await settle(p)
        return backend, p

    backend, p = asyncio.run(scenario())
    assert backend.calls == ["A", "B"]
    assert p.failed_ids == {"A"}


def test_cancel_between_files_stops_the_run():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A"), rec("C")]})
        q = FingerprintQueue()
        p = _processor(backend, q)

        def on_progress(progress):
            if progress.completed == 1 and not progress.cancelled:
                unsubscribe()
                p.cancel()

        unsubscribe = p.progress.subscribe(on_progress)
        q.enqueue(rec("A"), "r1")
        q.enqueue(rec("C"), "r1")
        p.kick()
        await settle(p)
        return backend, q, p

    backend, q, p = asyncio.run(scenario())
    assert backend.calls == ["A"]
    assert len(q) == 0
    assert p.progress.get().completed == 1
    assert p.progress.get().total == 2
    assert not p.cancelled  # flag reset after the cancel window
    assert [f.audio_fingerprint for f in backend.files["r1"]] == ["fp-A", None]


def test_cancel_while_the_flag_resets_keeps_the_window_open():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A"), rec("B")]})
        q = FingerprintQueue()
        p = _processor(backend, q)
        states_at_recancel = []

        def on_progress(progress):
            if not progress.cancelled and p.current_state is ProcessorState.CANCELLING and not states_at_recancel:
                states_at_recancel.append(p.current_state)
                p.cancel()
                q.enqueue(rec("B"), "r1")

        p.progress.subscribe(on_progress)
        q.enqueue(rec("A"), "r1")
        p.cancel()
        await settle(p)
        return backend, q, p, states_at_recancel

    backend, q, p, states_at_recancel = asyncio.run(scenario())
    assert states_at_recancel == [ProcessorState.CANCELLING]
    # B was queued inside the second cancel window and runs once it closes
    assert backend.calls == ["B"]
    assert len(q) == 0
    assert not p.cancelled
    assert p.current_state is ProcessorState.IDLE


def test_enqueue_during_cancel_starts_a_fresh_run():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A"), rec("B"), rec("D")]})
        backend.gates["A"] = asyncio.Event()
        q = FingerprintQueue()
        p = _processor(backend, q)
        q.enqueue(rec("A"), "r1")
        q.enqueue(rec("B"), "r1")
        p.kick()
        await asyncio.sleep(0)
        p.cancel()
        assert p.current_state is ProcessorState.CANCELLING
        q.enqueue(rec("D"), "r1")
        refused = p.kick()
        backend.gates["A"].set()
        await settle(p)
        return backend, q, p, refused

    backend, q, p, refused = asyncio.run(scenario())
    assert refused is False
    assert backend.calls == ["A", "D"]
    assert len(q) == 0
    assert p.progress.get() == ProgressState(completed=1, total=1)


def test_late_enqueue_is_not_counted_in_the_current_run():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A"), rec("B")]})
        backend.gates["A"] = asyncio.Event()
        q = FingerprintQueue()
        p = _processor(backend, q)
        totals = []
        p.progress.subscribe(lambda pr: totals.append(pr.total) if pr.completed == 0 else None)
        q.enqueue(rec("A"), "r1")
        p.kick()
        await asyncio.sleep(0)
        q.enqueue(rec("B"), "r1")
        assert p.progress.get().total == 1
        backend.gates["A"].set()
        await settle(p)
        return backend, totals

    backend, totals = asyncio.run(scenario())
    assert backend.calls == ["A", "B"]
    assert totals == [1, 1]


def test_done_state_is_held_then_idle_requests_reload():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A")]})
        q = FingerprintQueue()
        idle_calls = []
        p = _processor(backend, q, done_hold_seconds=0.05, on_idle=idle_calls.append)
        states = []
        p.state.subscribe(states.append)
        messages = []
        p.state.subscribe(lambda s: messages.append(p.progress.get().message(s)))
        q.enqueue(rec("A"), "r1")
        p.kick()
        await settle(p)
        return states, messages, idle_calls

    states, messages, idle_calls = asyncio.run(scenario())
    assert states == [ProcessorState.RUNNING, ProcessorState.DRAINING, ProcessorState.IDLE]
    assert messages == ["Fingerprinting 1 File(s)...", "Done!", ""]
    assert idle_calls == [True]


def test_enqueue_during_done_hold_restarts_immediately():
    async def scenario():
        backend = FakeBackend({"r1": [rec("A"), rec("B")]})
        q = FingerprintQueue()
        p = _processor(backend, q, done_hold_seconds=10)
        draining = asyncio.Event()
        states = []

        def watch(s):
            states.append(s)
            if s is ProcessorState.DRAINING:
                draining.set()

        p.state.subscribe(watch)
        q.enqueue(rec("A"), "r1")
        p.kick()
        await draining.wait()
        q.enqueue(rec("B"), "r1")
        assert p.kick()
        draining.clear()
        await draining.wait()
        await p.shutdown()
        return backend, states

    backend, states = asyncio.run(scenario())
    assert backend.calls == ["A", "B"]
    assert states[:4] == [
        ProcessorState.RUNNING,
        ProcessorState.DRAINING,
        ProcessorState.RUNNING,
        ProcessorState.DRAINING,
    ]


def test_progress_fraction():
    assert ProgressState(completed=1, total=4).fraction == 0.25
    assert ProgressState().fraction == 0.0
