"""Sequential fingerprint queue processor.

State machine::

    IDLE -> RUNNING -> DRAINING ("Done" hold) -> IDLE
                    \\-> CANCELLING -> IDLE

- A run starts when the active repository has queued entries, no run is
  active and the cancellation flag is clear. ``total`` is the number of those
  entries at that instant; entries of other repositories are left waiting.
- Entries are processed strictly one at a time, head first. Success and
  failure both dequeue the entry and count towards ``completed``.
- Files queued during a run are not part of its ``total``; they start the
  next run as soon as the current one ends.
- ``cancel()`` is soft: the call in flight finishes, nothing after it starts.
  The queue is cleared at once and the flag resets after
  ``cancel_reset_seconds``.
- After the last run the DRAINING state is held for ``done_hold_seconds``,
  then IDLE is entered and ``on_idle(True)`` asks for a catalog reload.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional, Set

from loguru import logger

from .fingerprint_queue import FingerprintQueue, QueueEntry
from .logging import bind_run, log_event, truncate
from .store import Store


class ProcessorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    CANCELLING = "cancelling"


@dataclass(frozen=True)
class ProgressState:
    completed: int = 0
    total: int = 0
    cancelled: bool = False

    @property
    def fraction(self) -> float:
        return self.completed / self.total if self.total else 0.0

    def message(self, state: ProcessorState) -> str:
        if state is ProcessorState.DRAINING:
            return "Done!"
        if state is ProcessorState.RUNNING:
            remaining = self.total - self.completed
            return f"Fingerprinting {remaining} File(s)..."
        return ""


class QueueProcessor:
    def __init__(
        self,
        backend,
        queue: FingerprintQueue,
        *,
        repository_id: Callable[[], Optional[str]],
        on_fingerprinted: Optional[Callable[[str, Optional[str]], None]] = None,
        on_idle: Optional[Callable[[bool], None]] = None,
        done_hold_seconds: float = 2.0,
        cancel_reset_seconds: float = 0.1,
        fingerprint_timeout: Optional[float] = None,
    ) -> None:
        self._backend = backend
        self._queue = queue
        self._repository_id = repository_id
        self._on_fingerprinted = on_fingerprinted
        self._on_idle = on_idle
        self._done_hold = done_hold_seconds
        self._cancel_reset = cancel_reset_seconds
        self._timeout = fingerprint_timeout

        self.state: Store[ProcessorState] = Store(ProcessorState.IDLE, name="processor_state")
        self.progress: Store[ProgressState] = Store(ProgressState(), name="progress")

        self._generation = 0
        self._run_task: Optional[asyncio.Task] = None
        self._done_timer: Optional[asyncio.TimerHandle] = None
        self._reset_timer: Optional[asyncio.TimerHandle] = None
        self._failed: Set[str] = set()
        self._touched = False
        self._idle_event: Optional[asyncio.Event] = None

    # -- observation ---------------------------------------------------------

    @property
    def current_state(self) -> ProcessorState:
        return self.state.get()

    @property
    def is_busy(self) -> bool:
        return self.state.get() in (ProcessorState.RUNNING, ProcessorState.CANCELLING)

    @property
    def cancelled(self) -> bool:
        return self.progress.get().cancelled

    @property
    def failed_ids(self) -> Set[str]:
        """Files whose compute failed in the most recent run."""
        return set(self._failed)

    def _set_state(self, new: ProcessorState) -> None:
        old = self.state.get()
        if old is new:
            return
        logger.debug(f"Fingerprint processor: {old.value} -> {new.value}")
        self.state.set(new)
        if self._idle_event is not None:
            if new is ProcessorState.IDLE:
                self._idle_event.set()
            else:
                self._idle_event.clear()

    # -- control -------------------------------------------------------------

    def kick(self) -> bool:
        """Start a run if there is work and nothing is running; return True if started."""
        state = self.state.get()
        if state not in (ProcessorState.IDLE, ProcessorState.DRAINING):
            return False
        if self.cancelled or not len(self._queue):
            return False
        repository_id = self._repository_id()
        if repository_id is None:
            logger.warning("No repository selected for fingerprinting.")
            return False
        if not self._queue.pending(repository_id):
            return False
        if self._done_timer is not None:
            self._done_timer.cancel()
            self._done_timer = None
        self._start_run(repository_id)
        return True

    def _start_run(self, repository_id: str) -> None:
        total = len(self._queue.pending(repository_id))
        self.progress.set(ProgressState(completed=0, total=total, cancelled=False))
        self._failed = set()
        self._set_state(ProcessorState.RUNNING)
        gen = self._generation
        loop = asyncio.get_running_loop()
        self._run_task = loop.create_task(self._run(gen, total, repository_id))

    def _is_live(self, gen: int) -> bool:
        return gen == self._generation and not self.cancelled

    async def _run(self, gen: int, total: int, repository_id: str) -> None:
        bind_run(repository_id=repository_id)
        log_event("queue_run_start", msg=f"Fingerprinting {total} File(s)...",
                  repository_id=repository_id, total=total)
        for _ in range(total):
            if not self._is_live(gen):
                break
            entry = self._queue.peek(repository_id)
            if entry is None:
                break
            await self._process_one(repository_id, entry)
            self._touched = True
            if gen == self._generation:
                self._queue.remove(entry.file_id)
            # the call settled even if a cancel arrived meanwhile; the cancel already cleared the queue
            self.progress.update(lambda p: replace(p, completed=min(p.completed + 1, p.total)))
            if gen != self._generation:
                break
        self._run_task = None
        if gen != self._generation:
            self._finish_cancelled()
            return
        self._finish_run()

    async def _process_one(self, repository_id: str, entry: QueueEntry) -> None:
        logger.info(f"Starting fingerprint generation for file: {entry.name or entry.file_id}")
        try:
            call = self._backend.compute_fingerprint(repository_id, entry.file_id)
            if self._timeout:
                token = await asyncio.wait_for(call, timeout=self._timeout)
            else:
                token = await call
        except asyncio.TimeoutError:
            self._failed.add(entry.file_id)
            log_event("queue_item_failed", msg=f"Timed out fingerprinting {entry.name or entry.file_id}",
                      file_id=entry.file_id, level="ERROR")
            return
        except Exception as e:
            self._failed.add(entry.file_id)
            reason = truncate(str(e), max_len=500)
            log_event("queue_item_failed", msg=f"Error fingerprinting file {entry.name or entry.file_id}: {reason}",
                      file_id=entry.file_id, level="ERROR")
            return
        logger.info(f"Fingerprint generated for file: {entry.name or entry.file_id}")
        if self._on_fingerprinted is not None:
            self._on_fingerprinted(entry.file_id, token if isinstance(token, str) else None)

    def _finish_run(self) -> None:
        p = self.progress.get()
        log_event("queue_run_done", msg=f"Fingerprinted {p.completed}/{p.total} file(s)",
                  completed=p.completed, total=p.total, failed=len(self._failed) or None)
        repository_id = self._repository_id()
        if repository_id is not None and self._queue.pending(repository_id) and not self.cancelled:
            self._start_run(repository_id)
            return
        self._set_state(ProcessorState.DRAINING)
        loop = asyncio.get_running_loop()
        self._done_timer = loop.call_later(self._done_hold, self._end_hold)

    def _end_hold(self) -> None:
        self._done_timer = None
        if self.state.get() is not ProcessorState.DRAINING:
            return
        self._enter_idle()
        # work queued during the hold
        self.kick()

    def cancel(self) -> None:
        """Stop before the next entry, clear the queue, reset the flag shortly after."""
        state = self.state.get()
        self._generation += 1
        self.progress.update(lambda p: replace(p, cancelled=True))
        self._queue.clear()
        if self._done_timer is not None:
            self._done_timer.cancel()
            self._done_timer = None
        log_event("queue_cancelled", msg="Processing cancelled. Fingerprint queue cleared.",
                  state=state.value)
        self._set_state(ProcessorState.CANCELLING)
        loop = asyncio.get_running_loop()
        if self._reset_timer is not None:
            self._reset_timer.cancel()
        self._reset_timer = loop.call_later(self._cancel_reset, self._reset_cancellation)

    def _reset_cancellation(self) -> None:
        self._reset_timer = None
        self.progress.update(lambda p: replace(p, cancelled=False))
        if self._reset_timer is not None:
            return  # a listener cancelled again; the new timer owns the window
        if self._run_task is None:
            self._to_idle_after_cancel()

    def _finish_cancelled(self) -> None:
        # the in-flight call has settled; leave CANCELLING once the flag is reset
        if self._reset_timer is None and self.state.get() is ProcessorState.CANCELLING:
            self._to_idle_after_cancel()

    def _to_idle_after_cancel(self) -> None:
        if self.state.get() is not ProcessorState.CANCELLING:
            return
        self._enter_idle()
        self.kick()

    def _enter_idle(self) -> None:
        self._set_state(ProcessorState.IDLE)
        touched, self._touched = self._touched, False
        if self._on_idle is not None:
            self._on_idle(touched)

    # -- lifecycle -----------------------------------------------------------

    async def wait_idle(self) -> None:
        if self._idle_event is None:
            self._idle_event = asyncio.Event()
            if self.state.get() is ProcessorState.IDLE:
                self._idle_event.set()
        await self._idle_event.wait()

    async def shutdown(self) -> None:
        for timer in (self._done_timer, self._reset_timer):
            if timer is not None:
                timer.cancel()
        self._done_timer = self._reset_timer = None
        task = self._run_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._run_task = None
        self._set_state(ProcessorState.IDLE)


__all__ = ["ProcessorState", "ProgressState", "QueueProcessor"]
