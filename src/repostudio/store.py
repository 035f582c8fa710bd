"""Observable single-value containers.

Each piece of shared state (file lists, selection, queue, progress, processor
state) lives in one `Store`. Mutations replace the whole value in one step, so
no handler ever observes a half-applied update; subscribers are notified
synchronously after the replacement.
"""
from __future__ import annotations

from typing import Callable, Generic, List, TypeVar

from loguru import logger

T = TypeVar("T")

Listener = Callable[[T], None]


class Store(Generic[T]):
    def __init__(self, initial: T, *, name: str = "") -> None:
        self._value = initial
        self._name = name or "store"
        self._listeners: List[Listener] = []

    def get(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        self._notify()

    def update(self, fn: Callable[[T], T]) -> T:
        """Replace the value with ``fn(current)`` and return the new value."""
        self.set(fn(self._value))
        return self._value

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def _notify(self) -> None:
        value = self._value
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                # listener errors never reach the writer
                logger.exception(f"{self._name}: listener failed")

    def __repr__(self) -> str:
        return f"Store({self._name}={self._value!r})"
