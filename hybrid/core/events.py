"""Typed outbound event streams."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, TypeVar

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Subscriber = Callable[[T], Awaitable[None] | None]


class EventStream(Generic[T]):
    """One kind of event, fanned out to any number of subscribers.

    A failing subscriber is logged and skipped; the emitter never sees the error.
    Coroutine subscribers run as tasks held by the stream until they finish.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Subscriber[T]] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, callback: Subscriber[T]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def emit(self, event: T) -> None:
        for callback in list(self._subscribers):
            try:
                maybe_coro = callback(event)
            except Exception:
                _LOGGER.exception("%s subscriber failed", self.name)
                continue
            if asyncio.iscoroutine(maybe_coro):
                task = asyncio.ensure_future(maybe_coro)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)

    async def drain(self) -> None:
        """Wait for every coroutine subscriber started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error("%s subscriber failed", self.name, exc_info=exc)
