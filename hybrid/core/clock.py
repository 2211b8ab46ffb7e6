"""Cancellable timers used by the FTMS link and the workout scheduler.

Everything time-dependent (ack deadlines, ERG step deadlines, ramp dwell
sleeps, tick throttles) goes through a ``Clock`` so it can run on the asyncio
loop in production and on a ``ManualClock`` in simulations and tests.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    def now_ms(self) -> float: ...

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle: ...

    async def sleep(self, delay_ms: float) -> None: ...


class AsyncioClock:
    """Clock backed by the running event loop's monotonic time."""

    def now_ms(self) -> float:
        return asyncio.get_running_loop().time() * 1000.0

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(max(0.0, delay_ms) / 1000.0, callback)

    async def sleep(self, delay_ms: float) -> None:
        await asyncio.sleep(max(0.0, delay_ms) / 1000.0)


@dataclass(order=True)
class _ManualTimer:
    due_ms: float
    seq: int
    callback: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """Deterministic clock: time only moves when ``advance`` is awaited."""

    def __init__(self, start_ms: float = 0.0, settle_rounds: int = 50) -> None:
        self._now_ms = start_ms
        self._timers: list[_ManualTimer] = []
        self._seq = itertools.count()
        self._settle_rounds = settle_rounds

    def now_ms(self) -> float:
        return self._now_ms

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(
            due_ms=self._now_ms + max(0.0, delay_ms),
            seq=next(self._seq),
            callback=callback,
        )
        heapq.heappush(self._timers, timer)
        return timer

    async def sleep(self, delay_ms: float) -> None:
        if delay_ms <= 0:
            await asyncio.sleep(0)
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def _wake() -> None:
            if not waiter.done():
                waiter.set_result(None)

        handle = self.call_later(delay_ms, _wake)
        try:
            await waiter
        finally:
            handle.cancel()

    @property
    def pending_timers(self) -> int:
        return sum(1 for timer in self._timers if not timer.cancelled)

    def next_deadline_ms(self) -> Optional[float]:
        live = [timer.due_ms for timer in self._timers if not timer.cancelled]
        return min(live) if live else None

    async def settle(self) -> None:
        """Let already-scheduled asyncio tasks run without moving time."""
        for _ in range(self._settle_rounds):
            await asyncio.sleep(0)

    async def advance(self, delta_ms: float) -> None:
        target = self._now_ms + max(0.0, delta_ms)
        await self.settle()
        while self._timers and self._timers[0].due_ms <= target:
            timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now_ms = max(self._now_ms, timer.due_ms)
            timer.cancelled = True
            timer.callback()
            await self.settle()
        self._now_ms = target
        await self.settle()
