from __future__ import annotations

import asyncio
import logging

import pytest

from hybrid.core.clock import AsyncioClock, ManualClock
from hybrid.core.events import EventStream


def test_manual_clock_fires_timers_in_due_order() -> None:
    async def _run() -> None:
        clock = ManualClock()
        fired: list[tuple[str, float]] = []
        clock.call_later(300, lambda: fired.append(("late", clock.now_ms())))
        clock.call_later(100, lambda: fired.append(("early", clock.now_ms())))
        clock.call_later(100, lambda: fired.append(("early-2", clock.now_ms())))

        await clock.advance(250)
        assert fired == [("early", 100), ("early-2", 100)]
        assert clock.now_ms() == 250
        assert clock.next_deadline_ms() == 300

        await clock.advance(50)
        assert fired[-1] == ("late", 300)
        assert clock.pending_timers == 0

    asyncio.run(_run())


def test_cancelled_timer_never_fires() -> None:
    async def _run() -> None:
        clock = ManualClock()
        fired: list[str] = []
        handle = clock.call_later(100, lambda: fired.append("x"))
        handle.cancel()

        await clock.advance(1000)

        assert fired == []
        assert clock.next_deadline_ms() is None

    asyncio.run(_run())


def test_manual_sleep_wakes_at_deadline() -> None:
    async def _run() -> None:
        clock = ManualClock()
        woke: list[float] = []

        async def _sleeper() -> None:
            await clock.sleep(1800)
            woke.append(clock.now_ms())

        task = asyncio.create_task(_sleeper())
        await clock.advance(1799)
        assert woke == []
        await clock.advance(1)
        assert woke == [1800]
        await task

    asyncio.run(_run())


def test_cancelled_sleep_releases_its_timer() -> None:
    async def _run() -> None:
        clock = ManualClock()
        task = asyncio.create_task(clock.sleep(5000))
        await clock.settle()
        assert clock.pending_timers == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert clock.pending_timers == 0

    asyncio.run(_run())


def test_asyncio_clock_call_later() -> None:
    async def _run() -> None:
        clock = AsyncioClock()
        done = asyncio.Event()
        start = clock.now_ms()
        clock.call_later(10, done.set)

        await asyncio.wait_for(done.wait(), timeout=1.0)

        assert clock.now_ms() >= start

    asyncio.run(_run())


def test_event_stream_fans_out_and_unsubscribes() -> None:
    stream: EventStream[int] = EventStream("numbers")
    first: list[int] = []
    second: list[int] = []
    stop_first = stream.subscribe(first.append)
    stream.subscribe(second.append)

    stream.emit(1)
    stop_first()
    stop_first()
    stream.emit(2)

    assert first == [1]
    assert second == [1, 2]
    assert stream.subscriber_count == 1


def test_failing_subscriber_is_logged_and_skipped(caplog: pytest.LogCaptureFixture) -> None:
    stream: EventStream[str] = EventStream("acks")
    received: list[str] = []

    def _broken(_event: str) -> None:
        raise RuntimeError("boom")

    stream.subscribe(_broken)
    stream.subscribe(received.append)

    with caplog.at_level(logging.ERROR, logger="hybrid.core.events"):
        stream.emit("ok")

    assert received == ["ok"]
    assert "acks subscriber failed" in caplog.text


def test_coroutine_subscriber_is_scheduled() -> None:
    async def _run() -> None:
        stream: EventStream[int] = EventStream("async")
        received: list[int] = []

        async def _collect(value: int) -> None:
            received.append(value)

        stream.subscribe(_collect)
        stream.emit(7)
        assert received == []
        await asyncio.sleep(0)
        assert received == [7]

    asyncio.run(_run())


def test_failing_coroutine_subscriber_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    async def _run() -> None:
        stream: EventStream[int] = EventStream("async")

        async def _broken(_value: int) -> None:
            raise RuntimeError("late boom")

        stream.subscribe(_broken)
        with caplog.at_level(logging.ERROR, logger="hybrid.core.events"):
            stream.emit(1)
            assert stream.pending_tasks == 1
            await stream.drain()

        assert stream.pending_tasks == 0

    asyncio.run(_run())

    assert "async subscriber failed" in caplog.text
    assert "late boom" in caplog.text
