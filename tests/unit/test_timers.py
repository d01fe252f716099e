from __future__ import annotations

import asyncio

from cs2hue.orchestrator.timers import TimerHandle


def test_start_once_fires_after_delay() -> None:
    fired: list[str] = []

    async def scenario() -> bool:
        timer = TimerHandle("once")
        timer.start_once(0.01, lambda: fired.append("x"))
        assert timer.active
        await timer.wait()
        return timer.active

    assert asyncio.run(scenario()) is False
    assert fired == ["x"]


def test_cancel_prevents_pending_callback() -> None:
    fired: list[str] = []

    async def scenario() -> None:
        timer = TimerHandle("once")
        timer.start_once(0.05, lambda: fired.append("x"))
        timer.cancel()
        await asyncio.sleep(0.08)

    asyncio.run(scenario())

    assert fired == []


def test_restart_replaces_previous_schedule() -> None:
    fired: list[str] = []

    async def scenario() -> None:
        timer = TimerHandle("once")
        timer.start_once(0.03, lambda: fired.append("first"))
        timer.start_once(0.01, lambda: fired.append("second"))
        await asyncio.sleep(0.06)

    asyncio.run(scenario())

    assert fired == ["second"]


def test_periodic_can_cancel_itself_from_callback() -> None:
    ticks: list[int] = []
    timer = TimerHandle("periodic")

    async def tick() -> None:
        ticks.append(len(ticks))
        if len(ticks) == 3:
            timer.cancel()
        await asyncio.sleep(0)

    async def scenario() -> None:
        timer.start_periodic(0.005, tick, immediate=True)
        await timer.wait()
        await asyncio.sleep(0.03)

    asyncio.run(scenario())

    assert ticks == [0, 1, 2]
    assert not timer.active


def test_callback_errors_do_not_stop_periodic_timer() -> None:
    calls: list[int] = []

    def flaky() -> None:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")

    async def scenario() -> None:
        timer = TimerHandle("flaky")
        timer.start_periodic(0.005, flaky)
        await asyncio.sleep(0.05)
        timer.cancel()

    asyncio.run(scenario())

    assert len(calls) >= 2


def test_wait_returns_after_external_cancel() -> None:
    async def scenario() -> bool:
        timer = TimerHandle("fade")
        timer.start_periodic(0.01, lambda: None)
        waiter = asyncio.ensure_future(timer.wait())
        await asyncio.sleep(0.02)
        timer.cancel()
        await asyncio.wait_for(waiter, 0.5)
        return timer.active

    assert asyncio.run(scenario()) is False
