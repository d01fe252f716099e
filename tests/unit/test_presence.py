from __future__ import annotations

import asyncio

from cs2hue.orchestrator.presence import PRESENCE_EVENTS, PresenceHub


def test_sync_and_async_subscribers_receive_events() -> None:
    seen: list[tuple[str, dict]] = []
    hub = PresenceHub()

    def on_event(event: str, **details) -> None:
        seen.append((event, details))

    async def on_event_async(event: str, **details) -> None:
        await asyncio.sleep(0)
        seen.append(("async:" + event, details))

    async def scenario() -> None:
        hub.subscribe(on_event)
        hub.subscribe(on_event_async)
        hub.subscribe(on_event)
        hub.emit("planted", countdown=40)
        await hub.drain()

    asyncio.run(scenario())

    assert hub.subscriber_count == 2
    assert seen == [("planted", {"countdown": 40}), ("async:planted", {"countdown": 40})]
    assert hub.last_event == "planted"
    assert hub.last_details == {"countdown": 40}


def test_failing_subscribers_do_not_block_others() -> None:
    seen: list[str] = []
    hub = PresenceHub()

    def broken(event: str, **details) -> None:
        raise RuntimeError("chat service offline")

    async def broken_async(event: str, **details) -> None:
        raise RuntimeError("overlay offline")

    async def scenario() -> None:
        hub.subscribe(broken)
        hub.subscribe(broken_async)
        hub.subscribe(lambda event, **_: seen.append(event))
        hub.emit("won", winner="CT")
        await hub.drain()

    asyncio.run(scenario())

    assert seen == ["won"]


def test_unknown_events_are_ignored() -> None:
    seen: list[str] = []
    hub = PresenceHub()
    hub.subscribe(lambda event, **_: seen.append(event))

    hub.emit("halftime")

    assert seen == []
    assert hub.last_event is None
    assert "halftime" not in PRESENCE_EVENTS


def test_unsubscribe_and_status() -> None:
    seen: list[str] = []
    hub = PresenceHub()

    def on_event(event: str, **_) -> None:
        seen.append(event)

    hub.subscribe(on_event)
    hub.emit("menu")
    hub.unsubscribe(on_event)
    hub.unsubscribe(on_event)
    hub.emit("warmup")

    status = hub.status()
    assert seen == ["menu"]
    assert status["last_event"] == "warmup"
    assert status["subscribers"] == 0
    assert status["last_emitted_at"] is not None
