from __future__ import annotations

import asyncio
import time

from cs2hue.core.colors import ColorPalette
from cs2hue.core.config import HealthCheckConfig, Settings
from cs2hue.core.state import Intent
from cs2hue.devices.mocks import MockGateway
from cs2hue.orchestrator.builder import LightSync, build_light_sync


def _build(settings: Settings, **healthcheck) -> tuple[LightSync, MockGateway]:
    if healthcheck:
        settings = settings.model_copy(
            update={"healthcheck": HealthCheckConfig(**{"interval_s": 0.0, "write_race_s": 0.0, **healthcheck})}
        )
    gateway = MockGateway(settings.gateway.light_ids)
    return build_light_sync(settings, palette=ColorPalette.defaults(), gateway=gateway), gateway


def test_reenables_light_switched_off_externally(fast_settings: Settings) -> None:
    async def scenario() -> tuple[list[str], MockGateway, int]:
        sync, gateway = _build(fast_settings)
        gateway.turn_off_externally("1")
        healed = await sync.reconciler.tick()
        await sync.queues.drain()
        await sync.queues.close()
        return healed, gateway, sync.reconciler.reenabled

    healed, gateway, reenabled = asyncio.run(scenario())

    assert healed == ["1"]
    assert reenabled == 1
    assert gateway.writes_for("1") == [Intent(on=True, bri=100)]
    assert gateway.states["1"].on is True


def test_never_reenables_after_off_intent(fast_settings: Settings) -> None:
    async def scenario() -> tuple[list[str], MockGateway]:
        sync, gateway = _build(fast_settings)
        await sync.queues.enqueue("1", Intent(on=False))
        healed = await sync.reconciler.tick()
        await sync.queues.close()
        return healed, gateway

    healed, gateway = asyncio.run(scenario())

    assert healed == []
    assert gateway.states["1"].on is False


def test_respects_allowed_off_window_after_fade(fast_settings: Settings) -> None:
    settings = fast_settings.model_copy(
        update={"effects": fast_settings.effects.model_copy(update={"fade_grace_s": 5.0})}
    )

    async def scenario() -> tuple[list[str], bool, bool]:
        sync, gateway = _build(settings)
        await sync.effects.fade_out()
        await sync.queues.drain()
        # A later non-off write must not reopen the window
        await sync.queues.enqueue("1", Intent(bri=1), force=True)
        assert gateway.states["1"].on is False
        healed = await sync.reconciler.tick()
        now = time.monotonic()
        blocked = not sync.reconciler.may_reenable("1", now)
        after_window = sync.reconciler.may_reenable("1", now + 10.0)
        await sync.queues.close()
        return healed, blocked, after_window

    healed, blocked, after_window = asyncio.run(scenario())

    assert healed == []
    assert blocked
    assert after_window


def test_recent_write_is_not_second_guessed(fast_settings: Settings) -> None:
    async def scenario() -> tuple[list[str], bool]:
        sync, gateway = _build(fast_settings, write_race_s=5.0)
        await sync.queues.enqueue("1", Intent(on=True, bri=50))
        gateway.turn_off_externally("1")
        healed = await sync.reconciler.tick()
        later = sync.reconciler.may_reenable("1", time.monotonic() + 10.0)
        await sync.queues.close()
        return healed, later

    healed, later = asyncio.run(scenario())

    assert healed == []
    assert later


def test_blocked_while_effects_or_round_transitions(fast_settings: Settings) -> None:
    async def scenario() -> list[object]:
        sync, _ = _build(fast_settings)
        reconciler = sync.reconciler
        now = time.monotonic()
        reasons: list[object] = [reconciler.blocked_by(now)]

        sync.effects.start_blink(1000)
        reasons.append(reconciler.blocked_by(now))
        sync.effects.stop_blink()

        sync.machine.state.bomb_planted = True
        reasons.append(reconciler.blocked_by(now))
        sync.machine.state.bomb_planted = False

        sync.machine.state.suppressed = True
        reasons.append(reconciler.blocked_by(now))
        sync.machine.state.suppressed = False

        reasons.append(await reconciler.tick())
        await sync.queues.close()
        return reasons

    reasons = asyncio.run(scenario())

    assert reasons == [None, "effect", "bomb", "suppressed", []]


def test_interval_and_scene_gating(fast_settings: Settings) -> None:
    async def scenario() -> tuple[int, object, object]:
        sync, _ = _build(fast_settings, interval_s=10.0)
        reconciler = sync.reconciler
        await reconciler.tick()
        await reconciler.tick()
        interval = reconciler.blocked_by(time.monotonic())

        sync.scene.healthcheck_suppressed_until = time.monotonic() + 5.0
        scene = reconciler.blocked_by(time.monotonic())
        await sync.queues.close()
        return reconciler.checks, interval, scene

    checks, interval, scene = asyncio.run(scenario())

    assert checks == 1
    assert interval == "interval"
    assert scene == "scene"


def test_disabled_reconciler_never_reads(fast_settings: Settings) -> None:
    async def scenario() -> tuple[list[str], MockGateway]:
        sync, gateway = _build(fast_settings, enabled=False)
        gateway.turn_off_externally("1")
        healed = await sync.reconciler.tick()
        return healed, gateway

    healed, gateway = asyncio.run(scenario())

    assert healed == []
    assert gateway.reads == []
