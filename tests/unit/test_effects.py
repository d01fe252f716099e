from __future__ import annotations

import asyncio

from cs2hue.core.config import EffectsConfig, Settings
from cs2hue.core.state import DeviceState, Intent, SceneEpoch
from cs2hue.devices.mocks import MockGateway
from cs2hue.orchestrator.command_queue import CommandQueueManager
from cs2hue.orchestrator.effects import EffectEngine, fade_ramp


def _engine(settings: Settings, gateway: MockGateway, config: EffectsConfig | None = None) -> EffectEngine:
    queues = CommandQueueManager(gateway, SceneEpoch(), settings.queue, settings.scene, io_timeout_s=0.5)
    return EffectEngine(queues, ["1", "2"], config or settings.effects)


async def _until(predicate, timeout_s: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not predicate() and loop.time() < deadline:
        await asyncio.sleep(0.002)


def test_fade_ramp_rounds_half_up() -> None:
    assert fade_ramp(200, 5) == [160, 120, 80, 40]
    assert fade_ramp(25, 10) == [23, 20, 18, 15, 13, 10, 8, 5, 3]
    assert fade_ramp(1, 4) == [1, 1, 1]
    assert fade_ramp(100, 1) == []


def test_fade_walks_brightness_down_then_turns_off(fast_settings: Settings) -> None:
    gateway = MockGateway(["1", "2"])
    gateway.states["1"] = DeviceState(on=True, bri=200)

    async def scenario() -> tuple[bool, bool, EffectEngine]:
        effects = _engine(fast_settings, gateway)
        completed = await effects.fade_out()
        await effects.queues.drain()
        return completed, effects.is_allowed_off("1"), effects

    completed, allowed_off, effects = asyncio.run(scenario())

    assert completed is True
    assert allowed_off is True
    assert not effects.is_fading
    assert gateway.writes_for("1") == [
        Intent(bri=160),
        Intent(bri=120),
        Intent(bri=80),
        Intent(bri=40),
        Intent(on=False),
    ]
    # Unknown start brightness fades from full
    assert gateway.writes_for("2")[0] == Intent(bri=203)
    assert gateway.states["1"].on is False


def test_cancelled_fade_returns_false_and_never_turns_off(fast_settings: Settings) -> None:
    gateway = MockGateway(["1", "2"])

    async def scenario() -> tuple[bool, bool]:
        effects = _engine(fast_settings, gateway)
        fade = asyncio.ensure_future(effects.fade_out(duration_s=1.0, steps=5))
        await _until(lambda: effects.is_fading)
        await asyncio.sleep(0.05)
        effects.stop_fade()
        completed = await asyncio.wait_for(fade, 0.5)
        return completed, effects.is_fading

    completed, fading = asyncio.run(scenario())

    assert completed is False
    assert fading is False
    assert Intent(on=False) not in gateway.writes_for("1")


def test_blink_counts_on_edges_and_stops_after_repetitions(fast_settings: Settings) -> None:
    gateway = MockGateway(["1", "2"])

    async def scenario() -> EffectEngine:
        effects = _engine(fast_settings, gateway)
        effects.start_blink(10, repetitions=2)
        assert effects.is_blinking
        await _until(lambda: not effects.is_blinking)
        await effects.queues.drain()
        return effects

    effects = asyncio.run(scenario())

    assert effects.blink_cycles == 2
    assert gateway.writes_for("1") == [Intent(on=True), Intent(on=False), Intent(on=True)]
    assert gateway.writes_for("2") == [Intent(on=True), Intent(on=False), Intent(on=True)]


def test_blink_period_is_clamped_to_minimum(fast_settings: Settings) -> None:
    gateway = MockGateway(["1", "2"])
    config = fast_settings.effects.model_copy(update={"min_blink_period_ms": 200})

    async def scenario() -> bool:
        effects = _engine(fast_settings, gateway, config)
        effects.start_blink(0)
        await asyncio.sleep(0.05)
        blinking = effects.is_blinking
        effects.stop_all()
        return blinking

    assert asyncio.run(scenario()) is True
    assert gateway.writes == []


def test_stop_all_halts_blink(fast_settings: Settings) -> None:
    gateway = MockGateway(["1", "2"])

    async def scenario() -> int:
        effects = _engine(fast_settings, gateway)
        effects.start_blink(10)
        await asyncio.sleep(0.035)
        effects.stop_all()
        await effects.queues.drain()
        count = len(gateway.writes)
        await asyncio.sleep(0.04)
        return count

    count = asyncio.run(scenario())

    assert count > 0
    assert len(gateway.writes) == count
