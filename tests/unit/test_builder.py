from __future__ import annotations

import asyncio
import json

import pytest

from cs2hue.core.colors import ColorPalette
from cs2hue.core.config import GatewayConfig, Settings
from cs2hue.core.exceptions import ConfigError, GatewayConnectionError
from cs2hue.core.state import DeviceState, Intent
from cs2hue.devices.hue import HueGateway
from cs2hue.devices.mocks import MockGateway
from cs2hue.devices.yeelight import YeelightGateway
from cs2hue.orchestrator.builder import MOCK_LIGHT_IDS, LightSync, build_gateway, build_light_sync


def _build(settings: Settings) -> tuple[LightSync, MockGateway]:
    gateway = MockGateway(settings.gateway.light_ids)
    gateway.states["1"] = DeviceState(on=True, bri=80, xy=(0.2, 0.3))
    gateway.states["2"] = DeviceState(on=False, bri=10, ct=300)
    return build_light_sync(settings, palette=ColorPalette.defaults(), gateway=gateway), gateway


def test_start_stop_are_idempotent_and_restore_previous_state(fast_settings: Settings) -> None:
    async def scenario() -> dict:
        sync, gateway = _build(fast_settings)
        results = {"start": [await sync.start(), await sync.start()]}
        results["saved"] = json.loads(sync.previous_state_path.read_text())
        await asyncio.sleep(0.05)
        results["stop"] = [await sync.stop(), await sync.stop()]
        results["gateway"] = gateway
        results["sync"] = sync
        return results

    results = asyncio.run(scenario())
    gateway: MockGateway = results["gateway"]
    sync: LightSync = results["sync"]

    assert results["start"] == [True, False]
    assert results["stop"] == [True, False]
    assert results["saved"] == {
        "1": {"on": True, "bri": 80, "xy": [0.2, 0.3]},
        "2": {"on": False, "bri": 10, "ct": 300},
    }
    assert gateway.states["1"] == DeviceState(on=True, bri=80, xy=(0.2, 0.3))
    assert gateway.states["2"].on is False
    assert gateway.writes_for("2")[-1] == Intent(on=False)
    assert not sync.previous_state_path.exists()
    assert gateway.closed
    assert not sync.running
    assert not sync.poller.running


def test_stop_without_saved_state_turns_lights_off(fast_settings: Settings) -> None:
    async def scenario() -> MockGateway:
        sync, gateway = _build(fast_settings)
        await sync.start()
        sync.previous_state_path.unlink()
        await sync.stop()
        return gateway

    gateway = asyncio.run(scenario())

    assert gateway.writes_for("1")[-1] == Intent(on=False)
    assert gateway.states["1"].on is False
    assert gateway.states["2"].on is False


def test_unreadable_saved_state_turns_lights_off(fast_settings: Settings) -> None:
    async def scenario() -> MockGateway:
        sync, gateway = _build(fast_settings)
        await sync.start()
        sync.previous_state_path.write_text("{ nope", encoding="utf-8")
        await sync.stop()
        return gateway

    gateway = asyncio.run(scenario())

    assert gateway.states["1"].on is False


def test_start_fails_when_gateway_not_ready(fast_settings: Settings) -> None:
    async def scenario() -> tuple[bool, LightSync]:
        sync, gateway = _build(fast_settings)
        gateway.ready_error = GatewayConnectionError("192.168.1.2", "connection refused")
        return await sync.start(), sync

    started, sync = asyncio.run(scenario())

    assert started is False
    assert not sync.running
    assert not sync.previous_state_path.exists()


def test_start_fails_without_light_ids(fast_settings: Settings) -> None:
    settings = fast_settings.model_copy(update={"gateway": GatewayConfig(provider="mock")})

    async def scenario() -> bool:
        sync = build_light_sync(settings, palette=ColorPalette.defaults(), gateway=MockGateway())
        return await sync.start()

    assert asyncio.run(scenario()) is False


def test_status_reports_runtime(fast_settings: Settings) -> None:
    async def scenario() -> dict:
        sync, _ = _build(fast_settings)
        await sync.start()
        status = sync.status()
        await sync.stop()
        return status

    status = asyncio.run(scenario())

    assert status["running"] is True
    assert status["provider"] == "mock"
    assert status["lights"] == ["1", "2"]
    assert set(status) >= {"epoch", "scene", "round", "effects", "presence", "poller", "healthcheck", "queues"}
    assert status["round"]["bomb_planted"] is False


def test_run_forever_exits_when_stopped(fast_settings: Settings) -> None:
    async def scenario() -> bool:
        sync, _ = _build(fast_settings)
        runner = asyncio.ensure_future(sync.run_forever())
        await asyncio.sleep(0.03)
        assert sync.running
        await sync.stop()
        await asyncio.wait_for(runner, 1.0)
        return sync.running

    assert asyncio.run(scenario()) is False


def test_restart_resaves_state(fast_settings: Settings) -> None:
    async def scenario() -> tuple[bool, bool]:
        sync, _ = _build(fast_settings)
        await sync.start()
        restarted = await sync.restart()
        exists = sync.previous_state_path.exists()
        await sync.stop()
        return restarted, exists

    assert asyncio.run(scenario()) == (True, True)


def test_build_gateway_selects_provider(fast_settings: Settings) -> None:
    hue = fast_settings.model_copy(
        update={"gateway": GatewayConfig(provider="hue", bridge_ip="192.168.1.2", api_key="abc")}
    )
    yeelight = fast_settings.model_copy(
        update={"gateway": GatewayConfig(provider="yeelight", yeelight_devices="10.0.0.5, 10.0.0.6:1234")}
    )
    incomplete = fast_settings.model_copy(update={"gateway": GatewayConfig(provider="hue")})

    assert isinstance(build_gateway(fast_settings, ["1"]), MockGateway)
    assert isinstance(build_gateway(hue, ["1"]), HueGateway)
    assert isinstance(build_gateway(hue, ["1"], mock_devices=True), MockGateway)

    gateway = build_gateway(yeelight, ["1", "2"])
    assert isinstance(gateway, YeelightGateway)
    assert [d.port for d in gateway.devices] == [55443, 1234]

    with pytest.raises(ConfigError):
        build_gateway(incomplete, ["1"])


def test_mock_runtime_defaults_light_ids(fast_settings: Settings) -> None:
    settings = fast_settings.model_copy(update={"gateway": GatewayConfig(provider="hue")})

    sync = build_light_sync(settings, mock_devices=True)

    assert sync.light_ids == MOCK_LIGHT_IDS
    assert isinstance(sync.gateway, MockGateway)
    assert sync.machine.palette.has("bomb")
