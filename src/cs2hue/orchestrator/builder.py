"""
Light Sync Builder.

Constructs the runtime that owns every mutable piece of the light sync:
gateway, scene epoch, per-device queues, effects, scene controller,
round state machine, reconciler and poller.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from cs2hue.core.colors import ColorPalette, load_color_palette
from cs2hue.core.config import Settings
from cs2hue.core.exceptions import ConfigError, LightSyncError
from cs2hue.core.state import DeviceState, Intent, SceneEpoch
from cs2hue.devices.gateway import LightGateway
from cs2hue.orchestrator.command_queue import CommandQueueManager
from cs2hue.orchestrator.effects import EffectEngine
from cs2hue.orchestrator.poller import GameStatePoller
from cs2hue.orchestrator.presence import PresenceHub
from cs2hue.orchestrator.reconciler import HealthCheckReconciler
from cs2hue.orchestrator.round_machine import RoundMachine
from cs2hue.orchestrator.scene import SceneController

logger = structlog.get_logger()

MOCK_LIGHT_IDS = ["1", "2", "3"]


class LightSync:
    """
    The light sync runtime.

    Provides idempotent start/stop. Starting saves every light's state;
    stopping restores it (or turns the lights off when nothing was saved).
    """

    def __init__(
        self,
        settings: Settings,
        gateway: LightGateway,
        light_ids: List[str],
        epoch: SceneEpoch,
        queues: CommandQueueManager,
        effects: EffectEngine,
        scene: SceneController,
        machine: RoundMachine,
        reconciler: HealthCheckReconciler,
        poller: GameStatePoller,
        presence: PresenceHub,
    ):
        self.settings = settings
        self.gateway = gateway
        self.light_ids = light_ids
        self.epoch = epoch
        self.queues = queues
        self.effects = effects
        self.scene = scene
        self.machine = machine
        self.reconciler = reconciler
        self.poller = poller
        self.presence = presence

        self._running = False
        self._stopped = asyncio.Event()
        self._lifecycle_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def previous_state_path(self) -> Path:
        return self.settings.resolve(self.settings.previous_state_path)

    async def start(self) -> bool:
        """Start polling and driving the lights. Returns False if not started."""
        async with self._lifecycle_lock:
            if self._running:
                logger.warning("Light sync is already running")
                return False
            if not self.light_ids:
                logger.warning("No light ids configured, not starting")
                return False

            await self._discover_devices()
            try:
                await self.gateway.check_ready(self.light_ids)
            except LightSyncError as e:
                logger.error("Light gateway not ready", provider=self.gateway.name, error=e.message)
                return False

            await self._save_previous_states()

            self.machine.reset()
            self._stopped.clear()
            self.poller.start()
            self.machine.schedule_startup_default()
            self._running = True

            logger.info(
                "Light sync started",
                provider=self.gateway.name,
                lights=self.light_ids,
                gamestate=str(self.poller.path),
            )
            return True

    async def stop(self) -> bool:
        """Stop and leave the lights in a known state. Returns False if not running."""
        async with self._lifecycle_lock:
            if not self._running:
                logger.info("Light sync is not running")
                return False
            self._running = False

            await self.poller.stop()
            self.machine.reset()
            self.effects.stop_all()
            self.scene.cancel_confirmation()
            self.epoch.advance()
            self.queues.clear_caches()

            await self._restore_previous_states()

            await self.queues.close()
            await self.gateway.close()
            self._stopped.set()

            logger.info("Light sync stopped", queue_stats=self.queues.stats())
            return True

    async def restart(self) -> bool:
        await self.stop()
        return await self.start()

    async def run_forever(self) -> None:
        """Start, then run until stopped or cancelled; always stops on exit."""
        if not await self.start():
            return
        try:
            await self._stopped.wait()
        finally:
            await self.stop()

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "provider": self.gateway.name,
            "lights": list(self.light_ids),
            "epoch": self.epoch.current,
            "scene": self.scene.current_label,
            "last_mode": self.machine.state.last_mode,
            "round": self.machine.status(),
            "effects": {
                "blinking": self.effects.is_blinking,
                "fading": self.effects.is_fading,
            },
            "presence": self.presence.status(),
            "poller": {
                "reads": self.poller.reads,
                "failures": self.poller.failures,
                "has_snapshot": self.poller.snapshot is not None,
            },
            "healthcheck": {
                "checks": self.reconciler.checks,
                "reenabled": self.reconciler.reenabled,
            },
            "queues": self.queues.stats(),
        }

    # -------------------------------------------------------------------------
    # Previous state
    # -------------------------------------------------------------------------

    async def _discover_devices(self) -> None:
        from cs2hue.devices.yeelight import YeelightGateway, discover_yeelights

        gateway = self.gateway
        if isinstance(gateway, YeelightGateway) and not gateway.devices and self.settings.gateway.yeelight_discovery:
            gateway.devices = await discover_yeelights(self.settings.gateway.io_timeout_s)

    async def _save_previous_states(self) -> None:
        states: Dict[str, Any] = {}
        for light_id in self.light_ids:
            state = await self.queues.read_state(light_id)
            if state is None:
                logger.warning("Could not read light state to save", light=light_id)
                continue
            states[light_id] = state.to_dict()

        path = self.previous_state_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(states, f, indent=4)
        except OSError as e:
            logger.error("Failed to save previous light states", path=str(path), error=str(e))
            return
        logger.info("Saved previous light states", path=str(path), lights=len(states))

    async def _turn_all_off(self) -> None:
        futures = [self.queues.enqueue(lid, Intent(on=False), force=True) for lid in self.light_ids]
        await asyncio.gather(*futures)

    async def _restore_previous_states(self) -> None:
        path = self.previous_state_path
        try:
            with open(path, encoding="utf-8") as f:
                saved = json.load(f)
            if not isinstance(saved, dict):
                raise ValueError("expected an object keyed by light id")
        except FileNotFoundError:
            await self._turn_all_off()
            logger.info("Turned lights off (no previous state)")
            return
        except (OSError, ValueError) as e:
            logger.warning("Failed to restore previous states", path=str(path), error=str(e))
            await self._turn_all_off()
            logger.warning("Turned lights off as fallback")
            return

        pending = []
        for light_id in self.light_ids:
            raw = saved.get(light_id)
            if not isinstance(raw, dict):
                logger.warning("No previous state found for light", light=light_id)
                continue
            intent = DeviceState.from_dict(raw).to_intent(use_ct=True)
            logger.debug("Restoring light", light=light_id, intent=intent.to_payload())
            pending.append((light_id, self.queues.enqueue(light_id, intent, force=True)))

        for light_id, future in pending:
            if not await future:
                logger.warning("Failed to restore state for light", light=light_id)

        try:
            path.unlink()
        except OSError as e:
            logger.warning("Could not remove previous state file", path=str(path), error=str(e))
        logger.info("Restored previous light states")


def build_gateway(settings: Settings, light_ids: List[str], mock_devices: bool = False) -> LightGateway:
    """Create the gateway for the configured provider."""
    cfg = settings.gateway

    if mock_devices or cfg.provider == "mock":
        from cs2hue.devices.mocks import MockGateway

        return MockGateway(light_ids)

    if cfg.provider == "hue":
        if not cfg.bridge_ip or not cfg.api_key:
            raise ConfigError("Hue provider needs gateway.bridge_ip and gateway.api_key", recoverable=False)
        from cs2hue.devices.hue import HueGateway

        return HueGateway(cfg.bridge_ip, cfg.api_key, timeout_s=cfg.io_timeout_s)

    from cs2hue.devices.yeelight import YeelightDevice, YeelightGateway

    devices = [YeelightDevice.parse(token) for token in cfg.yeelight_devices]
    return YeelightGateway(devices, timeout_s=cfg.io_timeout_s)


def build_light_sync(
    settings: Optional[Settings] = None,
    palette: Optional[ColorPalette] = None,
    gateway: Optional[LightGateway] = None,
    mock_devices: bool = False,
) -> LightSync:
    """
    Build the complete light sync runtime.

    Args:
        settings: Configuration settings. Uses defaults if None.
        palette: Color templates. Loaded from ``settings.colors_path`` if None.
        gateway: Light gateway. Built from ``settings.gateway`` if None.
        mock_devices: If True, drive in-memory mock lights.

    Returns:
        LightSync ready to ``start()``.
    """
    if settings is None:
        settings = Settings()

    light_ids = list(settings.gateway.light_ids)
    if mock_devices and not light_ids:
        light_ids = list(MOCK_LIGHT_IDS)

    logger.info("Building light sync", provider=settings.gateway.provider, mock_devices=mock_devices)

    if palette is None:
        palette = load_color_palette(settings.resolve(settings.colors_path))
    if gateway is None:
        gateway = build_gateway(settings, light_ids, mock_devices=mock_devices)

    epoch = SceneEpoch()
    queues = CommandQueueManager(
        gateway,
        epoch,
        config=settings.queue,
        tolerance=settings.scene,
        io_timeout_s=settings.gateway.io_timeout_s,
    )
    effects = EffectEngine(queues, light_ids, settings.effects)
    scene = SceneController(queues, effects, epoch, light_ids, settings.scene)
    presence = PresenceHub()
    machine = RoundMachine(settings, palette, scene, effects, presence)
    reconciler = HealthCheckReconciler(queues, effects, scene, machine, light_ids, settings.healthcheck)
    poller = GameStatePoller(
        settings.resolve(settings.gamestate_path),
        machine,
        settings.poller,
        reconciler,
    )

    return LightSync(
        settings=settings,
        gateway=gateway,
        light_ids=light_ids,
        epoch=epoch,
        queues=queues,
        effects=effects,
        scene=scene,
        machine=machine,
        reconciler=reconciler,
        poller=poller,
        presence=presence,
    )
