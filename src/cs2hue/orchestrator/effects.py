"""
Effect Engines: blink and fade-out across all managed lights.

Both effects run on ``TimerHandle`` schedules and write through the
per-device queues with forced (non-deduplicated) intents. They are
stopped before every new scene.
"""

from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Optional, Sequence

import numpy as np
import structlog

from cs2hue.core.config import EffectsConfig
from cs2hue.core.state import Intent
from cs2hue.orchestrator.command_queue import CommandQueueManager
from cs2hue.orchestrator.timers import TimerHandle

logger = structlog.get_logger()


def fade_ramp(start_bri: int, steps: int) -> List[int]:
    """
    Brightness for fade steps 1..N-1 (step N turns the light off).

    Uses half-up rounding and never drops below 1.
    """
    i = np.arange(1, steps)
    levels = np.floor(start_bri * (steps - i) / steps + 0.5)
    return [int(v) for v in np.maximum(1, levels)]


class EffectEngine:
    """
    Blink and fade effects.

    Blink toggles ``on`` for every light each period and counts ON edges;
    fade walks brightness down in N steps and ends with ``{on: false}``.
    Lights touched by a fade are "allowed off" until the fade's end plus
    a grace window, which the reconciler honours.
    """

    def __init__(
        self,
        queues: CommandQueueManager,
        light_ids: Sequence[str],
        config: Optional[EffectsConfig] = None,
    ):
        self.queues = queues
        self.light_ids = [str(light_id) for light_id in light_ids]
        self.config = config or EffectsConfig()

        self._blink = TimerHandle("blink")
        self._blink_on = False
        self._blink_cycles = 0
        self._blink_repetitions: Optional[int] = None

        self._fade = TimerHandle("fade")
        self._fade_token = 0
        self._fading = False
        self._allowed_off: Dict[str, float] = {}

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def is_blinking(self) -> bool:
        return self._blink.active

    @property
    def is_fading(self) -> bool:
        return self._fading

    @property
    def active(self) -> bool:
        return self.is_blinking or self.is_fading

    @property
    def blink_cycles(self) -> int:
        return self._blink_cycles

    def allowed_off_until(self, light_id: str) -> float:
        return self._allowed_off.get(str(light_id), 0.0)

    def is_allowed_off(self, light_id: str, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return now < self.allowed_off_until(light_id)

    def stop_all(self) -> None:
        self.stop_blink()
        self.stop_fade()

    # -------------------------------------------------------------------------
    # Blink
    # -------------------------------------------------------------------------

    def start_blink(self, speed_ms: int, repetitions: Optional[int] = None) -> None:
        """Start blinking; any running blink is stopped first."""
        self.stop_blink()
        period_ms = max(self.config.min_blink_period_ms, int(speed_ms))
        self._blink_on = False
        self._blink_cycles = 0
        self._blink_repetitions = repetitions
        logger.debug("Starting blink", period_ms=period_ms, repetitions=repetitions)
        self._blink.start_periodic(period_ms / 1000.0, self._blink_tick)

    def stop_blink(self) -> None:
        if self._blink.active:
            logger.debug("Stopping blink", cycles=self._blink_cycles)
        self._blink.cancel()

    async def _blink_tick(self) -> None:
        self._blink_on = not self._blink_on
        intent = Intent(on=self._blink_on)
        for i, light_id in enumerate(self.light_ids):
            if i:
                await asyncio.sleep(self.config.blink_stagger_s)
            self.queues.enqueue(light_id, intent, force=True)

        if self._blink_on:
            self._blink_cycles += 1
            if self._blink_repetitions is not None and self._blink_cycles >= self._blink_repetitions:
                self._blink.cancel()

    # -------------------------------------------------------------------------
    # Fade
    # -------------------------------------------------------------------------

    def stop_fade(self) -> None:
        if self._fading:
            logger.debug("Stopping fade")
        self._fade_token += 1
        self._fading = False
        self._fade.cancel()

    async def fade_out(
        self,
        duration_s: Optional[float] = None,
        steps: Optional[int] = None,
    ) -> bool:
        """
        Fade every light to off. Returns True when all steps were issued,
        False when the fade was cancelled.
        """
        duration_s = self.config.fade_duration_s if duration_s is None else duration_s
        steps = max(1, self.config.fade_steps if steps is None else steps)

        self.stop_fade()
        token = self._fade_token
        self._fading = True

        allowed_until = time.monotonic() + duration_s + self.config.fade_grace_s
        for light_id in self.light_ids:
            self._allowed_off[light_id] = allowed_until

        ramps: Dict[str, List[int]] = {}
        for light_id in self.light_ids:
            state = await self.queues.read_state(light_id)
            start_bri = state.bri if state is not None and state.bri else 254
            ramps[light_id] = fade_ramp(start_bri, steps)

        if token != self._fade_token:
            return False

        logger.debug("Starting fade", duration_s=duration_s, steps=steps)
        issued = 0

        def tick() -> None:
            nonlocal issued
            issued += 1
            for light_id in self.light_ids:
                if issued < steps:
                    intent = Intent(bri=ramps[light_id][issued - 1])
                else:
                    intent = Intent(on=False)
                self.queues.enqueue(light_id, intent, force=True)
            if issued >= steps:
                self._fade.cancel()

        self._fade.start_periodic(duration_s / steps, tick)
        try:
            await self._fade.wait()
        finally:
            if token == self._fade_token:
                self._fading = False

        completed = issued >= steps
        logger.debug("Fade finished", steps=issued, completed=completed)
        return completed
