"""
Health-Check Reconciler: re-enable lights that went dark unexpectedly.

The backstop for dropped writes and out-of-band changes (a light
switched off from the vendor app). It never fights an intentional off:
not after an off intent, not inside a fade's allowed-off window, and not
right after a write that may still be in flight.
"""

from __future__ import annotations

import asyncio
import time
from typing import List, Optional, Sequence

import structlog

from cs2hue.core.config import HealthCheckConfig
from cs2hue.core.state import Intent
from cs2hue.orchestrator.command_queue import CommandQueueManager
from cs2hue.orchestrator.effects import EffectEngine
from cs2hue.orchestrator.round_machine import RoundMachine
from cs2hue.orchestrator.scene import SceneController

logger = structlog.get_logger()


class HealthCheckReconciler:
    """Self-gated periodic check, ticked by the poller every cycle."""

    def __init__(
        self,
        queues: CommandQueueManager,
        effects: EffectEngine,
        scene: SceneController,
        machine: RoundMachine,
        light_ids: Sequence[str],
        config: Optional[HealthCheckConfig] = None,
    ):
        self.queues = queues
        self.effects = effects
        self.scene = scene
        self.machine = machine
        self.light_ids = [str(light_id) for light_id in light_ids]
        self.config = config or HealthCheckConfig()
        self._last_check: Optional[float] = None
        self.checks = 0
        self.reenabled = 0

    def blocked_by(self, now: float) -> Optional[str]:
        """Why a check cannot run right now, or None."""
        if not self.config.enabled:
            return "disabled"
        if self.effects.active:
            return "effect"
        if self.machine.bomb_timer_active or self.machine.state.bomb_planted:
            return "bomb"
        if self.machine.state.suppressed:
            return "suppressed"
        if self.scene.healthcheck_suppressed(now):
            return "scene"
        if self._last_check is not None and now - self._last_check < self.config.interval_s:
            return "interval"
        return None

    def may_reenable(self, light_id: str, now: float) -> bool:
        last = self.queues.last_intent(light_id)
        if last is not None and last.requests_off:
            return False
        if self.effects.is_allowed_off(light_id, now):
            return False
        last_write = self.queues.last_write_at(light_id)
        if last_write is not None and now - last_write < self.config.write_race_s:
            return False
        return True

    async def tick(self) -> List[str]:
        """Run one check if allowed; return the ids that were re-enabled."""
        now = time.monotonic()
        if self.blocked_by(now) is not None:
            return []

        self._last_check = now
        self.checks += 1

        states = await asyncio.gather(*(self.queues.read_state(lid) for lid in self.light_ids))
        now = time.monotonic()

        healed = []
        for light_id, state in zip(self.light_ids, states):
            if state is None or state.on:
                continue
            if not self.may_reenable(light_id, now):
                logger.debug("Light off as intended", light=light_id)
                continue
            logger.info("Light is off unexpectedly, re-enabling", light=light_id)
            self.queues.enqueue(light_id, Intent(on=True, bri=self.config.default_bri), force=True)
            healed.append(light_id)

        self.reenabled += len(healed)
        return healed
