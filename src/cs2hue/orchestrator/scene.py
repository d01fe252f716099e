"""
Scene Controller: turn a color template into device writes.

A scene starts with ``begin_scene``: the epoch advances (voiding queued
work from the previous scene), effects stop, dedup/throttle caches are
cleared and the reconciler is held off briefly. Consequential scenes go
through ``apply_color_with_fallback``, which escalates from verified
writes to a delayed assert pass and a final targeted sweep.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, List, Optional, Sequence

import structlog

from cs2hue.core.colors import ColorTemplate
from cs2hue.core.config import SceneConfig
from cs2hue.core.state import DeviceState, Intent, SceneEpoch
from cs2hue.orchestrator.command_queue import CommandQueueManager
from cs2hue.orchestrator.effects import EffectEngine

logger = structlog.get_logger()

SuppressionProbe = Callable[[], Optional[float]]


class SceneController:
    """Owns the scene epoch and the confirmation task."""

    def __init__(
        self,
        queues: CommandQueueManager,
        effects: EffectEngine,
        epoch: SceneEpoch,
        light_ids: Sequence[str],
        config: Optional[SceneConfig] = None,
        suppression_probe: Optional[SuppressionProbe] = None,
    ):
        self.queues = queues
        self.effects = effects
        self.epoch = epoch
        self.light_ids = [str(light_id) for light_id in light_ids]
        self.config = config or SceneConfig()
        # Returns the monotonic time suppression began, or None
        self.suppression_probe = suppression_probe

        self.current_label: Optional[str] = None
        self.scene_started_at: float = 0.0
        self.healthcheck_suppressed_until: float = 0.0
        self._confirm_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Scene lifecycle
    # -------------------------------------------------------------------------

    def begin_scene(self, label: str) -> int:
        """Start a new scene and return its epoch."""
        self.effects.stop_all()
        self.cancel_confirmation()
        epoch = self.epoch.advance()
        self.queues.clear_caches()

        now = time.monotonic()
        self.current_label = label
        self.scene_started_at = now
        self.healthcheck_suppressed_until = now + self.config.healthcheck_suppress_s

        logger.debug("Scene started", scene=label, epoch=epoch)
        return epoch

    def healthcheck_suppressed(self, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return now < self.healthcheck_suppressed_until

    def cancel_confirmation(self) -> None:
        task = self._confirm_task
        self._confirm_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def wait_confirmation(self) -> None:
        """Wait for the assert and final passes of the current scene to finish."""
        task = self._confirm_task
        if task is None or task is asyncio.current_task():
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    @property
    def confirming(self) -> bool:
        return self._confirm_task is not None and not self._confirm_task.done()

    @staticmethod
    def build_intent(color: Optional[ColorTemplate]) -> Optional[Intent]:
        """Intent for a template, or None when it is missing or disabled."""
        if color is None or not color.enabled:
            return None

        xy = None
        ct = None
        use_ct = False
        if color.use_ct and color.ct is not None:
            ct = color.ct
            use_ct = True
        elif color.has_xy:
            xy = (float(color.x), float(color.y))

        return Intent(on=color.on, bri=color.bri, xy=xy, ct=ct, use_ct=use_ct)

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    async def send_to_all(
        self,
        intent: Intent,
        force: bool = False,
        verify: bool = False,
        retries: int = 0,
        light_ids: Optional[Sequence[str]] = None,
    ) -> List[asyncio.Future]:
        """Enqueue ``intent`` for every light with a small stagger."""
        futures = []
        targets = self.light_ids if light_ids is None else list(light_ids)
        for i, light_id in enumerate(targets):
            if i:
                await asyncio.sleep(self.config.stagger_s)
            futures.append(
                self.queues.enqueue(light_id, intent, force=force, verify=verify, retries=retries)
            )
        return futures

    async def force_on_all(self) -> List[asyncio.Future]:
        return await self.send_to_all(Intent(on=True), force=True)

    def matches(self, state: DeviceState, intent: Intent) -> bool:
        return self.queues.matches(state, intent)

    async def apply_color(self, color: Optional[ColorTemplate], label: str) -> bool:
        """Begin a scene and send the color to all lights (deduplicated)."""
        intent = self.build_intent(color)
        if intent is None:
            logger.info("Color disabled or missing", scene=label)
            return False

        self.begin_scene(label)
        await self.send_to_all(intent)
        return True

    async def apply_color_with_fallback(self, color: Optional[ColorTemplate], label: str) -> bool:
        """
        Apply a color with escalating reliability.

        1. Forced, verified writes to every light (bounded retries).
        2. After ``assert_delay_s``, re-read all lights, resend to mismatches.
        3. After ``final_delay_s``, one last sweep over lights still off target.

        Steps 2 and 3 run in a background task and stop as soon as the
        epoch advances, an effect starts, or suppression begins.
        """
        intent = self.build_intent(color)
        if intent is None:
            logger.info("Color disabled or missing", scene=label)
            return False

        epoch = self.begin_scene(label)
        started = self.scene_started_at

        futures = await self.send_to_all(
            intent,
            force=True,
            verify=True,
            retries=self.queues.config.verify_retries,
        )
        results = await asyncio.gather(*futures)
        if not all(results):
            logger.debug("Initial scene writes incomplete", scene=label, ok=sum(results), total=len(results))

        if self._should_abort(epoch, started, label, "assert"):
            return True

        self._confirm_task = asyncio.get_running_loop().create_task(
            self._confirm(epoch, started, intent, label),
            name=f"confirm:{label}",
        )
        return True

    # -------------------------------------------------------------------------
    # Confirmation
    # -------------------------------------------------------------------------

    def _should_abort(self, epoch: int, started: float, label: str, step: str) -> bool:
        reason = None
        if not self.epoch.is_current(epoch):
            reason = "epoch advanced"
        elif self.effects.is_fading:
            reason = "fading"
        elif self.effects.is_blinking:
            reason = "blinking"
        elif self.suppression_probe is not None:
            since = self.suppression_probe()
            if since is not None and since >= started:
                reason = "suppressed"

        if reason is None:
            return False
        logger.debug("Scene confirmation aborted", scene=label, step=step, reason=reason)
        return True

    async def _resend_mismatched(self, intent: Intent, light_ids: Sequence[str]) -> List[str]:
        mismatched = []
        for light_id in light_ids:
            state = await self.queues.read_state(light_id)
            if state is None or not self.matches(state, intent):
                mismatched.append(light_id)
        if mismatched:
            await self.send_to_all(intent, force=True, light_ids=mismatched)
        return mismatched

    async def _confirm(self, epoch: int, started: float, intent: Intent, label: str) -> None:
        await asyncio.sleep(self.config.assert_delay_s)
        if self._should_abort(epoch, started, label, "assert"):
            return
        mismatched = await self._resend_mismatched(intent, self.light_ids)
        if not mismatched:
            logger.debug("Scene confirmed", scene=label)
            return
        logger.info("Re-asserting scene", scene=label, lights=mismatched)

        await asyncio.sleep(self.config.final_delay_s)
        if self._should_abort(epoch, started, label, "final"):
            return
        remaining = await self._resend_mismatched(intent, mismatched)
        if remaining:
            logger.warning("Lights still off target after final sweep", scene=label, lights=remaining)
        else:
            logger.debug("Scene confirmed", scene=label)
