"""
Round & Bomb State Machine.

Consumes game snapshots and decides which scene should be active. Rules
are evaluated in priority order on every snapshot:

1. menu activity -> menu scene
2. warmup phase -> warmup scene
3. bomb planted -> bomb color, blink, countdown with stage checkpoints
4. bomb exploded (once) -> exploded color, round result after a hold
5. bomb defused (once) -> defused color, round result after a hold
6. new round after a result -> resume team/default color
7. no bomb activity -> team color, else default
8. round over with a winner -> win/lose color, fade out, suppress

Timers keep the machine moving when the feed stalls: a grace timer and a
watchdog force the round result after a bomb outcome, and a suppression
watchdog force-resumes a round that never reported its end.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional

import structlog

from cs2hue.core.colors import ColorPalette, ColorTemplate
from cs2hue.core.config import Settings
from cs2hue.core.state import BombState, ColorMode, GameSnapshot, Intent, RoundState
from cs2hue.orchestrator.effects import EffectEngine
from cs2hue.orchestrator.presence import PresenceHub
from cs2hue.orchestrator.scene import SceneController
from cs2hue.orchestrator.timers import TimerHandle

logger = structlog.get_logger()


class RoundMachine:
    """Single writer of ``RoundState``."""

    def __init__(
        self,
        settings: Settings,
        palette: ColorPalette,
        scene: SceneController,
        effects: EffectEngine,
        presence: Optional[PresenceHub] = None,
    ):
        self.settings = settings
        self.palette = palette
        self.scene = scene
        self.effects = effects
        self.presence = presence or PresenceHub()

        self.state = RoundState()
        self.snapshot: Optional[GameSnapshot] = None
        self._pending_winner: Optional[str] = None

        self._bomb_timer = TimerHandle("bomb-countdown")
        self._bomb_reset = TimerHandle("bomb-reset-grace")
        self._result_grace = TimerHandle("result-grace")
        self._result_watchdog = TimerHandle("result-watchdog")
        self._suppression_watchdog = TimerHandle("suppression-watchdog")
        self._startup = TimerHandle("startup-default")
        self._finish_task: Optional[asyncio.Task] = None

        # Confirmation passes stop once suppression begins
        self.scene.suppression_probe = lambda: self.state.suppressed_since

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def result_pending(self) -> bool:
        return (
            time.monotonic() < self.state.result_hold_until
            or self._result_grace.active
            or self._result_watchdog.active
        )

    @property
    def needs_ticks(self) -> bool:
        """True while behaviour depends on time as well as on new snapshots."""
        s = self.state
        return (
            s.bomb_active
            or s.round_ended
            or s.suppressed
            or self.result_pending
            or self._bomb_reset.active
            or self.effects.active
        )

    @property
    def bomb_timer_active(self) -> bool:
        return self._bomb_timer.active

    def status(self) -> Dict[str, Any]:
        data = self.state.to_dict()
        data.update(
            {
                "result_pending": self.result_pending,
                "result_latched": self.state.result_latched,
                "bomb_timer_active": self.bomb_timer_active,
            }
        )
        return data

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def schedule_startup_default(self) -> None:
        self._startup.start_once(self.settings.round.startup_default_delay_s, self._startup_default)

    async def _startup_default(self) -> None:
        s = self.state
        if s.last_mode is not None or s.bomb_active or s.suppressed:
            return
        logger.info("Applying startup default color")
        await self._safe_apply(self.palette.get("default"), ColorMode.DEFAULT.value)
        s.last_mode = ColorMode.DEFAULT.value

    def reset(self) -> None:
        """Cancel every timer and forget all round state."""
        for timer in (
            self._bomb_timer,
            self._bomb_reset,
            self._result_grace,
            self._result_watchdog,
            self._suppression_watchdog,
            self._startup,
        ):
            timer.cancel()
        if self._finish_task is not None and not self._finish_task.done():
            if self._finish_task is not asyncio.current_task():
                self._finish_task.cancel()
        self._finish_task = None
        self.state = RoundState()
        self.snapshot = None
        self._pending_winner = None

    async def _safe_apply(
        self,
        color: Optional[ColorTemplate],
        label: str,
        fallback: bool = True,
    ) -> bool:
        try:
            if fallback:
                return await self.scene.apply_color_with_fallback(color, label)
            return await self.scene.apply_color(color, label)
        except Exception as e:
            logger.error("Failed to apply color", scene=label, error=str(e), exc_info=True)
            return False

    # -------------------------------------------------------------------------
    # Snapshot handling
    # -------------------------------------------------------------------------

    async def on_snapshot(self, snapshot: GameSnapshot) -> None:
        self.snapshot = snapshot
        s = self.state

        if self.effects.is_fading:
            if s.log_once("fade-skip"):
                logger.debug("Fading out, skipping snapshot")
            return
        s.rearm("fade-skip")

        if snapshot.activity == "menu":
            await self._enter_mode(ColorMode.MENU, "menu")
            return

        if snapshot.map_phase == "warmup":
            await self._enter_mode(ColorMode.WARMUP, "warmup")
            return

        bomb = snapshot.bomb

        if bomb is BombState.NONE and s.bomb_planted and not self._bomb_reset.active:
            self._bomb_reset.start_once(self.settings.round.bomb_reset_grace_s, self._bomb_reset_check)

        if bomb is BombState.PLANTED and not s.bomb_planted:
            s.bomb_planted = True
            s.exploded_handled = False
            s.defused_handled = False
            await self._bomb_planted()

        if bomb is BombState.EXPLODED and not s.bomb_exploded and not s.exploded_handled:
            s.bomb_exploded = True
            s.bomb_planted = False
            s.exploded_handled = True
            await self._bomb_outcome("exploded", self.settings.round.fallback_winner_on_explode)

        if bomb is BombState.DEFUSED and not s.bomb_defused and not s.defused_handled:
            s.bomb_defused = True
            s.bomb_planted = False
            s.defused_handled = True
            await self._bomb_outcome("defused", self.settings.round.fallback_winner_on_defuse)

        new_round = snapshot.round_phase != "over"

        if new_round and bomb is BombState.NONE:
            # A fresh round re-arms the once-per-round outcome edges
            s.result_latched = False
            s.exploded_handled = False
            s.defused_handled = False

        if new_round and (s.round_ended or s.suppressed):
            await self._resume(snapshot)

        if bomb is BombState.NONE and not s.bomb_active and not s.suppressed:
            await self._apply_team_or_default(snapshot)

        if (
            snapshot.round_phase == "over"
            and snapshot.win_team
            and not s.round_ended
            and not s.result_latched
        ):
            if time.monotonic() < s.result_hold_until:
                if s.log_once("result-hold"):
                    logger.debug("Holding round result so the bomb color can show")
                return
            await self._round_result(snapshot.win_team, source="feed")

    async def _enter_mode(self, mode: ColorMode, event: str) -> None:
        s = self.state
        if s.last_mode == mode.value:
            return

        logger.info("Entering mode", mode=mode.value)
        self._reset_bomb_state()
        color = self.palette.get(mode.value)
        if color is None:
            if s.log_once(f"missing-color:{mode.value}"):
                logger.warning("Color is disabled or not defined", mode=mode.value)
        else:
            await self._safe_apply(color, mode.value, fallback=False)
        s.last_mode = mode.value
        self.presence.emit(event)

    def _reset_bomb_state(self, clear_edges: bool = True) -> None:
        s = self.state
        if s.log_once("bomb-reset"):
            logger.debug("Resetting bomb state")

        self._bomb_timer.cancel()
        self._bomb_reset.cancel()
        self._result_grace.cancel()
        self._result_watchdog.cancel()
        self.effects.stop_blink()

        s.bomb_planted = False
        s.bomb_exploded = False
        s.bomb_defused = False
        s.bomb_countdown = None
        s.last_mode = None
        if clear_edges:
            s.exploded_handled = False
            s.defused_handled = False
        self._pending_winner = None

    async def _bomb_reset_check(self) -> None:
        snapshot = self.snapshot
        if snapshot is not None and snapshot.bomb is BombState.NONE and self.state.bomb_planted:
            logger.info("Bomb no longer reported, resetting bomb state")
            self._reset_bomb_state()

    # -------------------------------------------------------------------------
    # Bomb
    # -------------------------------------------------------------------------

    async def _bomb_planted(self) -> None:
        s = self.state
        cfg = self.settings.bomb
        template = self.palette.bomb()

        s.bomb_countdown = (
            template.initial_time if template and template.initial_time else cfg.default_initial_time
        )

        if template is not None:
            color: ColorTemplate = template
            if template.bri is None:
                logger.warning("No brightness set for bomb color, using fallback", bri=cfg.fallback_bri)
                color = template.model_copy(update={"bri": cfg.fallback_bri})
            await self._safe_apply(color, "bomb")
        else:
            logger.info("Bomb color is disabled or missing")

        speed = template.initial_speed() if template else None
        if not speed or speed <= 0:
            speed = cfg.default_blink_speed_ms
        self.effects.start_blink(speed)
        self._bomb_timer.start_periodic(cfg.tick_s, self._bomb_tick)

        logger.info("Bomb has been planted", countdown=s.bomb_countdown, blink_ms=speed)
        self.presence.emit("planted", countdown=s.bomb_countdown)

    async def _bomb_tick(self) -> None:
        s = self.state
        if not s.bomb_planted or s.bomb_defused or s.bomb_exploded or s.round_ended or s.suppressed:
            logger.debug("Bomb timer stopped by state change", countdown=s.bomb_countdown)
            self._bomb_timer.cancel()
            return

        s.bomb_countdown = (s.bomb_countdown or 0) - 1
        remaining = s.bomb_countdown

        if remaining in self.settings.bomb.checkpoints:
            if self.settings.show_bomb_timer:
                logger.info("Bomb timer", remaining_s=remaining)
            await self._apply_bomb_stage(remaining)

        if remaining <= 0:
            self._bomb_timer.cancel()
            self.effects.stop_blink()
            # The last blink toggle may have left the lights off
            await self.scene.force_on_all()

    async def _apply_bomb_stage(self, remaining: int) -> None:
        cfg = self.settings.bomb
        template = self.palette.bomb()
        stage = template.stages.get(remaining) if template else None

        bri = stage.bri if stage and stage.bri is not None else cfg.stage_bri.get(remaining)
        speed = stage.speed if stage and stage.speed is not None else cfg.stage_speed_ms.get(remaining)

        label = f"bomb-stage-{remaining}"
        try:
            self.scene.begin_scene(label)
            if bri is not None:
                logger.debug("Bomb stage brightness", remaining_s=remaining, bri=bri)
                await self.scene.send_to_all(Intent(on=True, bri=bri), force=True)
        except Exception as e:
            logger.error("Failed to apply bomb stage", scene=label, error=str(e), exc_info=True)
            return

        if speed is None:
            logger.warning("No blink speed for bomb stage", remaining_s=remaining)
        elif speed > 0:
            self.effects.start_blink(speed)
        else:
            logger.debug("Bomb stage stops blinking, forcing lights on", remaining_s=remaining)
            await self.scene.force_on_all()

    async def _bomb_outcome(self, kind: str, fallback_winner: str) -> None:
        s = self.state
        cfg = self.settings.round

        self._bomb_timer.cancel()
        self._bomb_reset.cancel()
        self.effects.stop_blink()
        s.bomb_countdown = None

        s.result_hold_until = time.monotonic() + cfg.result_hold_s
        self._pending_winner = fallback_winner
        self._result_grace.start_once(cfg.result_hold_s, self._on_result_grace)
        self._result_watchdog.start_once(cfg.result_watchdog_s, self._on_result_watchdog)

        logger.info("Bomb outcome", outcome=kind, fallback_winner=fallback_winner)
        self.presence.emit(kind)
        await self._safe_apply(self.palette.get(kind), kind)

    # -------------------------------------------------------------------------
    # Round result
    # -------------------------------------------------------------------------

    def _best_known_winner(self) -> Optional[str]:
        if self.snapshot is not None and self.snapshot.win_team:
            return self.snapshot.win_team
        return self._pending_winner

    async def _on_result_grace(self) -> None:
        s = self.state
        if s.round_ended or s.result_latched:
            return
        winner = self._best_known_winner()
        logger.debug("Result hold elapsed", winner=winner)
        await self._round_result(winner, source="grace")

    async def _on_result_watchdog(self) -> None:
        s = self.state
        if s.round_ended or s.result_latched:
            return
        winner = self._best_known_winner()
        logger.warning("Round result watchdog fired", winner=winner)
        await self._round_result(winner, source="watchdog")

    async def _round_result(self, winner: Optional[str], source: str) -> None:
        s = self.state
        if s.round_ended or s.result_latched:
            return

        team = self.snapshot.team if self.snapshot else None
        won = team is not None and team == winner
        label = "win" if won else "lose"

        s.round_ended = True
        s.suppressed = True
        s.suppressed_since = time.monotonic()
        s.result_latched = True
        s.rearm("result-hold")

        self._result_grace.cancel()
        self._result_watchdog.cancel()
        self._bomb_timer.cancel()
        self.effects.stop_blink()

        logger.info("Round won" if won else "Round lost", winner=winner, team=team, source=source)
        self.presence.emit("won" if won else "lost", winner=winner)

        color = self.palette.get(label)
        if color is None:
            logger.info("Result color is disabled or missing", scene=label)
            self._suppression_watchdog.start_once(self.settings.round.suppression_max_s, self._force_resume)
            return

        await self._safe_apply(color, label)
        self._finish_task = asyncio.get_running_loop().create_task(
            self._finish_round(), name="round-finish"
        )

    async def _finish_round(self) -> None:
        try:
            await self.effects.fade_out()
            if self.state.suppressed:
                await self.scene.force_on_all()
        except Exception as e:
            logger.error("Round finish failed", error=str(e), exc_info=True)
        if self.state.suppressed:
            self._suppression_watchdog.start_once(self.settings.round.suppression_max_s, self._force_resume)

    async def _force_resume(self) -> None:
        s = self.state
        if not s.suppressed:
            return
        elapsed = time.monotonic() - s.suppressed_since if s.suppressed_since else None
        logger.warning("Suppression watchdog fired, forcing resume", suppressed_s=elapsed)
        await self._resume(self.snapshot)

    async def _resume(self, snapshot: Optional[GameSnapshot]) -> None:
        s = self.state
        logger.info("New round started, resuming color logic")

        s.round_ended = False
        s.suppressed = False
        s.suppressed_since = None
        s.rearm("bomb-reset")
        self._suppression_watchdog.cancel()

        # Handled-edge flags survive while the feed still reports the old outcome
        self._reset_bomb_state(clear_edges=snapshot is None or snapshot.bomb is BombState.NONE)

        try:
            await asyncio.gather(*await self.scene.force_on_all())
        except Exception as e:
            logger.error("Failed to force lights on", error=str(e), exc_info=True)
        await self._apply_team_or_default(snapshot, force=True)
        self.presence.emit("round_start")

    # -------------------------------------------------------------------------
    # Team / default
    # -------------------------------------------------------------------------

    async def _apply_team_or_default(self, snapshot: Optional[GameSnapshot], force: bool = False) -> None:
        s = self.state
        team = snapshot.team if snapshot else None

        if team and self.palette.has(team):
            for key in [k for k in s.logged if k.startswith("missing-")]:
                s.rearm(key)
            if force or s.last_mode != team:
                logger.info("Switching to team color", team=team)
                await self._safe_apply(self.palette.get(team), team)
                s.last_mode = team
                s.active_team = team
            return

        if snapshot is None or snapshot.player is None:
            if s.log_once("missing-player"):
                logger.info("Player data missing, likely spectating or dead")
        elif not team:
            if s.log_once("missing-team"):
                logger.warning("Player exists but no team assigned")
        elif s.log_once(f"missing-team-color:{team}"):
            logger.warning("No color defined for team", team=team)

        if force or s.last_mode != ColorMode.DEFAULT.value:
            logger.info("Switching to default color")
            await self._safe_apply(self.palette.get("default"), ColorMode.DEFAULT.value)
            s.last_mode = ColorMode.DEFAULT.value
