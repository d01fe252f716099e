"""
State Definitions for CS2Hue.

This module defines the records that flow through the light sync
runtime: the parsed game snapshot, the desired and observed device
states, the scene generation counter and the round state machine flags.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class BombState(Enum):
    """Bomb status as reported in ``round.bomb``."""

    NONE = "none"
    PLANTED = "planted"
    DEFUSED = "defused"
    EXPLODED = "exploded"


class ColorMode(str, Enum):
    """Modes tracked in ``RoundState.last_mode`` besides team names."""

    MENU = "menu"
    WARMUP = "warmup"
    DEFAULT = "default"


# =============================================================================
# Game snapshot
# =============================================================================


class _SnapshotModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class PlayerInfo(_SnapshotModel):
    team: Optional[str] = None
    activity: Optional[str] = None


class TeamScore(_SnapshotModel):
    score: int = 0


class MapInfo(_SnapshotModel):
    mode: Optional[str] = None
    phase: Optional[str] = None
    team_ct: Optional[TeamScore] = None
    team_t: Optional[TeamScore] = None


class RoundInfo(_SnapshotModel):
    phase: Optional[str] = None
    bomb: BombState = BombState.NONE
    win_team: Optional[str] = None

    @field_validator("bomb", mode="before")
    @classmethod
    def _unknown_bomb_is_none(cls, value: Any) -> Any:
        if value is None:
            return BombState.NONE
        if isinstance(value, str) and value not in {b.value for b in BombState}:
            # e.g. "carried" / "dropped" in newer feeds: no bomb activity
            return BombState.NONE
        return value


class GameSnapshot(_SnapshotModel):
    """
    Immutable game state parsed from the external feed.

    Only the fields the orchestrator reacts to are modelled; the rest of
    the document is ignored.
    """

    player: Optional[PlayerInfo] = None
    map: Optional[MapInfo] = None
    round: Optional[RoundInfo] = None

    @property
    def activity(self) -> Optional[str]:
        return self.player.activity if self.player else None

    @property
    def team(self) -> Optional[str]:
        return self.player.team if self.player else None

    @property
    def map_phase(self) -> Optional[str]:
        return self.map.phase if self.map else None

    @property
    def round_phase(self) -> Optional[str]:
        return self.round.phase if self.round else None

    @property
    def bomb(self) -> BombState:
        return self.round.bomb if self.round else BombState.NONE

    @property
    def win_team(self) -> Optional[str]:
        return self.round.win_team if self.round else None


# =============================================================================
# Device intents
# =============================================================================


@dataclass(frozen=True)
class Intent:
    """Desired observable device state."""

    on: Optional[bool] = None
    bri: Optional[int] = None
    xy: Optional[tuple[float, float]] = None
    ct: Optional[int] = None
    use_ct: bool = False  # transport hint, meaningful to CT-capable LAN bulbs

    def to_payload(self, include_hint: bool = False) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.on is not None:
            body["on"] = self.on
        if self.bri is not None:
            body["bri"] = self.bri
        if self.xy is not None:
            body["xy"] = [self.xy[0], self.xy[1]]
        if self.ct is not None:
            body["ct"] = self.ct
            if include_hint and self.use_ct:
                body["useCt"] = True
        return body

    def key(self) -> str:
        """Stable serialization used for dedup."""
        return json.dumps(self.to_payload(include_hint=True), sort_keys=True)

    @property
    def requests_off(self) -> bool:
        return self.on is False


@dataclass(frozen=True)
class DeviceState:
    """Last observed device state."""

    on: bool
    bri: Optional[int] = None
    xy: Optional[tuple[float, float]] = None
    ct: Optional[int] = None

    def to_intent(self, use_ct: bool = False) -> Intent:
        """Build the intent that would put a device back into this state."""
        if not self.on:
            # Bridges reject brightness/color writes to a light that is off
            return Intent(on=False)
        if self.xy is not None:
            return Intent(on=self.on, bri=self.bri, xy=self.xy)
        return Intent(on=self.on, bri=self.bri, ct=self.ct, use_ct=use_ct and self.ct is not None)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"on": self.on}
        if self.bri is not None:
            data["bri"] = self.bri
        if self.xy is not None:
            data["xy"] = list(self.xy)
        if self.ct is not None:
            data["ct"] = self.ct
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceState":
        xy = data.get("xy")
        return cls(
            on=bool(data.get("on", False)),
            bri=data.get("bri") if isinstance(data.get("bri"), int) else None,
            xy=(float(xy[0]), float(xy[1])) if isinstance(xy, (list, tuple)) and len(xy) == 2 else None,
            ct=data.get("ct") if isinstance(data.get("ct"), int) else None,
        )


# =============================================================================
# Orchestrator state
# =============================================================================


class SceneEpoch:
    """
    Scene generation counter.

    Work captured at epoch ``n`` is void once the counter moves past ``n``.
    """

    def __init__(self) -> None:
        self._value = 0

    @property
    def current(self) -> int:
        return self._value

    def advance(self) -> int:
        self._value += 1
        return self._value

    def is_current(self, epoch: int) -> bool:
        return epoch == self._value


@dataclass
class RoundState:
    """Round and bomb flags owned by the round state machine."""

    bomb_planted: bool = False
    bomb_exploded: bool = False
    bomb_defused: bool = False
    exploded_handled: bool = False
    defused_handled: bool = False
    bomb_countdown: Optional[int] = None

    round_ended: bool = False
    suppressed: bool = False
    suppressed_since: Optional[float] = None
    result_hold_until: float = 0.0
    result_latched: bool = False

    active_team: Optional[str] = None
    last_mode: Optional[str] = None

    # Log-once bookkeeping
    logged: set[str] = field(default_factory=set)

    @property
    def bomb_active(self) -> bool:
        return self.bomb_planted or self.bomb_exploded or self.bomb_defused

    @property
    def transitional(self) -> bool:
        return self.bomb_planted or self.round_ended or self.suppressed

    def log_once(self, key: str) -> bool:
        """Return True the first time ``key`` is seen."""
        if key in self.logged:
            return False
        self.logged.add(key)
        return True

    def rearm(self, key: str) -> None:
        self.logged.discard(key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bomb_planted": self.bomb_planted,
            "bomb_exploded": self.bomb_exploded,
            "bomb_defused": self.bomb_defused,
            "bomb_countdown": self.bomb_countdown,
            "round_ended": self.round_ended,
            "suppressed": self.suppressed,
            "active_team": self.active_team,
            "last_mode": self.last_mode,
        }
