"""Core system components for CS2Hue."""

from cs2hue.core.state import (
    BombState,
    DeviceState,
    GameSnapshot,
    Intent,
    RoundState,
    SceneEpoch,
)
from cs2hue.core.config import Settings
from cs2hue.core.colors import ColorPalette, ColorTemplate, BombTemplate
from cs2hue.core.exceptions import (
    LightSyncError,
    GatewayError,
    SnapshotError,
    ConfigError,
)

__all__ = [
    "BombState",
    "DeviceState",
    "GameSnapshot",
    "Intent",
    "RoundState",
    "SceneEpoch",
    "Settings",
    "ColorPalette",
    "ColorTemplate",
    "BombTemplate",
    "LightSyncError",
    "GatewayError",
    "SnapshotError",
    "ConfigError",
]
