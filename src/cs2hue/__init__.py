"""
CS2Hue: Counter-Strike 2 game state driven light sync

Mirrors round phase, team, bomb timer and round outcome onto Philips Hue
or Yeelight lights, reliably, over latency-bearing device protocols.
"""

__version__ = "0.1.0"
__author__ = "CS2Hue Team"

from cs2hue.core.config import Settings
from cs2hue.core.state import GameSnapshot, Intent

__all__ = [
    "GameSnapshot",
    "Intent",
    "Settings",
    "__version__",
]
