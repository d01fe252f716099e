"""Light gateway implementations."""

from cs2hue.devices.gateway import LightGateway
from cs2hue.devices.hue import HueGateway
from cs2hue.devices.mocks import MockGateway
from cs2hue.devices.yeelight import (
    YeelightDevice,
    YeelightGateway,
    discover_yeelights,
    xy_to_rgb,
)

__all__ = [
    "LightGateway",
    "HueGateway",
    "MockGateway",
    "YeelightDevice",
    "YeelightGateway",
    "discover_yeelights",
    "xy_to_rgb",
]
