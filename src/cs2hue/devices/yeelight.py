"""
Yeelight Gateway: LAN control over TCP (port 55443).

Yeelight bulbs speak JSON-lines RPC. Light ids are 1-based indices into
the configured device list. Hue-scale values are converted on the way
in and out: bri 1..254 <-> 1..100, mirek <-> Kelvin, xy -> RGB.
"""

from __future__ import annotations

import asyncio
import json
import re
import socket
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

import numpy as np
import structlog

from cs2hue.core.exceptions import (
    GatewayConnectionError,
    GatewayResponseError,
    GatewayTimeoutError,
    LightIdError,
)
from cs2hue.core.state import DeviceState, Intent

logger = structlog.get_logger()

YEELIGHT_PORT = 55443
SSDP_ADDR = ("239.255.255.250", 1982)
MSEARCH = (
    "M-SEARCH * HTTP/1.1\r\n"
    "HOST: 239.255.255.250:1982\r\n"
    'MAN: "ssdp:discover"\r\n'
    "ST: wifi_bulb\r\n\r\n"
)

# sRGB (D65) from CIE XYZ
_XYZ_TO_RGB = np.array(
    [
        [3.2406, -1.5372, -0.4986],
        [-0.9689, 1.8758, 0.0415],
        [0.0557, -0.2040, 1.0570],
    ]
)


@dataclass(frozen=True)
class YeelightDevice:
    host: str
    port: int = YEELIGHT_PORT
    name: Optional[str] = None

    @classmethod
    def parse(cls, token: str) -> "YeelightDevice":
        host, _, port = token.strip().partition(":")
        return cls(host=host, port=int(port) if port else YEELIGHT_PORT)


def xy_to_rgb(x: float, y: float, bri: int = 254) -> tuple[int, int, int]:
    """Convert CIE xy + Hue brightness to gamma-corrected 8-bit RGB."""
    Y = (bri if bri > 0 else 254) / 254
    X = (Y / y) * x if y > 0 else 0.0
    Z = (Y / y) * (1 - x - y) if y > 0 else 0.0
    linear = np.clip(_XYZ_TO_RGB @ np.array([X, Y, Z]), 0.0, 1.0)
    srgb = np.where(
        linear <= 0.0031308,
        12.92 * linear,
        1.055 * np.power(linear, 1 / 2.4) - 0.055,
    )
    r, g, b = (int(round(v * 255)) for v in srgb)
    return r, g, b


def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, value))


class YeelightGateway:
    """Drives a list of Yeelight bulbs by 1-based index."""

    name = "yeelight"
    high_latency = True

    def __init__(
        self,
        devices: Sequence[YeelightDevice],
        timeout_s: float = 2.5,
        transition_ms: int = 300,
    ):
        self.devices = list(devices)
        self.timeout_s = timeout_s
        self.transition_ms = _clamp(transition_ms, 30, 5000)

    def _device(self, light_id: str) -> YeelightDevice:
        try:
            index = int(light_id) - 1
        except ValueError:
            raise LightIdError(f"Yeelight id must be numeric, got {light_id!r}") from None
        if index < 0 or index >= len(self.devices):
            raise LightIdError(f"unknown Yeelight device id {light_id} (1..{len(self.devices)})")
        return self.devices[index]

    def build_commands(self, intent: Intent) -> List[tuple[str, list[Any]]]:
        """Power first, then color, brightness last."""
        effect = ["smooth", self.transition_ms]
        commands: List[tuple[str, list[Any]]] = []
        if intent.on is not None:
            commands.append(("set_power", ["on" if intent.on else "off", *effect]))
        if intent.xy is not None:
            r, g, b = xy_to_rgb(intent.xy[0], intent.xy[1], intent.bri or 254)
            commands.append(("set_rgb", [(r << 16) + (g << 8) + b, *effect]))
        elif intent.ct is not None and intent.use_ct:
            kelvin = _clamp(round(1_000_000 / intent.ct), 1700, 6500)
            commands.append(("set_ct_abx", [kelvin, *effect]))
        if intent.bri is not None:
            commands.append(("set_bright", [_clamp(round(intent.bri * 100 / 254), 1, 100), *effect]))
        return commands

    async def _open(self, light_id: str, device: YeelightDevice):
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(device.host, device.port), self.timeout_s
            )
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(light_id, self.timeout_s) from e
        except OSError as e:
            raise GatewayConnectionError(f"{device.host}:{device.port}", str(e)) from e

    async def _close(self, light_id: str, writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug("Yeelight socket closed uncleanly", light=light_id, error=str(e))

    async def set_state(self, light_id: str, intent: Intent) -> None:
        device = self._device(light_id)
        commands = self.build_commands(intent)
        if not commands:
            return

        reader, writer = await self._open(light_id, device)
        try:
            for i, (method, params) in enumerate(commands, start=1):
                line = json.dumps({"id": i, "method": method, "params": params}) + "\r\n"
                writer.write(line.encode())
            await writer.drain()
        except OSError as e:
            raise GatewayConnectionError(f"{device.host}:{device.port}", str(e)) from e
        finally:
            await self._close(light_id, writer)

    async def _rpc(self, light_id: str, method: str, params: list[Any]) -> list[Any]:
        device = self._device(light_id)
        reader, writer = await self._open(light_id, device)
        try:
            writer.write((json.dumps({"id": 1, "method": method, "params": params}) + "\r\n").encode())
            await writer.drain()
            raw = await asyncio.wait_for(reader.readline(), self.timeout_s)
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(light_id, self.timeout_s) from e
        except OSError as e:
            raise GatewayConnectionError(f"{device.host}:{device.port}", str(e)) from e
        finally:
            await self._close(light_id, writer)

        try:
            reply = json.loads(raw.decode() or "{}")
        except ValueError as e:
            raise GatewayResponseError(light_id, None, "invalid Yeelight response") from e
        if "error" in reply:
            raise GatewayResponseError(light_id, None, str(reply["error"]))
        return reply.get("result") or []

    async def get_state(self, light_id: str) -> DeviceState:
        props = await self._rpc(light_id, "get_prop", ["power", "bright", "ct", "color_mode"])
        power = str(props[0] if len(props) > 0 else "").lower()
        try:
            bright = int(props[1]) if len(props) > 1 else 100
        except (TypeError, ValueError):
            bright = 100
        try:
            kelvin = int(props[2]) if len(props) > 2 else 0
        except (TypeError, ValueError):
            kelvin = 0
        color_mode = str(props[3]) if len(props) > 3 else ""

        return DeviceState(
            on=power == "on",
            bri=_clamp(round(bright * 254 / 100), 1, 254),
            # RGB mode bulbs cannot report xy; ct is meaningful only in CT mode
            ct=round(1_000_000 / kelvin) if kelvin > 0 and color_mode == "2" else None,
        )

    async def check_ready(self, light_ids: Sequence[str]) -> None:
        if not self.devices:
            raise LightIdError("no Yeelight devices configured or discovered")
        for light_id in light_ids:
            self._device(light_id)

    async def close(self) -> None:
        return None


async def discover_yeelights(timeout_s: float = 2.5) -> List[YeelightDevice]:
    """Find bulbs on the LAN via SSDP-style multicast M-SEARCH."""
    loop = asyncio.get_running_loop()
    found: dict[str, YeelightDevice] = {}

    class _Protocol(asyncio.DatagramProtocol):
        def datagram_received(self, data: bytes, addr: Any) -> None:
            text = data.decode(errors="ignore")
            match = re.search(r"yeelight://([\d.]+):(\d+)", text, re.IGNORECASE)
            if not match:
                return
            name = re.search(r"^name:\s*(.*)$", text, re.IGNORECASE | re.MULTILINE)
            key = f"{match.group(1)}:{match.group(2)}"
            found.setdefault(
                key,
                YeelightDevice(
                    host=match.group(1),
                    port=int(match.group(2)),
                    name=name.group(1).strip() if name and name.group(1).strip() else None,
                ),
            )

    transport, _ = await loop.create_datagram_endpoint(
        _Protocol, family=socket.AF_INET, local_addr=("0.0.0.0", 0)
    )
    try:
        transport.sendto(MSEARCH.encode(), SSDP_ADDR)
        await asyncio.sleep(timeout_s)
    finally:
        transport.close()

    logger.info("Yeelight discovery finished", found=len(found))
    return list(found.values())
