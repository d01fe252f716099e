"""
Hue Gateway: Philips Hue bridge client (REST API v1).

Normalizes light state to ``DeviceState`` and passes intents through as
the bridge's JSON state body.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Sequence

import aiohttp
import structlog

from cs2hue.core.exceptions import (
    GatewayConnectionError,
    GatewayError,
    GatewayResponseError,
    GatewayTimeoutError,
)
from cs2hue.core.state import DeviceState, Intent

logger = structlog.get_logger()

STREAMING_MODES = {"stream", "streaming"}


class HueGateway:
    """Async client for one Hue bridge."""

    name = "hue"
    high_latency = False

    def __init__(self, bridge_ip: str, api_key: str, timeout_s: float = 2.5):
        self.bridge_ip = bridge_ip
        self.api_base = f"http://{bridge_ip}/api/{api_key}"
        self.timeout_s = timeout_s
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_s)
            )
        return self._session

    async def close(self) -> None:
        """Gracefully close aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        light_id: Optional[str] = None,
        json_body: Optional[dict[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ) -> Any:
        url = f"{self.api_base}{path}"
        timeout = aiohttp.ClientTimeout(total=timeout_s or self.timeout_s)
        try:
            async with self._get_session().request(
                method, url, json=json_body, timeout=timeout
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise GatewayResponseError(light_id, resp.status, text[:200])
                return await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(light_id, timeout_s or self.timeout_s) from e
        except aiohttp.ClientError as e:
            raise GatewayConnectionError(self.bridge_ip, str(e)) from e

    async def get_state(self, light_id: str) -> DeviceState:
        body = await self._request("GET", f"/lights/{light_id}", light_id=light_id)
        if not isinstance(body, dict):
            raise GatewayResponseError(light_id, None, "unexpected light payload")
        _raise_on_hue_errors(light_id, body)
        state = body.get("state") or {}
        xy = state.get("xy")
        return DeviceState(
            on=bool(state.get("on")),
            bri=state["bri"] if isinstance(state.get("bri"), int) else None,
            xy=(float(xy[0]), float(xy[1])) if isinstance(xy, list) and len(xy) == 2 else None,
            ct=state["ct"] if isinstance(state.get("ct"), int) else None,
        )

    async def set_state(self, light_id: str, intent: Intent) -> None:
        body = await self._request(
            "PUT",
            f"/lights/{light_id}/state",
            light_id=light_id,
            json_body=intent.to_payload(),
        )
        _raise_on_hue_errors(light_id, body)

    async def check_ready(self, light_ids: Sequence[str]) -> None:
        """Bridge reachable, API key accepted, no light in entertainment streaming."""
        logger.info("Connecting to Hue bridge", bridge=self.bridge_ip)
        try:
            async with self._get_session().head(
                f"http://{self.bridge_ip}", timeout=aiohttp.ClientTimeout(total=1.0)
            ):
                pass
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            raise GatewayConnectionError(self.bridge_ip, str(e) or "timeout") from e

        lights = await self._request("GET", "/lights", timeout_s=2.0)
        if not isinstance(lights, dict):
            raise GatewayResponseError(None, None, "unexpected response format from /lights")
        _raise_on_hue_errors(None, lights)

        for light_id in light_ids:
            raw = lights.get(str(light_id))
            if raw is None:
                logger.warning("Configured light not found on bridge", light=light_id)
                continue
            mode = (raw.get("config") or {}).get("mode") or (raw.get("state") or {}).get("mode")
            if mode in STREAMING_MODES:
                raise GatewayError(
                    light_id,
                    "light is in sync/entertainment streaming mode",
                    recoverable=False,
                )


def _raise_on_hue_errors(light_id: Optional[str], body: Any) -> None:
    """The bridge answers HTTP 200 with ``[{"error": {...}}]`` on failure."""
    if isinstance(body, list):
        for item in body:
            if isinstance(item, dict) and "error" in item:
                err = item["error"] or {}
                raise GatewayResponseError(light_id, None, str(err.get("description", err)))
    elif isinstance(body, dict) and "error" in body:
        err = body["error"] or {}
        raise GatewayResponseError(light_id, None, str(err.get("description", err)))
