"""
Mock Gateway for Testing.

Provides an in-memory light gateway for running the orchestrator and
its tests without a bridge or bulbs on the network.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional, Sequence

import structlog

from cs2hue.core.exceptions import GatewayConnectionError, GatewayResponseError
from cs2hue.core.state import DeviceState, Intent

logger = structlog.get_logger()


class MockGateway:
    """
    In-memory lights that record every write.

    Knobs for exercising the reliability paths:
    - ``latency_s``: delay applied to every read and write
    - ``round_values``: store bri/xy the way real devices round them
    - ``drop_writes``: ids whose writes are acknowledged but not applied
    - ``fail_next_writes``: number of upcoming writes that raise
    - ``fail_reads``: ids whose reads raise
    """

    name = "mock"

    def __init__(
        self,
        light_ids: Iterable[str] = (),
        latency_s: float = 0.0,
        high_latency: bool = False,
        round_values: bool = False,
    ):
        self.latency_s = latency_s
        self.high_latency = high_latency
        self.round_values = round_values
        self.states: Dict[str, DeviceState] = {
            str(light_id): DeviceState(on=True, bri=254, xy=(0.3127, 0.329)) for light_id in light_ids
        }
        self.writes: List[tuple[str, Intent]] = []
        self.reads: List[str] = []
        self.drop_writes: set[str] = set()
        self.fail_reads: set[str] = set()
        self.fail_next_writes = 0
        self.closed = False
        self.ready_error: Optional[Exception] = None

    async def get_state(self, light_id: str) -> DeviceState:
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        self.reads.append(light_id)
        if light_id in self.fail_reads:
            raise GatewayConnectionError("mock", f"read of {light_id} refused")
        state = self.states.get(light_id)
        if state is None:
            raise GatewayResponseError(light_id, 404, "unknown light")
        return state

    async def set_state(self, light_id: str, intent: Intent) -> None:
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        if self.fail_next_writes > 0:
            self.fail_next_writes -= 1
            raise GatewayConnectionError("mock", f"write to {light_id} refused")
        if light_id not in self.states:
            raise GatewayResponseError(light_id, 404, "unknown light")
        self.writes.append((light_id, intent))
        if light_id in self.drop_writes:
            return
        self.states[light_id] = self._apply(self.states[light_id], intent)

    def _apply(self, current: DeviceState, intent: Intent) -> DeviceState:
        bri = current.bri
        xy = current.xy
        ct = current.ct
        if intent.bri is not None:
            bri = intent.bri
        if intent.xy is not None:
            xy = intent.xy
            ct = None
        elif intent.ct is not None:
            ct = intent.ct
            xy = None
        if self.round_values:
            # Hue rounds xy to 4 places and may shift brightness by one
            if bri is not None:
                bri = max(1, min(254, bri - 1 if bri > 1 else bri))
            if xy is not None:
                xy = (round(xy[0], 4), round(xy[1], 4))
        on = current.on if intent.on is None else intent.on
        return DeviceState(on=on, bri=bri, xy=xy, ct=ct)

    async def check_ready(self, light_ids: Sequence[str]) -> None:
        if self.ready_error is not None:
            raise self.ready_error
        for light_id in light_ids:
            self.states.setdefault(str(light_id), DeviceState(on=True, bri=254, xy=(0.3127, 0.329)))

    async def close(self) -> None:
        self.closed = True

    # Test helpers

    def turn_off_externally(self, light_id: str) -> None:
        """Simulate someone switching a light off with the vendor app."""
        current = self.states[light_id]
        self.states[light_id] = DeviceState(on=False, bri=current.bri, xy=current.xy, ct=current.ct)

    def writes_for(self, light_id: str) -> List[Intent]:
        return [intent for lid, intent in self.writes if lid == light_id]

    def clear_log(self) -> None:
        self.writes.clear()
        self.reads.clear()
