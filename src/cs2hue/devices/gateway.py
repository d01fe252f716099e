"""
LightGateway Protocol
=====================
Transport-agnostic contract for color-capable network lights.

Implementations raise ``GatewayError`` subclasses on failure; the
orchestrator never assumes anything about HTTP vs. raw socket framing.
"""

from __future__ import annotations

from typing import Protocol, Sequence

from cs2hue.core.state import DeviceState, Intent


class LightGateway(Protocol):
    """
    Minimal device capability used by the orchestrator.

    All implementations must provide:
    - name: provider name for logs and status
    - high_latency: True when writes need wider spacing
    - get_state / set_state: one device read / write
    - check_ready: startup probe for the configured lights
    - close: release sockets and sessions
    """

    name: str
    high_latency: bool

    async def get_state(self, light_id: str) -> DeviceState:
        """Read the current observed state of one light."""
        ...

    async def set_state(self, light_id: str, intent: Intent) -> None:
        """Apply an intent to one light."""
        ...

    async def check_ready(self, light_ids: Sequence[str]) -> None:
        """Raise GatewayError when the lights cannot be driven."""
        ...

    async def close(self) -> None:
        """Release transport resources."""
        ...
