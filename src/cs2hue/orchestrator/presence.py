"""
Presence Hub: semantic mode-change events for optional subscribers.

A presence integration (chat status, overlays) subscribes and receives
``menu``, ``warmup``, ``round_start``, ``planted``, ``defused``,
``exploded``, ``won`` and ``lost``. Subscribers can never block or
break the orchestrator.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger()

PRESENCE_EVENTS = frozenset(
    {"menu", "warmup", "round_start", "planted", "defused", "exploded", "won", "lost"}
)

PresenceCallback = Callable[..., Any]


class PresenceHub:
    """Fault-tolerant publish/subscribe for presence events."""

    def __init__(self) -> None:
        self._subscribers: List[PresenceCallback] = []
        self._tasks: set[asyncio.Task] = set()
        self.last_event: Optional[str] = None
        self.last_details: Dict[str, Any] = {}
        self.last_emitted_at: Optional[float] = None

    def subscribe(self, callback: PresenceCallback) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: PresenceCallback) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, event: str, **details: Any) -> None:
        if event not in PRESENCE_EVENTS:
            logger.warning("Unknown presence event", presence_event=event)
            return

        self.last_event = event
        self.last_details = dict(details)
        self.last_emitted_at = time.time()

        for callback in list(self._subscribers):
            try:
                result = callback(event, **details)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(self._guard(callback, result))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception as e:
                logger.warning(
                    "Presence subscriber failed",
                    presence_event=event,
                    subscriber=getattr(callback, "__name__", repr(callback)),
                    error=str(e),
                )

    async def _guard(self, callback: PresenceCallback, awaitable: Any) -> None:
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Presence subscriber failed",
                subscriber=getattr(callback, "__name__", repr(callback)),
                error=str(e),
            )

    async def drain(self) -> None:
        """Wait for in-flight async subscribers."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def status(self) -> Dict[str, Any]:
        return {
            "last_event": self.last_event,
            "subscribers": self.subscriber_count,
            "last_emitted_at": self.last_emitted_at,
        }
