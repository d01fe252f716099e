"""Light sync orchestration: queues, scenes, effects and the round state machine."""

from cs2hue.orchestrator.builder import LightSync, build_gateway, build_light_sync
from cs2hue.orchestrator.command_queue import CommandQueueManager, DeviceCommandQueue, intent_matches
from cs2hue.orchestrator.effects import EffectEngine, fade_ramp
from cs2hue.orchestrator.poller import GameStatePoller, read_snapshot
from cs2hue.orchestrator.presence import PRESENCE_EVENTS, PresenceHub
from cs2hue.orchestrator.reconciler import HealthCheckReconciler
from cs2hue.orchestrator.round_machine import RoundMachine
from cs2hue.orchestrator.scene import SceneController
from cs2hue.orchestrator.timers import TimerHandle

__all__ = [
    "LightSync",
    "build_gateway",
    "build_light_sync",
    "CommandQueueManager",
    "DeviceCommandQueue",
    "intent_matches",
    "EffectEngine",
    "fade_ramp",
    "GameStatePoller",
    "read_snapshot",
    "PRESENCE_EVENTS",
    "PresenceHub",
    "HealthCheckReconciler",
    "RoundMachine",
    "SceneController",
    "TimerHandle",
]
