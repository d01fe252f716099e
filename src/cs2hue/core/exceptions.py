"""
Custom Exceptions for CS2Hue.

Provides a hierarchy of exceptions for the light sync components,
enabling targeted error handling and graceful degradation.
"""

from __future__ import annotations

from typing import Optional


class LightSyncError(Exception):
    """Base exception for all CS2Hue errors."""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable


# =============================================================================
# Gateway Errors
# =============================================================================


class GatewayError(LightSyncError):
    """Base exception for light gateway errors."""

    def __init__(self, light_id: Optional[str], reason: str, recoverable: bool = True):
        target = f"light {light_id}" if light_id is not None else "gateway"
        super().__init__(f"Gateway error on {target}: {reason}", recoverable=recoverable)
        self.light_id = light_id
        self.reason = reason


class GatewayConnectionError(GatewayError):
    """Could not reach the bridge or device."""

    def __init__(self, endpoint: str, reason: str):
        super().__init__(None, f"cannot reach {endpoint}: {reason}", recoverable=True)
        self.endpoint = endpoint


class GatewayTimeoutError(GatewayError):
    """A device read or write did not complete in time."""

    def __init__(self, light_id: Optional[str], timeout_s: float):
        super().__init__(light_id, f"timed out after {timeout_s}s")
        self.timeout_s = timeout_s


class GatewayResponseError(GatewayError):
    """The device answered with an error or an unexpected payload."""

    def __init__(self, light_id: Optional[str], status: Optional[int], reason: str):
        detail = f"HTTP {status}: {reason}" if status is not None else reason
        super().__init__(light_id, detail)
        self.status = status


# =============================================================================
# Snapshot Errors
# =============================================================================


class SnapshotError(LightSyncError):
    """Base exception for game state snapshot errors."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Game state '{path}' unavailable: {reason}", recoverable=True)
        self.path = path
        self.reason = reason


class SnapshotMissingError(SnapshotError):
    """The game has not written a state file yet."""


class SnapshotParseError(SnapshotError):
    """The state file is partial, malformed or fails validation."""


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigError(LightSyncError):
    """Base exception for configuration errors."""
    pass


class ColorTemplateError(ConfigError):
    """Invalid or unreadable color template file."""

    def __init__(self, source: str, reason: str):
        super().__init__(f"Color template error '{source}': {reason}")
        self.source = source


class LightIdError(ConfigError):
    """Light ids are missing or out of range for the provider."""

    def __init__(self, reason: str):
        super().__init__(f"Light id error: {reason}", recoverable=False)
