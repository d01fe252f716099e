"""
Game-State Poller: watch the snapshot file and feed the state machine.

The file is rewritten by an external producer, so partial and missing
reads are normal. A cheap ``(mtime_ns, size)`` check skips unchanged
files; the last good snapshot is kept across failures.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional, Tuple

import structlog
from pydantic import ValidationError

from cs2hue.core.config import PollerConfig
from cs2hue.core.exceptions import SnapshotError, SnapshotMissingError, SnapshotParseError
from cs2hue.core.state import GameSnapshot
from cs2hue.core.throttle import LogThrottle
from cs2hue.orchestrator.reconciler import HealthCheckReconciler
from cs2hue.orchestrator.round_machine import RoundMachine

logger = structlog.get_logger()


def read_snapshot(path: Path) -> GameSnapshot:
    """Read and validate one snapshot; raises ``SnapshotError``."""
    try:
        raw = path.read_bytes()
    except FileNotFoundError as e:
        raise SnapshotMissingError(str(path), "file not found") from e
    except OSError as e:
        raise SnapshotError(str(path), str(e)) from e

    try:
        data = json.loads(raw)
    except ValueError as e:
        raise SnapshotParseError(str(path), f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise SnapshotParseError(str(path), "top level must be an object")

    try:
        return GameSnapshot.model_validate(data)
    except ValidationError as e:
        raise SnapshotParseError(str(path), f"unexpected structure: {e.error_count()} errors") from e


class GameStatePoller:
    """Fixed-cadence poll loop, faster while the round is eventful."""

    def __init__(
        self,
        path: Path,
        machine: RoundMachine,
        config: Optional[PollerConfig] = None,
        reconciler: Optional[HealthCheckReconciler] = None,
    ):
        self.path = Path(path)
        self.machine = machine
        self.config = config or PollerConfig()
        self.reconciler = reconciler

        self.snapshot: Optional[GameSnapshot] = None
        self._signature: Optional[Tuple[int, int]] = None
        self._had_error = False
        self._warn = LogThrottle(self.config.warn_cooldown_s)
        self._task: Optional[asyncio.Task] = None

        # Stats
        self.reads = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval_s(self) -> float:
        if self.machine.needs_ticks:
            return self.config.active_interval_s
        return self.config.idle_interval_s

    def _stat(self) -> Optional[Tuple[int, int]]:
        try:
            st = self.path.stat()
        except OSError:
            return None
        return st.st_mtime_ns, st.st_size

    async def poll_once(self) -> bool:
        """One poll cycle. Returns True when a snapshot was delivered."""
        signature = self._stat()
        if signature is not None and signature == self._signature and self.snapshot is not None:
            if self.machine.needs_ticks:
                await self.machine.on_snapshot(self.snapshot)
                return True
            return False

        try:
            snapshot = read_snapshot(self.path)
        except SnapshotError as e:
            self.failures += 1
            self._report_failure(e)
            await asyncio.sleep(self.config.retry_delay_s)
            try:
                snapshot = read_snapshot(self.path)
                signature = self._stat()
            except SnapshotError as retry_error:
                self._had_error = True
                if self.snapshot is not None and self._warn.ready("retry"):
                    logger.error("Game state retry failed", error=retry_error.reason)
                else:
                    logger.debug("Game state retry failed", error=retry_error.reason)
                return False

        self.reads += 1
        self._signature = signature
        if self._had_error:
            logger.info("Game state is readable again", path=str(self.path))
            self._had_error = False
        self.snapshot = snapshot
        await self.machine.on_snapshot(snapshot)
        return True

    def _report_failure(self, error: SnapshotError) -> None:
        if self.snapshot is None and isinstance(error, SnapshotMissingError):
            if self._warn.ready("waiting"):
                logger.info("Waiting for the game to write game state", path=str(self.path))
            return

        key = "missing" if isinstance(error, SnapshotMissingError) else "parse"
        if self._warn.ready(key):
            if key == "missing":
                logger.warning(
                    "Game state file missing, check the game state integration config",
                    path=str(self.path),
                )
            else:
                logger.warning("Failed to read game state, retrying", error=error.reason)
        else:
            logger.debug("Game state read failed", error=error.reason)

    async def run(self) -> None:
        logger.info("Game state poller started", path=str(self.path))
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error("Poll cycle failed", error=str(e), exc_info=True)

            if self.reconciler is not None:
                try:
                    await self.reconciler.tick()
                except Exception as e:
                    logger.error("Health check failed", error=str(e), exc_info=True)

            await asyncio.sleep(self.interval_s)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self.run(), name="game-state-poller")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Game state poller stopped", reads=self.reads, failures=self.failures)
