"""
Per-Device Command Queue: serialized, deduplicated, epoch-checked writes.

Each light id gets one FIFO ``asyncio.Queue`` drained by a single worker
task, so at most one write per light is in flight and writes reach the
transport in enqueue order. Jobs captured under an older scene epoch are
dropped when their turn comes.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np
import structlog

from cs2hue.core.config import QueueConfig, SceneConfig
from cs2hue.core.exceptions import LightSyncError
from cs2hue.core.state import DeviceState, Intent, SceneEpoch
from cs2hue.devices.gateway import LightGateway

logger = structlog.get_logger()


def intent_matches(
    state: DeviceState,
    intent: Intent,
    bri_tolerance: float = 2,
    xy_tolerance: float = 0.002,
    ct_tolerance: float = 2,
) -> bool:
    """
    Tolerant equality between an observed state and an intent.

    ``on`` must match exactly. Fields the device does not report are not
    compared, and brightness/color are irrelevant when the intent is off.
    """
    if intent.on is not None and state.on != intent.on:
        return False
    if intent.requests_off:
        return True
    if intent.bri is not None and state.bri is not None:
        if not np.isclose(state.bri, intent.bri, rtol=0.0, atol=bri_tolerance):
            return False
    if intent.xy is not None and state.xy is not None:
        if not np.allclose(state.xy, intent.xy, rtol=0.0, atol=xy_tolerance):
            return False
    if intent.ct is not None and state.ct is not None:
        if not np.isclose(state.ct, intent.ct, rtol=0.0, atol=ct_tolerance):
            return False
    return True


@dataclass
class _Job:
    intent: Intent
    key: str
    epoch: int
    force: bool
    verify: bool
    retries: int
    future: asyncio.Future = field(repr=False)


class DeviceCommandQueue:
    """FIFO write queue for a single light."""

    def __init__(
        self,
        light_id: str,
        gateway: LightGateway,
        epoch: SceneEpoch,
        config: QueueConfig,
        io_timeout_s: float,
        tolerance: SceneConfig,
    ):
        self.light_id = light_id
        self._gateway = gateway
        self._epoch = epoch
        self._config = config
        self._io_timeout_s = io_timeout_s
        self._tolerance = tolerance

        self._queue: asyncio.Queue[_Job] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

        # Dedup compares against the last accepted job, not the last write
        self._accepted_key: Optional[str] = None
        self._accepted_job: Optional[_Job] = None
        self._throttle_anchor: Optional[float] = None

        self.last_intent: Optional[Intent] = None
        self.last_write_at: Optional[float] = None

        # Stats
        self.writes = 0
        self.failures = 0
        self.deduped = 0
        self.stale_dropped = 0
        self.verify_failures = 0

    @property
    def throttle_s(self) -> float:
        if self._gateway.high_latency:
            return self._config.high_latency_throttle_s
        return self._config.throttle_s

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(
        self,
        intent: Intent,
        force: bool = False,
        verify: bool = False,
        retries: int = 0,
    ) -> asyncio.Future:
        """Queue a write; the returned future resolves True on success."""
        future = asyncio.get_running_loop().create_future()
        key = intent.key()

        if not force and key == self._accepted_key:
            self.deduped += 1
            future.set_result(True)
            return future

        job = _Job(
            intent=intent,
            key=key,
            epoch=self._epoch.current,
            force=force,
            verify=verify,
            retries=max(0, retries),
            future=future,
        )
        self._accepted_key = key
        self._accepted_job = job
        self._queue.put_nowait(job)
        self._ensure_worker()
        return future

    def clear_caches(self) -> None:
        """Forget dedup and throttle history (``last_intent`` is kept)."""
        self._accepted_key = None
        self._accepted_job = None
        self._throttle_anchor = None

    async def join(self) -> None:
        await self._queue.join()

    async def close(self) -> None:
        worker = self._worker
        self._worker = None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

        while not self._queue.empty():
            job = self._queue.get_nowait()
            self._queue.task_done()
            if not job.future.done():
                job.future.set_result(False)

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name=f"light-queue:{self.light_id}"
            )

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                ok = await self._execute(job)
            except asyncio.CancelledError:
                if not job.future.done():
                    job.future.set_result(False)
                self._queue.task_done()
                raise
            except Exception as e:
                logger.error(
                    "Unexpected error in light queue",
                    light=self.light_id,
                    error=str(e),
                    exc_info=True,
                )
                ok = False

            if not ok and self._accepted_job is job:
                # An identical intent must be able to go out again
                self._accepted_key = None
                self._accepted_job = None
            if not job.future.done():
                job.future.set_result(ok)
            self._queue.task_done()

    def _stale(self, job: _Job) -> bool:
        if self._epoch.is_current(job.epoch):
            return False
        self.stale_dropped += 1
        logger.debug(
            "Dropping stale write",
            light=self.light_id,
            epoch=job.epoch,
            current=self._epoch.current,
        )
        return True

    async def _execute(self, job: _Job) -> bool:
        if self._stale(job):
            return False

        if not job.force and self._throttle_anchor is not None:
            wait_s = self._throttle_anchor + self.throttle_s - time.monotonic()
            if wait_s > 0:
                await asyncio.sleep(wait_s)
                if self._stale(job):
                    return False

        if not await self._write(job.intent):
            return False
        await asyncio.sleep(self._config.post_write_gap_s)

        if job.verify:
            return await self._verify(job)
        return True

    async def _write(self, intent: Intent) -> bool:
        try:
            await asyncio.wait_for(
                self._gateway.set_state(self.light_id, intent),
                self._io_timeout_s,
            )
        except asyncio.TimeoutError:
            self.failures += 1
            logger.warning(
                "Light write timed out",
                light=self.light_id,
                timeout_s=self._io_timeout_s,
            )
            return False
        except (LightSyncError, OSError) as e:
            self.failures += 1
            logger.warning("Light write failed", light=self.light_id, error=str(e))
            return False

        now = time.monotonic()
        self.writes += 1
        self.last_intent = intent
        self.last_write_at = now
        self._throttle_anchor = now
        return True

    async def _verify(self, job: _Job) -> bool:
        attempt = 0
        while True:
            state = await self.read_state()
            if state is not None and self.matches(state, job.intent):
                return True
            if attempt >= job.retries:
                self.verify_failures += 1
                logger.warning(
                    "Verification failed",
                    light=self.light_id,
                    attempts=attempt + 1,
                    intent=job.intent.to_payload(),
                    observed=state.to_dict() if state else None,
                )
                return False

            attempt += 1
            await asyncio.sleep(self._config.verify_backoff_s * attempt)
            if self._stale(job):
                return False
            logger.debug("Resending after mismatch", light=self.light_id, attempt=attempt)
            if await self._write(job.intent):
                await asyncio.sleep(self._config.post_write_gap_s)

    async def read_state(self) -> Optional[DeviceState]:
        """Timed, error-tolerant read. Returns None on failure."""
        try:
            return await asyncio.wait_for(
                self._gateway.get_state(self.light_id),
                self._io_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("Light read timed out", light=self.light_id, timeout_s=self._io_timeout_s)
        except (LightSyncError, OSError) as e:
            logger.warning("Light read failed", light=self.light_id, error=str(e))
        return None

    def matches(self, state: DeviceState, intent: Intent) -> bool:
        return intent_matches(
            state,
            intent,
            bri_tolerance=self._tolerance.bri_tolerance,
            xy_tolerance=self._tolerance.xy_tolerance,
            ct_tolerance=self._tolerance.ct_tolerance,
        )

    def stats(self) -> Dict[str, Any]:
        return {
            "pending": self.pending,
            "writes": self.writes,
            "failures": self.failures,
            "deduped": self.deduped,
            "stale_dropped": self.stale_dropped,
            "verify_failures": self.verify_failures,
        }


class CommandQueueManager:
    """
    Owns one ``DeviceCommandQueue`` per light id.

    Queues and their workers are created lazily on first use, so the
    manager can be built before the event loop is running.
    """

    def __init__(
        self,
        gateway: LightGateway,
        epoch: SceneEpoch,
        config: Optional[QueueConfig] = None,
        tolerance: Optional[SceneConfig] = None,
        io_timeout_s: float = 2.5,
    ):
        self.gateway = gateway
        self.epoch = epoch
        self.config = config or QueueConfig()
        self.tolerance = tolerance or SceneConfig()
        self.io_timeout_s = io_timeout_s
        self._queues: Dict[str, DeviceCommandQueue] = {}

    def queue_for(self, light_id: str) -> DeviceCommandQueue:
        light_id = str(light_id)
        queue = self._queues.get(light_id)
        if queue is None:
            queue = DeviceCommandQueue(
                light_id,
                self.gateway,
                self.epoch,
                self.config,
                self.io_timeout_s,
                self.tolerance,
            )
            self._queues[light_id] = queue
        return queue

    def enqueue(
        self,
        light_id: str,
        intent: Intent,
        force: bool = False,
        verify: bool = False,
        retries: int = 0,
    ) -> asyncio.Future:
        return self.queue_for(light_id).enqueue(intent, force=force, verify=verify, retries=retries)

    async def read_state(self, light_id: str) -> Optional[DeviceState]:
        return await self.queue_for(light_id).read_state()

    def matches(self, state: DeviceState, intent: Intent) -> bool:
        return intent_matches(
            state,
            intent,
            bri_tolerance=self.tolerance.bri_tolerance,
            xy_tolerance=self.tolerance.xy_tolerance,
            ct_tolerance=self.tolerance.ct_tolerance,
        )

    def last_intent(self, light_id: str) -> Optional[Intent]:
        queue = self._queues.get(str(light_id))
        return queue.last_intent if queue else None

    def last_write_at(self, light_id: str) -> Optional[float]:
        queue = self._queues.get(str(light_id))
        return queue.last_write_at if queue else None

    def clear_caches(self) -> None:
        for queue in self._queues.values():
            queue.clear_caches()

    async def drain(self) -> None:
        """Wait until every queued write has been processed."""
        await asyncio.gather(*(queue.join() for queue in list(self._queues.values())))

    async def close(self) -> None:
        for queue in list(self._queues.values()):
            await queue.close()

    def stats(self) -> Dict[str, Any]:
        return {light_id: queue.stats() for light_id, queue in self._queues.items()}
