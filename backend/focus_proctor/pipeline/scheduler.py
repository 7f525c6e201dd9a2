import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from ..config import MAX_DETECTION_FPS
from ..errors import CapabilityError
from ..utils.video import downscale, now_ms
from .workers import AnalyzerWorker

logger = logging.getLogger(__name__)


@dataclass
class FrameConsumer:
    """A worker fed by the scheduler, with its own downscale target and pacing"""
    worker: AnalyzerWorker
    max_side: int
    min_interval_ms: float = 0.0
    last_sent_ts: int = 0
    enabled: bool = True


class FrameScheduler:
    """Decimates a video source into downscaled frames for the analyzer workers.

    One capture at a time: a tick that arrives while the previous capture and
    hand-off are still running is skipped. Frames a worker cannot accept are
    dropped, never queued.
    """

    def __init__(self, source, consumers: List[FrameConsumer], detection_fps: float = MAX_DETECTION_FPS,
                 on_error: Optional[Callable[[str], None]] = None):
        self.source = source
        self.consumers = consumers
        self.detection_fps = max(1.0, min(detection_fps, MAX_DETECTION_FPS))
        self.min_delta_ms = 1000.0 / self.detection_fps
        self.on_error = on_error

        self.capture_in_flight = False
        self.last_capture_ts = 0
        self.running = False
        self._task: Optional[asyncio.Task] = None

        # Metrics
        self.fps = 0.0
        self.avg_fps = 0.0
        self.fps_samples = 0
        self.dropped_frames = 0
        self.frames_captured = 0

    def start(self):
        if self._task is not None and not self._task.done():
            return
        self.running = True
        self._task = asyncio.create_task(self.run(), name="frame-scheduler")

    async def stop(self):
        self.running = False
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.capture_in_flight = False

    async def run(self):
        """Open the source and keep sampling until stopped"""
        self.running = True
        try:
            await self.source.open()
        except CapabilityError as e:
            logger.error(f"❌ Frame capture unavailable: {e}")
            self._report(str(e))
            self.running = False
            return

        logger.info(f"🎬 Frame scheduler started at {self.detection_fps:g} fps")
        while self.running:
            if not await self._wait_for_next_frame():
                continue
            try:
                await self.tick(now_ms())
            except CapabilityError as e:
                logger.error(f"❌ Frame capture unavailable: {e}")
                self._report(str(e))
                self.running = False

    async def _wait_for_next_frame(self) -> bool:
        wait_for_frame = getattr(self.source, "wait_for_frame", None)
        if wait_for_frame is not None:
            return await wait_for_frame(timeout=1.0)
        await asyncio.sleep(self.min_delta_ms / 1000.0)
        return True

    async def tick(self, timestamp: int) -> bool:
        """Capture and dispatch one frame if due; returns True when a capture happened"""
        if timestamp - self.last_capture_ts < self.min_delta_ms or self.capture_in_flight:
            return False
        if not self.source.dimensions:
            return False

        self.capture_in_flight = True
        try:
            frame = await self.source.read()
            self._update_fps(timestamp)
            self.last_capture_ts = timestamp
            self.frames_captured += 1
            self.dispatch(frame, timestamp)
            return True
        except CapabilityError:
            raise
        except Exception as e:
            logger.warning(f"Failed to capture frame: {e}")
            self._report(str(e) or "Failed to capture frame")
            return False
        finally:
            self.capture_in_flight = False

    def dispatch(self, frame: np.ndarray, timestamp: int):
        """Give each consumer its own downscaled copy of `frame`"""
        for consumer in self.consumers:
            # Stopped workers (analysis paused) are not fed; their frames are not drops
            if not consumer.enabled or not consumer.worker.running:
                continue
            if consumer.min_interval_ms and timestamp - consumer.last_sent_ts < consumer.min_interval_ms:
                continue

            try:
                copy = downscale(frame, consumer.max_side)
                if consumer.worker.try_submit(copy, timestamp):
                    consumer.last_sent_ts = timestamp
                else:
                    # Worker busy or not ready: the copy is dropped here
                    self.dropped_frames += 1
            except Exception as e:
                logger.warning(f"Failed to dispatch frame to {consumer.worker.name} worker: {e}")
                self._report(str(e) or "Frame dispatch failed")

    def _update_fps(self, timestamp: int):
        if self.last_capture_ts <= 0:
            return
        delta = timestamp - self.last_capture_ts
        if delta <= 0:
            return
        self.fps = 1000.0 / delta
        self.fps_samples += 1
        self.avg_fps += (self.fps - self.avg_fps) / self.fps_samples

    def _report(self, message: str):
        if self.on_error is not None:
            self.on_error(message)
