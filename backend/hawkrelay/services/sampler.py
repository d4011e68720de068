import asyncio
import logging
import time

import cv2

from hawkrelay.core.config import settings
from hawkrelay.core.errors import DetectionServiceError

logger = logging.getLogger(__name__)


def encode_jpeg(frame, quality=None):
    quality = settings.JPEG_QUALITY if quality is None else quality
    ok, buf = cv2.imencode('.jpg', frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("jpeg encoding failed")
    return buf.tobytes()


class FrameSampler:
    """Snapshots the capture source on a fixed wall-clock cadence for detection.

    The cadence does not depend on the transport frame rate. A request that
    is still running when the next tick comes makes that tick a no-op, so a
    slow detection service can't pile up work.
    """

    def __init__(self, capture, detector, camera_id, camera_name='', on_result=None,
                 interval=None):
        self.capture = capture
        self.detector = detector
        self.camera_id = camera_id
        self.camera_name = camera_name
        self.on_result = on_result
        self.interval = interval if interval is not None else settings.SAMPLE_INTERVAL_MS / 1000.0
        self.task = None
        self._inflight = None
        self.results_received = 0
        self.samples_skipped = 0
        self.failures = 0

    @property
    def running(self):
        return self.task is not None and not self.task.done()

    def start(self):
        if not self.running:
            self.task = asyncio.ensure_future(self._run())
        return self.task

    async def stop(self):
        for task in (self.task, self._inflight):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self.task = None
        self._inflight = None

    async def _run(self):
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.interval
        while True:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            next_tick += self.interval
            # Fell behind (e.g. suspended process): realign instead of bursting
            if next_tick < loop.time():
                next_tick = loop.time() + self.interval
            self.tick()

    def tick(self):
        """Take one sample now. Returns the request task, or None if skipped."""
        if self._inflight is not None and not self._inflight.done():
            self.samples_skipped += 1
            return None
        frame, captured_at = self.capture.get_frame()
        if frame is None:
            return None
        h, w = frame.shape[:2]
        self._inflight = asyncio.ensure_future(self._detect(frame, captured_at or time.time(), w, h))
        return self._inflight

    async def _detect(self, frame, captured_at, width, height):
        try:
            image = encode_jpeg(frame)
            result = await self.detector.detect(image, self.camera_id, self.camera_name,
                                                width, height, captured_at)
        except (DetectionServiceError, ValueError) as e:
            self.failures += 1
            logger.warning(f"[sampler] camera={self.camera_id} detection unavailable: {e}")
            return None
        self.results_received += 1
        if self.on_result is not None:
            try:
                await self.on_result(result)
            except Exception:
                logger.exception(f"[sampler] camera={self.camera_id} result handler failed")
        return result
