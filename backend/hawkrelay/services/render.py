import asyncio
import logging
import threading

import cv2
from aiortc.mediastreams import MediaStreamError

logger = logging.getLogger(__name__)


class RenderSink:
    """Consumes a viewer's inbound video track and paints the overlay on it.

    `width`/`height` always hold the native size of the last decoded frame,
    which can change mid-stream when the sender renegotiates resolution.
    """

    def __init__(self, overlay, show=False, window_name=None):
        self.overlay = overlay
        self.show = show
        self.window_name = window_name or f"camera {overlay.camera_id}"
        self.width = 0
        self.height = 0
        self.frames = 0
        self.latest = None
        self.lock = threading.Lock()
        self.task = None

    @property
    def native_size(self):
        return (self.width, self.height)

    def attach(self, track):
        if track.kind != 'video':
            return
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self.task = asyncio.ensure_future(self._consume(track))

    def render(self, frame):
        """Draw the overlay on one BGR frame and keep it as the latest."""
        h, w = frame.shape[:2]
        if (w, h) != (self.width, self.height):
            logger.info(f"[render] camera={self.overlay.camera_id} native size {self.width}x{self.height} -> {w}x{h}")
        self.width, self.height = w, h
        annotated = self.overlay.draw(frame)
        with self.lock:
            self.latest = annotated
        self.frames += 1
        if self.show:
            cv2.imshow(self.window_name, annotated)
            cv2.waitKey(1)
        return annotated

    def get_frame(self):
        with self.lock:
            return self.latest

    async def _consume(self, track):
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                logger.info(f"[render] camera={self.overlay.camera_id} track ended after {self.frames} frames")
                return
            self.render(frame.to_ndarray(format='bgr24'))

    async def close(self):
        if self.task is not None and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        self.task = None
        if self.show and self.frames:
            cv2.destroyWindow(self.window_name)
