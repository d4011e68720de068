import asyncio
import logging
import threading
import time
from fractions import Fraction

import av
import cv2
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from hawkrelay.core.config import settings
from hawkrelay.core.errors import CaptureError

logger = logging.getLogger(__name__)


def parse_source(source):
    """'0' -> device index 0; anything else is a file path or stream URL."""
    if isinstance(source, int):
        return source
    source = str(source).strip()
    return int(source) if source.isdigit() else source


class CaptureSource:
    """Reads a local camera (or URL) on a thread and keeps the latest frame.

    One instance is shared read-only by every peer session of a streamer and
    by the frame sampler; it lives until the streamer stops.
    """

    def __init__(self, source=None, width=None, height=None):
        self.source = parse_source(settings.CAPTURE_SOURCE if source is None else source)
        self.width = width or settings.CAPTURE_WIDTH
        self.height = height or settings.CAPTURE_HEIGHT
        self.frame = None
        self.timestamp = 0.0
        self.lock = threading.Lock()
        self.running = False
        self.thread = None
        self.cap = None

    def _open(self):
        cap = cv2.VideoCapture(self.source)
        if not cap.isOpened():
            cap.release()
            return None
        try:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        except cv2.error:
            pass
        return cap

    def start(self):
        if self.running:
            return
        self.cap = self._open()
        if self.cap is None:
            raise CaptureError(f"cannot open capture source {self.source!r}")
        self.running = True
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()
        logger.info(f"[camera.start] capture started for {self.source!r}")

    def stop(self):
        self.running = False
        if self.thread:
            self.thread.join(timeout=2.0)
            self.thread = None
        with self.lock:
            self.frame = None
        logger.info(f"[camera.stop] capture stopped for {self.source!r}")

    def get_frame(self):
        with self.lock:
            return (self.frame.copy() if self.frame is not None else None), self.timestamp

    @property
    def dimensions(self):
        """Native (width, height) of the latest frame, (0, 0) before the first one."""
        with self.lock:
            if self.frame is None:
                return (0, 0)
            h, w = self.frame.shape[:2]
            return (w, h)

    def _run(self):
        cap = self.cap
        while self.running:
            if cap is None or not cap.isOpened():
                if cap is not None:
                    cap.release()
                time.sleep(1.0)
                cap = self._open()
                continue

            ret, frame = cap.read()
            if not ret:
                cap.release()
                time.sleep(0.5)
                cap = self._open()
                continue

            with self.lock:
                self.frame = frame
                self.timestamp = time.time()

        if cap is not None:
            cap.release()
        self.cap = None


class CaptureTrack(MediaStreamTrack):
    """Video track fed from a CaptureSource at a fixed rate."""
    kind = "video"

    def __init__(self, capture, fps=None):
        super().__init__()
        self.capture = capture
        self.fps = fps or settings.CAPTURE_FPS
        self._start = None

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        if self._start is None:
            self._start = time.time()

        while True:
            frame, _ = self.capture.get_frame()
            if frame is not None:
                break
            if not self.capture.running:
                self.stop()
                raise MediaStreamError()
            await asyncio.sleep(0.01)

        # Respect a target fps
        await asyncio.sleep(1.0 / self.fps)
        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        video_frame = av.VideoFrame.from_ndarray(rgb, format='rgb24')

        # PTS based on wall clock for steady streaming
        elapsed = time.time() - self._start
        video_frame.pts = int(elapsed * 90000)
        video_frame.time_base = Fraction(1, 90000)
        return video_frame
