import logging
import threading
import time

import cv2

from hawkrelay.core.config import settings
from hawkrelay.utils.geometry import clip_box, frame_size, scale_box

logger = logging.getLogger(__name__)

COLOR_OBJECT = (0, 220, 0)
COLOR_THREAT = (0, 0, 255)


class OverlaySynchronizer:
    """Holds the newest detection result for one camera and paints it on live frames.

    Results arrive on their own clock, computed against whatever resolution the
    streamer had when the frame was sampled. Boxes are therefore rescaled to
    the frame being drawn *now*, on every draw.
    """

    def __init__(self, camera_id=None, ttl=None):
        self.camera_id = camera_id
        self.ttl = settings.OVERLAY_TTL if ttl is None else ttl
        self.result = None
        self.lock = threading.Lock()
        self._last_draw_n = 0

    def update(self, result):
        """Replace the held result. Older-than-held results are ignored."""
        if self.camera_id is not None and result.camera_id != self.camera_id:
            logger.warning(f"[overlay.update] result for camera={result.camera_id} "
                           f"ignored by overlay of camera={self.camera_id}")
            return False
        with self.lock:
            if self.result is not None and result.captured_at < self.result.captured_at:
                logger.debug(f"[overlay.update] out-of-order result {result.correlation_id} dropped")
                return False
            self.result = result
        return True

    def clear(self):
        with self.lock:
            self.result = None

    def current(self, now=None):
        now = time.time() if now is None else now
        with self.lock:
            result = self.result
        if result is None:
            return None
        if self.ttl and now - result.received_at > self.ttl:
            return None
        return result

    def boxes_for(self, width, height, now=None):
        """[(detection, (x1, y1, x2, y2))] in width x height pixel space."""
        if width <= 0 or height <= 0:
            return []
        result = self.current(now)
        if result is None:
            return []
        out = []
        for det in result.detections:
            if det.bbox is None:
                continue
            box = scale_box(det.bbox, (result.source_width, result.source_height), (width, height))
            box = clip_box(box, width, height)
            if box is not None:
                out.append((det, box))
        return out

    def draw(self, frame, now=None):
        """Annotated copy of `frame`, or `frame` itself when there is nothing to draw."""
        width, height = frame_size(frame)
        if width == 0 or height == 0:
            return frame
        result = self.current(now)
        if result is None:
            return frame

        boxes = self.boxes_for(width, height, now)
        out = frame.copy()
        thickness = max(2, int(min(width, height) / 200))
        for det, (x1, y1, x2, y2) in boxes:
            color = COLOR_THREAT if det.is_threat else COLOR_OBJECT
            cv2.rectangle(out, (x1, y1), (x2, y2), color, thickness)

            # Label with filled background for contrast
            label = f"{det.label}:{det.confidence:.2f}"
            (tw, th), _ = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, 0.6, 1)
            pad = 6
            lx1, ly1 = x1, max(0, y1 - th - pad)
            lx2, ly2 = x1 + tw + pad, max(th + pad, y1)
            cv2.rectangle(out, (lx1, ly1), (lx2, ly2), color, -1)
            cv2.putText(out, label, (lx1 + 3, ly2 - 4), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 0, 0), 1, cv2.LINE_AA)

        if result.has_threat:
            threats = sorted({d.label for d in result.detections if d.is_threat})
            header = "THREAT: " + ", ".join(threats)
            cv2.putText(out, header, (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 1.0, COLOR_THREAT, 2, cv2.LINE_AA)

        if len(boxes) != self._last_draw_n:
            logger.debug(f"[overlay.draw] camera={result.camera_id} boxes={len(boxes)} "
                         f"at {width}x{height} (source {result.source_width}x{result.source_height})")
            self._last_draw_n = len(boxes)
        return out
