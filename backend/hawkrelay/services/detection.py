"""
Client for the external threat-detection service.

The service receives a JPEG plus the camera identity and the native size of
the frame it was cut from, and answers with classified boxes in that frame's
pixel space.
"""
import asyncio
import logging

import aiohttp

from hawkrelay.core.config import settings
from hawkrelay.core.errors import DetectionServiceError
from hawkrelay.core.models import GROUPED_CATEGORIES, Detection, DetectionResult

logger = logging.getLogger(__name__)


def parse_response(payload, camera_id, captured_at, width, height):
    """Build a DetectionResult from either response shape the service uses.

    Flat:    {"camera_id", "timestamp", "detections": [{class, confidence, bbox, category}]}
    Grouped: {"knife": [...], "gun": [...], "mask": [...], "angry_emotions": [...], "has_threat"}
    """
    if not isinstance(payload, dict):
        raise DetectionServiceError(f"unexpected detection payload: {type(payload).__name__}")

    echoed = payload.get('camera_id', payload.get('cameraId'))
    if echoed is not None and str(echoed) != str(camera_id):
        raise DetectionServiceError(f"result for camera {echoed} returned to camera {camera_id}")
    detections = []
    try:
        # Prefer the echoed capture time so the result stays tied to its frame
        captured_at = float(payload.get('timestamp', captured_at))
        if 'detections' in payload:
            for d in payload['detections'] or []:
                detections.append(Detection.from_payload(d))
        else:
            for key, category in GROUPED_CATEGORIES.items():
                for d in payload.get(key) or []:
                    # angry_emotions repeats entries already listed under emotion
                    if key == 'emotion' and str(d.get('label', '')).lower() == 'angry' \
                            and payload.get('angry_emotions'):
                        continue
                    detections.append(Detection.from_payload(d, category=category))
        return DetectionResult(
            camera_id=str(camera_id),
            captured_at=captured_at,
            source_width=int(payload.get('width', width)),
            source_height=int(payload.get('height', height)),
            detections=detections,
        )
    except (TypeError, ValueError, AttributeError) as e:
        raise DetectionServiceError(f"malformed detection response: {e}") from e


class DetectionClient:
    def __init__(self, url=None, timeout=None, session=None):
        self.url = url or settings.DETECTION_URL
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.DETECTION_TIMEOUT)
        self._session = session
        self._owns_session = session is None

    async def detect(self, image_bytes, camera_id, camera_name, width, height, captured_at):
        if not self.url:
            raise DetectionServiceError("DETECTION_URL is not configured")
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

        form = aiohttp.FormData()
        form.add_field('image', image_bytes, filename='frame.jpg', content_type='image/jpeg')
        form.add_field('cameraId', str(camera_id))
        form.add_field('cameraName', camera_name or str(camera_id))
        form.add_field('width', str(width))
        form.add_field('height', str(height))
        form.add_field('timestamp', f"{captured_at:.3f}")

        try:
            async with self._session.post(self.url, data=form, timeout=self.timeout) as resp:
                if resp.status >= 300:
                    text = await resp.text()
                    raise DetectionServiceError(f"detection failed: {resp.status} {text[:200]}")
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise DetectionServiceError(f"detection request failed: {e}") from e

        result = parse_response(payload, camera_id, captured_at, width, height)
        logger.debug(f"[detection] camera={camera_id} {len(result.detections)} detection(s) "
                     f"threat={result.has_threat}")
        return result

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
