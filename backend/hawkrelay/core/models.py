import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Role(str, Enum):
    STREAMER = 'streamer'
    VIEWER = 'viewer'


class CameraState(str, Enum):
    UNREGISTERED = 'unregistered'
    LIVE = 'live'
    STOPPED = 'stopped'


@dataclass
class Camera:
    camera_id: str
    name: str = ''
    state: CameraState = CameraState.UNREGISTERED


@dataclass(eq=False)
class Connection:
    """One signaling socket. `socket` only needs `send_json`, `close` and `closed`."""
    socket: Any
    channel: str = field(default_factory=lambda: uuid.uuid4().hex)
    role: Optional[Role] = None
    camera_id: Optional[str] = None
    last_seen: float = field(default_factory=time.monotonic)

    @property
    def open(self):
        return not getattr(self.socket, 'closed', False)

    def touch(self, now=None):
        self.last_seen = time.monotonic() if now is None else now


@dataclass
class CameraEntry:
    camera: Camera
    streamer: Connection
    viewers: Dict[str, Connection] = field(default_factory=dict)


# Detection categories that raise the threat flag. The grouped payload of the
# detection service maps its keys onto these categories.
THREAT_CATEGORIES = ('weapon', 'mask')
GROUPED_CATEGORIES = {
    'knife': 'weapon',
    'gun': 'weapon',
    'mask': 'mask',
    'emotion': 'emotion',
    'angry_emotions': 'emotion',
}


@dataclass
class Detection:
    label: str
    confidence: float
    bbox: Optional[Tuple[float, float, float, float]] = None
    category: str = 'object'

    @property
    def is_threat(self):
        if self.category in THREAT_CATEGORIES:
            return True
        return self.category == 'emotion' and self.label.lower() == 'angry'

    @classmethod
    def from_payload(cls, d, category=None):
        if not isinstance(d, dict):
            raise ValueError(f"detection entry must be an object, got {type(d).__name__}")
        label = d.get('class', d.get('label', 'unknown'))
        confidence = float(d.get('confidence', d.get('score', 0.0)))
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"confidence out of range: {confidence}")
        bbox = d.get('bbox', d.get('box'))
        if bbox is not None:
            if len(bbox) != 4:
                raise ValueError(f"bbox must have 4 values: {bbox}")
            bbox = tuple(float(v) for v in bbox)
        return cls(
            label=str(label),
            confidence=confidence,
            bbox=bbox,
            category=str(d.get('category') or category or 'object'),
        )

    def to_payload(self):
        return {
            'class': self.label,
            'confidence': self.confidence,
            'bbox': list(self.bbox) if self.bbox is not None else None,
            'category': self.category,
        }


@dataclass
class DetectionResult:
    """Detections for one sampled frame.

    `captured_at` plus the source dimensions travel with the result from the
    sampler to the overlay so a viewer can tell how old it is and what
    geometry the boxes were computed against.
    """
    camera_id: str
    captured_at: float
    source_width: int
    source_height: int
    detections: List[Detection] = field(default_factory=list)
    received_at: float = field(default_factory=time.time)

    @property
    def has_threat(self):
        return any(d.is_threat for d in self.detections)

    @property
    def correlation_id(self):
        return f"{self.camera_id}:{self.captured_at:.3f}:{self.source_width}x{self.source_height}"

    def to_payload(self):
        return {
            'camera_id': self.camera_id,
            'timestamp': self.captured_at,
            'width': self.source_width,
            'height': self.source_height,
            'detections': [d.to_payload() for d in self.detections],
            'has_threat': self.has_threat,
        }

    @classmethod
    def from_payload(cls, d):
        """Inverse of to_payload; used on the viewer side of the relay."""
        try:
            return cls(
                camera_id=str(d['camera_id']),
                captured_at=float(d['timestamp']),
                source_width=int(d['width']),
                source_height=int(d['height']),
                detections=[Detection.from_payload(x) for x in d.get('detections') or []],
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ValueError(f"malformed detection result: {e}") from e
