import numpy as np
import pytest

from hawkrelay.core.models import Detection, DetectionResult
from hawkrelay.services.overlay import COLOR_OBJECT, COLOR_THREAT, OverlaySynchronizer
from hawkrelay.services.render import RenderSink
from hawkrelay.utils.geometry import clip_box, frame_size, scale_box


def result(captured_at=1.0, width=1280, height=720, detections=None, received_at=100.0, camera_id='cam-1'):
    return DetectionResult(camera_id=camera_id, captured_at=captured_at, source_width=width,
                           source_height=height, detections=detections or [], received_at=received_at)


def person(bbox=(640, 360, 1280, 720)):
    return Detection(label='person', confidence=0.9, bbox=bbox)


def test_scale_box():
    assert scale_box((640, 360, 1280, 720), (1280, 720), (640, 480)) == (320.0, 240.0, 640.0, 480.0)
    assert scale_box((1, 1, 2, 2), (0, 720), (640, 480)) is None


def test_clip_box():
    assert clip_box((-10, -10, 50, 50), 100, 100) == (0, 0, 50, 50)
    assert clip_box((80, 80, 500, 500), 100, 100) == (80, 80, 99, 99)
    assert clip_box((50, 50, 10, 10), 100, 100) == (10, 10, 50, 50)
    assert clip_box((200, 200, 300, 300), 100, 100) is None
    assert clip_box((10, 10, 20, 20), 0, 100) is None


def test_frame_size():
    assert frame_size(np.zeros((480, 640, 3), dtype=np.uint8)) == (640, 480)
    assert frame_size(None) == (0, 0)


def test_boxes_follow_current_frame_size():
    overlay = OverlaySynchronizer('cam-1', ttl=0)
    overlay.update(result(detections=[person()]))

    [(det, box)] = overlay.boxes_for(640, 480, now=100.0)
    assert det.label == 'person'
    assert box == (320, 240, 639, 479)

    # Same result, bigger sink: boxes are rescaled again, not reused
    [(_, box)] = overlay.boxes_for(1920, 1080, now=100.0)
    assert box == (960, 540, 1919, 1079)


def test_same_geometry_is_identity():
    overlay = OverlaySynchronizer('cam-1', ttl=0)
    overlay.update(result(detections=[person((100, 100, 200, 200))]))
    [(_, box)] = overlay.boxes_for(1280, 720)
    assert box == (100, 100, 200, 200)


def test_detection_without_box_is_skipped():
    overlay = OverlaySynchronizer('cam-1', ttl=0)
    overlay.update(result(detections=[Detection(label='angry', confidence=0.8, category='emotion')]))
    assert overlay.boxes_for(640, 480) == []
    assert overlay.current().has_threat


def test_zero_size_frame_draws_nothing():
    overlay = OverlaySynchronizer('cam-1', ttl=0)
    overlay.update(result(detections=[person()]))
    assert overlay.boxes_for(0, 480) == []
    empty = np.zeros((0, 0, 3), dtype=np.uint8)
    assert overlay.draw(empty) is empty


def test_older_result_is_rejected():
    overlay = OverlaySynchronizer('cam-1', ttl=0)
    assert overlay.update(result(captured_at=5.0))
    assert not overlay.update(result(captured_at=4.0))
    assert overlay.current().captured_at == 5.0
    assert overlay.update(result(captured_at=6.0))


def test_result_for_other_camera_is_rejected():
    overlay = OverlaySynchronizer('cam-1', ttl=0)
    assert not overlay.update(result(camera_id='cam-2'))
    assert overlay.current() is None


def test_expired_result_is_not_drawn():
    overlay = OverlaySynchronizer('cam-1', ttl=3.0)
    overlay.update(result(detections=[person()], received_at=100.0))
    assert overlay.current(now=102.0) is not None
    assert overlay.current(now=103.5) is None
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    assert overlay.draw(frame, now=103.5) is frame


def test_draw_paints_a_copy():
    overlay = OverlaySynchronizer('cam-1', ttl=0)
    gun = Detection(label='gun', confidence=0.7, bbox=(0, 0, 640, 360), category='weapon')
    overlay.update(result(detections=[person(), gun]))
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    out = overlay.draw(frame)
    assert out is not frame
    assert not frame.any()
    # box edges in frame coordinates
    assert tuple(out[479, 400]) == COLOR_OBJECT
    assert tuple(out[120, 0]) == COLOR_THREAT


def test_clear():
    overlay = OverlaySynchronizer('cam-1', ttl=0)
    overlay.update(result(detections=[person()]))
    overlay.clear()
    assert overlay.boxes_for(640, 480) == []


def test_render_sink_tracks_native_size():
    overlay = OverlaySynchronizer('cam-1', ttl=0)
    overlay.update(result(detections=[person()]))
    sink = RenderSink(overlay)
    sink.render(np.zeros((480, 640, 3), dtype=np.uint8))
    assert sink.native_size == (640, 480)

    sink.render(np.zeros((720, 1280, 3), dtype=np.uint8))
    assert sink.native_size == (1280, 720)
    assert sink.frames == 2
    assert sink.get_frame().shape == (720, 1280, 3)
    assert overlay.boxes_for(*sink.native_size) == [(overlay.current().detections[0], (640, 360, 1279, 719))]


def test_result_with_non_object_entry_is_rejected():
    payload = {'camera_id': 'cam-1', 'timestamp': 1.0, 'width': 640, 'height': 480, 'detections': ['x']}
    with pytest.raises(ValueError, match='malformed detection result'):
        DetectionResult.from_payload(payload)
