import threading

import pytest

from hawkrelay.core.errors import CaptureError, RegistryConflict
from hawkrelay.core.models import CameraState, Detection, DetectionResult
from hawkrelay.services.camera_registry import CameraRegistryClient
from hawkrelay.services.channel import SignalingChannel
from hawkrelay.services.peer import PeerState, StreamerPeerSession, ViewerPeerSession
from hawkrelay.services.streamer import StreamerClient
from hawkrelay.services.viewer import ViewerClient

from conftest import FakeCameraRegistry, FakeCapture, FakePeerConnection, wait_until


def streamer_sessions(camera_id, viewer):
    return StreamerPeerSession(camera_id, viewer, pc=FakePeerConnection())


def viewer_sessions(camera_id, streamer, on_track=None):
    return ViewerPeerSession(camera_id, streamer, pc=FakePeerConnection(), on_track=on_track)


def make_streamer(url, camera_id='cam-1', capture=None, **kwargs):
    kwargs.setdefault('camera_registry', CameraRegistryClient(base_url=''))
    return StreamerClient(camera_id, name='Front door', capture=capture or FakeCapture(),
                          channel=SignalingChannel(url), session_factory=streamer_sessions, **kwargs)


def make_viewer(url, camera_id='cam-1'):
    return ViewerClient(camera_id, channel=SignalingChannel(url), session_factory=viewer_sessions)


async def test_raw_socket_gets_bad_message(relay_client):
    ws = await relay_client.ws_connect('/ws')
    await ws.send_str('not json')
    reply = await ws.receive_json()
    assert reply['action'] == 'error'
    assert reply['code'] == 'bad_message'
    await ws.send_json({'action': 'streamer_join', 'camera_id': 'cam-1'})
    reply = await ws.receive_json()
    assert reply['action'] == 'streamer_joined'
    await ws.close()


async def test_socket_close_releases_camera(relay, relay_client):
    ws = await relay_client.ws_connect('/ws')
    await ws.send_json({'action': 'streamer_join', 'camera_id': 'cam-1'})
    await ws.receive_json()
    assert relay.registry.entry('cam-1') is not None
    await ws.close()
    await wait_until(lambda: relay.registry.entry('cam-1') is None)


async def test_two_viewers_watch_one_streamer(relay, relay_url):
    streamer = make_streamer(relay_url)
    v1, v2 = make_viewer(relay_url), make_viewer(relay_url)
    await streamer.start()
    try:
        await v1.start()
        await v2.start()
        assert v1.streamer == streamer.channel.channel

        viewers = {v1.channel.channel, v2.channel.channel}
        await wait_until(lambda: set(streamer.sessions) == viewers and all(
            s.state == PeerState.CONNECTED for s in streamer.sessions.values()))
        await wait_until(lambda: all(v.session is not None and v.session.state == PeerState.CONNECTED
                                     for v in (v1, v2)))
        # one session per viewer, each on its own transport
        pcs = [s.pc for s in streamer.sessions.values()]
        assert pcs[0] is not pcs[1]
        assert all(len(pc.tracks) == 1 for pc in pcs)

        result = DetectionResult(camera_id='cam-1', captured_at=10.0, source_width=1280, source_height=720,
                                 detections=[Detection(label='gun', confidence=0.8, bbox=(0, 0, 640, 360),
                                                       category='weapon')])
        await streamer.publish_detections(result)
        await wait_until(lambda: all(v.overlay.current() is not None for v in (v1, v2)))
        held = v1.overlay.current()
        assert held.has_threat
        assert (held.source_width, held.source_height) == (1280, 720)
        assert v2.overlay.boxes_for(640, 480)[0][1] == (0, 0, 320, 240)
    finally:
        await streamer.stop()

    assert streamer.sessions == {}
    assert streamer.camera.state == CameraState.STOPPED
    await wait_until(lambda: v1.finished.is_set() and v2.finished.is_set())
    for v in (v1, v2):
        assert v.streamer_left
        assert v.session.state == PeerState.CLOSED
        assert v.overlay.current() is None
    await wait_until(lambda: relay.registry.entry('cam-1') is None)

    # the camera id is free again
    again = make_streamer(relay_url)
    await again.start()
    try:
        assert relay.registry.entry('cam-1').streamer.channel == again.channel.channel
    finally:
        await again.stop()


async def test_viewer_leaving_closes_only_its_session(relay_url):
    streamer = make_streamer(relay_url)
    v1, v2 = make_viewer(relay_url), make_viewer(relay_url)
    await streamer.start()
    try:
        await v1.start()
        await v2.start()
        await wait_until(lambda: len(streamer.sessions) == 2)
        leaving = streamer.sessions[v1.channel.channel]
        staying = streamer.sessions[v2.channel.channel]

        await v1.stop()
        await wait_until(lambda: v1.channel.channel not in streamer.sessions)
        assert leaving.state == PeerState.CLOSED
        assert staying.state != PeerState.CLOSED
        assert not v2.finished.is_set()
    finally:
        await v2.stop()
        await streamer.stop()


async def test_second_streamer_is_refused_and_releases_capture(relay, relay_url):
    first = make_streamer(relay_url)
    await first.start()
    capture = FakeCapture()
    second = make_streamer(relay_url, capture=capture)
    try:
        with pytest.raises(RegistryConflict) as exc:
            await second.start()
        assert exc.value.code == 'streamer_exists'
        assert capture.stop_calls >= 1
        assert not capture.running
        assert second.finished.is_set()
        assert relay.registry.entry('cam-1').streamer.channel == first.channel.channel
    finally:
        await first.stop()


async def test_refused_streamer_leaves_owner_record_alone(relay_url):
    records = FakeCameraRegistry()
    first = make_streamer(relay_url, camera_registry=records)
    await first.start()
    second = make_streamer(relay_url, camera_registry=records)
    try:
        with pytest.raises(RegistryConflict):
            await second.start()
        assert 'cam-1' in records.records
        assert records.calls == [('create', 'cam-1')]
    finally:
        await first.stop()
    assert records.records == {}


async def test_stop_releases_capture_off_the_event_loop(relay_url):
    capture = FakeCapture()
    streamer = make_streamer(relay_url, capture=capture)
    await streamer.start()
    await streamer.stop()
    assert capture.stop_calls == 1
    assert capture.stop_thread != threading.get_ident()


async def test_capture_failure_never_joins(relay, relay_url):
    streamer = make_streamer(relay_url, capture=FakeCapture(fail=True))
    with pytest.raises(CaptureError):
        await streamer.start()
    assert relay.registry.entries == {}
    assert not streamer.channel.connected


async def test_viewer_for_unknown_camera(relay, relay_url):
    viewer = make_viewer(relay_url, camera_id='nobody')
    with pytest.raises(RegistryConflict) as exc:
        await viewer.start()
    assert exc.value.code == 'no_streamer'
    assert relay.registry.entries == {}
    assert viewer.finished.is_set()


async def test_streamer_heartbeats_keep_connection_fresh(relay, relay_url):
    streamer = make_streamer(relay_url, heartbeat_interval=0.05)
    await streamer.start()
    try:
        conn = relay.registry.entry('cam-1').streamer
        joined_at = conn.last_seen
        await wait_until(lambda: conn.last_seen > joined_at)
    finally:
        await streamer.stop()


async def test_reaped_streamer_stops_itself(relay, relay_url):
    streamer = make_streamer(relay_url)
    await streamer.start()
    conn = relay.registry.entry('cam-1').streamer
    await relay.reap(now=conn.last_seen + relay.streamer_timeout + 1)
    await wait_until(lambda: streamer.finished.is_set())
    assert streamer.camera.state == CameraState.STOPPED


async def test_malformed_detections_do_not_stall_viewer(relay, relay_client, relay_url):
    ws = await relay_client.ws_connect('/ws')
    await ws.send_json({'action': 'streamer_join', 'camera_id': 'cam-1'})
    await ws.receive_json()
    viewer = make_viewer(relay_url)
    await viewer.start()
    await ws.receive_json()

    base = {'camera_id': 'cam-1', 'timestamp': 1.0, 'width': 640, 'height': 480}
    await ws.send_json({'action': 'detections', 'camera_id': 'cam-1',
                        'result': dict(base, detections=['x'])})
    await ws.send_json({'action': 'detections', 'camera_id': 'cam-1',
                        'result': dict(base, timestamp=2.0, detections=[])})
    await wait_until(lambda: viewer.overlay.current() is not None)
    assert viewer.overlay.current().captured_at == 2.0

    await ws.close()
    await wait_until(lambda: viewer.finished.is_set())
    assert viewer.streamer_left
