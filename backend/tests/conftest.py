import asyncio
import json
import threading
import time

import numpy as np
import pytest
from aiortc import RTCSessionDescription

from hawkrelay.api.signaling import build_app
from hawkrelay.core.errors import CaptureError, DetectionServiceError
from hawkrelay.services.relay import Relay


class FakeSocket:
    """Stands in for a relay-side websocket."""

    def __init__(self):
        self.sent = []
        self.closed = False

    async def send_json(self, msg):
        if self.closed:
            raise ConnectionResetError("socket closed")
        # Round-trip so enum members are checked to serialise as plain strings
        self.sent.append(json.loads(json.dumps(msg)))

    async def close(self):
        self.closed = True

    def actions(self):
        return [m['action'] for m in self.sent]

    def last(self, action=None):
        for m in reversed(self.sent):
            if action is None or m['action'] == action:
                return m
        return None


class FakePeerConnection:
    """Records what a peer session does to its RTCPeerConnection.

    Once both descriptions are set it reports ICE checking and then connected,
    the same events a real transport emits.
    """

    def __init__(self, fail_remote=False, auto_connect=True):
        self.handlers = {}
        self.tracks = []
        self.candidates = []
        self.ops = []
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = 'new'
        self.iceConnectionState = 'new'
        self.fail_remote = fail_remote
        self.auto_connect = auto_connect
        self.closed = False

    def on(self, event, f=None):
        def register(fn):
            self.handlers.setdefault(event, []).append(fn)
            return fn
        return register if f is None else register(f)

    async def emit(self, event, *args):
        for fn in self.handlers.get(event, []):
            result = fn(*args)
            if asyncio.iscoroutine(result):
                await result

    def addTrack(self, track):
        self.tracks.append(track)

    async def createOffer(self):
        return RTCSessionDescription(sdp='v=0\r\no=- fake offer\r\n', type='offer')

    async def createAnswer(self):
        return RTCSessionDescription(sdp='v=0\r\no=- fake answer\r\n', type='answer')

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.ops.append(('local', description.type))
        await self._maybe_connect()

    async def setRemoteDescription(self, description):
        if self.fail_remote:
            raise ValueError("rejected SDP")
        self.remoteDescription = description
        self.ops.append(('remote', description.type))
        await self._maybe_connect()

    async def addIceCandidate(self, candidate):
        assert self.remoteDescription is not None, "candidate applied before remote description"
        self.candidates.append(candidate)
        self.ops.append(('candidate', candidate.ip))

    async def _maybe_connect(self):
        if self.auto_connect and self.localDescription and self.remoteDescription:
            self.iceConnectionState = 'checking'
            await self.emit('iceconnectionstatechange')
            self.connectionState = 'connected'
            await self.emit('connectionstatechange')

    async def fail(self):
        self.connectionState = 'failed'
        await self.emit('connectionstatechange')

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.connectionState = 'closed'
        await self.emit('connectionstatechange')


class FakeCapture:
    def __init__(self, width=1280, height=720, fail=False):
        self.frame = np.zeros((height, width, 3), dtype=np.uint8)
        self.frame[:, :, 1] = 90
        self.fail = fail
        self.running = False
        self.stop_calls = 0
        self.stop_thread = None

    def start(self):
        if self.fail:
            raise CaptureError("permission denied")
        self.running = True

    def stop(self):
        self.running = False
        self.stop_calls += 1
        self.stop_thread = threading.get_ident()

    def get_frame(self):
        if not self.running:
            return None, 0.0
        return self.frame.copy(), time.time()


class FakeDetector:
    def __init__(self, result_factory=None, delay=0.0, fail=False):
        self.calls = []
        self.result_factory = result_factory
        self.delay = delay
        self.fail = fail
        self.closed = False

    async def detect(self, image_bytes, camera_id, camera_name, width, height, captured_at):
        self.calls.append({'camera_id': camera_id, 'width': width, 'height': height,
                           'captured_at': captured_at, 'size': len(image_bytes)})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise DetectionServiceError("service unavailable")
        return self.result_factory(camera_id, captured_at, width, height)

    async def close(self):
        self.closed = True


class FakeCameraRegistry:
    """Camera records kept in a dict, shared by every client given the same instance."""

    enabled = True

    def __init__(self):
        self.records = {}
        self.calls = []

    async def create(self, camera_id, name, device_id=None):
        self.calls.append(('create', camera_id))
        self.records[camera_id] = {'cameraId': camera_id, 'cameraName': name, 'status': 'active'}
        return self.records[camera_id]

    async def heartbeat(self, camera_id):
        self.calls.append(('heartbeat', camera_id))

    async def delete(self, camera_id):
        self.calls.append(('delete', camera_id))
        self.records.pop(camera_id, None)

    async def close(self):
        pass


async def wait_until(predicate, timeout=3.0, interval=0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def relay():
    return Relay(streamer_timeout=30, reap_interval=60)


@pytest.fixture
async def relay_client(aiohttp_client, relay):
    return await aiohttp_client(build_app(relay))


@pytest.fixture
def relay_url(relay_client):
    return str(relay_client.make_url('/ws'))
