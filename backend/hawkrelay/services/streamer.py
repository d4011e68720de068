import asyncio
import logging

from aiortc.contrib.media import MediaRelay

from hawkrelay.core.config import settings
from hawkrelay.core.errors import CameraRegistryError, NegotiationError
from hawkrelay.core.messages import Action
from hawkrelay.core.models import Camera, CameraState
from hawkrelay.services.camera import CaptureSource, CaptureTrack
from hawkrelay.services.camera_registry import CameraRegistryClient
from hawkrelay.services.channel import SignalingChannel
from hawkrelay.services.detection import DetectionClient
from hawkrelay.services.peer import PeerState, StreamerPeerSession
from hawkrelay.services.sampler import FrameSampler

logger = logging.getLogger(__name__)


class StreamerClient:
    """Publishes one local capture source to every viewer of a camera.

    Each viewer gets its own peer session; all of them read the same capture
    through a MediaRelay subscription, so viewers come and go without
    touching the capture or each other.
    """

    def __init__(self, camera_id, name='', capture=None, channel=None, detector=None,
                 camera_registry=None, session_factory=None, heartbeat_interval=None,
                 sample_interval=None):
        self.camera = Camera(camera_id=camera_id, name=name or camera_id)
        self.capture = capture or CaptureSource()
        self.channel = channel or SignalingChannel()
        if detector is None and settings.DETECTION_URL and settings.DETECTION_ENABLED:
            detector = DetectionClient()
        self.detector = detector
        self.camera_registry = camera_registry or CameraRegistryClient()
        self.session_factory = session_factory or StreamerPeerSession
        self.heartbeat_interval = heartbeat_interval or settings.HEARTBEAT_INTERVAL
        self.sample_interval = sample_interval
        self.sessions = {}
        self.media_relay = MediaRelay()
        self.track = None
        self.sampler = None
        self.last_result = None
        self._tasks = []
        self._stopping = False
        self._registered = False
        self.finished = asyncio.Event()

    @property
    def camera_id(self):
        return self.camera.camera_id

    async def start(self):
        try:
            self.capture.start()
            self.track = CaptureTrack(self.capture)
            await self.channel.connect()
            await self.channel.join(Action.STREAMER_JOIN, Action.STREAMER_JOINED, self.camera_id,
                                    name=self.camera.name)
        except BaseException:
            await self.stop()
            raise
        # Only the relay-accepted owner of the camera id touches its external record
        if self.camera_registry.enabled:
            try:
                await self.camera_registry.create(self.camera_id, self.camera.name)
                self._registered = True
            except CameraRegistryError as e:
                logger.warning(f"[streamer.start] camera={self.camera_id} not recorded: {e}")
        self.camera.state = CameraState.LIVE
        logger.info(f"[streamer.start] camera={self.camera_id} live as {self.channel.channel}")

        self._tasks.append(asyncio.ensure_future(self._heartbeat_loop()))
        self._tasks.append(asyncio.ensure_future(self._dispatch_loop()))
        if self.detector is not None:
            self.sampler = FrameSampler(self.capture, self.detector, self.camera_id, self.camera.name,
                                        on_result=self.publish_detections, interval=self.sample_interval)
            self.sampler.start()
        return self

    async def handle(self, msg):
        action = msg['action']
        if action == Action.VIEWER_JOINED:
            await self._open_session(msg['viewer'])
        elif action in (Action.ANSWER, Action.ICE_CANDIDATE):
            session = self.sessions.get(msg.get('source'))
            if session is None:
                logger.warning(f"[streamer.dispatch] {action.value} from unknown viewer {msg.get('source')}")
                return
            if action == Action.ANSWER:
                await session.accept_answer(msg['sdp'])
            else:
                await session.add_candidate(msg['candidate'])
        elif action == Action.VIEWER_LEFT:
            session = self.sessions.pop(msg['viewer'], None)
            if session is not None:
                await session.close(reason='viewer left')
        elif action == Action.ERROR:
            logger.warning(f"[streamer.dispatch] relay error {msg.get('code')}: {msg.get('message')}")

    async def _open_session(self, viewer):
        previous = self.sessions.pop(viewer, None)
        if previous is not None:
            await previous.close(reason='viewer rejoined')

        session = self.session_factory(self.camera_id, viewer)

        def _forget(s, state):
            if state == PeerState.CLOSED and self.sessions.get(viewer) is s:
                del self.sessions[viewer]

        session.on_state(_forget)
        self.sessions[viewer] = session
        sdp = await session.create_offer(self.media_relay.subscribe(self.track))
        await self.channel.send(Action.OFFER, target=viewer, sdp=sdp)
        logger.info(f"[streamer.offer] camera={self.camera_id} offered to {viewer}, "
                    f"{len(self.sessions)} session(s)")

    async def publish_detections(self, result):
        self.last_result = result
        await self.channel.send(Action.DETECTIONS, camera_id=self.camera_id, result=result.to_payload())

    async def _dispatch_loop(self):
        while True:
            msg = await self.channel.receive()
            if msg is None:
                break
            try:
                await self.handle(msg)
            except NegotiationError as e:
                # The session closed itself; the other viewers are unaffected
                logger.warning(f"[streamer.dispatch] camera={self.camera_id} negotiation failed: {e}")
            except Exception:
                logger.exception(f"[streamer.dispatch] camera={self.camera_id} failed to handle {msg['action'].value}")
        if not self._stopping:
            logger.warning(f"[streamer.dispatch] camera={self.camera_id} lost the relay connection")
            await self.stop()

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.channel.send(Action.HEARTBEAT, camera_id=self.camera_id)
            if self._registered:
                try:
                    await self.camera_registry.heartbeat(self.camera_id)
                except CameraRegistryError as e:
                    logger.warning(f"[streamer.heartbeat] camera={self.camera_id} {e}")

    async def stop(self):
        """Release everything this streamer holds. Idempotent."""
        if self._stopping:
            await self.finished.wait()
            return
        self._stopping = True

        # 1. capture side
        if self.sampler is not None:
            await self.sampler.stop()
        await asyncio.to_thread(self.capture.stop)
        if self.track is not None:
            self.track.stop()

        # 2. every viewer's transport
        sessions, self.sessions = list(self.sessions.values()), {}
        for session in sessions:
            await session.close(reason='streamer stopped')

        # 3. signaling binding; the relay drops the registry entry on close
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        await self.channel.close()
        for task in self._tasks:
            if task is not current:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tasks = []

        # 4. external camera record
        if self._registered:
            try:
                await self.camera_registry.delete(self.camera_id)
            except CameraRegistryError as e:
                logger.warning(f"[streamer.stop] camera={self.camera_id} {e}")
        await self.camera_registry.close()
        if self.detector is not None:
            await self.detector.close()

        self.camera.state = CameraState.STOPPED
        self.finished.set()
        logger.info(f"[streamer.stop] camera={self.camera_id} stopped")

    async def wait_closed(self):
        await self.finished.wait()
