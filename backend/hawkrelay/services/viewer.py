import asyncio
import logging

from hawkrelay.core.errors import NegotiationError
from hawkrelay.core.messages import Action
from hawkrelay.core.models import DetectionResult
from hawkrelay.services.channel import SignalingChannel
from hawkrelay.services.overlay import OverlaySynchronizer
from hawkrelay.services.peer import PeerState, ViewerPeerSession
from hawkrelay.services.render import RenderSink

logger = logging.getLogger(__name__)


class ViewerClient:
    """Watches one camera: answers the streamer's offer and renders with overlay."""

    def __init__(self, camera_id, channel=None, overlay=None, sink=None, session_factory=None,
                 show=False):
        self.camera_id = camera_id
        self.channel = channel or SignalingChannel()
        self.overlay = overlay or OverlaySynchronizer(camera_id)
        self.sink = sink or RenderSink(self.overlay, show=show)
        self.session_factory = session_factory or ViewerPeerSession
        self.session = None
        self.streamer = None
        self.streamer_left = False
        self._task = None
        self._stopping = False
        self.finished = asyncio.Event()

    async def start(self):
        try:
            await self.channel.connect()
            reply = await self.channel.join(Action.VIEWER_JOIN, Action.VIEWER_JOINED, self.camera_id)
        except BaseException:
            await self.stop()
            raise
        self.streamer = reply.get('streamer')
        logger.info(f"[viewer.start] watching camera={self.camera_id} as {self.channel.channel}")
        self._task = asyncio.ensure_future(self._dispatch_loop())
        return self

    async def _session_for(self, source):
        """Session for `source`, opened in idle state when this is the first we hear of it."""
        session = self.session
        if session is not None and session.remote == source and session.state != PeerState.CLOSED:
            return session
        if session is not None:
            await session.close(reason=f"replaced by a session for {source}")
        session = self.session_factory(self.camera_id, source, on_track=self.sink.attach)
        self.session = session
        return session

    async def handle(self, msg):
        action = msg['action']
        if action in (Action.OFFER, Action.ICE_CANDIDATE) and msg.get('source') != self.streamer:
            logger.warning(f"[viewer.dispatch] {action.value} from {msg.get('source')} dropped, "
                           f"camera={self.camera_id} is streamed by {self.streamer}")
            return
        if action == Action.OFFER:
            source = msg['source']
            current = self.session
            if current is not None and current.state != PeerState.IDLE:
                # A fresh offer always starts a fresh transport
                await current.close(reason='new offer')
                self.session = None
            session = await self._session_for(source)
            answer = await session.accept_offer(msg['sdp'])
            await self.channel.send(Action.ANSWER, target=source, sdp=answer)
        elif action == Action.ICE_CANDIDATE:
            if self.session is not None and self.session.state == PeerState.CLOSED:
                logger.debug(f"[viewer.ice] late candidate for closed session of camera={self.camera_id} dropped")
                return
            # Candidates may beat the offer here; the session buffers them
            session = await self._session_for(msg['source'])
            await session.add_candidate(msg['candidate'])
        elif action == Action.DETECTIONS:
            try:
                result = DetectionResult.from_payload(msg['result'])
            except (KeyError, ValueError) as e:
                logger.warning(f"[viewer.detections] camera={self.camera_id} dropped: {e}")
                return
            self.overlay.update(result)
        elif action == Action.STREAMER_LEFT:
            logger.info(f"[viewer.dispatch] streamer of camera={self.camera_id} left")
            self.streamer_left = True
            self.overlay.clear()
            if self.session is not None:
                await self.session.close(reason='streamer left')
        elif action == Action.ERROR:
            logger.warning(f"[viewer.dispatch] relay error {msg.get('code')}: {msg.get('message')}")

    async def _dispatch_loop(self):
        while not self.streamer_left:
            msg = await self.channel.receive()
            if msg is None:
                break
            try:
                await self.handle(msg)
            except NegotiationError as e:
                logger.warning(f"[viewer.dispatch] camera={self.camera_id} negotiation failed: {e}")
            except Exception:
                logger.exception(f"[viewer.dispatch] camera={self.camera_id} failed to handle {msg['action'].value}")
        if not self._stopping:
            await self.stop()

    async def stop(self):
        """Stop watching. Idempotent."""
        if self._stopping:
            await self.finished.wait()
            return
        self._stopping = True
        await self.sink.close()
        if self.session is not None:
            await self.session.close(reason='viewer stopped')
        await self.channel.close()
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self.finished.set()
        logger.info(f"[viewer.stop] camera={self.camera_id} stopped")

    async def wait_closed(self):
        await self.finished.wait()
