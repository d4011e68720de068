"""
Peer sessions: one RTCPeerConnection per (streamer, viewer) pair.

Polarity is fixed: the streamer side always creates the offer and the viewer
side always answers, so the two ends never race to offer.

aiortc gathers its local candidates inside setLocalDescription and ships them
in the SDP. Trickled candidates from the remote end (browsers do this) are
applied as they come, and buffered while no remote description is set.
"""
import asyncio
import logging
from enum import Enum

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from hawkrelay.core.config import settings
from hawkrelay.core.errors import NegotiationError
from hawkrelay.core.models import Role

logger = logging.getLogger(__name__)


class PeerState(str, Enum):
    IDLE = 'idle'
    OFFER_SENT = 'offer_sent'
    OFFER_RECEIVED = 'offer_received'
    ANSWERED = 'answered'
    ICE_EXCHANGING = 'ice_exchanging'
    CONNECTED = 'connected'
    CLOSED = 'closed'


# States only move forward; CLOSED is reachable from anywhere and never left.
_RANK = {
    PeerState.IDLE: 0,
    PeerState.OFFER_SENT: 1,
    PeerState.OFFER_RECEIVED: 1,
    PeerState.ANSWERED: 2,
    PeerState.ICE_EXCHANGING: 3,
    PeerState.CONNECTED: 4,
    PeerState.CLOSED: 5,
}


def build_configuration(ice_servers=None):
    servers = []
    for s in ice_servers if ice_servers is not None else settings.ice_servers():
        servers.append(RTCIceServer(urls=s['urls'], username=s.get('username'),
                                    credential=s.get('credential')))
    return RTCConfiguration(iceServers=servers)


def candidate_from_payload(payload):
    """Browser-shaped {'candidate', 'sdpMid', 'sdpMLineIndex'} -> RTCIceCandidate.

    Returns None for the empty end-of-candidates marker.
    """
    if isinstance(payload, str):
        payload = {'candidate': payload}
    if not isinstance(payload, dict):
        raise NegotiationError(f"candidate must be an object, got {type(payload).__name__}")
    line = payload.get('candidate') or ''
    if not line:
        return None
    if line.startswith('candidate:'):
        line = line[len('candidate:'):]
    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, ValueError, IndexError) as e:
        raise NegotiationError(f"unparseable candidate {line!r}: {e}") from e
    candidate.sdpMid = payload.get('sdpMid')
    candidate.sdpMLineIndex = payload.get('sdpMLineIndex')
    return candidate


class PeerSession:
    role = None
    first_state = None

    def __init__(self, camera_id, remote, pc=None, configuration=None):
        self.camera_id = camera_id
        self.remote = remote
        self.pc = pc if pc is not None else RTCPeerConnection(
            configuration=configuration or build_configuration())
        self.state = PeerState.IDLE
        self.closed = asyncio.Event()
        self._pending_candidates = []
        self._remote_set = False
        self._listeners = []
        self.pc.on('connectionstatechange', self._on_connection_state)
        self.pc.on('iceconnectionstatechange', self._on_ice_state)

    def __repr__(self):
        return f"<{type(self).__name__} camera={self.camera_id} remote={self.remote} state={self.state.value}>"

    def on_state(self, callback):
        """callback(session, state) on every transition."""
        self._listeners.append(callback)
        return callback

    def _transition(self, new):
        if self.state == PeerState.CLOSED:
            return False
        if new != PeerState.CLOSED and _RANK[new] <= _RANK[self.state]:
            return False
        logger.info(f"[peer.state] {self.role.value} camera={self.camera_id} "
                    f"remote={self.remote} {self.state.value} -> {new.value}")
        self.state = new
        for cb in list(self._listeners):
            try:
                cb(self, new)
            except Exception:
                logger.exception(f"[peer.state] listener failed on {new.value}")
        return True

    async def _on_connection_state(self):
        state = self.pc.connectionState
        if state == 'connected':
            self._transition(PeerState.CONNECTED)
        elif state == 'failed':
            await self.close(reason='transport failed')
        elif state == 'closed':
            await self.close(reason='transport closed')

    async def _on_ice_state(self):
        if self.pc.iceConnectionState in ('checking', 'connected', 'completed'):
            self._transition(PeerState.ICE_EXCHANGING)

    async def _set_remote(self, sdp, kind):
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=kind))
        self._remote_set = True
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self.pc.addIceCandidate(candidate)
        if pending:
            logger.info(f"[peer.ice] applied {len(pending)} buffered candidate(s) from {self.remote}")

    async def add_candidate(self, payload):
        """Apply a remote candidate, or hold it until the remote description is set."""
        if self.state == PeerState.CLOSED:
            return
        try:
            candidate = candidate_from_payload(payload)
            if candidate is None:
                return
            if not self._remote_set:
                self._pending_candidates.append(candidate)
                return
            await self.pc.addIceCandidate(candidate)
        except Exception as e:
            await self._fail('ice', e)
            raise NegotiationError(str(e)) from e
        self._transition(PeerState.ICE_EXCHANGING)

    @property
    def pending_candidates(self):
        return len(self._pending_candidates)

    async def _fail(self, step, exc):
        logger.error(f"[peer.{step}] {self.role.value} camera={self.camera_id} "
                     f"remote={self.remote} negotiation failed: {exc}")
        await self.close(reason=f"{step} failed")

    async def close(self, reason='closed'):
        """Tear down the transport. Safe to call any number of times."""
        if self.state == PeerState.CLOSED:
            return
        self._transition(PeerState.CLOSED)
        self._pending_candidates = []
        logger.info(f"[peer.close] {self.role.value} camera={self.camera_id} remote={self.remote}: {reason}")
        try:
            await self.pc.close()
        finally:
            self.closed.set()


class StreamerPeerSession(PeerSession):
    role = Role.STREAMER

    async def create_offer(self, track):
        """Attach this viewer's track, set the local offer and return its SDP."""
        if self.state != PeerState.IDLE:
            raise NegotiationError(f"cannot offer from state {self.state.value}")
        try:
            self.pc.addTrack(track)
            offer = await self.pc.createOffer()
            await self.pc.setLocalDescription(offer)
        except Exception as e:
            await self._fail('offer', e)
            raise NegotiationError(str(e)) from e
        self._transition(PeerState.OFFER_SENT)
        return self.pc.localDescription.sdp

    async def accept_answer(self, sdp):
        if self.state != PeerState.OFFER_SENT:
            raise NegotiationError(f"unexpected answer in state {self.state.value}")
        try:
            await self._set_remote(sdp, 'answer')
        except Exception as e:
            await self._fail('answer', e)
            raise NegotiationError(str(e)) from e
        self._transition(PeerState.ANSWERED)


class ViewerPeerSession(PeerSession):
    role = Role.VIEWER

    def __init__(self, camera_id, remote, pc=None, configuration=None, on_track=None):
        super().__init__(camera_id, remote, pc=pc, configuration=configuration)
        self.on_track = on_track
        self.pc.on('track', self._handle_track)

    def _handle_track(self, track):
        logger.info(f"[peer.track] {track.kind} track from {self.remote} camera={self.camera_id}")
        if self.on_track is not None:
            self.on_track(track)

    async def accept_offer(self, sdp):
        """Apply the streamer's offer and return the answer SDP."""
        if self.state != PeerState.IDLE:
            raise NegotiationError(f"cannot accept an offer in state {self.state.value}")
        self._transition(PeerState.OFFER_RECEIVED)
        try:
            await self._set_remote(sdp, 'offer')
            answer = await self.pc.createAnswer()
            await self.pc.setLocalDescription(answer)
        except Exception as e:
            await self._fail('offer', e)
            raise NegotiationError(str(e)) from e
        self._transition(PeerState.ANSWERED)
        return self.pc.localDescription.sdp
