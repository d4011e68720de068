import asyncio
import logging

import aiohttp

from hawkrelay.core import messages
from hawkrelay.core.config import settings
from hawkrelay.core.errors import ProtocolError, RegistryConflict, SignalingError
from hawkrelay.core.messages import Action

logger = logging.getLogger(__name__)


class SignalingChannel:
    """Client end of the relay websocket."""

    def __init__(self, url=None, session=None):
        self.url = url or settings.SIGNALING_URL
        self._session = session
        self._owns_session = session is None
        self.ws = None
        self.channel = None

    @property
    def connected(self):
        return self.ws is not None and not self.ws.closed

    async def connect(self):
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            self.ws = await self._session.ws_connect(self.url, heartbeat=settings.WS_HEARTBEAT)
        except aiohttp.ClientError as e:
            await self._close_session()
            raise SignalingError(f"cannot reach relay at {self.url}: {e}") from e
        logger.info(f"[channel.connect] connected to {self.url}")

    async def send(self, action, **fields):
        if not self.connected:
            logger.warning(f"[channel.send] {Action(action).value} dropped, relay socket is closed")
            return False
        try:
            await self.ws.send_json(messages.make(action, **fields))
            return True
        except (ConnectionError, RuntimeError) as e:
            logger.warning(f"[channel.send] {Action(action).value} failed: {e}")
            return False

    async def receive(self):
        """Next relay message, or None once the socket is closed."""
        while self.connected:
            msg = await self.ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    return messages.parse_outbound(msg.data)
                except ProtocolError as e:
                    logger.warning(f"[channel.receive] {e}")
                    continue
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                            aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                break
        return None

    async def join(self, action, expect, camera_id, timeout=10.0, **fields):
        """Send a join and wait for its acknowledgement.

        Raises RegistryConflict when the relay answers with an error action.
        """
        await self.send(action, camera_id=camera_id, **fields)
        try:
            reply = await asyncio.wait_for(self.receive(), timeout)
        except asyncio.TimeoutError:
            raise SignalingError(f"relay did not acknowledge {Action(action).value} for {camera_id}")
        if reply is None:
            raise SignalingError("relay closed the connection during join")
        if reply['action'] == Action.ERROR:
            raise RegistryConflict(reply.get('code', 'error'), reply.get('message', ''), camera_id)
        if reply['action'] != expect:
            raise ProtocolError(f"expected {Action(expect).value}, got {reply['action'].value}")
        self.channel = reply.get('channel')
        return reply

    async def close(self):
        if self.ws is not None and not self.ws.closed:
            await self.ws.close()
        await self._close_session()

    async def _close_session(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
