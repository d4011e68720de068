"""
Signaling relay: store-and-forward routing between one streamer and its viewers.

The relay never looks inside an offer, answer or candidate. It reads `target`,
stamps `source` and forwards. Media never passes through here.
"""
import asyncio
import logging
import time

from hawkrelay.core import messages
from hawkrelay.core.config import settings
from hawkrelay.core.errors import ProtocolError, RegistryConflict
from hawkrelay.core.messages import Action
from hawkrelay.core.models import Connection, Role
from hawkrelay.services.registry import SessionRegistry

logger = logging.getLogger(__name__)


class Relay:
    def __init__(self, registry=None, streamer_timeout=None, reap_interval=None):
        self.registry = registry or SessionRegistry()
        self.streamer_timeout = streamer_timeout or settings.STREAMER_TIMEOUT
        self.reap_interval = reap_interval or settings.REAP_INTERVAL
        self._reaper = None

    def connect(self, socket) -> Connection:
        conn = Connection(socket=socket)
        self.registry.add(conn)
        logger.info(f"[relay.connect] channel={conn.channel}")
        return conn

    async def handle(self, conn: Connection, raw):
        """Process one inbound frame from `conn`. Never raises for client mistakes."""
        conn.touch()
        try:
            msg = messages.parse(raw)
        except ProtocolError as e:
            logger.warning(f"[relay.parse] channel={conn.channel} {e}")
            await self._send(conn, messages.error(e.code, str(e)))
            return
        try:
            await self.dispatch(conn, msg)
        except RegistryConflict as e:
            logger.warning(f"[relay.conflict] channel={conn.channel} code={e.code} {e.message}")
            await self._send(conn, messages.error(e.code, e.message, e.camera_id))

    async def dispatch(self, conn: Connection, msg):
        action = msg['action']
        if action == Action.STREAMER_JOIN:
            await self._streamer_join(conn, msg)
        elif action == Action.VIEWER_JOIN:
            await self._viewer_join(conn, msg)
        elif action in messages.ROUTED_ACTIONS:
            await self._route(conn, msg)
        elif action == Action.DETECTIONS:
            await self._fan_out_detections(conn, msg)
        elif action == Action.HEARTBEAT:
            pass

    async def _streamer_join(self, conn, msg):
        camera_id = msg['camera_id']
        await self.registry.bind_streamer(conn, camera_id, msg.get('name', ''))
        await self._send(conn, messages.make(Action.STREAMER_JOINED, camera_id=camera_id,
                                             channel=conn.channel))

    async def _viewer_join(self, conn, msg):
        camera_id = msg['camera_id']
        entry = await self.registry.bind_viewer(conn, camera_id)
        await self._send(conn, messages.make(Action.VIEWER_JOINED, camera_id=camera_id,
                                             channel=conn.channel,
                                             streamer=entry.streamer.channel))
        # The streamer always offers; the viewer only ever answers.
        await self._send(entry.streamer, messages.make(Action.VIEWER_JOINED, camera_id=camera_id,
                                                       viewer=conn.channel))

    async def _route(self, conn, msg):
        target = self.registry.get(msg['target'])
        if target is None or not target.open:
            logger.warning(f"[relay.route] dropping {msg['action'].value} from {conn.channel}: "
                           f"target {msg['target']} is gone")
            return
        forwarded = dict(msg)
        forwarded['action'] = msg['action'].value
        forwarded['source'] = conn.channel
        await self._send(target, forwarded)

    async def _fan_out_detections(self, conn, msg):
        camera_id = msg['camera_id']
        entry = self.registry.entry(camera_id)
        if entry is None or entry.streamer is not conn:
            raise RegistryConflict('not_streamer',
                                   f"only the streamer of {camera_id} may publish detections",
                                   camera_id)
        out = messages.make(Action.DETECTIONS, camera_id=camera_id, result=msg['result'],
                            source=conn.channel)
        viewers = list(entry.viewers.values())
        for viewer in viewers:
            await self._send(viewer, out)
        logger.debug(f"[relay.detections] camera={camera_id} -> {len(viewers)} viewer(s)")

    async def disconnect(self, conn: Connection):
        """Transport-level disconnect. Idempotent."""
        released = await self.registry.release(conn)
        if released.was_streamer:
            camera_id = released.entry.camera.camera_id
            notice = messages.make(Action.STREAMER_LEFT, camera_id=camera_id)
            for viewer in released.viewers:
                # Viewers stay connected and may join again later
                viewer.role = None
                viewer.camera_id = None
                await self._send(viewer, notice)
            logger.info(f"[relay.disconnect] streamer of camera={camera_id} gone, "
                        f"notified {len(released.viewers)} viewer(s)")
        elif released.streamer is not None:
            await self._send(released.streamer, messages.make(
                Action.VIEWER_LEFT, camera_id=conn.camera_id, viewer=conn.channel))
            logger.info(f"[relay.disconnect] viewer {conn.channel} left camera={conn.camera_id}")
        return released

    async def reap(self, now=None):
        """Reclaim streamers that went silent. Returns the reclaimed connections."""
        now = time.monotonic() if now is None else now
        stale = self.registry.stale_streamers(self.streamer_timeout, now)
        for conn in stale:
            logger.warning(f"[relay.reap] streamer {conn.channel} camera={conn.camera_id} "
                           f"silent for {now - conn.last_seen:.1f}s, reclaiming")
            await self.disconnect(conn)
            try:
                await conn.socket.close()
            except (ConnectionError, RuntimeError) as e:
                logger.debug(f"[relay.reap] close failed for {conn.channel}: {e}")
        return stale

    async def _reap_loop(self):
        while True:
            await asyncio.sleep(self.reap_interval)
            try:
                await self.reap()
            except Exception:
                logger.exception("[relay.reap] reaper pass failed")

    def start_reaper(self):
        if self._reaper is None:
            self._reaper = asyncio.ensure_future(self._reap_loop())
        return self._reaper

    async def stop_reaper(self):
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None

    async def _send(self, conn: Connection, msg):
        if not conn.open:
            logger.warning(f"[relay.send] {msg.get('action')} to closed channel {conn.channel} dropped")
            return False
        try:
            await conn.socket.send_json(msg)
            return True
        except (ConnectionError, RuntimeError) as e:
            logger.warning(f"[relay.send] {msg.get('action')} to {conn.channel} failed: {e}")
            return False
