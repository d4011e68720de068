"""
In-memory session registry: camera id -> one streamer + its viewers.

Every mutation of a camera entry runs under that camera's own asyncio lock,
so joins and leaves for different cameras never wait on each other.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from hawkrelay.core.errors import RegistryConflict
from hawkrelay.core.models import Camera, CameraEntry, CameraState, Connection, Role

logger = logging.getLogger(__name__)


class Released:
    """What `SessionRegistry.release` tore down, for the relay to notify."""

    def __init__(self, connection, entry=None, viewers=None, streamer=None):
        self.connection = connection
        self.entry = entry
        self.viewers = viewers or []
        self.streamer = streamer

    @property
    def was_streamer(self):
        return self.connection.role == Role.STREAMER and self.entry is not None


class SessionRegistry:
    def __init__(self):
        self.connections: Dict[str, Connection] = {}
        self.entries: Dict[str, CameraEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _camera_lock(self, camera_id):
        lock = self._locks.get(camera_id)
        if lock is None:
            lock = self._locks[camera_id] = asyncio.Lock()
        self._lock_users[camera_id] = self._lock_users.get(camera_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[camera_id] -= 1
            if self._lock_users[camera_id] == 0:
                del self._lock_users[camera_id]
                del self._locks[camera_id]

    def add(self, connection: Connection):
        self.connections[connection.channel] = connection

    def get(self, channel) -> Optional[Connection]:
        return self.connections.get(channel)

    def entry(self, camera_id) -> Optional[CameraEntry]:
        return self.entries.get(camera_id)

    async def bind_streamer(self, connection: Connection, camera_id, name=''):
        if connection.role is not None:
            raise RegistryConflict('already_bound',
                                   f"connection already bound as {connection.role.value}", camera_id)
        async with self._camera_lock(camera_id):
            existing = self.entries.get(camera_id)
            if existing is not None:
                raise RegistryConflict('streamer_exists',
                                       f"camera {camera_id} already has a streamer", camera_id)
            connection.role = Role.STREAMER
            connection.camera_id = camera_id
            camera = Camera(camera_id=camera_id, name=name or camera_id, state=CameraState.LIVE)
            entry = self.entries[camera_id] = CameraEntry(camera=camera, streamer=connection)
            logger.info(f"[registry.bind] streamer {connection.channel} holds camera={camera_id}")
            return entry

    async def bind_viewer(self, connection: Connection, camera_id):
        if connection.role is not None:
            raise RegistryConflict('already_bound',
                                   f"connection already bound as {connection.role.value}", camera_id)
        async with self._camera_lock(camera_id):
            entry = self.entries.get(camera_id)
            if entry is None:
                raise RegistryConflict('no_streamer',
                                       f"camera {camera_id} has no live streamer", camera_id)
            connection.role = Role.VIEWER
            connection.camera_id = camera_id
            entry.viewers[connection.channel] = connection
            logger.info(f"[registry.bind] viewer {connection.channel} watching camera={camera_id} "
                        f"viewers={len(entry.viewers)}")
            return entry

    async def release(self, connection: Connection) -> Released:
        """Forget a connection. Safe to call more than once."""
        self.connections.pop(connection.channel, None)
        camera_id = connection.camera_id
        if camera_id is None:
            return Released(connection)

        async with self._camera_lock(camera_id):
            entry = self.entries.get(camera_id)
            if entry is None:
                return Released(connection)

            if connection.role == Role.STREAMER:
                if entry.streamer is not connection:
                    return Released(connection)
                del self.entries[camera_id]
                entry.camera.state = CameraState.STOPPED
                viewers = list(entry.viewers.values())
                entry.viewers.clear()
                logger.info(f"[registry.release] camera={camera_id} removed, "
                            f"{len(viewers)} viewer(s) orphaned")
                return Released(connection, entry=entry, viewers=viewers)

            if entry.viewers.pop(connection.channel, None) is None:
                return Released(connection)
            logger.info(f"[registry.release] viewer {connection.channel} left camera={camera_id}")
            return Released(connection, entry=entry, streamer=entry.streamer)

    def stale_streamers(self, timeout, now=None) -> List[Connection]:
        now = time.monotonic() if now is None else now
        return [e.streamer for e in self.entries.values() if now - e.streamer.last_seen > timeout]

    def snapshot(self, now=None):
        now = time.monotonic() if now is None else now
        out = []
        for camera_id, entry in self.entries.items():
            out.append({
                'camera_id': camera_id,
                'name': entry.camera.name,
                'state': entry.camera.state.value,
                'streamer': entry.streamer.channel,
                'viewers': len(entry.viewers),
                'idle_seconds': round(now - entry.streamer.last_seen, 2),
            })
        return out
