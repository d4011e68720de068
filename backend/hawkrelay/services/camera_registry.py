import asyncio
import logging
import uuid

import aiohttp

from hawkrelay.core.config import settings
from hawkrelay.core.errors import CameraRegistryError

logger = logging.getLogger(__name__)


def default_device_id():
    return settings.DEVICE_ID or f"device_{uuid.getnode():x}"


class CameraRegistryClient:
    """HTTP client for the dashboard's camera records (create/list/heartbeat/delete)."""

    def __init__(self, base_url=None, timeout=None, session=None):
        self.base_url = (base_url or settings.CAMERA_REGISTRY_URL or '').rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.CAMERA_REGISTRY_TIMEOUT)
        self._session = session
        self._owns_session = session is None

    @property
    def enabled(self):
        return bool(self.base_url)

    async def _request(self, method, path, **kwargs):
        if not self.enabled:
            raise CameraRegistryError("CAMERA_REGISTRY_URL is not configured")
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        url = f"{self.base_url}/{path}"
        try:
            async with self._session.request(method, url, timeout=self.timeout, **kwargs) as resp:
                body = await resp.json(content_type=None)
                if resp.status >= 300:
                    detail = body.get('error') if isinstance(body, dict) else body
                    raise CameraRegistryError(f"{method} {url} -> {resp.status}: {detail}")
                return body
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise CameraRegistryError(f"{method} {url} failed: {e}") from e

    async def create(self, camera_id, name, device_id=None):
        return await self._request('POST', 'add/', json={
            'cameraId': camera_id,
            'cameraName': name,
            'sourceDeviceId': device_id or default_device_id(),
            'hasRemoteStream': True,
            'people': 0,
            'threats': 0,
        })

    async def list(self):
        body = await self._request('GET', '')
        if isinstance(body, dict):
            return body.get('cameras', [])
        return body or []

    async def heartbeat(self, camera_id):
        return await self._request('PUT', f'update/{camera_id}/', json={'status': 'active'})

    async def delete(self, camera_id):
        return await self._request('DELETE', f'delete/{camera_id}/')

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
