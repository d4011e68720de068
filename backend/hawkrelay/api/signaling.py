import asyncio
import logging
import threading

from aiohttp import web, WSMsgType

from hawkrelay.core.config import settings
from hawkrelay.services.relay import Relay

logger = logging.getLogger(__name__)

RELAY_KEY = web.AppKey('relay', Relay)


async def websocket_handler(request):
    relay = request.app[RELAY_KEY]
    ws = web.WebSocketResponse(heartbeat=settings.WS_HEARTBEAT)
    await ws.prepare(request)
    conn = relay.connect(ws)
    try:
        async for msg in ws:
            if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                await relay.handle(conn, msg.data)
            elif msg.type == WSMsgType.ERROR:
                logger.warning(f"[signaling.ws] channel={conn.channel} error: {ws.exception()}")
                break
    finally:
        await relay.disconnect(conn)
        logger.info(f"[signaling.ws] channel={conn.channel} closed")
    return ws


async def _start_reaper(app):
    app[RELAY_KEY].start_reaper()


async def _stop_reaper(app):
    await app[RELAY_KEY].stop_reaper()


def build_app(relay=None):
    app = web.Application()
    app[RELAY_KEY] = relay or Relay()
    app.router.add_get(settings.RELAY_PATH, websocket_handler)
    app.on_startup.append(_start_reaper)
    app.on_cleanup.append(_stop_reaper)
    return app


class RelayServer:
    """Runs the relay on its own event loop in a daemon thread."""

    def __init__(self, host=None, port=None, relay=None):
        self.host = host or settings.RELAY_HOST
        self.port = port or settings.RELAY_PORT
        self.relay = relay or Relay()
        self.loop = None
        self.thread = None
        self._runner = None
        self._started = threading.Event()

    def _run(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self._runner = web.AppRunner(build_app(self.relay))
        self.loop.run_until_complete(self._runner.setup())
        site = web.TCPSite(self._runner, self.host, self.port)
        self.loop.run_until_complete(site.start())
        logger.info(f"Starting signaling relay on ws://{self.host}:{self.port}{settings.RELAY_PATH}")
        self._started.set()
        try:
            self.loop.run_forever()
        finally:
            self.loop.run_until_complete(self._runner.cleanup())
            self.loop.close()

    def start(self, timeout=10.0):
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()
        self._started.wait(timeout)
        return self

    def stop(self):
        if self.loop is not None and self.loop.is_running():
            self.loop.call_soon_threadsafe(self.loop.stop)
        if self.thread:
            self.thread.join(timeout=5.0)

    def snapshot(self, timeout=2.0):
        """Live camera list, read on the relay's own loop."""
        if self.loop is None or not self.loop.is_running():
            return self.relay.registry.snapshot()

        async def _read():
            return self.relay.registry.snapshot()

        return asyncio.run_coroutine_threadsafe(_read(), self.loop).result(timeout)


relay_server = RelayServer()


def run_relay_thread():
    return relay_server.start()
