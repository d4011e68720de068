import sys
import os
import argparse
import asyncio
import atexit
import logging
import signal
import time

# Add the backend directory to sys.path so 'hawkrelay' can be imported
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from hawkrelay.core.config import settings
from hawkrelay.core.errors import SignalingError

logger = logging.getLogger('hawkrelay.run')


def serve(args):
    from hawkrelay.main import create_app, cleanup

    # Register cleanup only in main process
    atexit.register(cleanup)

    app = create_app(start_services=True)

    try:
        app.run(host=settings.HTTP_HOST, port=args.port, debug=False, use_reloader=False)
    except KeyboardInterrupt:
        pass


async def _run_until_signal(client):
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    await client.start()
    waiter = asyncio.ensure_future(stop.wait())
    closed = asyncio.ensure_future(client.wait_closed())
    await asyncio.wait([waiter, closed], return_when=asyncio.FIRST_COMPLETED)
    waiter.cancel()
    await client.stop()


def stream(args):
    from hawkrelay.services.camera import CaptureSource
    from hawkrelay.services.channel import SignalingChannel
    from hawkrelay.services.streamer import StreamerClient

    camera_id = args.camera_id or f"cam_{int(time.time() * 1000)}"

    async def main():
        client = StreamerClient(
            camera_id,
            name=args.name,
            capture=CaptureSource(args.source),
            channel=SignalingChannel(args.url),
        )
        await _run_until_signal(client)

    asyncio.run(main())


def view(args):
    from hawkrelay.services.channel import SignalingChannel
    from hawkrelay.services.viewer import ViewerClient

    async def main():
        client = ViewerClient(args.camera_id, channel=SignalingChannel(args.url), show=args.show)
        await _run_until_signal(client)

    asyncio.run(main())


def build_parser():
    parser = argparse.ArgumentParser(description="Camera stream signaling relay and peers")
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('serve', help="run the signaling relay and REST status API")
    p.add_argument('--port', type=int, default=settings.HTTP_PORT)
    p.set_defaults(func=serve)

    p = sub.add_parser('stream', help="publish a local camera")
    p.add_argument('--camera-id')
    p.add_argument('--name', default='')
    p.add_argument('--source', default=settings.CAPTURE_SOURCE, help="device index, file or URL")
    p.add_argument('--url', default=settings.SIGNALING_URL)
    p.set_defaults(func=stream)

    p = sub.add_parser('view', help="watch a camera")
    p.add_argument('camera_id')
    p.add_argument('--url', default=settings.SIGNALING_URL)
    p.add_argument('--show', action='store_true', help="open a window with the annotated video")
    p.set_defaults(func=view)
    return parser


if __name__ == '__main__':
    args = build_parser().parse_args()
    try:
        args.func(args)
    except SignalingError as e:
        logger.error(f"{args.command} failed: {e}")
        sys.exit(1)
