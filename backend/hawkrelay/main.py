import atexit
import logging
from flask import Flask
from hawkrelay.api import rest
from hawkrelay.api.signaling import relay_server, run_relay_thread

logger = logging.getLogger(__name__)


def create_app(start_services=True):
    app = Flask(__name__)
    app.register_blueprint(rest.api)

    if start_services:
        # Signaling relay runs on its own loop next to the Flask server
        run_relay_thread()

    return app


_cleanup_done = False
def cleanup():
    global _cleanup_done
    if _cleanup_done:
        return
    _cleanup_done = True
    logger.info("Cleaning up...")
    relay_server.stop()


if __name__ == '__main__':
    from hawkrelay.core.config import settings

    app = create_app()
    # Register cleanup only in main process
    atexit.register(cleanup)
    app.run(host=settings.HTTP_HOST, port=settings.HTTP_PORT, debug=False, use_reloader=False)
