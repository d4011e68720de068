import os
import logging
from dotenv import load_dotenv

# Load env file from backend root
env_path = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), '.env')
load_dotenv(env_path)

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def _flag(name, default):
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


class Config:
    # Signaling relay (websocket)
    RELAY_HOST = os.environ.get('RELAY_HOST', '0.0.0.0')
    RELAY_PORT = int(os.environ.get('RELAY_PORT', '8080'))
    RELAY_PATH = os.environ.get('RELAY_PATH', '/ws')
    # Protocol-level ping interval on relay sockets (seconds)
    WS_HEARTBEAT = float(os.environ.get('WS_HEARTBEAT', '20'))

    # REST status surface
    HTTP_HOST = os.environ.get('HTTP_HOST', '0.0.0.0')
    HTTP_PORT = int(os.environ.get('HTTP_PORT', '5000'))

    # Liveness: streamers send a heartbeat every HEARTBEAT_INTERVAL seconds and
    # are reclaimed after STREAMER_TIMEOUT seconds of silence.
    HEARTBEAT_INTERVAL = float(os.environ.get('HEARTBEAT_INTERVAL', '10'))
    STREAMER_TIMEOUT = float(os.environ.get('STREAMER_TIMEOUT', '30'))
    REAP_INTERVAL = float(os.environ.get('REAP_INTERVAL', '5'))
    if STREAMER_TIMEOUT <= HEARTBEAT_INTERVAL:
        raise ValueError("STREAMER_TIMEOUT must be larger than HEARTBEAT_INTERVAL")

    # Where clients connect to
    SIGNALING_URL = os.environ.get('SIGNALING_URL', f'ws://localhost:{RELAY_PORT}{RELAY_PATH}')

    # WebRTC / ICE
    STUN_URL = os.environ.get('STUN_URL', 'stun:stun.l.google.com:19302')
    TURN_URL = os.environ.get('TURN_URL')
    TURN_USER = os.environ.get('TURN_USER', '')
    TURN_PASS = os.environ.get('TURN_PASS', '')

    # Capture
    CAPTURE_SOURCE = os.environ.get('CAPTURE_SOURCE', '0')
    CAPTURE_WIDTH = int(os.environ.get('CAPTURE_WIDTH', '1280'))
    CAPTURE_HEIGHT = int(os.environ.get('CAPTURE_HEIGHT', '720'))
    CAPTURE_FPS = int(os.environ.get('CAPTURE_FPS', '15'))

    # Sampling / detection
    SAMPLE_INTERVAL_MS = int(os.environ.get('SAMPLE_INTERVAL_MS', '500'))
    if SAMPLE_INTERVAL_MS <= 0:
        raise ValueError("SAMPLE_INTERVAL_MS must be positive")
    JPEG_QUALITY = int(os.environ.get('JPEG_QUALITY', '80'))
    DETECTION_URL = os.environ.get('DETECTION_URL')
    DETECTION_TIMEOUT = float(os.environ.get('DETECTION_TIMEOUT', '10'))
    DETECTION_ENABLED = _flag('DETECTION_ENABLED', '1')

    # Overlay: results older than this (seconds) are no longer drawn
    OVERLAY_TTL = float(os.environ.get('OVERLAY_TTL', '3.0'))

    # External camera registry (HTTP); optional
    CAMERA_REGISTRY_URL = os.environ.get('CAMERA_REGISTRY_URL')
    CAMERA_REGISTRY_TIMEOUT = float(os.environ.get('CAMERA_REGISTRY_TIMEOUT', '5'))
    DEVICE_ID = os.environ.get('DEVICE_ID')

    def ice_servers(self):
        """ICE server list in the shape browsers and aiortc both accept."""
        ice = [{'urls': self.STUN_URL}]
        if self.TURN_URL:
            ice.append({
                'urls': self.TURN_URL,
                'username': self.TURN_USER,
                'credential': self.TURN_PASS,
            })
        return ice


settings = Config()
