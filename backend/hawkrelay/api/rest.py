from concurrent.futures import TimeoutError as FutureTimeout

from flask import Blueprint, jsonify

from hawkrelay.api.signaling import relay_server
from hawkrelay.core.config import settings

api = Blueprint('api', __name__)

SERVICE_NAME = 'hawkrelay'
VERSION = '1.0.0'


@api.route('/')
def health():
    return jsonify({'status': 'ok', 'service': SERVICE_NAME, 'version': VERSION})


@api.route('/ice')
def ice_config():
    # Provide ICE servers (STUN/TURN) to clients.
    return jsonify({'iceServers': settings.ice_servers()})


@api.route('/signaling')
def signaling_info():
    return jsonify({
        'url': settings.SIGNALING_URL,
        'heartbeat_interval': settings.HEARTBEAT_INTERVAL,
        'streamer_timeout': settings.STREAMER_TIMEOUT,
    })


@api.route('/cameras/live')
def live_cameras():
    try:
        cameras = relay_server.snapshot()
    except FutureTimeout:
        return jsonify({'error': 'relay did not answer in time'}), 503
    return jsonify({'cameras': cameras, 'total_count': len(cameras)})
